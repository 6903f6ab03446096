"""
Services Package

Runtime services of the playbook engine.
"""

from .clock import Clock, AsyncioClock
from .event_bus import Event, EventBus, EventType, Subscription, SubscriptionClosed
from .dispatcher import (
    DomainEvent,
    EventRule,
    ManualCause,
    WebhookCause,
    ScheduledCause,
    EventCause,
    TriggerDispatcher,
)
from .health_score import CustomerSignal, HealthScore, HealthScoreMonitor, compute_health_score
from .execution_engine import ExecutionEngine
from .schedules import PlaybookScheduler, Schedule
from .queries import PlaybookQueries, PlaybookSortField, PlaybookStats, PlaybookSummary

__all__ = [
    "Clock",
    "AsyncioClock",
    "Event",
    "EventBus",
    "EventType",
    "Subscription",
    "SubscriptionClosed",
    "DomainEvent",
    "EventRule",
    "ManualCause",
    "WebhookCause",
    "ScheduledCause",
    "EventCause",
    "TriggerDispatcher",
    "CustomerSignal",
    "HealthScore",
    "HealthScoreMonitor",
    "compute_health_score",
    "ExecutionEngine",
    "PlaybookScheduler",
    "Schedule",
    "PlaybookQueries",
    "PlaybookSortField",
    "PlaybookStats",
    "PlaybookSummary",
]
