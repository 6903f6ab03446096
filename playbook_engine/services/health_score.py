"""
Health Scoring

Deterministic customer health score in [0, 100]:

    engagement    0.30   100 - 2 per day since last activity
    usage         0.25   usage percentage (default 50)
    satisfaction  0.20   satisfaction score 0-10 scaled x10 (default 50)
    support       0.15   100 - 10 per open support ticket
    revenue       0.10   monthly recurring revenue / 100, capped at 100

Each factor is clamped to [0, 100] before weighting and the weighted sum
is rounded half-up. `HealthScoreMonitor` recomputes scores from a signal
provider, publishes changes and raises alerts on downward crossings.
"""

import math
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol

from pydantic import BaseModel, Field, field_validator

from playbook_engine.logging_config import get_logger

from .clock import Clock
from .dispatcher import (
    HEALTH_SCORE_ALERT_EVENT,
    HEALTH_SCORE_DROP_EVENT,
    DomainEvent,
    TriggerDispatcher,
    crossed_below,
)
from .event_bus import EventBus, EventType

logger = get_logger(__name__)

WEIGHTS: Dict[str, float] = {
    "engagement": 0.30,
    "usage": 0.25,
    "satisfaction": 0.20,
    "support": 0.15,
    "revenue": 0.10,
}

if not math.isclose(sum(WEIGHTS.values()), 1.0, abs_tol=1e-9):
    raise RuntimeError(f"Health score weights must sum to 1.0, got {sum(WEIGHTS.values())}")

DEFAULT_ENGAGEMENT = 50.0
DEFAULT_USAGE = 50.0
DEFAULT_SATISFACTION = 50.0
ENGAGEMENT_DECAY_PER_DAY = 2.0
SUPPORT_PENALTY_PER_TICKET = 10.0
REVENUE_DIVISOR = 100.0


class CustomerSignal(BaseModel):
    """Read-only signal snapshot of a customer; any field may be missing."""
    last_activity_at: Optional[datetime] = None
    usage_pct: Optional[float] = None
    satisfaction_score: Optional[float] = None
    support_ticket_count: Optional[int] = None
    mrr: Optional[float] = None

    @field_validator("last_activity_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Providers may send offset-less timestamps; those are UTC."""
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class HealthScore(BaseModel):
    """Derived health score with its per-factor breakdown."""
    customer_id: str
    score: int
    computed_at: datetime
    components: Dict[str, float] = Field(default_factory=dict)


class SignalProvider(Protocol):
    """Source of customer signal snapshots; may be stale."""

    async def get_signal(self, customer_id: str) -> CustomerSignal:
        ...


def _clamp(value: float) -> float:
    return max(0.0, min(100.0, value))


def score_components(signal: CustomerSignal, now: datetime) -> Dict[str, float]:
    """Normalized factor values, each in [0, 100]."""
    if signal.last_activity_at is None:
        engagement = DEFAULT_ENGAGEMENT
    else:
        days = max(0, (now - signal.last_activity_at).days)
        engagement = 100.0 - ENGAGEMENT_DECAY_PER_DAY * days

    usage = DEFAULT_USAGE if signal.usage_pct is None else float(signal.usage_pct)
    satisfaction = (
        DEFAULT_SATISFACTION
        if signal.satisfaction_score is None
        else float(signal.satisfaction_score) * 10
    )
    support = 100.0 - SUPPORT_PENALTY_PER_TICKET * (signal.support_ticket_count or 0)
    revenue = (signal.mrr or 0.0) / REVENUE_DIVISOR

    return {
        "engagement": _clamp(engagement),
        "usage": _clamp(usage),
        "satisfaction": _clamp(satisfaction),
        "support": _clamp(support),
        "revenue": _clamp(revenue),
    }


def compute_health_score(signal: CustomerSignal, customer_id: str, now: datetime) -> HealthScore:
    """
    Compute a customer's health score.

    Pure function: the same signal and `now` always give the same score.
    """
    components = score_components(signal, now)
    total = sum(WEIGHTS[name] * value for name, value in components.items())
    score = int(math.floor(total + 0.5))

    return HealthScore(
        customer_id=customer_id,
        score=max(0, min(100, score)),
        computed_at=now,
        components=components,
    )


class HealthScoreMonitor:
    """
    Keeps the latest score per customer.

    On `refresh` it publishes `health_score_change` when the score moved and
    hands domain events to the dispatcher:
    - `health_score_drop` whenever the score went down (or on first sight),
      carrying the previous and new score so health score triggers can test
      their own thresholds
    - `health_score_alert` when the score drops below the alert threshold
      from at or above it (or on first sight)
    """

    def __init__(
        self,
        provider: SignalProvider,
        bus: EventBus,
        clock: Clock,
        dispatcher: Optional[TriggerDispatcher] = None,
        threshold: int = 40,
    ):
        self._provider = provider
        self._bus = bus
        self._clock = clock
        self.dispatcher = dispatcher
        self.threshold = threshold
        self._scores: Dict[str, HealthScore] = {}

    def get_current(self, customer_id: str) -> Optional[HealthScore]:
        """Most recently computed score, or None if never computed."""
        return self._scores.get(customer_id)

    async def peek(self, customer_id: str) -> HealthScore:
        """
        Latest score without side effects.

        Returns the cached score, or computes one from the signal provider
        without caching it, publishing or alerting.
        """
        current = self.get_current(customer_id)
        if current is not None:
            return current
        signal = await self._provider.get_signal(customer_id)
        return compute_health_score(signal, customer_id, self._clock.now())

    async def refresh(self, customer_id: str) -> HealthScore:
        """Recompute a customer's score from the latest signal."""
        signal = await self._provider.get_signal(customer_id)
        current = compute_health_score(signal, customer_id, self._clock.now())
        previous = self._scores.get(customer_id)
        self._scores[customer_id] = current

        if previous is not None and previous.score == current.score:
            return current

        previous_score = previous.score if previous else None
        logger.info(
            "Health score changed",
            customer_id=customer_id,
            previous=previous_score,
            score=current.score,
        )
        await self._bus.publish(
            EventType.HEALTH_SCORE_CHANGE,
            {
                "customer_id": customer_id,
                "previous_score": previous_score,
                "score": current.score,
                "components": current.components,
            },
            source=customer_id,
        )

        if self.dispatcher is None:
            return current

        if previous_score is None or current.score < previous_score:
            await self.dispatcher.dispatch_event(DomainEvent(
                type=HEALTH_SCORE_DROP_EVENT,
                customer_id=customer_id,
                payload={"score": current.score, "previous_score": previous_score},
            ))

        if crossed_below(current.score, previous_score, self.threshold):
            logger.warning(
                "Health score below threshold",
                customer_id=customer_id,
                score=current.score,
                threshold=self.threshold,
            )
            await self.dispatcher.dispatch_event(DomainEvent(
                type=HEALTH_SCORE_ALERT_EVENT,
                customer_id=customer_id,
                payload={
                    "score": current.score,
                    "previous_score": previous_score,
                    "threshold": self.threshold,
                },
            ))

        return current
