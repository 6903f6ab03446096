"""
Event Bus

Multi-producer / multi-consumer stream of engine events.

- Events are delivered to every subscriber in publish order, so events of
  one execution always arrive in the order the engine produced them
- Each subscriber has a bounded buffer of undelivered events; when it is
  full the oldest event is dropped (best-effort delivery)
- A bounded history lets late subscribers replay recent events
- Callback handlers can be registered per event type
"""

import asyncio
import inspect
import itertools
from collections import defaultdict, deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from playbook_engine.logging_config import get_logger

logger = get_logger(__name__)

MIN_BUFFER_SIZE = 10


class EventType(str, Enum):
    """Types of engine events."""
    EXECUTION_UPDATE = "execution_update"
    HEALTH_SCORE_CHANGE = "health_score_change"
    NODE_FAILED = "node_failed"
    PLAYBOOK_COMPLETED = "playbook_completed"
    CUSTOM = "custom"


class Event(BaseModel):
    """A single published event."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: EventType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: Optional[str] = None  # producer key, e.g. the execution id
    sequence: int = 0


class SubscriptionClosed(Exception):
    """Raised by `Subscription.get` once the subscription is closed and drained."""
    pass


class Subscription:
    """
    One consumer's view of the bus.

    Usage:
        subscription = bus.subscribe()
        async for event in subscription:
            ...
    """

    def __init__(
        self,
        bus: "EventBus",
        buffer_size: int,
        event_types: Optional[Set[EventType]] = None,
    ):
        self._bus = bus
        self._buffer: Deque[Event] = deque(maxlen=buffer_size)
        self._ready = asyncio.Event()
        self._event_types = event_types
        self.dropped = 0
        self.closed = False

    def accepts(self, event: Event) -> bool:
        return self._event_types is None or event.type in self._event_types

    def deliver(self, event: Event) -> None:
        if self.closed or not self.accepts(event):
            return
        if len(self._buffer) == self._buffer.maxlen:
            self.dropped += 1
        self._buffer.append(event)
        self._ready.set()

    def pending(self) -> int:
        return len(self._buffer)

    def get_nowait(self) -> Optional[Event]:
        """Next buffered event, or None when the buffer is empty."""
        if not self._buffer:
            return None
        return self._buffer.popleft()

    def drain(self) -> List[Event]:
        """Take every buffered event."""
        events = list(self._buffer)
        self._buffer.clear()
        return events

    async def get(self, timeout: Optional[float] = None) -> Event:
        """
        Wait for the next event.

        Raises:
            SubscriptionClosed: If closed and nothing is buffered
            asyncio.TimeoutError: If `timeout` elapses first
        """
        while not self._buffer:
            if self.closed:
                raise SubscriptionClosed()
            self._ready.clear()
            if timeout is None:
                await self._ready.wait()
            else:
                await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        return self._buffer.popleft()

    def close(self) -> None:
        """Stop receiving events; buffered events can still be read."""
        if self.closed:
            return
        self.closed = True
        self._bus.unsubscribe(self)
        self._ready.set()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


class EventBus:
    """
    In-process event bus.

    Usage:
        bus = EventBus(buffer_size=100)
        bus.on_event(EventType.NODE_FAILED, alert_handler)
        await bus.publish(EventType.EXECUTION_UPDATE, {...}, source=execution_id)
    """

    def __init__(self, buffer_size: int = 100, history_size: Optional[int] = None):
        if buffer_size < MIN_BUFFER_SIZE:
            raise ValueError(f"buffer_size must be at least {MIN_BUFFER_SIZE}")

        self._buffer_size = buffer_size
        self._history: Deque[Event] = deque(maxlen=history_size or buffer_size)
        self._subscriptions: List[Subscription] = []
        self._handlers: Dict[Optional[EventType], List[Callable]] = defaultdict(list)
        self._sequence = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        event_types: Optional[Iterable[EventType]] = None,
        replay: bool = True,
    ) -> Subscription:
        """
        Open a subscription.

        Args:
            event_types: Only receive these types (default: all)
            replay: Pre-fill the buffer with recent history
        """
        subscription = Subscription(
            self,
            self._buffer_size,
            set(event_types) if event_types is not None else None,
        )
        if replay:
            for event in self._history:
                subscription.deliver(event)

        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def on_event(self, event_type: Optional[EventType], handler: Callable) -> None:
        """
        Register a callback handler.

        Args:
            event_type: Event type, or None for every event
            handler: Sync or async callable taking the Event
        """
        self._handlers[event_type].append(handler)

    def off_event(self, event_type: Optional[EventType], handler: Callable) -> None:
        if handler in self._handlers[event_type]:
            self._handlers[event_type].remove(handler)

    def recent(self, limit: Optional[int] = None) -> List[Event]:
        """Most recent events, oldest first."""
        events = list(self._history)
        if limit is not None:
            events = events[-limit:]
        return events

    async def publish(
        self,
        event_type: EventType,
        payload: Dict[str, Any],
        source: Optional[str] = None,
    ) -> Event:
        """
        Publish an event.

        Buffers are filled synchronously before any handler runs, so
        publish order is delivery order for every subscriber.
        """
        event = Event(
            type=event_type,
            payload=payload,
            source=source,
            sequence=next(self._sequence),
        )

        self._history.append(event)
        for subscription in list(self._subscriptions):
            subscription.deliver(event)

        handlers = self._handlers.get(event_type, []) + self._handlers.get(None, [])
        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Error in event handler",
                    event_type=event_type.value,
                    event_id=event.id,
                    error=str(e),
                )

        return event
