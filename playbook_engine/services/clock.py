"""
Clock

Time source and wake-up scheduler used for wait nodes and retry backoff.
A parked execution costs one timer handle, not a running task.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, Protocol


class TimerHandle(Protocol):
    """Handle to a scheduled wake-up."""

    def cancel(self) -> None:
        ...


class Clock(ABC):
    """
    Abstract clock.

    `call_at` must never invoke the callback before `when`.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Current UTC time."""
        pass

    @abstractmethod
    def call_at(self, when: datetime, callback: Callable[[], Any]) -> TimerHandle:
        """Schedule a synchronous callback at or after `when`."""
        pass

    @abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the calling task."""
        pass


class AsyncioClock(Clock):
    """Wall-clock time with wake-ups on the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def call_at(self, when: datetime, callback: Callable[[], Any]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        delay = max(0.0, (when - self.now()).total_seconds())
        return loop.call_later(delay, callback)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
