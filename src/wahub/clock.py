"""Injectable time source.

All orchestrator timing (watchdogs, cooldowns, TTLs, rate windows) reads
the current time through a :class:`Clock` so that tests can drive virtual
time with :class:`ManualClock` instead of waiting on the wall clock.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Time source consumed by the orchestrator."""

    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock:
    """Wall-clock implementation backed by asyncio."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """Deterministic clock whose time only moves when told to.

    ``sleep`` advances virtual time by the requested amount and yields once
    to the event loop, so code that sleeps through the clock completes
    immediately in tests.
    """

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float) -> datetime:
        """Move virtual time forward and return the new time."""
        if seconds < 0:
            raise ValueError("Cannot move a ManualClock backwards")
        self._now = self._now + timedelta(seconds=seconds)
        return self._now

    def set(self, when: datetime) -> None:
        """Jump to an absolute time (must not be in the past)."""
        if when < self._now:
            raise ValueError("Cannot move a ManualClock backwards")
        self._now = when

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            self.advance(seconds)
        await asyncio.sleep(0)
