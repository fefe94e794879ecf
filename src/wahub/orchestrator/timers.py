"""Per-instance named timers driven by a clock.

Every watchdog, poll, backoff delay and cooldown of an instance is a named
entry in that instance's :class:`InstanceTimers`. Arming a name replaces any
earlier timer of the same name, so re-arming on a state change can never
leave a stale timer behind. Timers do not run on their own: the registry's
tick loop asks each instance for its due timers and runs them under the
instance lock. Tests advance a :class:`~wahub.clock.ManualClock` and tick
explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable

import structlog

from wahub.clock import Clock

logger = structlog.get_logger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


@dataclass
class _Timer:
    name: str
    due_at: datetime
    callback: TimerCallback
    interval: timedelta | None = None


class InstanceTimers:
    """Named, cancelable timers belonging to one instance.

    Args:
        clock: Time source used to compute deadlines.
        owner: Instance id (for logs).
    """

    def __init__(self, clock: Clock, owner: str) -> None:
        self.clock = clock
        self.owner = owner
        self._timers: dict[str, _Timer] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._timers

    @property
    def names(self) -> list[str]:
        return sorted(self._timers)

    def arm(self, name: str, delay_seconds: float, callback: TimerCallback) -> datetime:
        """Fire ``callback`` once after ``delay_seconds``.

        Returns:
            The deadline.
        """
        due = self.clock.now() + timedelta(seconds=max(0.0, delay_seconds))
        return self.arm_at(name, due, callback)

    def arm_at(self, name: str, due_at: datetime, callback: TimerCallback) -> datetime:
        """Fire ``callback`` once at ``due_at``."""
        self._timers[name] = _Timer(name=name, due_at=due_at, callback=callback)
        logger.debug(
            "timer_armed",
            instance_id=self.owner,
            timer=name,
            due_at=due_at.isoformat(),
        )
        return due_at

    def arm_every(
        self,
        name: str,
        interval_seconds: float,
        callback: TimerCallback,
        first_delay_seconds: float | None = None,
    ) -> datetime:
        """Fire ``callback`` repeatedly every ``interval_seconds``.

        Args:
            name: Timer name.
            interval_seconds: Period between firings.
            callback: Coroutine function to run.
            first_delay_seconds: Delay before the first firing (defaults to
                one interval).
        """
        interval = timedelta(seconds=interval_seconds)
        first = interval_seconds if first_delay_seconds is None else first_delay_seconds
        due = self.clock.now() + timedelta(seconds=max(0.0, first))
        self._timers[name] = _Timer(
            name=name, due_at=due, callback=callback, interval=interval
        )
        return due

    def cancel(self, name: str) -> bool:
        """Cancel a timer. Returns True if it was armed."""
        return self._timers.pop(name, None) is not None

    def cancel_many(self, names: Iterable[str]) -> None:
        for name in names:
            self._timers.pop(name, None)

    def cancel_all(self) -> None:
        self._timers.clear()

    def is_armed(self, name: str) -> bool:
        return name in self._timers

    def due_at(self, name: str) -> datetime | None:
        timer = self._timers.get(name)
        return timer.due_at if timer else None

    def pop_next_due(self, now: datetime) -> tuple[str, TimerCallback] | None:
        """Take the earliest timer due at ``now``.

        One-shot timers are removed. Periodic timers are rescheduled for
        their next period after ``now``. Callers pop one timer at a time so
        that a callback cancelling another timer takes effect immediately.
        """
        due = [t for t in self._timers.values() if t.due_at <= now]
        if not due:
            return None
        timer = min(due, key=lambda t: t.due_at)
        if timer.interval is None:
            del self._timers[timer.name]
        else:
            next_due = timer.due_at + timer.interval
            if next_due <= now:
                next_due = now + timer.interval
            timer.due_at = next_due
        return timer.name, timer.callback
