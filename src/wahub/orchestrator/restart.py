"""Restart and backoff controller.

Every forced restart of an instance is planned here. Restarts are counted
inside a sliding window that opens with the first restart and closes
``restart_window_minutes`` later. Each restart waits for the next entry of
the escalating backoff sequence (the last entry repeats). Once more than
``max_restarts_per_window`` restarts happen inside one window, the restart is
held until the window closes and then for an extra
``restart_rate_limit_extra_hours`` on top.

Counters only reset when a window has fully elapsed before the next restart;
reaching ACTIVE does not reset them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel

from wahub.config import RestartConfig

if TYPE_CHECKING:
    from wahub.orchestrator.instance import Instance

logger = structlog.get_logger(__name__)


class RestartPlan(BaseModel):
    """Outcome of planning one restart.

    Attributes:
        attempt: Restart count inside the current window (1-based).
        delay_seconds: Delay from now until the restart.
        due_at: When the restart should happen.
        rate_limited: The window maximum was exceeded and the extra pause applies.
        window_ends_at: End of the current restart window.
    """

    attempt: int
    delay_seconds: float
    due_at: datetime
    rate_limited: bool
    window_ends_at: datetime


class RestartController:
    """Plans restarts for instances according to :class:`RestartConfig`."""

    def __init__(self, config: RestartConfig) -> None:
        self.config = config
        self.window = timedelta(minutes=config.restart_window_minutes)
        self.extra = timedelta(hours=config.restart_rate_limit_extra_hours)
        self.logger = logger.bind(component="RestartController")

    def reset_if_window_elapsed(self, instance: Instance, now: datetime) -> bool:
        """Clear restart counters once the window has passed.

        Returns:
            True if the counters were reset.
        """
        started = instance.restart_window_started_at
        if started is None or now - started < self.window:
            return False
        instance.restart_count = 0
        instance.backoff_index = 0
        instance.restart_window_started_at = None
        self.logger.debug("restart_window_reset", instance_id=instance.id)
        return True

    def plan(self, instance: Instance, now: datetime) -> RestartPlan:
        """Record a restart on ``instance`` and compute when it may happen.

        Args:
            instance: Instance being restarted (counters are updated in place).
            now: Current time.

        Returns:
            The restart plan.
        """
        self.reset_if_window_elapsed(instance, now)

        instance.restart_count += 1
        if instance.restart_window_started_at is None:
            instance.restart_window_started_at = now
        window_ends_at = instance.restart_window_started_at + self.window

        sequence = self.config.restart_backoff_sequence_seconds
        delay = float(sequence[min(instance.backoff_index, len(sequence) - 1)])
        instance.backoff_index += 1

        rate_limited = instance.restart_count > self.config.max_restarts_per_window
        if rate_limited:
            until_window_end = max((window_ends_at - now).total_seconds(), 0.0)
            delay = max(delay, until_window_end) + self.extra.total_seconds()
            self.logger.warning(
                "restart_rate_limited",
                instance_id=instance.id,
                restart_count=instance.restart_count,
                max_restarts=self.config.max_restarts_per_window,
                delay_seconds=delay,
            )

        return RestartPlan(
            attempt=instance.restart_count,
            delay_seconds=delay,
            due_at=now + timedelta(seconds=delay),
            rate_limited=rate_limited,
            window_ends_at=window_ends_at,
        )
