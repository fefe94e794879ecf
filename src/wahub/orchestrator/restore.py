"""Sequential restore scheduler.

On startup, and whenever an operator retries instances in bulk, sessions
are brought up a few at a time instead of all at once. The scheduler holds a
queue of :class:`RestoreTicket` and, on every :meth:`RestoreScheduler.pump`,
starts as many as the concurrency limit allows, respecting:

- a cooldown after each restore, counted from when the previous one
  started or finished, whichever is later,
- a free-memory floor (a low-memory check defers the ticket and counts as
  an attempt),
- exponential backoff between attempts of the same ticket,
- a maximum number of attempts, after which the instance is reported as
  exhausted.

The scheduler never blocks: launches run as background tasks and report
success or failure back when done.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable

import structlog

from wahub.clock import Clock
from wahub.config import RestoreConfig
from wahub.orchestrator.rate_limiter import BackoffConfig, ExponentialBackoff
from wahub.system import MemoryProbe, free_memory_mb

logger = structlog.get_logger(__name__)


class RestoreKind(str, Enum):
    """Why an instance is being (re)started by the scheduler."""

    restore = "restore"
    retry = "retry"


@dataclass
class RestoreTicket:
    """Pending restore of one instance.

    Attributes:
        instance_id: Instance to restore.
        kind: Startup restore or operator retry.
        attempt: Failed or deferred attempts so far.
        next_attempt_at: Earliest time of the next attempt.
        last_reason: Why the previous attempt did not succeed.
    """

    instance_id: str
    kind: RestoreKind
    next_attempt_at: datetime
    attempt: int = 0
    last_reason: str | None = None


RestoreLauncher = Callable[[str, RestoreKind], Awaitable[bool]]
"""Starts an instance's session; returns True once the launch succeeded."""

ExhaustedHandler = Callable[[RestoreTicket], Awaitable[None]]


class RestoreScheduler:
    """Throttled, memory-gated instance startup.

    Args:
        config: Restore configuration.
        clock: Time source.
        launcher: Coroutine starting one instance.
        on_exhausted: Coroutine called when a ticket runs out of attempts.
        memory_probe: Callable returning available memory in MB.
    """

    def __init__(
        self,
        config: RestoreConfig,
        clock: Clock,
        launcher: RestoreLauncher,
        on_exhausted: ExhaustedHandler,
        memory_probe: MemoryProbe = free_memory_mb,
    ) -> None:
        self.config = config
        self.clock = clock
        self.launcher = launcher
        self.on_exhausted = on_exhausted
        self.memory_probe = memory_probe
        self.backoff = ExponentialBackoff(
            BackoffConfig(
                initial_delay_seconds=config.restore_backoff_base_seconds,
                max_delay_seconds=config.restore_backoff_max_seconds,
                multiplier=2.0,
                jitter=False,
            )
        )
        self._queue: list[RestoreTicket] = []
        self._active: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._cooldown_from: datetime | None = None
        self.peak_active = 0
        self.logger = logger.bind(component="RestoreScheduler")

    @property
    def pending(self) -> list[str]:
        """Instance ids waiting for a restore, in queue order."""
        return [t.instance_id for t in self._queue]

    @property
    def active(self) -> set[str]:
        """Instance ids currently being restored."""
        return set(self._active)

    @property
    def tasks(self) -> set[asyncio.Task[None]]:
        return set(self._tasks)

    def is_scheduled(self, instance_id: str) -> bool:
        return instance_id in self._active or any(
            t.instance_id == instance_id for t in self._queue
        )

    def enqueue(self, instance_id: str, kind: RestoreKind = RestoreKind.restore) -> bool:
        """Add an instance to the restore queue.

        Returns:
            False if the instance is already queued or being restored.
        """
        if self.is_scheduled(instance_id):
            return False
        self._queue.append(
            RestoreTicket(
                instance_id=instance_id,
                kind=kind,
                next_attempt_at=self.clock.now(),
            )
        )
        self.logger.info(
            "restore_enqueued",
            instance_id=instance_id,
            kind=kind.value,
            queue_length=len(self._queue),
        )
        return True

    def discard(self, instance_id: str) -> None:
        """Forget any queued ticket for ``instance_id``."""
        self._queue = [t for t in self._queue if t.instance_id != instance_id]

    def _memory_ok(self) -> tuple[bool, float | None]:
        try:
            free = self.memory_probe()
        except Exception as e:
            self.logger.warning("restore_memory_probe_failed", error=str(e))
            return True, None
        return free >= self.config.restore_min_free_mem_mb, free

    async def _register_failure(self, ticket: RestoreTicket, reason: str) -> None:
        ticket.attempt += 1
        ticket.last_reason = reason
        if ticket.attempt >= self.config.restore_max_attempts:
            self.logger.error(
                "restore_exhausted",
                instance_id=ticket.instance_id,
                attempts=ticket.attempt,
                reason=reason,
            )
            await self.on_exhausted(ticket)
            return

        delay = self.backoff.next_delay(ticket.attempt - 1)
        ticket.next_attempt_at = self.clock.now() + timedelta(seconds=delay)
        self._queue.append(ticket)
        self.logger.info(
            "restore_deferred",
            instance_id=ticket.instance_id,
            attempt=ticket.attempt,
            delay_seconds=delay,
            reason=reason,
        )

    def _next_ready(self, now: datetime) -> RestoreTicket | None:
        for ticket in self._queue:
            if ticket.next_attempt_at <= now:
                return ticket
        return None

    async def pump(self) -> int:
        """Start as many due restores as the limits allow.

        Returns:
            Number of restores started.
        """
        started = 0
        now = self.clock.now()
        cooldown = timedelta(seconds=self.config.restore_cooldown_seconds)

        while len(self._active) < self.config.restore_concurrency:
            ticket = self._next_ready(now)
            if ticket is None:
                break
            if (
                self._cooldown_from is not None
                and now - self._cooldown_from < cooldown
            ):
                break

            self._queue.remove(ticket)
            ok, free = self._memory_ok()
            if not ok:
                self.logger.warning(
                    "restore_memory_low",
                    instance_id=ticket.instance_id,
                    free_mb=round(free, 1) if free is not None else None,
                    required_mb=self.config.restore_min_free_mem_mb,
                )
                await self._register_failure(ticket, "insufficient_memory")
                break

            self._active.add(ticket.instance_id)
            self.peak_active = max(self.peak_active, len(self._active))
            self._cooldown_from = now
            task = asyncio.create_task(self._run(ticket))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started += 1
            self.logger.info(
                "restore_started",
                instance_id=ticket.instance_id,
                kind=ticket.kind.value,
                attempt=ticket.attempt + 1,
            )

        return started

    async def _run(self, ticket: RestoreTicket) -> None:
        try:
            ok = await self.launcher(ticket.instance_id, ticket.kind)
        except Exception as e:
            self.logger.error(
                "restore_launch_crashed",
                instance_id=ticket.instance_id,
                error=str(e),
                exc_info=True,
            )
            ok = False
        finally:
            self._active.discard(ticket.instance_id)
            self._cooldown_from = self.clock.now()

        if ok:
            self.logger.info("restore_completed", instance_id=ticket.instance_id)
            return
        try:
            await self._register_failure(ticket, "launch_failed")
        except Exception as e:
            self.logger.error(
                "restore_failure_handling_crashed",
                instance_id=ticket.instance_id,
                error=str(e),
                exc_info=True,
            )
