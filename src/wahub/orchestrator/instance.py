"""Runtime model of a tenant instance.

An :class:`Instance` holds everything the orchestrator knows about one
tenant: lifecycle state, restart counters, cooldowns, the QR cycle, its
outbound queue, inbound buffer, rate limiter, timers and the single live
engine session. :class:`InstanceStatus` is the read-only snapshot handed to
callers.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel

from wahub.clock import Clock
from wahub.config import WaHubConfig
from wahub.engine import EngineSession
from wahub.errors import LastError
from wahub.orchestrator.inbound_buffer import InboundBuffer
from wahub.orchestrator.outbound_queue import OutboundItem, OutboundQueue
from wahub.orchestrator.rate_limiter import SendRateLimiter
from wahub.orchestrator.state_machine import CONSTRAINED_STATES, InstanceState
from wahub.orchestrator.timers import InstanceTimers
from wahub.storage import InstanceDescriptor
from wahub.webhooks import WebhookTarget

SEEN_MESSAGE_IDS = 1000


@dataclass
class QrCycle:
    """One login attempt via scannable code.

    Attributes:
        attempt: 1 for the first cycle, incremented per recovery.
        started_at: When the instance entered NEEDS_QR for this cycle.
        last_qr_seen_at: When the engine last delivered a QR code.
        stale: No new QR arrived within the stale threshold.
        recovery_scheduled: A recovery relaunch is pending for this cycle.
    """

    attempt: int
    started_at: datetime
    last_qr_seen_at: datetime
    stale: bool = False
    recovery_scheduled: bool = False


class SeenMessages:
    """Bounded set of recently seen inbound message ids."""

    def __init__(self, capacity: int = SEEN_MESSAGE_IDS) -> None:
        self._order: deque[str] = deque()
        self._ids: set[str] = set()
        self.capacity = capacity

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def add(self, message_id: str) -> bool:
        """Remember an id. Returns False if it was already known."""
        if message_id in self._ids:
            return False
        self._order.append(message_id)
        self._ids.add(message_id)
        while len(self._order) > self.capacity:
            self._ids.discard(self._order.popleft())
        return True


@dataclass
class Instance:
    """Mutable runtime state of one tenant instance."""

    id: str
    display_name: str
    created_at: datetime
    queue: OutboundQueue
    inbound: InboundBuffer
    rate_limiter: SendRateLimiter
    timers: InstanceTimers
    webhook: WebhookTarget | None = None
    state: InstanceState = InstanceState.created
    last_event_at: datetime | None = None
    last_state_change_at: datetime | None = None
    last_activity_at: datetime | None = None

    # Restart policy
    restart_count: int = 0
    restart_window_started_at: datetime | None = None
    backoff_index: int = 0
    connect_failures: int = 0

    # Pauses and cooldowns
    paused_until: datetime | None = None
    cooldown_until: datetime | None = None
    restricted: bool = False
    last_disconnect_reason: str | None = None

    # Login
    qr: QrCycle | None = None
    qr_recovery_attempts: int = 0
    needs_qr_since: datetime | None = None

    # Diagnostics
    zombie_suspected: bool = False
    last_error: LastError | None = None
    phone_number: str | None = None
    push_name: str | None = None

    # Session ownership
    session: EngineSession | None = None
    session_generation: int = 0
    teardown_task: asyncio.Task[None] | None = None
    in_flight: OutboundItem | None = None
    flushing: bool = False
    deleting: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: set[asyncio.Task[Any]] = field(default_factory=set)
    seen_messages: SeenMessages = field(default_factory=SeenMessages)

    @classmethod
    def build(
        cls,
        instance_id: str,
        display_name: str,
        config: WaHubConfig,
        clock: Clock,
        webhook: WebhookTarget | None = None,
        created_at: datetime | None = None,
    ) -> Instance:
        """Create an instance with its queue, buffer, limiter and timers."""
        return cls(
            id=instance_id,
            display_name=display_name,
            created_at=created_at or clock.now(),
            webhook=webhook,
            queue=OutboundQueue(
                instance_id,
                max_size=config.queue.max_queue_size,
                ttl_seconds=config.queue.outbound_ttl_seconds,
            ),
            inbound=InboundBuffer(
                instance_id,
                max_size=config.queue.inbound_max_buffer,
                batch_size=config.queue.inbound_flush_batch,
            ),
            rate_limiter=SendRateLimiter(
                per_minute=config.rate_limit.max_sends_per_minute,
                per_hour=config.rate_limit.max_sends_per_hour,
            ),
            timers=InstanceTimers(clock, owner=instance_id),
        )

    def is_paused(self, now: datetime) -> bool:
        return self.paused_until is not None and now < self.paused_until

    def pause_until(self, until: datetime) -> None:
        """Extend the pause so it lasts at least until ``until``."""
        if self.paused_until is None or until > self.paused_until:
            self.paused_until = until

    def is_constrained(self, now: datetime, qr_grace_seconds: float) -> bool:
        """True while the session is starting up and inbound work is held back."""
        if self.state in CONSTRAINED_STATES:
            return True
        if self.state == InstanceState.needs_qr and self.needs_qr_since is not None:
            return now - self.needs_qr_since < timedelta(seconds=qr_grace_seconds)
        return False

    def describe(self) -> InstanceDescriptor:
        """Persisted descriptor of this instance."""
        return InstanceDescriptor(
            id=self.id,
            name=self.display_name,
            webhook_url=self.webhook.url if self.webhook else None,
            webhook_events=list(self.webhook.events) if self.webhook else [],
            created_at=self.created_at,
        )

    def status(self, now: datetime) -> InstanceStatus:
        """Read-only snapshot of the instance."""
        return InstanceStatus(
            id=self.id,
            name=self.display_name,
            state=self.state,
            created_at=self.created_at,
            last_event_at=self.last_event_at,
            last_state_change_at=self.last_state_change_at,
            restart_count=self.restart_count,
            restart_window_started_at=self.restart_window_started_at,
            backoff_index=self.backoff_index,
            connect_failures=self.connect_failures,
            paused_until=self.paused_until if self.is_paused(now) else None,
            cooldown_until=(
                self.cooldown_until
                if self.cooldown_until is not None and now < self.cooldown_until
                else None
            ),
            restricted=self.restricted,
            last_disconnect_reason=self.last_disconnect_reason,
            qr_attempt=self.qr.attempt if self.qr else None,
            qr_stale=self.qr.stale if self.qr else False,
            qr_recovery_attempts=self.qr_recovery_attempts,
            queue_size=len(self.queue),
            inbound_buffered=len(self.inbound),
            send_usage=self.rate_limiter.usage(now),
            zombie_suspected=self.zombie_suspected,
            last_error=self.last_error,
            phone_number=self.phone_number,
            push_name=self.push_name,
            webhook_url=self.webhook.url if self.webhook else None,
            webhook_events=list(self.webhook.events) if self.webhook else [],
        )


class InstanceStatus(BaseModel):
    """Snapshot of an instance returned to callers."""

    id: str
    name: str
    state: InstanceState
    created_at: datetime
    last_event_at: datetime | None = None
    last_state_change_at: datetime | None = None
    restart_count: int = 0
    restart_window_started_at: datetime | None = None
    backoff_index: int = 0
    connect_failures: int = 0
    paused_until: datetime | None = None
    cooldown_until: datetime | None = None
    restricted: bool = False
    last_disconnect_reason: str | None = None
    qr_attempt: int | None = None
    qr_stale: bool = False
    qr_recovery_attempts: int = 0
    queue_size: int = 0
    inbound_buffered: int = 0
    send_usage: dict[str, int] = {}
    zombie_suspected: bool = False
    last_error: LastError | None = None
    phone_number: str | None = None
    push_name: str | None = None
    webhook_url: str | None = None
    webhook_events: list[str] = []
