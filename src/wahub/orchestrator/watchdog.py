"""Watchdog policy for instance lifecycle states.

This module decides *which* per-instance timers may run in each state and
evaluates the QR, health and hub-mode rules the registry acts on. It does
no I/O itself: the registry arms the timers and carries out the verdicts.

Timer families:
- connecting watchdog: armed on entering CONNECTING, kept through NEEDS_QR
- QR check: periodic while NEEDS_QR (stale QR and TTL/recovery handling)
- ready watchdog and ready poll: while SYNCING
- health check and message fallback poll: while ACTIVE
- restart: while DISCONNECTED
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Iterable

import structlog
from pydantic import BaseModel

from wahub.config import HealthConfig, QrConfig, WatchdogConfig
from wahub.orchestrator.state_machine import InstanceState

if TYPE_CHECKING:
    from wahub.orchestrator.instance import Instance, QrCycle

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Timer names
# ---------------------------------------------------------------------------

CONNECTING_WATCHDOG = "connecting_watchdog"
LAUNCH_RETRY = "launch_retry"
QR_CHECK = "qr_check"
QR_RECOVERY = "qr_recovery"
READY_WATCHDOG = "ready_watchdog"
READY_POLL = "ready_poll"
HEALTH_CHECK = "health_check"
MESSAGE_POLL = "message_poll"
DRAIN = "drain"
RESTART = "restart"
INBOUND_FLUSH = "inbound_flush"

LIFECYCLE_TIMERS = frozenset(
    {
        CONNECTING_WATCHDOG,
        LAUNCH_RETRY,
        QR_CHECK,
        QR_RECOVERY,
        READY_WATCHDOG,
        READY_POLL,
        HEALTH_CHECK,
        MESSAGE_POLL,
        DRAIN,
        RESTART,
    }
)

# Lifecycle timers allowed to survive in each state
TIMERS_BY_STATE: dict[InstanceState, frozenset[str]] = {
    InstanceState.created: frozenset(),
    InstanceState.connecting: frozenset({CONNECTING_WATCHDOG, LAUNCH_RETRY}),
    InstanceState.needs_qr: frozenset({CONNECTING_WATCHDOG, QR_CHECK, QR_RECOVERY}),
    InstanceState.syncing: frozenset({READY_WATCHDOG, READY_POLL}),
    InstanceState.active: frozenset({HEALTH_CHECK, MESSAGE_POLL, DRAIN}),
    InstanceState.disconnected: frozenset({RESTART}),
    InstanceState.error: frozenset(),
}


def timers_to_cancel(state: InstanceState) -> Iterable[str]:
    """Lifecycle timers that must not outlive a transition into ``state``."""
    return LIFECYCLE_TIMERS - TIMERS_BY_STATE[state]


# ---------------------------------------------------------------------------
# QR policy
# ---------------------------------------------------------------------------


class QrVerdict(str, Enum):
    """Outcome of one QR check."""

    ok = "ok"
    stale = "stale"
    recover = "recover"
    exhausted = "exhausted"


class QrPolicy:
    """Evaluates a QR cycle against the stale, TTL and recovery limits."""

    def __init__(self, config: QrConfig) -> None:
        self.config = config
        self.stale_after = timedelta(seconds=config.qr_stale_seconds)
        self.ttl = timedelta(seconds=config.qr_ttl_seconds)

    def evaluate(self, cycle: QrCycle, recovery_attempts: int, now: datetime) -> QrVerdict:
        """Decide what a QR check should do for ``cycle``.

        ``recover`` is returned at most once per cycle: the caller marks the
        cycle ``recovery_scheduled`` before acting on it.
        """
        if now - cycle.started_at >= self.ttl:
            if cycle.recovery_scheduled:
                return QrVerdict.ok
            if recovery_attempts >= self.config.qr_max_recovery_attempts:
                return QrVerdict.exhausted
            return QrVerdict.recover
        if not cycle.stale and now - cycle.last_qr_seen_at >= self.stale_after:
            return QrVerdict.stale
        return QrVerdict.ok

    def recovery_delay(self, attempt: int) -> float:
        """Delay before the ``attempt``-th recovery (1-based)."""
        sequence = self.config.qr_recovery_backoff_seconds
        return float(sequence[min(max(attempt, 1) - 1, len(sequence) - 1)])


# ---------------------------------------------------------------------------
# Health (zombie) check
# ---------------------------------------------------------------------------


class HealthVerdict(BaseModel):
    """Result of a health check on an ACTIVE instance.

    Attributes:
        idle_seconds: Seconds since the last observed activity.
        threshold_seconds: Configured zombie threshold.
        newly_suspected: The instance crossed the threshold on this check.
    """

    idle_seconds: float
    threshold_seconds: float
    newly_suspected: bool


def evaluate_health(instance: Instance, config: HealthConfig, now: datetime) -> HealthVerdict:
    """Compare an instance's idle time with the zombie threshold.

    The check only flags; it never restarts anything.
    """
    threshold = config.zombie_inactivity_threshold_minutes * 60
    reference = instance.last_activity_at or instance.last_state_change_at or now
    idle = (now - reference).total_seconds()
    return HealthVerdict(
        idle_seconds=idle,
        threshold_seconds=threshold,
        newly_suspected=idle >= threshold and not instance.zombie_suspected,
    )


# ---------------------------------------------------------------------------
# Hub-wide system mode
# ---------------------------------------------------------------------------


class SystemMode(str, Enum):
    """Hub-wide operating mode.

    Values:
        normal: Background polling runs.
        syncing: Sessions are starting up; background polling is skipped.
    """

    normal = "normal"
    syncing = "syncing"


def compute_system_mode(
    instances: Iterable[Instance],
    watchdog: WatchdogConfig,
    qr: QrConfig,
    now: datetime,
    forced_normal_until: datetime | None = None,
) -> SystemMode:
    """Return SYNCING while any instance is in a start-up phase.

    An instance counts as starting up while CONNECTING (capped at
    ``syncing_max_minutes``), while SYNCING, or inside the NEEDS_QR grace.
    An operator override keeps the hub NORMAL until ``forced_normal_until``.
    """
    if forced_normal_until is not None and now < forced_normal_until:
        return SystemMode.normal

    syncing_cap = timedelta(minutes=watchdog.syncing_max_minutes)
    for instance in instances:
        if instance.state == InstanceState.syncing:
            return SystemMode.syncing
        if instance.state == InstanceState.connecting:
            since = instance.last_state_change_at or now
            if now - since < syncing_cap:
                return SystemMode.syncing
        if instance.state == InstanceState.needs_qr and instance.is_constrained(
            now, qr.qr_sync_grace_seconds
        ):
            return SystemMode.syncing
    return SystemMode.normal
