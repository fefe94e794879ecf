"""Orchestrator subsystem for wa-hub.

This package implements the instance state machine, per-instance timers,
watchdog and QR policies, restart backoff, sequential restore scheduling,
outbound send queue with rate limiting, inbound event buffering, idempotency
tracking, and the instance registry that ties them together.
"""

from __future__ import annotations

from wahub.orchestrator.idempotency import (
    IdempotencyRecord,
    IdempotencyStatus,
    IdempotencyStore,
)
from wahub.orchestrator.inbound_buffer import InboundBuffer, InboundEntry
from wahub.orchestrator.instance import Instance, InstanceStatus, QrCycle
from wahub.orchestrator.outbound_queue import OutboundItem, OutboundQueue, SendKind
from wahub.orchestrator.rate_limiter import (
    BackoffConfig,
    ExponentialBackoff,
    RateLimitDecision,
    SendRateLimiter,
)
from wahub.orchestrator.registry import InstanceRegistry
from wahub.orchestrator.restart import RestartController, RestartPlan
from wahub.orchestrator.restore import RestoreKind, RestoreScheduler, RestoreTicket
from wahub.orchestrator.state_machine import (
    VALID_TRANSITIONS,
    InstanceState,
    InstanceStateMachine,
    InvalidTransitionError,
    Transition,
    validate_transition,
)
from wahub.orchestrator.timers import InstanceTimers
from wahub.orchestrator.watchdog import (
    HealthVerdict,
    QrPolicy,
    QrVerdict,
    SystemMode,
    compute_system_mode,
    evaluate_health,
)

__all__ = [
    # Idempotency
    "IdempotencyRecord",
    "IdempotencyStatus",
    "IdempotencyStore",
    # Inbound buffer
    "InboundBuffer",
    "InboundEntry",
    # Instance
    "Instance",
    "InstanceStatus",
    "QrCycle",
    # Outbound queue
    "OutboundItem",
    "OutboundQueue",
    "SendKind",
    # Rate limiter
    "BackoffConfig",
    "ExponentialBackoff",
    "RateLimitDecision",
    "SendRateLimiter",
    # Registry
    "InstanceRegistry",
    # Restart
    "RestartController",
    "RestartPlan",
    # Restore
    "RestoreKind",
    "RestoreScheduler",
    "RestoreTicket",
    # State machine
    "InstanceState",
    "InstanceStateMachine",
    "InvalidTransitionError",
    "Transition",
    "VALID_TRANSITIONS",
    "validate_transition",
    # Timers
    "InstanceTimers",
    # Watchdog
    "HealthVerdict",
    "QrPolicy",
    "QrVerdict",
    "SystemMode",
    "compute_system_mode",
    "evaluate_health",
]
