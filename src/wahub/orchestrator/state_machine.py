"""Instance state machine for the wa-hub orchestrator.

This module defines the instance lifecycle states and the authoritative
transition table. All state changes go through
:meth:`InstanceStateMachine.transition`, which rejects any move that is not
an edge of the table.

Lifecycle:
    CREATED -> CONNECTING -> NEEDS_QR -> SYNCING -> ACTIVE

DISCONNECTED is recoverable and can be entered from any live state. ERROR is
terminal until an operator retries the instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

import structlog

from wahub.errors import WaHubError

if TYPE_CHECKING:
    from wahub.orchestrator.instance import Instance

logger = structlog.get_logger(__name__)


class InstanceState(str, Enum):
    """Lifecycle state of an instance."""

    created = "created"
    connecting = "connecting"
    needs_qr = "needs_qr"
    syncing = "syncing"
    active = "active"
    disconnected = "disconnected"
    error = "error"


class InvalidTransitionError(WaHubError):
    """Raised when an invalid state transition is attempted.

    Attributes:
        current: The current instance state.
        target: The attempted target state.
        instance_id: The ID of the instance that failed to transition.
    """

    def __init__(
        self,
        current: InstanceState,
        target: InstanceState,
        instance_id: str | None = None,
    ):
        self.current = current
        self.target = target
        self.instance_id = instance_id
        msg = f"Invalid transition from {current.value} to {target.value}"
        if instance_id:
            msg += f" for instance {instance_id}"
        super().__init__(msg)


# Authoritative state machine definition
VALID_TRANSITIONS: dict[InstanceState, set[InstanceState]] = {
    InstanceState.created: {
        InstanceState.connecting,
        InstanceState.disconnected,
        InstanceState.error,
    },
    InstanceState.connecting: {
        InstanceState.needs_qr,
        InstanceState.syncing,
        InstanceState.disconnected,
        InstanceState.error,
    },
    InstanceState.needs_qr: {
        InstanceState.syncing,
        InstanceState.connecting,
        InstanceState.disconnected,
        InstanceState.error,
    },
    InstanceState.syncing: {
        InstanceState.active,
        InstanceState.connecting,
        InstanceState.disconnected,
        InstanceState.error,
    },
    InstanceState.active: {
        InstanceState.connecting,
        InstanceState.disconnected,
        InstanceState.error,
    },
    InstanceState.disconnected: {InstanceState.connecting, InstanceState.error},
    InstanceState.error: {InstanceState.connecting},  # Operator retry only
}

# States in which the browser session is starting up and competing for resources
CONSTRAINED_STATES = frozenset(
    {InstanceState.connecting, InstanceState.syncing}
)


def validate_transition(current: InstanceState, target: InstanceState) -> bool:
    """Validate if a state transition is allowed.

    Args:
        current: Current instance state.
        target: Target instance state.

    Returns:
        True if the transition is valid according to VALID_TRANSITIONS.
    """
    return target in VALID_TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class Transition:
    """A completed state change."""

    instance_id: str
    from_state: InstanceState
    to_state: InstanceState
    reason: str
    at: datetime


class InstanceStateMachine:
    """Applies validated transitions to instances and logs them."""

    def __init__(self) -> None:
        self.logger = logger.bind(component="InstanceStateMachine")

    def transition(
        self,
        instance: Instance,
        target: InstanceState,
        reason: str,
        now: datetime,
    ) -> Transition:
        """Move an instance to ``target``.

        Args:
            instance: Instance to transition.
            target: Target state.
            reason: Short machine-readable cause, included in logs and webhooks.
            now: Current time.

        Returns:
            The transition that was applied.

        Raises:
            InvalidTransitionError: If ``target`` is not reachable from the
                instance's current state.
        """
        current = instance.state
        if not validate_transition(current, target):
            raise InvalidTransitionError(current, target, instance.id)

        instance.state = target
        instance.last_state_change_at = now

        self.logger.info(
            "instance_transition",
            instance_id=instance.id,
            from_state=current.value,
            to_state=target.value,
            reason=reason,
        )
        return Transition(
            instance_id=instance.id,
            from_state=current,
            to_state=target,
            reason=reason,
            at=now,
        )
