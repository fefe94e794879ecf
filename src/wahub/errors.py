"""Exception taxonomy and structured last-error values for wa-hub.

Engine exceptions never propagate past the orchestrator's action boundaries.
They are wrapped in :class:`EngineActionError` by the guarded call helper and
then recorded on the instance as a :class:`LastError`, which together with
the instance state is the only failure signal operators observe.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

MAX_ERROR_EXCERPT = 500


class WaHubError(Exception):
    """Base class for all wa-hub errors."""


class InstanceNotFoundError(WaHubError):
    """Raised when an operation references an unknown instance.

    Attributes:
        instance_id: The identifier that could not be resolved.
    """

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} not found")


class InstanceExistsError(WaHubError):
    """Raised when creating an instance whose identifier is already taken."""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Instance {instance_id} already exists")


class InstanceUnavailableError(WaHubError):
    """Raised when an instance cannot accept work in its current state.

    Attributes:
        instance_id: Instance that rejected the request.
        state: State value at the time of the rejection.
    """

    def __init__(self, instance_id: str, state: str, reason: str | None = None):
        self.instance_id = instance_id
        self.state = state
        self.reason = reason
        msg = f"Instance {instance_id} is unavailable in state {state}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class QueueFullError(WaHubError):
    """Raised when the outbound queue is at capacity.

    Attributes:
        instance_id: Instance whose queue rejected the item.
        capacity: Configured maximum queue size.
    """

    def __init__(self, instance_id: str, capacity: int):
        self.instance_id = instance_id
        self.capacity = capacity
        super().__init__(
            f"Outbound queue for instance {instance_id} is full ({capacity} items)"
        )


class EngineActionError(WaHubError):
    """Raised when an automation engine call fails or times out.

    Attributes:
        action: Engine command name (initialize, send_message, ...).
        timed_out: True if the hard timeout elapsed.
        cause_message: String form of the underlying exception.
    """

    def __init__(
        self,
        action: str,
        cause_message: str,
        timed_out: bool = False,
    ):
        self.action = action
        self.cause_message = cause_message
        self.timed_out = timed_out
        if timed_out:
            msg = f"Engine action {action} timed out: {cause_message}"
        else:
            msg = f"Engine action {action} failed: {cause_message}"
        super().__init__(msg)


class SessionDataInUseError(WaHubError):
    """Raised when tenant session data is still held open by a process.

    Attributes:
        path: Session data directory that was inspected.
        holders: Process ids holding files under ``path`` open.
    """

    def __init__(self, path: str, holders: list[int]):
        self.path = path
        self.holders = holders
        super().__init__(
            f"Session data at {path} is held open by pids {sorted(holders)}"
        )


class ErrorKind(str, Enum):
    """Category of a recorded instance error."""

    launch_failed = "launch_failed"
    connect_timeout = "connect_timeout"
    ready_timeout = "ready_timeout"
    qr_timeout = "qr_timeout"
    auth_failure = "auth_failure"
    disconnected = "disconnected"
    restricted = "restricted"
    logged_out = "logged_out"
    send_failed = "send_failed"
    session_lost = "session_lost"
    restore_failed = "restore_failed"
    destroy_failed = "destroy_failed"


class LastError(BaseModel):
    """Structured error attached to an instance.

    Attributes:
        kind: Error category.
        message: One-line summary.
        excerpt: Bounded diagnostic excerpt of the underlying failure.
        at: When the error was recorded.
    """

    kind: ErrorKind
    message: str
    excerpt: str | None = Field(default=None, max_length=MAX_ERROR_EXCERPT)
    at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_exception(
        cls,
        kind: ErrorKind,
        exc: BaseException,
        at: datetime | None = None,
    ) -> LastError:
        """Build a LastError from an exception, truncating the excerpt."""
        text = str(exc) or exc.__class__.__name__
        return cls(
            kind=kind,
            message=text.splitlines()[0][:MAX_ERROR_EXCERPT],
            excerpt=truncate_excerpt(f"{exc.__class__.__name__}: {text}"),
            at=at or datetime.now(timezone.utc),
        )


def truncate_excerpt(text: str, limit: int = MAX_ERROR_EXCERPT) -> str:
    """Bound a diagnostic excerpt to ``limit`` characters."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
