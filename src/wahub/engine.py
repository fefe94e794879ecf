"""Automation engine capability interface.

The browser automation engine that actually speaks the chat protocol is an
external collaborator. The orchestrator only depends on the narrow
:class:`EngineSession` protocol defined here, which lets tests drive the
whole lifecycle with a deterministic fake.

Every call into an engine goes through :func:`guarded_call`, which applies
a hard timeout and converts any failure into :class:`EngineActionError`.
"""

from __future__ import annotations

import asyncio
import importlib
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol, TypeVar

from pydantic import BaseModel

from wahub.errors import EngineActionError

T = TypeVar("T")


class EngineEvent(str, Enum):
    """Lifecycle and traffic events emitted by an engine session."""

    qr = "qr"
    authenticated = "authenticated"
    ready = "ready"
    disconnected = "disconnected"
    auth_failure = "auth_failure"
    change_state = "change_state"
    message = "message"
    vote_update = "vote_update"


class SessionInfo(BaseModel):
    """Identity of a logged-in session, returned by the ready poll.

    Attributes:
        phone_number: Account phone number (None while still unknown).
        push_name: Account display name.
    """

    phone_number: str | None = None
    push_name: str | None = None


EventCallback = Callable[[EngineEvent, dict[str, Any]], Awaitable[None]]


class EngineSession(Protocol):
    """One live automation session bound to a single instance."""

    async def initialize(self) -> None:
        """Launch the browser and start the login flow."""
        ...

    async def destroy(self) -> None:
        """Tear down the browser session."""
        ...

    async def get_session_info(self) -> SessionInfo | None:
        """Return the session identity once logged in, else None."""
        ...

    async def get_chat_by_id(self, chat_id: str) -> Any:
        """Resolve a chat, raising if it does not exist."""
        ...

    async def send_message(
        self, chat_id: str, content: Any, options: dict[str, Any] | None = None
    ) -> str:
        """Send a message and return the remote message id."""
        ...

    async def send_poll(
        self,
        chat_id: str,
        question: str,
        options: list[str],
        settings: dict[str, Any] | None = None,
    ) -> str:
        """Send a poll and return the remote message id."""
        ...

    async def get_unread_messages(self) -> list[dict[str, Any]]:
        """Return unread inbound messages, each carrying an ``id`` key."""
        ...

    async def set_typing(self, chat_id: str) -> None:
        ...

    async def clear_typing(self, chat_id: str) -> None:
        ...

    async def mark_seen(self, chat_id: str) -> None:
        ...


EngineFactory = Callable[[str, EventCallback], EngineSession]
"""Builds a session for ``instance_id`` that reports events to ``on_event``."""


# Fragments of engine error messages that mean the browser session is gone
SESSION_LOST_MARKERS: tuple[str, ...] = (
    "session closed",
    "target closed",
    "protocol error",
    "execution context was destroyed",
    "cannot read properties of null",
    "evaluate",
    "failed to launch",
    "disconnected",
)


def is_session_lost(error: EngineActionError) -> bool:
    """Return True if a failed engine call indicates a dead session."""
    if error.timed_out:
        return True
    text = error.cause_message.lower()
    return any(marker in text for marker in SESSION_LOST_MARKERS)


async def guarded_call(action: str, call: Awaitable[T], timeout: float) -> T:
    """Await an engine call with a hard timeout.

    Args:
        action: Engine command name used in errors and logs.
        call: Awaitable produced by the engine method.
        timeout: Timeout in seconds.

    Returns:
        Whatever the engine call returns.

    Raises:
        EngineActionError: If the call raised or exceeded ``timeout``.
    """
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise EngineActionError(
            action, f"no response within {timeout:g}s", timed_out=True
        ) from e
    except EngineActionError:
        raise
    except Exception as e:
        raise EngineActionError(action, str(e) or e.__class__.__name__) from e


def load_engine_factory(path: str) -> EngineFactory:
    """Import an engine factory from ``"package.module:attribute"``.

    Raises:
        ValueError: If the path is malformed or does not resolve to a callable.
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Engine factory must look like 'module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import engine module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"{path!r} is not a callable engine factory")
    return factory
