"""Pluggable hooks around outbound sends.

Humanisation (typing indicators, read receipts) is a policy that lives
outside the orchestrator. The orchestrator only calls the hooks defined here
before and after each send. A failing hook is logged and ignored; it never
fails the send it wraps.
"""

from __future__ import annotations

from typing import Protocol

import structlog

from wahub.engine import EngineSession

logger = structlog.get_logger(__name__)


class SendHooks(Protocol):
    """Callbacks invoked around every outbound send."""

    async def before_send(self, session: EngineSession, chat_id: str) -> None:
        ...

    async def after_send(
        self, session: EngineSession, chat_id: str, message_id: str | None
    ) -> None:
        ...


class NoopSendHooks:
    """Default hooks that do nothing."""

    async def before_send(self, session: EngineSession, chat_id: str) -> None:
        return None

    async def after_send(
        self, session: EngineSession, chat_id: str, message_id: str | None
    ) -> None:
        return None


class TypingIndicatorHooks:
    """Show a typing indicator while a send is in flight.

    Args:
        mark_seen: Also mark the chat as seen before sending.
    """

    def __init__(self, mark_seen: bool = False):
        self.mark_seen = mark_seen

    async def before_send(self, session: EngineSession, chat_id: str) -> None:
        if self.mark_seen:
            await session.mark_seen(chat_id)
        await session.set_typing(chat_id)

    async def after_send(
        self, session: EngineSession, chat_id: str, message_id: str | None
    ) -> None:
        await session.clear_typing(chat_id)


async def run_hook(
    hooks: SendHooks,
    stage: str,
    session: EngineSession,
    chat_id: str,
    message_id: str | None = None,
) -> None:
    """Invoke one hook stage, logging and discarding any failure."""
    try:
        if stage == "before_send":
            await hooks.before_send(session, chat_id)
        else:
            await hooks.after_send(session, chat_id, message_id)
    except Exception as e:
        logger.warning(
            "send_hook_failed",
            stage=stage,
            chat_id=chat_id,
            error=str(e),
        )
