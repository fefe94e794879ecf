"""Unit tests for send hooks."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from wahub.hooks import NoopSendHooks, TypingIndicatorHooks, run_hook


class TestTypingIndicatorHooks:
    """Tests for TypingIndicatorHooks."""

    @pytest.mark.asyncio
    async def test_typing_around_send(self) -> None:
        """Test that typing is shown before and cleared after a send."""
        session = AsyncMock()
        hooks = TypingIndicatorHooks()

        await run_hook(hooks, "before_send", session, "123@c.us")
        await run_hook(hooks, "after_send", session, "123@c.us", "msg-1")

        session.set_typing.assert_awaited_once_with("123@c.us")
        session.clear_typing.assert_awaited_once_with("123@c.us")
        session.mark_seen.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_mark_seen(self) -> None:
        """Test marking the chat seen when enabled."""
        session = AsyncMock()
        await TypingIndicatorHooks(mark_seen=True).before_send(session, "123@c.us")
        session.mark_seen.assert_awaited_once_with("123@c.us")


class TestRunHook:
    """Tests for run_hook."""

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self) -> None:
        """Test that a broken hook never fails the send it wraps."""
        session = AsyncMock()
        session.set_typing.side_effect = RuntimeError("page crashed")

        await run_hook(TypingIndicatorHooks(), "before_send", session, "123@c.us")

    @pytest.mark.asyncio
    async def test_noop(self) -> None:
        """Test that the no-op hooks never touch the session."""
        session = AsyncMock()
        await run_hook(NoopSendHooks(), "before_send", session, "123@c.us")
        await run_hook(NoopSendHooks(), "after_send", session, "123@c.us", None)
        assert session.mock_calls == []
