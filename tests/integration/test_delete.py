"""Integration tests for instance deletion and session data purge."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest

from wahub.errors import InstanceNotFoundError, SessionDataInUseError
from wahub.orchestrator.idempotency import IdempotencyStatus
from wahub.session_guard import session_dir
from wahub.storage import InstanceStore


@pytest.mark.asyncio
async def test_delete_destroys_session_and_forgets_instance(
    registry, engine, activate, delivery
) -> None:
    """Test that delete destroys the session and removes the instance."""
    session = await activate(registry, "acme")

    await registry.delete_instance("acme")
    await registry.wait_idle()

    assert "acme" not in registry
    assert session.destroyed is True
    assert InstanceStore(registry.config.storage.instances_path).load() == []
    deleted = delivery.of("deleted")
    assert len(deleted) == 1
    assert deleted[0].data == {"forced": False, "discardedQueued": 0}

    with pytest.raises(InstanceNotFoundError):
        registry.get("acme")


@pytest.mark.asyncio
async def test_hanging_destroy_forces_purge(registry, engine, delivery) -> None:
    """Test that a hanging destroy is abandoned after its timeout."""
    await registry.create_instance("acme", "Acme", webhook_url="https://hooks.example.com/d")
    await registry.wait_idle()
    await registry.send_message("acme", "1@c.us", "one", idempotency_key="k-1")
    await registry.send_message("acme", "1@c.us", "two")

    engine.destroy_hang = True
    await registry.delete_instance("acme")
    await registry.wait_idle()

    assert "acme" not in registry
    assert engine.destroyed == []
    deleted = delivery.of("deleted")
    assert deleted[0].data == {"forced": True, "discardedQueued": 2}

    record = registry.idempotency.get("k-1", registry.clock.now())
    assert record.status == IdempotencyStatus.discarded
    assert record.result["reason"] == "instance_deleted"


@pytest.mark.asyncio
async def test_delete_discards_send_in_flight(registry, activate, delivery) -> None:
    """Test that a send cut off by delete settles its idempotency record."""
    session = await activate(registry, "acme")
    started = asyncio.Event()

    async def slow_send(chat_id, content, options=None):
        started.set()
        await asyncio.Event().wait()

    session.send_message = slow_send
    await registry.send_message("acme", "1@c.us", "hello", idempotency_key="k1")
    await registry.tick()
    await asyncio.wait_for(started.wait(), timeout=1)
    assert registry.get("acme").in_flight is not None

    await registry.delete_instance("acme")
    await registry.wait_idle()

    record = registry.idempotency.get("k1", registry.clock.now())
    assert record.status == IdempotencyStatus.discarded
    assert record.result["reason"] == "instance_deleted"
    assert delivery.of("deleted")[0].data["discardedQueued"] == 1


@pytest.mark.asyncio
async def test_delete_with_purge_removes_session_directory(registry, activate) -> None:
    """Test delete with purge removing session data."""
    await activate(registry, "acme")
    directory = session_dir(registry.config.engine.auth_base_dir, "acme")
    directory.mkdir(parents=True)
    (directory / "Default").mkdir()

    with patch("wahub.session_guard.find_open_handles", return_value=[]):
        await registry.delete_instance("acme", purge_session_data=True)

    assert not directory.exists()


@pytest.mark.asyncio
async def test_purge_refused_while_data_in_use(registry, activate) -> None:
    """Test that purge is refused while session files are held open."""
    await activate(registry, "acme")
    directory = session_dir(registry.config.engine.auth_base_dir, "acme")
    directory.mkdir(parents=True)

    with patch("wahub.session_guard.find_open_handles", return_value=[4242]):
        with pytest.raises(SessionDataInUseError) as exc_info:
            await registry.delete_instance("acme", purge_session_data=True)

    assert exc_info.value.holders == [4242]
    assert directory.exists()
    assert "acme" not in registry


@pytest.mark.asyncio
async def test_late_events_after_delete_are_ignored(registry, activate) -> None:
    """Test that engine events after delete are ignored."""
    session = await activate(registry, "acme")
    await registry.delete_instance("acme")

    await session.emit("message", {"id": "late"})
    await session.emit("disconnected", {"reason": "NAVIGATION"})
    assert "acme" not in registry


@pytest.mark.asyncio
async def test_delete_unknown_instance(registry) -> None:
    """Test deleting an instance that does not exist."""
    with pytest.raises(InstanceNotFoundError):
        await registry.delete_instance("ghost")
