"""Integration tests for startup restore of persisted instances."""

from __future__ import annotations

import pytest

from wahub.config import RestoreConfig
from wahub.errors import ErrorKind
from wahub.orchestrator.state_machine import InstanceState
from wahub.storage import InstanceDescriptor, InstanceStore


def _persist(config, *instance_ids: str) -> None:
    InstanceStore(config.storage.instances_path).save(
        [
            InstanceDescriptor(
                id=instance_id,
                name=f"Tenant {instance_id}",
                webhook_url="https://hooks.example.com/r",
            )
            for instance_id in instance_ids
        ]
    )


@pytest.mark.asyncio
async def test_restore_runs_one_launch_at_a_time(config_factory, build_registry, engine, run_for) -> None:
    """Test that restores launch one at a time."""
    config = config_factory(
        restore=RestoreConfig(
            restore_concurrency=1,
            restore_cooldown_seconds=0,
            restore_min_free_mem_mb=0,
        )
    )
    _persist(config, "a", "b", "c")
    engine.launch_delay = 0.02

    registry = build_registry(config)
    restored = await registry.start(run_loop=False)
    try:
        assert restored == 3
        assert registry.restore.pending == ["a", "b", "c"]
        assert all(s.state == InstanceState.created for s in registry.list_statuses())

        await run_for(registry, 5)

        assert engine.launches == ["a", "b", "c"]
        assert registry.restore.peak_active == 1
        assert engine.peak_launching == 1
        assert registry.restore.pending == []
        assert all(s.state == InstanceState.connecting for s in registry.list_statuses())
    finally:
        await registry.stop()


@pytest.mark.asyncio
async def test_restore_cooldown_spaces_launches(config_factory, build_registry, engine, run_for) -> None:
    """Test the cooldown between restored launches."""
    config = config_factory(
        restore=RestoreConfig(restore_cooldown_seconds=30, restore_min_free_mem_mb=0)
    )
    _persist(config, "a", "b")
    registry = build_registry(config)
    await registry.start(run_loop=False)
    try:
        await run_for(registry, 28)
        assert engine.launches == ["a"]

        await run_for(registry, 2)
        assert engine.launches == ["a", "b"]
    finally:
        await registry.stop()


@pytest.mark.asyncio
async def test_restore_keeps_webhook_configuration(config, build_registry) -> None:
    """Test that restored instances keep their webhook."""
    _persist(config, "a")
    registry = build_registry(config)
    await registry.start(run_loop=False)
    try:
        assert registry.get("a").webhook.url == "https://hooks.example.com/r"
        assert registry.get("a").display_name == "Tenant a"
    finally:
        await registry.stop()


@pytest.mark.asyncio
async def test_low_memory_exhausts_restore_attempts(
    config_factory, build_registry, engine, delivery, run_for
) -> None:
    """Test restore exhaustion under low memory."""
    config = config_factory(
        restore=RestoreConfig(
            restore_min_free_mem_mb=800,
            restore_max_attempts=5,
            restore_backoff_base_seconds=15,
            restore_backoff_max_seconds=120,
        )
    )
    _persist(config, "a")
    registry = build_registry(config, memory_probe=lambda: 100.0)
    await registry.start(run_loop=False)
    try:
        await run_for(registry, 60, step=5)
        instance = registry.get("a")
        assert instance.state == InstanceState.created
        assert engine.launches == []

        await run_for(registry, 300, step=5)
        assert instance.state == InstanceState.error
        assert instance.last_error.kind == ErrorKind.restore_failed
        assert engine.launches == []
        assert registry.restore.pending == []

        failures = delivery.of("restore_failed")
        assert len(failures) == 1
        assert failures[0].data["attempts"] == 5
        assert failures[0].data["reason"] == "insufficient_memory"
    finally:
        await registry.stop()


@pytest.mark.asyncio
async def test_failed_restore_launch_is_retried_with_backoff(
    config_factory, build_registry, engine, run_for
) -> None:
    """Test backoff between failed restore launches."""
    config = config_factory(
        restore=RestoreConfig(
            restore_cooldown_seconds=0,
            restore_min_free_mem_mb=0,
            restore_backoff_base_seconds=15,
        )
    )
    _persist(config, "a")
    engine.launch_plan["a"] = ["fail"]
    registry = build_registry(config)
    await registry.start(run_loop=False)
    try:
        await run_for(registry, 1)
        instance = registry.get("a")
        assert instance.state == InstanceState.disconnected
        assert instance.last_error.kind == ErrorKind.launch_failed
        assert registry.restore.pending == ["a"]

        await run_for(registry, 15)
        assert instance.state == InstanceState.connecting
        assert engine.launches == ["a", "a"]
        assert registry.restore.pending == []
    finally:
        await registry.stop()


@pytest.mark.asyncio
async def test_retry_of_failed_restore_goes_through_scheduler(
    config_factory, build_registry, engine, run_for
) -> None:
    """Test that retrying a failed restore is scheduled."""
    config = config_factory(restore=RestoreConfig(restore_min_free_mem_mb=800, restore_max_attempts=1))
    _persist(config, "a")
    free_memory = {"mb": 100.0}
    registry = build_registry(config, memory_probe=lambda: free_memory["mb"])
    await registry.start(run_loop=False)
    try:
        await run_for(registry, 1)
        assert registry.get("a").state == InstanceState.error

        free_memory["mb"] = 4000.0
        assert await registry.retry_instance("a") is True
        await run_for(registry, 1)
        assert registry.get("a").state == InstanceState.connecting
        assert engine.launches == ["a"]
    finally:
        await registry.stop()
