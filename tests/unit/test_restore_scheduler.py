"""Unit tests for the sequential restore scheduler."""

from __future__ import annotations

import asyncio

import pytest

from wahub.clock import ManualClock
from wahub.config import RestoreConfig
from wahub.orchestrator.restore import RestoreKind, RestoreScheduler, RestoreTicket


class Recorder:
    """Launcher and exhaustion handler double."""

    def __init__(self, outcomes: dict[str, list[bool]] | None = None) -> None:
        self.outcomes = outcomes or {}
        self.launched: list[tuple[str, RestoreKind]] = []
        self.exhausted: list[RestoreTicket] = []
        self.gate: asyncio.Event | None = None

    async def launch(self, instance_id: str, kind: RestoreKind) -> bool:
        self.launched.append((instance_id, kind))
        if self.gate is not None:
            await self.gate.wait()
        planned = self.outcomes.get(instance_id)
        return planned.pop(0) if planned else True

    async def on_exhausted(self, ticket: RestoreTicket) -> None:
        self.exhausted.append(ticket)


def make_scheduler(
    recorder: Recorder,
    clock: ManualClock,
    free_mb: float = 4000.0,
    **overrides,
) -> RestoreScheduler:
    settings = {
        "restore_concurrency": 1,
        "restore_cooldown_seconds": 0,
        "restore_min_free_mem_mb": 800,
        "restore_max_attempts": 3,
        "restore_backoff_base_seconds": 15,
        "restore_backoff_max_seconds": 120,
    }
    settings.update(overrides)
    return RestoreScheduler(
        RestoreConfig(**settings),
        clock,
        launcher=recorder.launch,
        on_exhausted=recorder.on_exhausted,
        memory_probe=lambda: free_mb,
    )


async def settle(scheduler: RestoreScheduler) -> None:
    while scheduler.tasks:
        await asyncio.gather(*scheduler.tasks)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


class TestRestoreScheduler:
    """Tests for RestoreScheduler."""

    def test_enqueue_is_deduplicated(self, clock: ManualClock) -> None:
        """Test that an instance is queued only once."""
        scheduler = make_scheduler(Recorder(), clock)
        assert scheduler.enqueue("a") is True
        assert scheduler.enqueue("a", RestoreKind.retry) is False
        assert scheduler.pending == ["a"]

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, clock: ManualClock) -> None:
        """Test that no more than restore_concurrency restores run at once."""
        recorder = Recorder()
        recorder.gate = asyncio.Event()
        scheduler = make_scheduler(recorder, clock, restore_concurrency=2)
        for instance_id in ("a", "b", "c"):
            scheduler.enqueue(instance_id)

        assert await scheduler.pump() == 2
        await asyncio.sleep(0)
        assert scheduler.active == {"a", "b"}
        assert await scheduler.pump() == 0

        recorder.gate.set()
        await settle(scheduler)
        assert await scheduler.pump() == 1
        await settle(scheduler)
        assert [i for i, _ in recorder.launched] == ["a", "b", "c"]
        assert scheduler.peak_active == 2

    @pytest.mark.asyncio
    async def test_cooldown_between_starts(self, clock: ManualClock) -> None:
        """Test the cooldown between consecutive restores."""
        recorder = Recorder()
        scheduler = make_scheduler(recorder, clock, restore_cooldown_seconds=30)
        scheduler.enqueue("a")
        scheduler.enqueue("b")

        assert await scheduler.pump() == 1
        await settle(scheduler)
        clock.advance(29)
        assert await scheduler.pump() == 0
        clock.advance(1)
        assert await scheduler.pump() == 1

    @pytest.mark.asyncio
    async def test_cooldown_counted_from_slow_launch_finish(self, clock: ManualClock) -> None:
        """Test that a launch outlasting the cooldown still delays the next start."""
        launched: list[str] = []

        async def slow_launch(instance_id: str, kind: RestoreKind) -> bool:
            launched.append(instance_id)
            clock.advance(60)
            return True

        recorder = Recorder()
        scheduler = RestoreScheduler(
            RestoreConfig(restore_cooldown_seconds=30, restore_min_free_mem_mb=0),
            clock,
            launcher=slow_launch,
            on_exhausted=recorder.on_exhausted,
            memory_probe=lambda: 4000.0,
        )
        scheduler.enqueue("a")
        scheduler.enqueue("b")

        assert await scheduler.pump() == 1
        await settle(scheduler)
        assert await scheduler.pump() == 0

        clock.advance(29)
        assert await scheduler.pump() == 0
        clock.advance(1)
        assert await scheduler.pump() == 1
        await settle(scheduler)
        assert launched == ["a", "b"]

    @pytest.mark.asyncio
    async def test_low_memory_defers_with_backoff(self, clock: ManualClock) -> None:
        """Test that a low-memory check counts as an attempt and backs off."""
        recorder = Recorder()
        scheduler = make_scheduler(recorder, clock, free_mb=100)
        scheduler.enqueue("a")

        assert await scheduler.pump() == 0
        assert recorder.launched == []
        assert scheduler.pending == ["a"]

        clock.advance(14)
        await scheduler.pump()
        clock.advance(1)
        await scheduler.pump()
        clock.advance(30)
        await scheduler.pump()

        assert len(recorder.exhausted) == 1
        ticket = recorder.exhausted[0]
        assert ticket.attempt == 3
        assert ticket.last_reason == "insufficient_memory"
        assert scheduler.pending == []

    @pytest.mark.asyncio
    async def test_failed_launch_requeued(self, clock: ManualClock) -> None:
        """Test that a failed launch is retried after backoff."""
        recorder = Recorder(outcomes={"a": [False, True]})
        scheduler = make_scheduler(recorder, clock)
        scheduler.enqueue("a")

        await scheduler.pump()
        await settle(scheduler)
        assert scheduler.pending == ["a"]
        assert await scheduler.pump() == 0

        clock.advance(15)
        await scheduler.pump()
        await settle(scheduler)
        assert scheduler.pending == []
        assert len(recorder.launched) == 2
        assert recorder.exhausted == []

    @pytest.mark.asyncio
    async def test_crashing_launcher_counts_as_failure(self, clock: ManualClock) -> None:
        """Test that a launcher exception is treated as a failed attempt."""
        async def crash(instance_id: str, kind: RestoreKind) -> bool:
            raise RuntimeError("boom")

        recorder = Recorder()
        scheduler = RestoreScheduler(
            RestoreConfig(restore_cooldown_seconds=0, restore_min_free_mem_mb=0, restore_max_attempts=1),
            clock,
            launcher=crash,
            on_exhausted=recorder.on_exhausted,
            memory_probe=lambda: 4000.0,
        )
        scheduler.enqueue("a")
        await scheduler.pump()
        await settle(scheduler)

        assert [t.instance_id for t in recorder.exhausted] == ["a"]
        assert scheduler.active == set()

    def test_discard(self, clock: ManualClock) -> None:
        """Test discarding a pending restore."""
        scheduler = make_scheduler(Recorder(), clock)
        scheduler.enqueue("a")
        scheduler.enqueue("b")
        scheduler.discard("a")
        assert scheduler.pending == ["b"]
        assert not scheduler.is_scheduled("a")
