"""Unit tests for host inspection and the launch gate."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import patch

import pytest

from wahub.system import MB, LaunchGate, build_system_report


class TestLaunchGate:
    """Tests for LaunchGate."""

    def test_memory_floor(self) -> None:
        """Test the free-memory floor check."""
        assert LaunchGate(1, 800, memory_probe=lambda: 1200.0).memory_ok() is True
        assert LaunchGate(1, 800, memory_probe=lambda: 799.0).memory_ok() is False

    def test_failing_probe_allows_launch(self) -> None:
        """Test that an unreadable memory reading does not block launches."""
        def broken() -> float:
            raise OSError("no /proc")

        assert LaunchGate(1, 800, memory_probe=broken).memory_ok() is True

    @pytest.mark.asyncio
    async def test_slot_limits_concurrency(self) -> None:
        """Test that no more than max_concurrent launches hold a slot at once."""
        gate = LaunchGate(2, 0, memory_probe=lambda: 4000.0)
        peak = 0

        async def launch() -> None:
            nonlocal peak
            async with gate.slot():
                peak = max(peak, gate.active)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(launch() for _ in range(5)))

        assert peak == 2
        assert gate.active == 0

    @pytest.mark.asyncio
    async def test_slot_released_on_error(self) -> None:
        """Test that a crashing launch releases its slot."""
        gate = LaunchGate(1, 0)
        with pytest.raises(RuntimeError):
            async with gate.slot():
                raise RuntimeError("launch crashed")
        assert gate.active == 0


class TestSystemReport:
    """Tests for build_system_report."""

    def test_small_shm_in_container_warns(self) -> None:
        """Test the /dev/shm warning inside a container."""
        memory = SimpleNamespace(total=8192 * MB, available=2048 * MB)
        with (
            patch("wahub.system.psutil.virtual_memory", return_value=memory),
            patch("wahub.system.shm_size_mb", return_value=64.0),
            patch("wahub.system.is_container", return_value=True),
        ):
            report = build_system_report()

        assert report.total_memory_mb == 8192
        assert report.free_memory_mb == 2048
        assert report.shm_mb == 64
        assert report.in_container is True
        assert len(report.warnings) == 1
        assert "/dev/shm" in report.warnings[0]

    def test_no_warning_outside_container(self) -> None:
        """Test that no warning is raised outside a container."""
        memory = SimpleNamespace(total=4096 * MB, available=1024 * MB)
        with (
            patch("wahub.system.psutil.virtual_memory", return_value=memory),
            patch("wahub.system.shm_size_mb", return_value=None),
            patch("wahub.system.is_container", return_value=False),
        ):
            report = build_system_report()

        assert report.shm_mb is None
        assert report.warnings == []
