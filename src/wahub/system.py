"""Host resource inspection and the global launch gate.

Every instance runs its own headless browser, so host memory, the shared
memory segment and the number of simultaneous browser launches are shared
across all tenants. This module exposes the probes the restore scheduler and
the registry consult before starting a new session, plus a one-shot startup
report of the host.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from pathlib import Path
from typing import AsyncIterator, Callable

import psutil
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

MB = 1024 * 1024
SHM_PATH = Path("/dev/shm")
SHM_WARN_MB = 512

MemoryProbe = Callable[[], float]
"""Returns currently available host memory in megabytes."""


def free_memory_mb() -> float:
    """Available host memory in megabytes."""
    return psutil.virtual_memory().available / MB


def shm_size_mb(path: Path = SHM_PATH) -> float | None:
    """Total size of the shared memory mount, or None if it is absent."""
    try:
        return shutil.disk_usage(path).total / MB
    except OSError:
        return None


def is_container() -> bool:
    """Best-effort detection of running inside a container."""
    if Path("/.dockerenv").exists():
        return True
    try:
        cgroup = Path("/proc/1/cgroup").read_text(encoding="utf-8")
    except OSError:
        return False
    return any(marker in cgroup for marker in ("docker", "kubepods", "containerd"))


class SystemReport(BaseModel):
    """Snapshot of host resources taken at startup.

    Attributes:
        total_memory_mb: Physical memory.
        free_memory_mb: Memory available for new processes.
        shm_mb: Size of /dev/shm (None if not mounted).
        in_container: Whether the hub runs inside a container.
        warnings: Human-readable resource warnings.
    """

    total_memory_mb: float
    free_memory_mb: float
    shm_mb: float | None
    in_container: bool
    warnings: list[str]


def build_system_report() -> SystemReport:
    """Collect a :class:`SystemReport` and log it."""
    memory = psutil.virtual_memory()
    shm = shm_size_mb()
    in_container = is_container()

    warnings: list[str] = []
    if in_container and shm is not None and shm < SHM_WARN_MB:
        warnings.append(
            f"/dev/shm is {shm:.0f}MB; browsers may crash below {SHM_WARN_MB}MB "
            "(raise the container shm size)"
        )

    report = SystemReport(
        total_memory_mb=round(memory.total / MB, 1),
        free_memory_mb=round(memory.available / MB, 1),
        shm_mb=round(shm, 1) if shm is not None else None,
        in_container=in_container,
        warnings=warnings,
    )
    logger.info(
        "system_report",
        total_memory_mb=report.total_memory_mb,
        free_memory_mb=report.free_memory_mb,
        shm_mb=report.shm_mb,
        in_container=report.in_container,
    )
    for warning in warnings:
        logger.warning("system_resource_warning", detail=warning)
    return report


class LaunchGate:
    """Global gate consulted before any browser launch.

    Limits the number of launches in flight and refuses launches while free
    memory is below a floor.

    Args:
        max_concurrent: Launches allowed at the same time.
        min_free_mb: Free memory required to start a launch.
        memory_probe: Callable returning available memory in MB.
    """

    def __init__(
        self,
        max_concurrent: int,
        min_free_mb: float,
        memory_probe: MemoryProbe = free_memory_mb,
    ):
        self.max_concurrent = max_concurrent
        self.min_free_mb = min_free_mb
        self.memory_probe = memory_probe
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active = 0

    @property
    def active(self) -> int:
        """Number of launches currently in flight."""
        return self._active

    def memory_ok(self) -> bool:
        """Return True if there is enough free memory for a launch."""
        try:
            free = self.memory_probe()
        except Exception as e:
            # An unreadable probe must not wedge every launch
            logger.warning("memory_probe_failed", error=str(e))
            return True
        if free < self.min_free_mb:
            logger.warning(
                "launch_memory_low",
                free_mb=round(free, 1),
                required_mb=self.min_free_mb,
            )
            return False
        return True

    @contextlib.asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one launch slot for the duration of the block."""
        async with self._semaphore:
            self._active += 1
            try:
                yield
            finally:
                self._active -= 1
