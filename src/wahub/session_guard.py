"""Exclusive-ownership checks for tenant session data.

A tenant's on-disk session directory belongs to its browser process while
the session is alive. Before anything destructive touches that directory
the orchestrator inspects open file handles of every process on the host
and refuses to proceed if one of them points inside the directory.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psutil
import structlog

from wahub.errors import SessionDataInUseError

logger = structlog.get_logger(__name__)


def session_dir(base_dir: Path, instance_id: str) -> Path:
    """Directory holding the persisted browser session of an instance."""
    return base_dir / f"session-{instance_id}"


def _is_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


def find_open_handles(directory: Path) -> list[int]:
    """Return pids of processes holding a file under ``directory`` open.

    Processes that vanish or deny access during the scan are skipped.
    """
    root = str(directory.resolve())
    holders: list[int] = []
    for proc in psutil.process_iter(["pid"]):
        try:
            for handle in proc.open_files():
                if _is_within(handle.path, root):
                    holders.append(proc.info["pid"])
                    break
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return holders


def ensure_not_in_use(directory: Path) -> None:
    """Raise if any process holds files under ``directory`` open.

    Raises:
        SessionDataInUseError: If at least one holder was found.
    """
    holders = find_open_handles(directory)
    if holders:
        logger.warning(
            "session_data_in_use",
            path=str(directory),
            holders=holders,
        )
        raise SessionDataInUseError(str(directory), holders)


def purge_session_data(directory: Path) -> bool:
    """Delete a tenant's session directory after verifying nothing holds it.

    Returns:
        True if a directory was removed, False if it did not exist.

    Raises:
        SessionDataInUseError: If a process still holds files open.
    """
    if not directory.exists():
        return False
    ensure_not_in_use(directory)
    shutil.rmtree(directory)
    logger.info("session_data_purged", path=str(directory))
    return True
