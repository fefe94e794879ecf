"""JSON snapshot persistence for wa-hub.

Both persisted files (the instance list and the idempotency store) are
small JSON documents rewritten in full. Writes go to a temporary file in the
same directory, are fsynced and then atomically swapped into place, so a
crash mid-write never leaves a truncated snapshot behind.

The instance list keeps the field names ``id``, ``name``, ``webhookUrl``,
``webhookEvents`` and ``createdAt`` because external maintenance tooling
reads this file to find orphaned session directories.
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = structlog.get_logger(__name__)


def write_json_atomic(path: Path, payload: Any) -> None:
    """Atomically write ``payload`` as JSON to ``path``.

    Args:
        path: Destination file. Parent directories are created.
        payload: JSON-serialisable value.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, indent=2, default=str) + "\n"
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def read_json(path: Path, default: Any) -> Any:
    """Read a JSON snapshot, returning ``default`` if missing or unreadable.

    A corrupt snapshot is logged and treated as empty so that startup is
    never blocked by a damaged file.
    """
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("snapshot_read_failed", path=str(path), error=str(e))
        return default


class InstanceDescriptor(BaseModel):
    """Persisted description of one tenant instance.

    Attributes:
        id: Stable instance identifier.
        name: Display name.
        webhook_url: Per-instance webhook receiver URL.
        webhook_events: Event filter (empty means all events).
        created_at: Creation time.
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    webhook_url: str | None = Field(default=None, alias="webhookUrl")
    webhook_events: list[str] = Field(default_factory=list, alias="webhookEvents")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )


class InstanceStore:
    """Ordered instance list persisted as a JSON array."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> list[InstanceDescriptor]:
        """Load all valid descriptors, skipping malformed entries."""
        raw = read_json(self.path, default=[])
        if not isinstance(raw, list):
            logger.error("instance_snapshot_invalid", path=str(self.path))
            return []

        descriptors: list[InstanceDescriptor] = []
        seen: set[str] = set()
        for entry in raw:
            try:
                descriptor = InstanceDescriptor.model_validate(entry)
            except ValidationError as e:
                logger.warning(
                    "instance_descriptor_skipped",
                    path=str(self.path),
                    error=str(e),
                )
                continue
            if descriptor.id in seen:
                logger.warning("instance_descriptor_duplicate", instance_id=descriptor.id)
                continue
            seen.add(descriptor.id)
            descriptors.append(descriptor)
        return descriptors

    def save(self, descriptors: list[InstanceDescriptor]) -> None:
        """Persist the descriptors in order."""
        payload = [
            d.model_dump(mode="json", by_alias=True) for d in descriptors
        ]
        write_json_atomic(self.path, payload)
        logger.debug("instances_persisted", path=str(self.path), count=len(payload))
