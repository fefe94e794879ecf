"""Persisted idempotency store.

Maps a caller-supplied idempotency key to the result of the first request
that used it. A record is written (status ``queued``) before the send is
dispatched and is updated as the send progresses. It lives until its
expiry and is never removed earlier, which is what makes retried API calls
and process restarts issue the underlying send at most once.

The store is a JSON array rewritten atomically after every change and
reloaded at startup.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from wahub.storage import read_json, write_json_atomic

logger = structlog.get_logger(__name__)


class IdempotencyStatus(str, Enum):
    """Lifecycle of an idempotent send."""

    queued = "queued"
    sent = "sent"
    failed = "failed"
    expired = "expired"
    discarded = "discarded"


class IdempotencyRecord(BaseModel):
    """Cached outcome for one idempotency key.

    Attributes:
        key: Caller-supplied key.
        instance_id: Instance the send was addressed to.
        status: Current status of the send.
        result: Result returned to every caller presenting the key.
        created_at: When the record was first written.
        expires_at: After this time the key may be reused.
    """

    key: str
    instance_id: str
    status: IdempotencyStatus
    result: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class IdempotencyStore:
    """Key to result cache with expiry, persisted to ``path``.

    Args:
        path: JSON snapshot file (None keeps the store in memory only).
        ttl_hours: Lifetime of a record.
    """

    def __init__(self, path: Path | None, ttl_hours: float) -> None:
        self.path = path
        self.ttl = timedelta(hours=ttl_hours)
        self._records: dict[str, IdempotencyRecord] = {}
        self.logger = logger.bind(component="idempotency_store")

    def __len__(self) -> int:
        return len(self._records)

    def load(self, now: datetime) -> int:
        """Load persisted records, dropping those already expired.

        Returns:
            Number of live records loaded.
        """
        if self.path is None:
            return 0
        raw = read_json(self.path, default=[])
        if not isinstance(raw, list):
            self.logger.error("idempotency_snapshot_invalid", path=str(self.path))
            raw = []

        self._records.clear()
        skipped = 0
        for entry in raw:
            try:
                record = IdempotencyRecord.model_validate(entry)
            except ValidationError:
                skipped += 1
                continue
            if not record.is_expired(now):
                self._records[record.key] = record

        self.logger.info(
            "idempotency_store_loaded",
            path=str(self.path),
            records=len(self._records),
            skipped=skipped,
        )
        return len(self._records)

    def _persist(self) -> None:
        if self.path is None:
            return
        write_json_atomic(
            self.path,
            [r.model_dump(mode="json") for r in self._records.values()],
        )

    def get(self, key: str, now: datetime) -> IdempotencyRecord | None:
        """Return the unexpired record for ``key``, if any."""
        record = self._records.get(key)
        if record is None or record.is_expired(now):
            return None
        return record

    def record_queued(
        self,
        key: str,
        instance_id: str,
        result: dict[str, Any],
        now: datetime,
    ) -> IdempotencyRecord:
        """Write the initial ``queued`` record for a new send."""
        record = IdempotencyRecord(
            key=key,
            instance_id=instance_id,
            status=IdempotencyStatus.queued,
            result=result,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self._records[key] = record
        self._persist()
        return record

    def update(
        self,
        key: str,
        status: IdempotencyStatus,
        **result_fields: Any,
    ) -> IdempotencyRecord | None:
        """Move a record to ``status`` and merge ``result_fields`` into its result.

        The expiry is left untouched. Unknown keys are ignored.
        """
        record = self._records.get(key)
        if record is None:
            return None
        record.status = status
        record.result = {**record.result, "status": status.value, **result_fields}
        self._persist()
        return record

    def purge_expired(self, now: datetime) -> int:
        """Remove expired records.

        Returns:
            Number of records removed.
        """
        expired = [k for k, r in self._records.items() if r.is_expired(now)]
        for key in expired:
            del self._records[key]
        if expired:
            self._persist()
            self.logger.info("idempotency_records_purged", count=len(expired))
        return len(expired)
