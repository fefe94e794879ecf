"""Unit tests for the persisted idempotency store."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from wahub.orchestrator.idempotency import IdempotencyStatus, IdempotencyStore

T0 = datetime(2026, 2, 1, tzinfo=timezone.utc)


@pytest.fixture
def path(tmp_path: Path) -> Path:
    return tmp_path / "idempotency.json"


@pytest.fixture
def store(path: Path) -> IdempotencyStore:
    return IdempotencyStore(path, ttl_hours=24)


class TestIdempotencyStore:
    """Tests for IdempotencyStore."""

    def test_record_and_get(self, store: IdempotencyStore) -> None:
        """Test recording a key and reading it back."""
        store.record_queued("k1", "acme", {"status": "queued", "queueItemId": "q1"}, T0)

        record = store.get("k1", T0)
        assert record.status == IdempotencyStatus.queued
        assert record.instance_id == "acme"
        assert record.expires_at == T0 + timedelta(hours=24)
        assert store.get("other", T0) is None

    def test_update_merges_result(self, store: IdempotencyStore) -> None:
        """Test that updates merge new fields into the cached result."""
        store.record_queued("k1", "acme", {"status": "queued", "queueItemId": "q1"}, T0)

        store.update("k1", IdempotencyStatus.sent, messageId="msg-9")

        record = store.get("k1", T0)
        assert record.status == IdempotencyStatus.sent
        assert record.result == {"status": "sent", "queueItemId": "q1", "messageId": "msg-9"}

    def test_update_unknown_key_ignored(self, store: IdempotencyStore) -> None:
        """Test that updating an unknown key is a no-op."""
        assert store.update("missing", IdempotencyStatus.failed) is None

    def test_expired_record_invisible(self, store: IdempotencyStore) -> None:
        """Test that records past their TTL are not returned."""
        store.record_queued("k1", "acme", {}, T0)
        assert store.get("k1", T0 + timedelta(hours=24)) is None

    def test_survives_reload(self, store: IdempotencyStore, path: Path) -> None:
        """Test that records are persisted and reloaded."""
        store.record_queued("k1", "acme", {"status": "queued"}, T0)
        store.update("k1", IdempotencyStatus.sent, messageId="msg-1")

        reloaded = IdempotencyStore(path, ttl_hours=24)
        assert reloaded.load(T0 + timedelta(hours=1)) == 1
        assert reloaded.get("k1", T0).result["messageId"] == "msg-1"

    def test_load_drops_expired_and_malformed(self, path: Path) -> None:
        """Test loading a snapshot with expired and malformed records."""
        store = IdempotencyStore(path, ttl_hours=1)
        store.record_queued("old", "acme", {}, T0)
        store.record_queued("new", "acme", {}, T0 + timedelta(hours=2))
        raw = json.loads(path.read_text())
        raw.append({"key": "broken"})
        path.write_text(json.dumps(raw))

        reloaded = IdempotencyStore(path, ttl_hours=1)
        assert reloaded.load(T0 + timedelta(hours=2)) == 1
        assert len(reloaded) == 1

    def test_purge_expired(self, store: IdempotencyStore) -> None:
        """Test purging expired records."""
        store.record_queued("a", "acme", {}, T0)
        store.record_queued("b", "acme", {}, T0 + timedelta(hours=12))

        assert store.purge_expired(T0 + timedelta(hours=24)) == 1
        assert len(store) == 1

    def test_in_memory_store(self) -> None:
        """Test a store without a backing file."""
        store = IdempotencyStore(None, ttl_hours=1)
        store.record_queued("k", "acme", {}, T0)
        assert store.load(T0) == 0
        assert len(store) == 1

    def test_corrupt_snapshot_treated_as_empty(self, path: Path) -> None:
        """Test that an unreadable snapshot starts an empty store."""
        path.write_text("{not json")
        store = IdempotencyStore(path, ttl_hours=1)
        assert store.load(T0) == 0
