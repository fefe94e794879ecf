"""Bounded buffer for inbound events.

While an instance is capacity-constrained (connecting, syncing, or inside
the QR grace window) inbound ``message`` and ``vote_update`` events are
held here instead of being forwarded. The buffer keeps at most
``max_size`` entries; on overflow the oldest entries are discarded.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class InboundEntry:
    """One buffered inbound event.

    Attributes:
        event: Event name (message or vote_update).
        data: Event payload as received from the engine.
        received_at: When the event arrived.
    """

    event: str
    data: dict[str, Any] = field(default_factory=dict)
    received_at: datetime | None = None


class InboundBuffer:
    """Drop-oldest FIFO of :class:`InboundEntry`.

    Args:
        instance_id: Owning instance (for logs).
        max_size: Capacity before the oldest entries are discarded.
        batch_size: Entries taken per flush.
    """

    def __init__(self, instance_id: str, max_size: int, batch_size: int) -> None:
        self.instance_id = instance_id
        self.max_size = max_size
        self.batch_size = batch_size
        self._entries: deque[InboundEntry] = deque()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entry: InboundEntry) -> bool:
        """Buffer an entry.

        Returns:
            True if the buffer reached the flush batch threshold.
        """
        self._entries.append(entry)
        overflow = len(self._entries) - self.max_size
        if overflow > 0:
            for _ in range(overflow):
                self._entries.popleft()
            self.dropped += overflow
            logger.warning(
                "inbound_buffer_overflow",
                instance_id=self.instance_id,
                dropped=overflow,
                total_dropped=self.dropped,
            )
        return len(self._entries) >= self.batch_size

    def take_batch(self) -> list[InboundEntry]:
        """Remove and return up to ``batch_size`` entries from the front."""
        batch: list[InboundEntry] = []
        while self._entries and len(batch) < self.batch_size:
            batch.append(self._entries.popleft())
        return batch

    def restore_front(self, entries: list[InboundEntry]) -> None:
        """Put undelivered entries back at the front, in their original order.

        Entries that no longer fit are discarded and counted as dropped.
        """
        for entry in reversed(entries):
            if len(self._entries) >= self.max_size:
                self.dropped += 1
                continue
            self._entries.appendleft(entry)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count
