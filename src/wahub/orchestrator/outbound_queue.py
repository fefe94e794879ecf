"""Bounded outbound send queue.

Each instance owns one FIFO queue of pending sends. The queue never grows
beyond its configured capacity: enqueueing at capacity raises
:class:`QueueFullError`, and putting a failed item back at the head is
refused (the item is dropped) when the queue has filled up meanwhile.

Items carry a TTL deadline. Expired items are removed when they reach the
head of the queue and are never sent.
"""

from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterator

import structlog

from wahub.errors import QueueFullError

logger = structlog.get_logger(__name__)


class SendKind(str, Enum):
    """Type of outbound send."""

    message = "message"
    poll = "poll"


@dataclass
class OutboundItem:
    """One queued send.

    Attributes:
        chat_id: Destination chat.
        kind: Message or poll.
        payload: Send arguments (content/options, or question/options/settings).
        enqueued_at: When the item was accepted.
        ttl_deadline: After this time the item is dropped instead of sent.
        idempotency_key: Caller key the result is cached under, if any.
        id: Unique item id.
        attempts: Dispatch attempts so far.
    """

    chat_id: str
    kind: SendKind
    payload: dict[str, Any]
    enqueued_at: datetime
    ttl_deadline: datetime
    idempotency_key: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now >= self.ttl_deadline


class OutboundQueue:
    """Bounded FIFO of :class:`OutboundItem`.

    Args:
        instance_id: Owning instance (used in errors and logs).
        max_size: Hard capacity.
        ttl_seconds: Lifetime given to newly enqueued items.
    """

    def __init__(self, instance_id: str, max_size: int, ttl_seconds: float) -> None:
        self.instance_id = instance_id
        self.max_size = max_size
        self.ttl = timedelta(seconds=ttl_seconds)
        self._items: deque[OutboundItem] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[OutboundItem]:
        return iter(list(self._items))

    @property
    def is_full(self) -> bool:
        return len(self._items) >= self.max_size

    def enqueue(
        self,
        chat_id: str,
        kind: SendKind,
        payload: dict[str, Any],
        now: datetime,
        idempotency_key: str | None = None,
        ttl_seconds: float | None = None,
    ) -> OutboundItem:
        """Append a new item at the tail.

        Args:
            chat_id: Destination chat.
            kind: Message or poll.
            payload: Send arguments.
            now: Current time.
            idempotency_key: Optional caller key.
            ttl_seconds: Per-item TTL override.

        Returns:
            The queued item.

        Raises:
            QueueFullError: If the queue is at capacity.
        """
        if self.is_full:
            raise QueueFullError(self.instance_id, self.max_size)

        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self.ttl
        item = OutboundItem(
            chat_id=chat_id,
            kind=kind,
            payload=payload,
            enqueued_at=now,
            ttl_deadline=now + ttl,
            idempotency_key=idempotency_key,
        )
        self._items.append(item)
        return item

    def peek(self) -> OutboundItem | None:
        return self._items[0] if self._items else None

    def pop(self) -> OutboundItem:
        """Remove and return the head item."""
        return self._items.popleft()

    def push_front(self, item: OutboundItem) -> bool:
        """Put an item back at the head.

        Returns:
            False (and leaves the queue unchanged) if the queue is full.
        """
        if self.is_full:
            logger.warning(
                "outbound_requeue_dropped",
                instance_id=self.instance_id,
                item_id=item.id,
                queue_size=len(self._items),
            )
            return False
        self._items.appendleft(item)
        return True

    def drop_expired_head(self, now: datetime) -> list[OutboundItem]:
        """Remove expired items from the head until a live one is found."""
        dropped: list[OutboundItem] = []
        while self._items and self._items[0].is_expired(now):
            dropped.append(self._items.popleft())
        if dropped:
            logger.info(
                "outbound_items_expired",
                instance_id=self.instance_id,
                count=len(dropped),
            )
        return dropped

    def clear(self) -> list[OutboundItem]:
        """Remove and return every queued item."""
        items = list(self._items)
        self._items.clear()
        return items
