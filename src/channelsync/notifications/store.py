"""In-memory, per-recipient notification queues with TTL eviction."""

from __future__ import annotations

import uuid
from collections import deque
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

from channelsync.channels.models import utcnow

logger = structlog.get_logger()


class NotificationType(StrEnum):
    VERIFICATION_NEEDED = "verification_needed"
    VERIFICATION_COMPLETED = "verification_completed"
    MESSAGE_RECEIVED = "message_received"


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: NotificationType
    recipient: str
    channel_id: str | None = None
    conversation_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class NotificationSink(Protocol):
    def emit(self, notification: Notification) -> None: ...


class NotificationStore:
    """FIFO per recipient. Entries older than ``ttl_s`` are dropped on access.

    Each queue is capped at ``max_per_recipient``; the oldest entries are
    discarded first when it overflows.
    """

    def __init__(
        self,
        *,
        ttl_s: float = 3600,
        max_per_recipient: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_s)
        self.max_per_recipient = max(1, int(max_per_recipient))
        self._clock = clock
        self._queues: dict[str, deque[Notification]] = {}

    def emit(self, notification: Notification) -> None:
        queue = self._queues.get(notification.recipient)
        if queue is None:
            queue = deque(maxlen=self.max_per_recipient)
            self._queues[notification.recipient] = queue
        queue.append(notification)
        logger.info(
            "notifications.emitted",
            type=notification.type.value,
            recipient=notification.recipient,
            channel_id=notification.channel_id,
            conversation_id=notification.conversation_id,
        )

    def _evict(self, recipient: str) -> deque[Notification] | None:
        queue = self._queues.get(recipient)
        if queue is None:
            return None
        cutoff = self._clock() - self.ttl
        while queue and queue[0].created_at <= cutoff:
            queue.popleft()
        if not queue:
            del self._queues[recipient]
            return None
        return queue

    def peek(self, recipient: str) -> list[Notification]:
        queue = self._evict(recipient)
        return list(queue) if queue else []

    def drain(self, recipient: str) -> list[Notification]:
        """Return and remove every live notification for ``recipient``, oldest first."""
        queue = self._evict(recipient)
        if not queue:
            return []
        items = list(queue)
        del self._queues[recipient]
        return items

    def prune(self) -> int:
        """Evict expired entries for every recipient; returns how many were dropped."""
        before = sum(len(queue) for queue in self._queues.values())
        for recipient in list(self._queues):
            self._evict(recipient)
        after = sum(len(queue) for queue in self._queues.values())
        return before - after

    def __len__(self) -> int:
        return sum(len(queue) for queue in self._queues.values())
