"""Per-conversation message timeline that merges optimistic sends with the backend feed."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

import structlog

from channelsync.channels.models import utcnow
from channelsync.config import SyncConfig
from channelsync.notifications.store import Notification, NotificationSink, NotificationType
from channelsync.sync.models import Message

logger = structlog.get_logger()


class InsertOutcome(StrEnum):
    APPENDED = "appended"
    RECONCILED = "reconciled"
    DUPLICATE_ID = "duplicate_id"
    SUPPRESSED = "suppressed"
    IGNORED = "ignored"


def _within(a: datetime, b: datetime, window_s: float) -> bool:
    return abs(a - b) <= timedelta(seconds=window_s)


class ConversationTimeline:
    """Ordered, de-duplicated view of one conversation.

    Inserts are resolved in this order:

    1. a message whose id is already shown is a no-op;
    2. an optimistic entry with the same content and sender type inside
       ``reconcile_window_s`` is replaced in place by the server row;
    3. any entry with the same content and sender type inside
       ``dedup_window_s`` suppresses the insert;
    4. otherwise the message is appended and the timeline re-sorted.

    The dedup rule prefers hiding a rare genuine repeat over showing a
    re-delivered event twice.
    """

    def __init__(
        self,
        conversation_id: str,
        *,
        config: SyncConfig,
        recipient: str | None = None,
        notifications: NotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.conversation_id = conversation_id
        self.config = config
        self.recipient = recipient
        self.notifications = notifications
        self._clock = clock
        self._messages: list[Message] = []
        self._optimistic: dict[str, Message] = {}
        self._lock = asyncio.Lock()

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def pending(self) -> list[Message]:
        return list(self._optimistic.values())

    def _sort(self) -> None:
        self._messages.sort(key=lambda m: m.created_at)

    def _index_of(self, key: str) -> int | None:
        for index, message in enumerate(self._messages):
            if message.key == key:
                return index
        return None

    async def load(self, messages: Iterable[Message]) -> None:
        """Replace the timeline with a fetched page of server messages."""
        async with self._lock:
            seen: set[str] = set()
            loaded: list[Message] = []
            for message in messages:
                if message.conversation_id != self.conversation_id or not message.id:
                    continue
                if message.id in seen:
                    continue
                seen.add(message.id)
                loaded.append(message)
            # Keep sends still in flight.
            loaded.extend(self._optimistic.values())
            self._messages = loaded
            self._sort()

    async def send_optimistic(
        self,
        content: str,
        sender_type: str,
        *,
        sender_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Show a local send immediately. A repeat of the same text is collapsed."""
        async with self._lock:
            now = self._clock()
            for existing in self._optimistic.values():
                if (
                    existing.content == content
                    and existing.sender_type == sender_type
                    and _within(existing.created_at, now, self.config.optimistic_repeat_window_s)
                ):
                    logger.debug("sync.optimistic.repeat_ignored", conversation_id=self.conversation_id)
                    return existing

            message = Message(
                temp_id=f"temp-{uuid.uuid4()}",
                conversation_id=self.conversation_id,
                content=content,
                sender_type=sender_type,
                sender_name=sender_name,
                created_at=now,
                status="sending",
                metadata=metadata or {},
                is_optimistic=True,
            )
            self._optimistic[message.temp_id or ""] = message
            self._messages.append(message)
            self._sort()
            return message

    async def confirm(self, temp_id: str, saved: Message) -> Message | None:
        """Apply the server's response to a send."""
        async with self._lock:
            optimistic = self._optimistic.pop(temp_id, None)
            index = self._index_of(temp_id)
            if optimistic is None or index is None:
                return None
            if saved.id and self._index_of(saved.id) is not None:
                # The feed delivered the row first.
                del self._messages[index]
                return None
            confirmed = saved.model_copy(update={"is_optimistic": False, "temp_id": None})
            self._messages[index] = confirmed
            self._sort()
            return confirmed

    async def discard(self, temp_id: str) -> bool:
        """Drop an optimistic entry whose send failed."""
        async with self._lock:
            if self._optimistic.pop(temp_id, None) is None:
                return False
            index = self._index_of(temp_id)
            if index is not None:
                del self._messages[index]
            return True

    async def apply_insert(self, incoming: Message) -> InsertOutcome:
        async with self._lock:
            outcome = self._merge(incoming)
        log = logger.bind(conversation_id=self.conversation_id, message_id=incoming.id)
        log.debug("sync.insert", outcome=outcome.value)
        if outcome == InsertOutcome.APPENDED:
            self._notify_received(incoming)
        return outcome

    def _merge(self, incoming: Message) -> InsertOutcome:
        if incoming.conversation_id != self.conversation_id or not incoming.id:
            return InsertOutcome.IGNORED
        if self._index_of(incoming.id) is not None:
            return InsertOutcome.DUPLICATE_ID

        for temp_id, optimistic in self._optimistic.items():
            if optimistic.same_payload(incoming) and _within(
                optimistic.created_at, incoming.created_at, self.config.reconcile_window_s
            ):
                index = self._index_of(temp_id)
                del self._optimistic[temp_id]
                if index is not None:
                    self._messages[index] = incoming.model_copy(update={"is_optimistic": False})
                    self._sort()
                    return InsertOutcome.RECONCILED
                break

        for existing in self._messages:
            if existing.same_payload(incoming) and _within(
                existing.created_at, incoming.created_at, self.config.dedup_window_s
            ):
                return InsertOutcome.SUPPRESSED

        self._messages.append(incoming.model_copy(update={"is_optimistic": False}))
        self._sort()
        return InsertOutcome.APPENDED

    async def apply_update(self, message_id: str, changes: dict[str, Any]) -> bool:
        async with self._lock:
            index = self._index_of(message_id)
            if index is None:
                return False
            current = self._messages[index]
            merged = {**current.model_dump(), **changes, "id": current.id, "is_optimistic": False}
            self._messages[index] = Message.model_validate(merged)
            self._sort()
            return True

    async def apply_delete(self, message_id: str) -> bool:
        async with self._lock:
            index = self._index_of(message_id)
            if index is None:
                return False
            del self._messages[index]
            return True

    def _notify_received(self, message: Message) -> None:
        if self.notifications is None or not self.recipient:
            return
        if message.sender_type not in self.config.notify_sender_types:
            return
        self.notifications.emit(
            Notification(
                type=NotificationType.MESSAGE_RECEIVED,
                recipient=self.recipient,
                conversation_id=self.conversation_id,
                payload={
                    "message_id": message.id,
                    "sender_name": message.sender_name,
                    "preview": message.content[:100],
                },
            )
        )
