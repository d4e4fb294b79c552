"""Routes backend change-feed events to open conversation timelines."""

from __future__ import annotations

from collections.abc import AsyncIterable, Callable
from datetime import datetime
from typing import Any

import pydantic
import structlog

from channelsync.channels.models import utcnow
from channelsync.config import SyncConfig
from channelsync.notifications.store import NotificationSink
from channelsync.sync.models import ChangeEvent, ChangeType, Message
from channelsync.sync.timeline import ConversationTimeline, InsertOutcome

logger = structlog.get_logger()


class SyncManager:
    """Owns one ``ConversationTimeline`` per open conversation."""

    def __init__(
        self,
        *,
        config: SyncConfig,
        notifications: NotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.notifications = notifications
        self._clock = clock
        self._timelines: dict[str, ConversationTimeline] = {}

    def open(self, conversation_id: str, *, recipient: str | None = None) -> ConversationTimeline:
        timeline = self._timelines.get(conversation_id)
        if timeline is None:
            timeline = ConversationTimeline(
                conversation_id,
                config=self.config,
                recipient=recipient,
                notifications=self.notifications,
                clock=self._clock,
            )
            self._timelines[conversation_id] = timeline
            logger.info("sync.timeline.opened", conversation_id=conversation_id)
        elif recipient:
            timeline.recipient = recipient
        return timeline

    def get(self, conversation_id: str) -> ConversationTimeline | None:
        return self._timelines.get(conversation_id)

    def close(self, conversation_id: str) -> bool:
        closed = self._timelines.pop(conversation_id, None) is not None
        if closed:
            logger.info("sync.timeline.closed", conversation_id=conversation_id)
        return closed

    async def apply_change(self, payload: ChangeEvent | dict[str, Any]) -> InsertOutcome | bool | None:
        """Apply one change-feed payload. Returns None when no open timeline is affected."""
        event = payload if isinstance(payload, ChangeEvent) else ChangeEvent.model_validate(payload)
        conversation_id = event.conversation_id
        timeline = self._timelines.get(conversation_id) if conversation_id else None
        if timeline is None:
            return None

        if event.type == ChangeType.INSERT:
            if event.record is None:
                return InsertOutcome.IGNORED
            return await timeline.apply_insert(Message.model_validate(event.record))

        message_id = event.row.get("id")
        if message_id is None:
            return False
        if event.type == ChangeType.UPDATE:
            return await timeline.apply_update(str(message_id), event.record or {})
        return await timeline.apply_delete(str(message_id))

    async def consume(self, stream: AsyncIterable[ChangeEvent | dict[str, Any]]) -> int:
        """Apply every event from ``stream`` until it ends. Malformed events are skipped."""
        applied = 0
        async for payload in stream:
            try:
                await self.apply_change(payload)
            except pydantic.ValidationError as exc:
                logger.warning("sync.change.invalid", error=str(exc))
                continue
            applied += 1
        return applied
