from __future__ import annotations

from datetime import UTC, datetime

import pytest

from channelsync.config import SyncConfig
from channelsync.notifications.store import NotificationStore
from channelsync.sync.manager import SyncManager
from channelsync.sync.timeline import InsertOutcome

T0 = datetime(2026, 5, 1, 9, 0, tzinfo=UTC)


def _record(message_id: int | str, content: str, conversation_id: str = "conv-1", **extra) -> dict:
    return {
        "id": message_id,
        "conversation_id": conversation_id,
        "content": content,
        "sender_type": extra.pop("sender_type", "client"),
        "created_at": T0.isoformat(),
        **extra,
    }


@pytest.mark.asyncio
async def test_changes_are_routed_to_the_open_timeline() -> None:
    manager = SyncManager(config=SyncConfig())
    timeline = manager.open("conv-1")

    outcome = await manager.apply_change({"type": "insert", "record": _record(7, "hi", unread=True)})

    assert outcome == InsertOutcome.APPENDED
    assert [m.id for m in timeline.messages] == ["7"]


@pytest.mark.asyncio
async def test_changes_for_closed_conversations_are_dropped() -> None:
    manager = SyncManager(config=SyncConfig())
    manager.open("conv-1")

    assert await manager.apply_change({"type": "INSERT", "record": _record(1, "x", "conv-2")}) is None
    assert manager.close("conv-1") is True
    assert manager.close("conv-1") is False
    assert await manager.apply_change({"type": "INSERT", "record": _record(1, "x")}) is None


@pytest.mark.asyncio
async def test_update_and_delete_events() -> None:
    manager = SyncManager(config=SyncConfig())
    timeline = manager.open("conv-1")
    await manager.apply_change({"type": "INSERT", "record": _record("m1", "draft")})

    assert await manager.apply_change({"type": "UPDATE", "record": _record("m1", "edited")}) is True
    assert timeline.messages[0].content == "edited"

    assert await manager.apply_change({"type": "DELETE", "old_record": {"id": "m1", "conversation_id": "conv-1"}})
    assert timeline.messages == []


@pytest.mark.asyncio
async def test_open_is_idempotent_and_updates_recipient() -> None:
    notifications = NotificationStore()
    manager = SyncManager(config=SyncConfig(), notifications=notifications)
    first = manager.open("conv-1")
    second = manager.open("conv-1", recipient="agent-1")

    await manager.apply_change({"type": "INSERT", "record": _record("m1", "hello")})

    assert first is second
    assert manager.get("conv-1") is first
    assert len(notifications.peek("agent-1")) == 1


@pytest.mark.asyncio
async def test_consume_skips_malformed_events() -> None:
    manager = SyncManager(config=SyncConfig())
    timeline = manager.open("conv-1")

    async def feed():
        yield {"type": "INSERT", "record": _record("m1", "one")}
        yield {"type": "TRUNCATE"}
        yield {"type": "INSERT", "record": {"conversation_id": "conv-1", "content": "no sender"}}
        yield {"type": "INSERT", "record": _record("m2", "two", sender_type="agent")}

    applied = await manager.consume(feed())

    assert applied == 2
    assert [m.id for m in timeline.messages] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_consume_accepts_timestamps_without_a_timezone() -> None:
    manager = SyncManager(config=SyncConfig(), clock=lambda: T0)
    timeline = manager.open("conv-1")
    await timeline.send_optimistic("hi", "agent")

    async def feed():
        yield {"type": "INSERT", "record": _record("m1", "hi", sender_type="agent", created_at="2026-05-01T09:00:00")}
        yield {"type": "INSERT", "record": _record("m2", "after", created_at="2026-05-01T09:00:30")}

    applied = await manager.consume(feed())

    assert applied == 2
    assert [m.id for m in timeline.messages] == ["m1", "m2"]
    assert timeline.pending == []
