"""Realtime conversation timelines fed by the backend change stream."""

from channelsync.sync.manager import SyncManager
from channelsync.sync.models import ChangeEvent, ChangeType, Message
from channelsync.sync.timeline import ConversationTimeline, InsertOutcome

__all__ = [
    "ChangeEvent",
    "ChangeType",
    "ConversationTimeline",
    "InsertOutcome",
    "Message",
    "SyncManager",
]
