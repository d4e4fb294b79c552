"""Timeline message and change-feed event models."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from channelsync.channels.models import utcnow


class Message(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    temp_id: str | None = None
    conversation_id: str
    content: str = ""
    sender_type: str
    sender_name: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    platform_message_id: str | None = None
    status: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_optimistic: bool = False

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> Any:
        return str(value) if isinstance(value, int) else value

    @field_validator("content", mode="before")
    @classmethod
    def _content_not_null(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_not_null(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("created_at")
    @classmethod
    def _created_at_utc(cls, value: datetime) -> datetime:
        # Naive timestamps from the feed are UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def key(self) -> str:
        return self.id or self.temp_id or ""

    def same_payload(self, other: Message) -> bool:
        return self.content == other.content and self.sender_type == other.sender_type


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChangeEvent(BaseModel):
    """A row change from the backend feed."""

    type: ChangeType
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @property
    def row(self) -> dict[str, Any]:
        return self.record or self.old_record or {}

    @property
    def conversation_id(self) -> str | None:
        value = self.row.get("conversation_id")
        return str(value) if value is not None else None
