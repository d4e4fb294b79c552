"""Channel model with a typed, per-provider config."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class ChannelType(StrEnum):
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"


WEBHOOK_PENDING = "Webhook Pending"
PHONE_NOT_REGISTERED = "Phone Not Registered"
PHONE_NOT_LINKED = "Phone Not Linked"
VERIFICATION_REQUIRED = "Verification Required"


class BaseChannelConfig(BaseModel):
    """Fields every provider config carries."""

    resource_id: str
    available_resource_ids: list[str] = Field(default_factory=list)
    access_token: str = Field(default="", repr=False)
    webhook_configured: bool = False
    connected_at: datetime | None = None

    def warnings(self) -> list[str]:
        return [] if self.webhook_configured else [WEBHOOK_PENDING]

    @property
    def degraded(self) -> bool:
        return bool(self.warnings())


class WhatsAppCloudConfig(BaseChannelConfig):
    kind: Literal["whatsapp_cloud"] = "whatsapp_cloud"
    phone_number_id: str
    business_account_id: str
    display_phone_number: str | None = None
    verified_name: str | None = None
    business_name: str | None = None
    account_review_status: str | None = None
    phone_registered: bool = False

    def warnings(self) -> list[str]:
        items = super().warnings()
        if not self.phone_registered:
            items.append(PHONE_NOT_REGISTERED)
        return items


class WhatsAppInstanceConfig(BaseChannelConfig):
    kind: Literal["whatsapp_instance"] = "whatsapp_instance"
    instance_id: str
    api_url: str
    instance_state: str | None = None
    phone_registered: bool = False

    def warnings(self) -> list[str]:
        items = super().warnings()
        if not self.phone_registered:
            items.append(PHONE_NOT_LINKED)
        return items


class FacebookConfig(BaseChannelConfig):
    kind: Literal["facebook"] = "facebook"
    page_id: str
    page_name: str | None = None


class InstagramConfig(BaseChannelConfig):
    kind: Literal["instagram"] = "instagram"
    page_id: str | None = None
    page_name: str | None = None
    instagram_business_account_id: str | None = None
    instagram_user_id: str | None = None
    username: str | None = None
    verified_at: datetime | None = None

    @property
    def needs_verification(self) -> bool:
        """True while the business account id cannot be told apart from the user id."""
        if not self.instagram_business_account_id:
            return True
        return self.instagram_user_id == self.instagram_business_account_id

    def warnings(self) -> list[str]:
        items = super().warnings()
        if self.needs_verification:
            items.append(VERIFICATION_REQUIRED)
        return items


ChannelConfig = Annotated[
    WhatsAppCloudConfig | WhatsAppInstanceConfig | FacebookConfig | InstagramConfig,
    Field(discriminator="kind"),
]

_CONFIG_ADAPTER: TypeAdapter[ChannelConfig] = TypeAdapter(ChannelConfig)

CHANNEL_TYPE_BY_KIND: dict[str, ChannelType] = {
    "whatsapp_cloud": ChannelType.WHATSAPP,
    "whatsapp_instance": ChannelType.WHATSAPP,
    "facebook": ChannelType.FACEBOOK,
    "instagram": ChannelType.INSTAGRAM,
}


def parse_channel_config(data: dict[str, Any] | str) -> ChannelConfig:
    if isinstance(data, str):
        return _CONFIG_ADAPTER.validate_json(data)
    return _CONFIG_ADAPTER.validate_python(data)


class Channel(BaseModel):
    """A connected communication endpoint, one per (owner_id, type)."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    type: ChannelType
    config: ChannelConfig
    is_connected: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _config_matches_type(self) -> Channel:
        expected = CHANNEL_TYPE_BY_KIND[self.config.kind]
        if expected != self.type:
            raise ValueError(f"config kind {self.config.kind!r} does not belong to {self.type.value}")
        return self

    @property
    def resource_id(self) -> str:
        return self.config.resource_id

    def summary(self) -> dict[str, Any]:
        """Public view of the channel: no tokens, plus degraded-state warnings."""
        data = self.model_dump(mode="json", exclude={"config": {"access_token"}})
        data["warnings"] = self.config.warnings()
        data["degraded"] = self.config.degraded
        if isinstance(self.config, InstagramConfig):
            data["needs_verification"] = self.config.needs_verification
        return data
