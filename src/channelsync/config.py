"""channelsync configuration, loaded from channelsync.yaml and .env."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Annotated, Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_yaml_config() -> dict[str, Any]:
    """Load channelsync.yaml from CHANNELSYNC_CONFIG_PATH or default locations."""
    config_path = os.getenv("CHANNELSYNC_CONFIG_PATH")
    search_paths = (
        [Path(config_path)]
        if config_path
        else [
            Path("/etc/channelsync/channelsync.yaml"),
            Path("channelsync.yaml"),
        ]
    )
    for path in search_paths:
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}
    return {}


# Comma-separated in env vars, so skip the JSON pre-decode.
StrList = Annotated[list[str], NoDecode]


def _parse_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(item).strip() for item in parsed if str(item).strip()]
        return [item.strip() for item in text.split(",") if item.strip()]
    if isinstance(value, (list, tuple, set)):
        return [str(item).strip() for item in value if str(item).strip()]
    return [str(value).strip()] if str(value).strip() else []


class MetaConfig(BaseSettings):
    """Meta Graph API app credentials shared by Facebook, Instagram and WhatsApp Cloud."""

    app_id: str = Field(default="", description="Meta app id")
    app_secret: str = Field(default="", description="Meta app secret (also signs webhooks)")
    graph_version: str = Field(default="v23.0")
    graph_base_url: str = Field(default="https://graph.facebook.com")
    facebook_redirect_uri: str = ""
    instagram_redirect_uri: str = ""
    verify_token: str = Field(default="", description="Webhook handshake token")
    page_subscribed_fields: StrList = Field(
        default_factory=lambda: ["messages", "messaging_postbacks"],
    )
    instagram_subscribed_fields: StrList = Field(
        default_factory=lambda: [
            "messages",
            "messaging_postbacks",
            "messaging_optins",
            "messaging_reactions",
            "message_deliveries",
            "message_reads",
        ],
    )
    facebook_scopes: StrList = Field(
        default_factory=lambda: ["pages_show_list", "pages_messaging", "pages_manage_metadata"],
    )
    instagram_scopes: StrList = Field(
        default_factory=lambda: [
            "instagram_basic",
            "instagram_manage_messages",
            "pages_show_list",
            "pages_manage_metadata",
        ],
    )

    @field_validator(
        "page_subscribed_fields",
        "instagram_subscribed_fields",
        "facebook_scopes",
        "instagram_scopes",
        mode="before",
    )
    @classmethod
    def _parse_lists(cls, value: Any) -> list[str]:
        return _parse_str_list(value)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_META_")


class GreenApiConfig(BaseSettings):
    """Instance-based WhatsApp backend configuration."""

    partner_token: str = Field(default="", description="Partner API token used to allocate instances")
    partner_url: str = "https://api.green-api.com"
    default_host: str = "https://7107.api.green-api.com"
    alt_host: str = "https://7700.api.green-api.com"
    webhook_url: str = ""

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_GREEN_API_")


class WhatsAppConfig(BaseSettings):
    """WhatsApp channel configuration."""

    backend: Literal["cloud", "green_api"] = "cloud"

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_WHATSAPP_")


class RetryConfig(BaseSettings):
    """Outbound provider request guard."""

    max_attempts: int = Field(default=3, ge=1, le=10)
    timeout_s: float = Field(default=30.0, gt=0)
    backoff_base_s: float = Field(default=1.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_RETRY_")


class RateLimitConfig(BaseSettings):
    """Per-client fixed window limiter for provisioning requests."""

    max_requests: int = Field(default=10, gt=0)
    window_s: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_RATE_LIMIT_")


class ProvisioningConfig(BaseSettings):
    """Channel provisioning pipeline settings."""

    state_ttl_s: int = Field(default=3600, gt=0, description="Max age of an OAuth state blob")
    state_clock_skew_s: int = Field(default=60, ge=0)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_PROVISIONING_")


class VerificationConfig(BaseSettings):
    """Instagram identity verification challenge settings."""

    code_prefix: str = "IG-"
    code_ttl_s: int = Field(default=30 * 60, gt=0)
    poll_interval_s: float = Field(default=3.0, gt=0)
    poll_ceiling_s: float = Field(default=35 * 60, gt=0)
    sweep_interval_s: float = Field(default=30.0, gt=0)
    retention_s: int = Field(default=24 * 3600, ge=0, description="Keep finished challenges this long")
    max_code_attempts: int = Field(default=10, gt=0)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_VERIFICATION_")


class SyncConfig(BaseSettings):
    """Realtime message timeline reconciliation windows."""

    reconcile_window_s: float = Field(default=5.0, ge=0)
    dedup_window_s: float = Field(default=3.0, ge=0)
    optimistic_repeat_window_s: float = Field(default=2.0, ge=0)
    notify_sender_types: StrList = Field(default_factory=lambda: ["client"])

    @field_validator("notify_sender_types", mode="before")
    @classmethod
    def _parse_sender_types(cls, value: Any) -> list[str]:
        return _parse_str_list(value)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_SYNC_")


class NotificationsConfig(BaseSettings):
    """In-memory notification store settings."""

    ttl_s: int = Field(default=3600, gt=0)
    max_per_recipient: int = Field(default=500, gt=0)

    model_config = SettingsConfigDict(env_prefix="CHANNELSYNC_NOTIFICATIONS_")


class ChannelSyncConfig(BaseSettings):
    """Root channelsync configuration."""

    # Server
    host: str = Field(default="0.0.0.0", description="Server bind host")
    port: int = Field(default=8000, description="Server bind port")
    public_url: str = Field(default="http://localhost:8000", description="Externally reachable base URL")

    # Auth
    api_key: str = Field(default="", description="API key for authentication. Empty = no auth")

    # Storage
    data_dir: str = Field(default="./data")
    db_journal_mode: Literal["WAL", "DELETE"] = Field(default="WAL")
    db_busy_timeout_ms: int = Field(default=5000, ge=100, le=120000)

    # Sub-configs
    meta: MetaConfig = Field(default_factory=MetaConfig)
    whatsapp: WhatsAppConfig = Field(default_factory=WhatsAppConfig)
    green_api: GreenApiConfig = Field(default_factory=GreenApiConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    provisioning: ProvisioningConfig = Field(default_factory=ProvisioningConfig)
    verification: VerificationConfig = Field(default_factory=VerificationConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="'json' or 'console'")

    model_config = SettingsConfigDict(
        env_prefix="CHANNELSYNC_",
        env_nested_delimiter="__",
    )

    @classmethod
    def load(cls) -> ChannelSyncConfig:
        """Load config from YAML + env vars (env takes precedence)."""
        yaml_cfg = _load_yaml_config()

        sections: dict[str, type[BaseModel]] = {
            "meta": MetaConfig,
            "whatsapp": WhatsAppConfig,
            "green_api": GreenApiConfig,
            "retry": RetryConfig,
            "rate_limit": RateLimitConfig,
            "provisioning": ProvisioningConfig,
            "verification": VerificationConfig,
            "sync": SyncConfig,
            "notifications": NotificationsConfig,
        }

        # Only pass YAML sub-configs if they have data;
        # otherwise let pydantic-settings pick up env vars
        kwargs: dict[str, Any] = {}
        for key, value in yaml_cfg.items():
            section = sections.get(key)
            if section is None:
                kwargs[key] = value
            elif value:
                kwargs[key] = section(**value)

        return cls(**kwargs)


# Singleton
_config: ChannelSyncConfig | None = None


def get_config() -> ChannelSyncConfig:
    """Get or create the global config."""
    global _config
    if _config is None:
        _config = ChannelSyncConfig.load()
    return _config
