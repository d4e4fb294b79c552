"""Instance-based WhatsApp provider (Green-API partner accounts)."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import structlog

from channelsync.channels.models import ChannelConfig, ChannelType, WhatsAppInstanceConfig
from channelsync.config import GreenApiConfig
from channelsync.errors import ChannelSyncError, NoResourcesFound, TransientError
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ChannelClient, ProviderResource, ProviderToken

logger = structlog.get_logger()

_NOTIFICATION_FLAGS = (
    "incomingWebhook",
    "outgoingWebhook",
    "stateWebhook",
    "incomingMessageWebhook",
    "outgoingMessageWebhook",
    "outgoingAPIMessageWebhook",
    "markIncomingMessagesReaded",
)


def instance_host(instance_id: str, config: GreenApiConfig, provided: str | None = None) -> str:
    """Pick the API cluster an instance lives on from its id prefix."""
    if instance_id.startswith("77"):
        return config.alt_host
    if instance_id.startswith("71"):
        return config.default_host
    return provided or config.default_host


class GreenApiClient(ChannelClient):
    channel_type = ChannelType.WHATSAPP
    allocates_resources = True

    def __init__(self, *, config: GreenApiConfig, http: httpx.AsyncClient, retry: RetryExecutor) -> None:
        super().__init__(http=http, retry=retry)
        self.config = config

    @property
    def name(self) -> str:
        return "green_api"

    def _instance_url(self, resource: ProviderResource, method: str, token: ProviderToken) -> str:
        host = str(resource.metadata.get("api_url") or instance_host(resource.id, self.config))
        return f"{host.rstrip('/')}/waInstance{resource.id}/{method}/{token.access_token}"

    async def exchange_code(self, code: str) -> ProviderToken:
        """Allocate a new instance; the partner API has no OAuth code to trade."""
        if not self.config.partner_token:
            raise ChannelSyncError("Green-API partner token is not configured")

        url = f"{self.config.partner_url.rstrip('/')}/partner/createInstance/{self.config.partner_token}"
        payload = await self._request_json("POST", url, label="create_instance", json={})
        instance_id = payload.get("idInstance")
        api_token = payload.get("apiTokenInstance")
        if not instance_id or not api_token:
            raise TransientError("Incomplete response from Green-API createInstance")

        logger.info("providers.green_api.instance_created", instance_id=str(instance_id))
        return ProviderToken(access_token=str(api_token), extra={"instance_id": str(instance_id)})

    async def discover_resources(self, token: ProviderToken) -> list[ProviderResource]:
        instance_id = str(token.extra.get("instance_id") or "")
        if not instance_id:
            raise NoResourcesFound(self.name, "No WhatsApp instance was allocated.")
        return [
            ProviderResource(
                id=instance_id,
                metadata={"api_url": instance_host(instance_id, self.config)},
            )
        ]

    async def register_resource(self, resource: ProviderResource, token: ProviderToken) -> bool:
        """An instance counts as registered once its phone is linked (QR scanned)."""
        payload = await self._request_json(
            "GET",
            self._instance_url(resource, "getStateInstance", token),
            label="instance_state",
        )
        state = payload.get("stateInstance")
        resource.metadata["instance_state"] = state
        return state == "authorized"

    async def subscribe_webhook(self, resource: ProviderResource, token: ProviderToken) -> bool:
        if not self.config.webhook_url:
            logger.warning("providers.green_api.webhook_url_missing", instance_id=resource.id)
            return False
        settings: dict[str, str] = {"webhookUrl": self.config.webhook_url}
        settings.update({flag: "yes" for flag in _NOTIFICATION_FLAGS})
        payload = await self._request_json(
            "POST",
            self._instance_url(resource, "setSettings", token),
            label="set_settings",
            json=settings,
        )
        return payload.get("saveSettings") is True

    async def release_resource(self, config: ChannelConfig) -> bool:
        """Delete the partner instance so it stops being billed."""
        if not isinstance(config, WhatsAppInstanceConfig) or not self.config.partner_token:
            return False
        url = f"{self.config.partner_url.rstrip('/')}/partner/deleteInstanceAccount/{self.config.partner_token}"
        payload = await self._request_json(
            "POST", url, label="delete_instance", json={"idInstance": config.instance_id}
        )
        logger.info("providers.green_api.instance_deleted", instance_id=config.instance_id)
        return payload.get("deleteInstanceAccount", True) is not False

    def build_config(
        self,
        *,
        token: ProviderToken,
        resource: ProviderResource,
        available: list[ProviderResource],
        registered: bool,
        webhook_configured: bool,
    ) -> WhatsAppInstanceConfig:
        return WhatsAppInstanceConfig(
            resource_id=resource.id,
            available_resource_ids=[item.id for item in available],
            access_token=token.access_token,
            webhook_configured=webhook_configured,
            connected_at=datetime.now(UTC),
            instance_id=resource.id,
            api_url=str(resource.metadata.get("api_url") or instance_host(resource.id, self.config)),
            instance_state=resource.metadata.get("instance_state"),
            phone_registered=registered,
        )
