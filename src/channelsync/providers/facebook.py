"""Facebook Page provider."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import structlog

from channelsync.channels.models import ChannelType, FacebookConfig
from channelsync.config import MetaConfig
from channelsync.errors import NoResourcesFound
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ProviderResource, ProviderToken
from channelsync.providers.graph import GraphClient

logger = structlog.get_logger()


class FacebookClient(GraphClient):
    channel_type = ChannelType.FACEBOOK

    def __init__(self, *, config: MetaConfig, http: httpx.AsyncClient, retry: RetryExecutor) -> None:
        super().__init__(config=config, http=http, retry=retry)
        self.redirect_uri = config.facebook_redirect_uri
        self.scopes = list(config.facebook_scopes)

    @property
    def name(self) -> str:
        return "facebook"

    async def discover_resources(self, token: ProviderToken) -> list[ProviderResource]:
        pages = await self.list_pages(token)
        if not pages:
            raise NoResourcesFound(
                self.name,
                "No Facebook pages found for this user.",
            )
        logger.info("providers.facebook.pages_found", count=len(pages))
        return pages

    async def subscribe_webhook(self, resource: ProviderResource, token: ProviderToken) -> bool:
        payload = await self._request_json(
            "POST",
            self.graph_url(f"{resource.id}/subscribed_apps"),
            label="subscribe_webhook",
            data={
                "subscribed_fields": ",".join(self.config.page_subscribed_fields),
                "access_token": resource.access_token or token.access_token,
            },
        )
        return payload.get("success") is True

    def build_config(
        self,
        *,
        token: ProviderToken,
        resource: ProviderResource,
        available: list[ProviderResource],
        registered: bool,
        webhook_configured: bool,
    ) -> FacebookConfig:
        return FacebookConfig(
            resource_id=resource.id,
            available_resource_ids=[item.id for item in available],
            access_token=resource.access_token or token.access_token,
            webhook_configured=webhook_configured,
            connected_at=datetime.now(UTC),
            page_id=resource.id,
            page_name=resource.name,
        )
