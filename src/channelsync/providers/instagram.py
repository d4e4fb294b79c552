"""Instagram Business account provider (linked through a Facebook Page)."""

from __future__ import annotations

from datetime import UTC, datetime

import httpx
import structlog

from channelsync.channels.models import ChannelType, InstagramConfig
from channelsync.config import MetaConfig
from channelsync.errors import AuthError, NoResourcesFound
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ProviderResource, ProviderToken
from channelsync.providers.graph import GraphClient

logger = structlog.get_logger()


class InstagramClient(GraphClient):
    channel_type = ChannelType.INSTAGRAM

    def __init__(self, *, config: MetaConfig, http: httpx.AsyncClient, retry: RetryExecutor) -> None:
        super().__init__(config=config, http=http, retry=retry)
        self.redirect_uri = config.instagram_redirect_uri
        self.scopes = list(config.instagram_scopes)

    @property
    def name(self) -> str:
        return "instagram"

    async def discover_resources(self, token: ProviderToken) -> list[ProviderResource]:
        pages = await self.list_pages(token)
        if not pages:
            raise NoResourcesFound(
                self.name,
                "No Facebook pages found for this user. Instagram Business requires a Facebook page.",
            )

        accounts: list[ProviderResource] = []
        for page in pages:
            try:
                payload = await self._request_json(
                    "GET",
                    self.graph_url(page.id),
                    label="page_instagram_account",
                    params={
                        "fields": "instagram_business_account",
                        "access_token": page.access_token or token.access_token,
                    },
                )
            except AuthError as exc:
                logger.warning(
                    "providers.instagram.page_lookup_failed",
                    page_id=page.id,
                    error=exc.provider_message,
                )
                continue

            account = payload.get("instagram_business_account")
            if isinstance(account, dict) and account.get("id"):
                accounts.append(
                    ProviderResource(
                        id=str(account["id"]),
                        name=page.name,
                        access_token=page.access_token,
                        parent_id=page.id,
                    )
                )

        if not accounts:
            raise NoResourcesFound(
                self.name,
                "No Instagram Business accounts found connected to your Facebook pages.",
            )
        logger.info("providers.instagram.accounts_found", pages=len(pages), accounts=len(accounts))
        return accounts

    async def register_resource(self, resource: ProviderResource, token: ProviderToken) -> bool:
        """Resolve the account's secondary (legacy) id and username."""
        payload = await self._request_json(
            "GET",
            self.graph_url(resource.id),
            label="account_identity",
            params={
                "fields": "id,ig_id,username",
                "access_token": resource.access_token or token.access_token,
            },
        )
        # Without ig_id the user id cannot be told apart from the business id.
        secondary = payload.get("ig_id") or payload.get("id") or resource.id
        resource.metadata["instagram_user_id"] = str(secondary)
        if payload.get("username"):
            resource.metadata["username"] = str(payload["username"])
        return True

    async def subscribe_webhook(self, resource: ProviderResource, token: ProviderToken) -> bool:
        payload = await self._request_json(
            "POST",
            self.graph_url(f"{resource.id}/subscribed_apps"),
            label="subscribe_webhook",
            json={
                "access_token": resource.access_token or token.access_token,
                "subscribed_fields": list(self.config.instagram_subscribed_fields),
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
    ) -> InstagramConfig:
        return InstagramConfig(
            resource_id=resource.id,
            available_resource_ids=[item.id for item in available],
            access_token=resource.access_token or token.access_token,
            webhook_configured=webhook_configured,
            connected_at=datetime.now(UTC),
            page_id=resource.parent_id,
            page_name=resource.name,
            instagram_business_account_id=resource.id,
            instagram_user_id=resource.metadata.get("instagram_user_id"),
            username=resource.metadata.get("username"),
        )
