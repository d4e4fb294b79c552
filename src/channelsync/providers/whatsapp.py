"""WhatsApp Cloud provider (embedded signup: business account + phone number)."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import httpx
import structlog

from channelsync.channels.models import ChannelType, WhatsAppCloudConfig
from channelsync.config import MetaConfig
from channelsync.errors import AuthError, NoResourcesFound
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ProviderResource, ProviderToken
from channelsync.providers.graph import GraphClient, _data_items

logger = structlog.get_logger()

_WABA_SCOPES = frozenset({"whatsapp_business_management", "whatsapp_business_messaging"})


class WhatsAppCloudClient(GraphClient):
    channel_type = ChannelType.WHATSAPP

    def __init__(self, *, config: MetaConfig, http: httpx.AsyncClient, retry: RetryExecutor) -> None:
        super().__init__(config=config, http=http, retry=retry)
        self.scopes = ["whatsapp_business_management", "whatsapp_business_messaging"]

    @property
    def name(self) -> str:
        return "whatsapp_cloud"

    def _bearer(self, token: ProviderToken) -> dict[str, str]:
        return {"Authorization": f"Bearer {token.access_token}"}

    async def discover_resources(self, token: ProviderToken) -> list[ProviderResource]:
        waba_ids = await self._waba_ids_from_scopes(token)
        if not waba_ids:
            waba_ids = await self._waba_ids_from_businesses(token)
        if not waba_ids:
            raise NoResourcesFound(
                self.name,
                "No WhatsApp Business Accounts found. Complete the embedded signup in "
                "Meta Business Manager and try again.",
            )

        phones: list[ProviderResource] = []
        for waba_id in waba_ids:
            try:
                details = await self._request_json(
                    "GET",
                    self.graph_url(waba_id),
                    label="waba_details",
                    params={
                        "fields": "id,name,account_review_status,business_verification_status",
                        "access_token": token.access_token,
                    },
                )
                numbers = await self._request_json(
                    "GET",
                    self.graph_url(f"{waba_id}/phone_numbers"),
                    label="phone_numbers",
                    params={"access_token": token.access_token},
                )
            except AuthError as exc:
                logger.warning(
                    "providers.whatsapp.waba_lookup_failed",
                    waba_id=waba_id,
                    error=exc.provider_message,
                )
                continue

            for item in _data_items(numbers):
                if not item.get("id"):
                    continue
                phones.append(
                    ProviderResource(
                        id=str(item["id"]),
                        name=item.get("verified_name"),
                        parent_id=waba_id,
                        metadata={
                            "display_phone_number": item.get("display_phone_number"),
                            "verified_name": item.get("verified_name"),
                            "business_name": details.get("name"),
                            "account_review_status": details.get("account_review_status"),
                        },
                    )
                )

        if not phones:
            raise NoResourcesFound(
                self.name,
                "No phone numbers found for this WhatsApp Business Account.",
            )
        logger.info("providers.whatsapp.phone_numbers_found", wabas=len(waba_ids), phones=len(phones))
        return phones

    async def _waba_ids_from_scopes(self, token: ProviderToken) -> list[str]:
        """Business accounts granted during embedded signup show up in granular scopes."""
        payload = await self._request_json(
            "GET",
            self.graph_url("debug_token"),
            label="debug_token",
            params={
                "input_token": token.access_token,
                "access_token": f"{self.config.app_id}|{self.config.app_secret}",
            },
        )
        data = payload.get("data")
        scopes: list[Any] = data.get("granular_scopes", []) if isinstance(data, dict) else []

        ids: list[str] = []
        for scope in scopes:
            if not isinstance(scope, dict) or scope.get("scope") not in _WABA_SCOPES:
                continue
            for target in scope.get("target_ids") or []:
                if str(target) not in ids:
                    ids.append(str(target))
        return ids

    async def _waba_ids_from_businesses(self, token: ProviderToken) -> list[str]:
        try:
            businesses = await self._request_json(
                "GET",
                self.graph_url("me/businesses"),
                label="businesses",
                params={"access_token": token.access_token},
            )
        except AuthError as exc:
            # A user without a Business Manager account gets a 400 here.
            logger.warning("providers.whatsapp.businesses_failed", error=exc.provider_message)
            return []

        ids: list[str] = []
        for business in _data_items(businesses):
            business_id = business.get("id")
            if not business_id:
                continue
            for edge in ("owned_whatsapp_business_accounts", "client_whatsapp_business_accounts"):
                try:
                    payload = await self._request_json(
                        "GET",
                        self.graph_url(f"{business_id}/{edge}"),
                        label=edge,
                        params={"access_token": token.access_token},
                    )
                except AuthError as exc:
                    logger.warning(
                        "providers.whatsapp.business_edge_failed",
                        business_id=business_id,
                        edge=edge,
                        error=exc.provider_message,
                    )
                    continue
                for item in _data_items(payload):
                    waba_id = str(item.get("id") or "")
                    if waba_id and waba_id not in ids:
                        ids.append(waba_id)
        return ids

    async def register_resource(self, resource: ProviderResource, token: ProviderToken) -> bool:
        payload = await self._request_json(
            "POST",
            self.graph_url(f"{resource.id}/register"),
            label="register_phone",
            headers=self._bearer(token),
            json={"messaging_product": "whatsapp"},
        )
        return payload.get("success") is True

    async def subscribe_webhook(self, resource: ProviderResource, token: ProviderToken) -> bool:
        payload = await self._request_json(
            "POST",
            self.graph_url(f"{resource.parent_id}/subscribed_apps"),
            label="subscribe_webhook",
            headers=self._bearer(token),
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
    ) -> WhatsAppCloudConfig:
        meta = resource.metadata
        return WhatsAppCloudConfig(
            resource_id=resource.id,
            available_resource_ids=[item.id for item in available],
            access_token=token.access_token,
            webhook_configured=webhook_configured,
            connected_at=datetime.now(UTC),
            phone_number_id=resource.id,
            business_account_id=resource.parent_id or "",
            display_phone_number=meta.get("display_phone_number"),
            verified_name=meta.get("verified_name"),
            business_name=meta.get("business_name"),
            account_review_status=meta.get("account_review_status"),
            phone_registered=registered,
        )
