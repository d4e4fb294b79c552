"""Shared Meta Graph API plumbing for Facebook, Instagram and WhatsApp Cloud."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx
import structlog

from channelsync.config import MetaConfig
from channelsync.errors import AuthError
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ChannelClient, ProviderResource, ProviderToken

logger = structlog.get_logger()


class GraphClient(ChannelClient):
    """Base for providers that authenticate through a Meta app."""

    redirect_uri: str = ""
    scopes: list[str] = []

    def __init__(self, *, config: MetaConfig, http: httpx.AsyncClient, retry: RetryExecutor) -> None:
        super().__init__(http=http, retry=retry)
        self.config = config

    def graph_url(self, path: str) -> str:
        base = self.config.graph_base_url.rstrip("/")
        return f"{base}/{self.config.graph_version}/{path.lstrip('/')}"

    async def exchange_code(self, code: str) -> ProviderToken:
        form = {
            "client_id": self.config.app_id,
            "client_secret": self.config.app_secret,
            "code": code,
        }
        if self.redirect_uri:
            form["redirect_uri"] = self.redirect_uri

        logger.info("providers.graph.exchange_code", provider=self.name)
        payload = await self._request_json(
            "POST",
            self.graph_url("oauth/access_token"),
            label="exchange_code",
            data=form,
        )
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthError(200, "No access token received", provider=self.name)

        extra = {
            key: value
            for key, value in payload.items()
            if key not in {"access_token", "token_type", "expires_in"}
        }
        expires_in = payload.get("expires_in")
        return ProviderToken(
            access_token=access_token,
            token_type=payload.get("token_type"),
            expires_in=int(expires_in) if isinstance(expires_in, (int, float)) else None,
            extra=extra,
        )

    def authorize_url(self, state: str) -> str | None:
        params = {
            "client_id": self.config.app_id,
            "redirect_uri": self.redirect_uri,
            "state": state,
            "response_type": "code",
        }
        if self.scopes:
            params["scope"] = ",".join(self.scopes)
        return f"https://www.facebook.com/{self.config.graph_version}/dialog/oauth?{urlencode(params)}"

    async def list_pages(self, token: ProviderToken) -> list[ProviderResource]:
        """Pages the user manages, each with its own page access token."""
        payload = await self._request_json(
            "GET",
            self.graph_url("me/accounts"),
            label="list_pages",
            params={"fields": "id,name,access_token", "access_token": token.access_token},
        )
        pages: list[ProviderResource] = []
        for item in _data_items(payload):
            page_id = item.get("id")
            if not page_id:
                continue
            pages.append(
                ProviderResource(
                    id=str(page_id),
                    name=item.get("name"),
                    access_token=item.get("access_token"),
                )
            )
        return pages


def _data_items(payload: dict[str, Any]) -> list[dict[str, Any]]:
    data = payload.get("data")
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]
