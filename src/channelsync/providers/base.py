"""Provider client interface shared by every channel type."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from channelsync.channels.models import ChannelConfig, ChannelType
from channelsync.errors import AuthError
from channelsync.guard.retry import RetryExecutor

logger = structlog.get_logger()


@dataclass
class ProviderToken:
    """Credential returned by a code exchange."""

    access_token: str = field(repr=False)
    token_type: str | None = None
    expires_in: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResource:
    """A connectable provider-side resource (page, phone number, instance...)."""

    id: str
    name: str | None = None
    access_token: str | None = field(default=None, repr=False)
    parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


def provider_error_message(response: httpx.Response) -> str:
    """Extract a human readable error from a provider response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if payload.get("message"):
            return str(payload["message"])
    return response.text[:300]


class ChannelClient(ABC):
    """Four-stage capability set every provider implements.

    Each stage is one (or a small, fixed fan-out of) idempotent HTTP call(s)
    guarded by the shared ``RetryExecutor``. Any 4xx surfaces as
    ``AuthError``; exhausted transient failures as ``TransientError``.
    """

    channel_type: ChannelType
    # Providers that create a new provider-side resource per run and do not
    # deduplicate it themselves.
    allocates_resources: bool = False

    def __init__(self, *, http: httpx.AsyncClient, retry: RetryExecutor) -> None:
        self.http = http
        self.retry = retry

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> ProviderToken:
        ...

    @abstractmethod
    async def discover_resources(self, token: ProviderToken) -> list[ProviderResource]:
        """Return connectable resources; raise ``NoResourcesFound`` when there are none."""
        ...

    async def register_resource(self, resource: ProviderResource, token: ProviderToken) -> bool:
        """Register the resource with the provider. Providers without this step succeed."""
        return True

    @abstractmethod
    async def subscribe_webhook(self, resource: ProviderResource, token: ProviderToken) -> bool:
        ...

    @abstractmethod
    def build_config(
        self,
        *,
        token: ProviderToken,
        resource: ProviderResource,
        available: list[ProviderResource],
        registered: bool,
        webhook_configured: bool,
    ) -> ChannelConfig:
        ...

    async def release_resource(self, config: ChannelConfig) -> bool:
        """Give a provider-side resource back on disconnect.

        Only providers that allocate resources have anything to release;
        returns True when a release call was made and accepted.
        """
        return False

    def authorize_url(self, state: str) -> str | None:
        """URL the user is sent to for consent, when the provider uses a redirect flow."""
        return None

    async def _request(self, method: str, url: str, *, label: str, **kwargs: Any) -> httpx.Response:
        response = await self.retry.execute_with_retry(
            lambda: self.http.request(method, url, **kwargs),
            label=f"{self.name}.{label}",
        )
        if response.status_code >= 400:
            message = provider_error_message(response)
            logger.warning(
                "providers.request.rejected",
                provider=self.name,
                label=label,
                status_code=response.status_code,
                error=message,
            )
            raise AuthError(response.status_code, message, provider=self.name)
        return response

    async def _request_json(self, method: str, url: str, *, label: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, label=label, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}
