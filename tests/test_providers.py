from __future__ import annotations

import json
from collections.abc import Callable
from urllib.parse import parse_qs

import httpx
import pytest

from channelsync.channels.models import (
    ChannelType,
    FacebookConfig,
    InstagramConfig,
    WhatsAppCloudConfig,
    WhatsAppInstanceConfig,
)
from channelsync.config import ChannelSyncConfig, GreenApiConfig, MetaConfig, WhatsAppConfig
from channelsync.errors import AuthError, NoResourcesFound
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ProviderResource, ProviderToken
from channelsync.providers.facebook import FacebookClient
from channelsync.providers.factory import build_clients
from channelsync.providers.greenapi import GreenApiClient, instance_host
from channelsync.providers.instagram import InstagramClient
from channelsync.providers.whatsapp import WhatsAppCloudClient

Route = Callable[[httpx.Request], httpx.Response]


class _Routes:
    """Answer requests by (method, path); unknown routes are a test failure."""

    def __init__(self, routes: dict[tuple[str, str], Route | dict | httpx.Response]) -> None:
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            raise AssertionError(f"unexpected request {request.method} {request.url}")
        if isinstance(handler, httpx.Response):
            return handler
        if isinstance(handler, dict):
            return httpx.Response(200, json=handler)
        return handler(request)

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


async def _noop_sleep(_seconds: float) -> None:
    return None


def _http(routes: _Routes) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(routes))


def _retry() -> RetryExecutor:
    return RetryExecutor(max_attempts=3, sleep=_noop_sleep)


def _meta() -> MetaConfig:
    return MetaConfig(
        app_id="app-1",
        app_secret="secret-1",
        facebook_redirect_uri="https://app.example.com/fb/callback",
        instagram_redirect_uri="https://app.example.com/ig/callback",
    )


@pytest.mark.asyncio
async def test_facebook_exchange_posts_form_and_discovers_pages() -> None:
    routes = _Routes(
        {
            ("POST", "/v23.0/oauth/access_token"): {"access_token": "USER-T", "token_type": "bearer"},
            ("GET", "/v23.0/me/accounts"): {
                "data": [
                    {"id": "P1", "name": "Bakery", "access_token": "PAGE-T1"},
                    {"id": "P2", "name": "Cafe", "access_token": "PAGE-T2"},
                ]
            },
            ("POST", "/v23.0/P1/subscribed_apps"): {"success": True},
        }
    )
    async with _http(routes) as http:
        client = FacebookClient(config=_meta(), http=http, retry=_retry())
        token = await client.exchange_code("abc")
        pages = await client.discover_resources(token)
        subscribed = await client.subscribe_webhook(pages[0], token)
        config = client.build_config(
            token=token, resource=pages[0], available=pages, registered=True, webhook_configured=subscribed
        )

    form = parse_qs(routes.requests[0].content.decode())
    assert form["client_id"] == ["app-1"]
    assert form["client_secret"] == ["secret-1"]
    assert form["code"] == ["abc"]
    assert form["redirect_uri"] == ["https://app.example.com/fb/callback"]

    subscribe_form = parse_qs(routes.requests[2].content.decode())
    assert subscribe_form["access_token"] == ["PAGE-T1"]
    assert subscribe_form["subscribed_fields"] == ["messages,messaging_postbacks"]

    assert isinstance(config, FacebookConfig)
    assert config.page_id == "P1"
    assert config.access_token == "PAGE-T1"
    assert config.available_resource_ids == ["P1", "P2"]
    assert config.webhook_configured is True


@pytest.mark.asyncio
async def test_facebook_without_pages_raises_no_resources() -> None:
    routes = _Routes({("GET", "/v23.0/me/accounts"): {"data": []}})
    async with _http(routes) as http:
        client = FacebookClient(config=_meta(), http=http, retry=_retry())
        with pytest.raises(NoResourcesFound):
            await client.discover_resources(ProviderToken(access_token="USER-T"))


@pytest.mark.asyncio
async def test_provider_4xx_surfaces_provider_message_without_retry() -> None:
    routes = _Routes(
        {
            ("POST", "/v23.0/oauth/access_token"): httpx.Response(
                400, json={"error": {"message": "This authorization code has expired.", "code": 100}}
            )
        }
    )
    async with _http(routes) as http:
        client = FacebookClient(config=_meta(), http=http, retry=_retry())
        with pytest.raises(AuthError) as exc_info:
            await client.exchange_code("stale")

    assert exc_info.value.status_code == 400
    assert exc_info.value.provider_message == "This authorization code has expired."
    assert exc_info.value.user_message == "This authorization code has expired."
    assert len(routes.requests) == 1


@pytest.mark.asyncio
async def test_exchange_without_access_token_is_an_auth_error() -> None:
    routes = _Routes({("POST", "/v23.0/oauth/access_token"): {"token_type": "bearer"}})
    async with _http(routes) as http:
        client = FacebookClient(config=_meta(), http=http, retry=_retry())
        with pytest.raises(AuthError, match="No access token"):
            await client.exchange_code("abc")


def test_authorize_url_carries_state_and_scopes() -> None:
    client = InstagramClient(config=_meta(), http=None, retry=_retry())  # type: ignore[arg-type]

    url = httpx.URL(client.authorize_url("STATE%7B%7D"))

    assert url.host == "www.facebook.com"
    assert url.params["state"] == "STATE%7B%7D"
    assert url.params["redirect_uri"] == "https://app.example.com/ig/callback"
    assert "instagram_manage_messages" in url.params["scope"].split(",")


@pytest.mark.asyncio
async def test_instagram_discovery_skips_pages_without_business_account() -> None:
    routes = _Routes(
        {
            ("GET", "/v23.0/me/accounts"): {
                "data": [
                    {"id": "P1", "name": "No IG", "access_token": "PT1"},
                    {"id": "P2", "name": "Broken", "access_token": "PT2"},
                    {"id": "P3", "name": "Shop", "access_token": "PT3"},
                ]
            },
            ("GET", "/v23.0/P1"): {"id": "P1"},
            ("GET", "/v23.0/P2"): httpx.Response(403, json={"error": {"message": "Permissions error"}}),
            ("GET", "/v23.0/P3"): {"instagram_business_account": {"id": "17841"}, "id": "P3"},
            ("GET", "/v23.0/17841"): {"id": "17841", "ig_id": "5550001", "username": "shop"},
            ("POST", "/v23.0/17841/subscribed_apps"): {"success": True},
        }
    )
    async with _http(routes) as http:
        client = InstagramClient(config=_meta(), http=http, retry=_retry())
        token = ProviderToken(access_token="USER-T")
        accounts = await client.discover_resources(token)
        registered = await client.register_resource(accounts[0], token)
        subscribed = await client.subscribe_webhook(accounts[0], token)
        config = client.build_config(
            token=token, resource=accounts[0], available=accounts, registered=registered, webhook_configured=subscribed
        )

    assert [account.id for account in accounts] == ["17841"]
    assert accounts[0].parent_id == "P3"
    assert isinstance(config, InstagramConfig)
    assert config.access_token == "PT3"
    assert config.instagram_user_id == "5550001"
    assert config.username == "shop"
    assert config.needs_verification is False

    body = json.loads(routes.requests[-1].content)
    assert body["access_token"] == "PT3"
    assert "messages" in body["subscribed_fields"]


@pytest.mark.asyncio
async def test_instagram_identity_without_ig_id_needs_verification() -> None:
    routes = _Routes({("GET", "/v23.0/17841"): {"id": "17841"}})
    async with _http(routes) as http:
        client = InstagramClient(config=_meta(), http=http, retry=_retry())
        token = ProviderToken(access_token="USER-T")
        resource = ProviderResource(id="17841", parent_id="P3")
        await client.register_resource(resource, token)
        config = client.build_config(
            token=token, resource=resource, available=[resource], registered=True, webhook_configured=True
        )

    assert config.instagram_user_id == config.instagram_business_account_id == "17841"
    assert config.needs_verification is True


@pytest.mark.asyncio
async def test_instagram_without_linked_accounts_raises_no_resources() -> None:
    routes = _Routes(
        {
            ("GET", "/v23.0/me/accounts"): {"data": [{"id": "P1", "name": "Page", "access_token": "PT1"}]},
            ("GET", "/v23.0/P1"): {"id": "P1"},
        }
    )
    async with _http(routes) as http:
        client = InstagramClient(config=_meta(), http=http, retry=_retry())
        with pytest.raises(NoResourcesFound):
            await client.discover_resources(ProviderToken(access_token="USER-T"))


@pytest.mark.asyncio
async def test_whatsapp_cloud_discovers_phone_numbers_from_granular_scopes() -> None:
    routes = _Routes(
        {
            ("GET", "/v23.0/debug_token"): {
                "data": {
                    "granular_scopes": [
                        {"scope": "whatsapp_business_management", "target_ids": ["WABA1"]},
                        {"scope": "whatsapp_business_messaging", "target_ids": ["WABA1"]},
                        {"scope": "pages_show_list", "target_ids": ["P1"]},
                    ]
                }
            },
            ("GET", "/v23.0/WABA1"): {"id": "WABA1", "name": "Acme", "account_review_status": "APPROVED"},
            ("GET", "/v23.0/WABA1/phone_numbers"): {
                "data": [
                    {"id": "PN1", "display_phone_number": "+1 555 0100", "verified_name": "Acme"},
                ]
            },
            ("POST", "/v23.0/PN1/register"): {"success": True},
            ("POST", "/v23.0/WABA1/subscribed_apps"): {"success": True},
        }
    )
    async with _http(routes) as http:
        client = WhatsAppCloudClient(config=_meta(), http=http, retry=_retry())
        token = ProviderToken(access_token="WA-T")
        phones = await client.discover_resources(token)
        registered = await client.register_resource(phones[0], token)
        subscribed = await client.subscribe_webhook(phones[0], token)
        config = client.build_config(
            token=token, resource=phones[0], available=phones, registered=registered, webhook_configured=subscribed
        )

    debug = routes.requests[0]
    assert debug.url.params["input_token"] == "WA-T"
    assert debug.url.params["access_token"] == "app-1|secret-1"
    assert routes.paths().count("/v23.0/WABA1") == 1

    register = routes.requests[3]
    assert register.headers["authorization"] == "Bearer WA-T"
    assert json.loads(register.content) == {"messaging_product": "whatsapp"}

    assert isinstance(config, WhatsAppCloudConfig)
    assert config.phone_number_id == "PN1"
    assert config.business_account_id == "WABA1"
    assert config.display_phone_number == "+1 555 0100"
    assert config.business_name == "Acme"
    assert config.account_review_status == "APPROVED"
    assert config.phone_registered is True
    assert config.webhook_configured is True


@pytest.mark.asyncio
async def test_whatsapp_cloud_falls_back_to_business_accounts() -> None:
    routes = _Routes(
        {
            ("GET", "/v23.0/debug_token"): {"data": {"granular_scopes": []}},
            ("GET", "/v23.0/me/businesses"): {"data": [{"id": "B1"}]},
            ("GET", "/v23.0/B1/owned_whatsapp_business_accounts"): {"data": [{"id": "WABA1"}]},
            ("GET", "/v23.0/B1/client_whatsapp_business_accounts"): {"data": [{"id": "WABA1"}, {"id": "WABA2"}]},
            ("GET", "/v23.0/WABA1"): {"id": "WABA1", "name": "Acme"},
            ("GET", "/v23.0/WABA1/phone_numbers"): {"data": []},
            ("GET", "/v23.0/WABA2"): {"id": "WABA2", "name": "Acme Client"},
            ("GET", "/v23.0/WABA2/phone_numbers"): {"data": [{"id": "PN2", "verified_name": "Acme Client"}]},
        }
    )
    async with _http(routes) as http:
        client = WhatsAppCloudClient(config=_meta(), http=http, retry=_retry())
        phones = await client.discover_resources(ProviderToken(access_token="WA-T"))

    assert [phone.id for phone in phones] == ["PN2"]
    assert phones[0].parent_id == "WABA2"


@pytest.mark.asyncio
async def test_whatsapp_cloud_without_business_accounts_raises_no_resources() -> None:
    routes = _Routes(
        {
            ("GET", "/v23.0/debug_token"): {"data": {}},
            ("GET", "/v23.0/me/businesses"): httpx.Response(
                400, json={"error": {"message": "User does not have a Business Manager"}}
            ),
        }
    )
    async with _http(routes) as http:
        client = WhatsAppCloudClient(config=_meta(), http=http, retry=_retry())
        with pytest.raises(NoResourcesFound):
            await client.discover_resources(ProviderToken(access_token="WA-T"))


def test_green_api_host_follows_instance_prefix() -> None:
    config = GreenApiConfig()

    assert instance_host("7700123456", config) == "https://7700.api.green-api.com"
    assert instance_host("7107123456", config) == "https://7107.api.green-api.com"
    assert instance_host("1101123456", config) == config.default_host
    assert instance_host("1101123456", config, "https://1101.api.green-api.com") == "https://1101.api.green-api.com"


@pytest.mark.asyncio
async def test_green_api_allocates_instance_and_configures_webhook() -> None:
    config = GreenApiConfig(partner_token="PARTNER", webhook_url="https://app.example.com/hooks/green")
    routes = _Routes(
        {
            ("POST", "/partner/createInstance/PARTNER"): {"idInstance": 7700123456, "apiTokenInstance": "INST-T"},
            ("GET", "/waInstance7700123456/getStateInstance/INST-T"): {"stateInstance": "notAuthorized"},
            ("POST", "/waInstance7700123456/setSettings/INST-T"): {"saveSettings": True},
        }
    )
    async with _http(routes) as http:
        client = GreenApiClient(config=config, http=http, retry=_retry())
        token = await client.exchange_code("")
        resources = await client.discover_resources(token)
        registered = await client.register_resource(resources[0], token)
        subscribed = await client.subscribe_webhook(resources[0], token)
        channel_config = client.build_config(
            token=token,
            resource=resources[0],
            available=resources,
            registered=registered,
            webhook_configured=subscribed,
        )

    assert routes.requests[1].url.host == "7700.api.green-api.com"
    settings = json.loads(routes.requests[2].content)
    assert settings["webhookUrl"] == "https://app.example.com/hooks/green"
    assert settings["incomingWebhook"] == "yes"
    assert settings["outgoingAPIMessageWebhook"] == "yes"

    assert isinstance(channel_config, WhatsAppInstanceConfig)
    assert channel_config.instance_id == "7700123456"
    assert channel_config.instance_state == "notAuthorized"
    assert channel_config.phone_registered is False
    assert channel_config.webhook_configured is True
    assert channel_config.warnings() == ["Phone Not Linked"]


@pytest.mark.asyncio
async def test_green_api_release_deletes_the_partner_instance() -> None:
    config = GreenApiConfig(partner_token="PARTNER")
    routes = _Routes({("POST", "/partner/deleteInstanceAccount/PARTNER"): {"deleteInstanceAccount": True}})
    instance = WhatsAppInstanceConfig(
        resource_id="7700123456",
        instance_id="7700123456",
        api_url="https://7700.api.green-api.com",
    )
    async with _http(routes) as http:
        client = GreenApiClient(config=config, http=http, retry=_retry())
        released = await client.release_resource(instance)
        # Nothing to release for configs from other providers.
        skipped = await client.release_resource(
            WhatsAppCloudConfig(resource_id="PN1", phone_number_id="PN1", business_account_id="W1")
        )

    assert released is True
    assert skipped is False
    assert routes.paths() == ["/partner/deleteInstanceAccount/PARTNER"]
    assert json.loads(routes.requests[0].content) == {"idInstance": "7700123456"}


@pytest.mark.asyncio
async def test_green_api_release_rejection_is_an_auth_error() -> None:
    routes = _Routes(
        {("POST", "/partner/deleteInstanceAccount/PARTNER"): httpx.Response(400, json={"message": "not found"})}
    )
    instance = WhatsAppInstanceConfig(resource_id="1101", instance_id="1101", api_url="https://1101.api.green-api.com")
    async with _http(routes) as http:
        client = GreenApiClient(config=GreenApiConfig(partner_token="PARTNER"), http=http, retry=_retry())
        with pytest.raises(AuthError):
            await client.release_resource(instance)


@pytest.mark.asyncio
async def test_meta_clients_have_nothing_to_release() -> None:
    routes = _Routes({})
    async with _http(routes) as http:
        client = WhatsAppCloudClient(config=_meta(), http=http, retry=_retry())
        released = await client.release_resource(
            WhatsAppCloudConfig(resource_id="PN1", phone_number_id="PN1", business_account_id="W1")
        )

    assert released is False
    assert routes.requests == []


def test_factory_selects_whatsapp_backend_from_config() -> None:
    cloud = build_clients(config=ChannelSyncConfig(), http=None, retry=_retry())  # type: ignore[arg-type]
    green = build_clients(
        config=ChannelSyncConfig(whatsapp=WhatsAppConfig(backend="green_api")),
        http=None,  # type: ignore[arg-type]
        retry=_retry(),
    )

    assert isinstance(cloud[ChannelType.WHATSAPP], WhatsAppCloudClient)
    assert isinstance(green[ChannelType.WHATSAPP], GreenApiClient)
    assert green[ChannelType.WHATSAPP].allocates_resources is True
    assert isinstance(cloud[ChannelType.FACEBOOK], FacebookClient)
    assert isinstance(cloud[ChannelType.INSTAGRAM], InstagramClient)
