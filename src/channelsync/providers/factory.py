"""Select the provider client for each channel type from configuration."""

from __future__ import annotations

import httpx

from channelsync.channels.models import ChannelType
from channelsync.config import ChannelSyncConfig
from channelsync.guard.retry import RetryExecutor
from channelsync.providers.base import ChannelClient
from channelsync.providers.facebook import FacebookClient
from channelsync.providers.greenapi import GreenApiClient
from channelsync.providers.instagram import InstagramClient
from channelsync.providers.whatsapp import WhatsAppCloudClient


def create_client(
    channel_type: ChannelType,
    *,
    config: ChannelSyncConfig,
    http: httpx.AsyncClient,
    retry: RetryExecutor,
) -> ChannelClient:
    if channel_type == ChannelType.FACEBOOK:
        return FacebookClient(config=config.meta, http=http, retry=retry)
    if channel_type == ChannelType.INSTAGRAM:
        return InstagramClient(config=config.meta, http=http, retry=retry)
    if channel_type == ChannelType.WHATSAPP:
        if config.whatsapp.backend == "green_api":
            return GreenApiClient(config=config.green_api, http=http, retry=retry)
        return WhatsAppCloudClient(config=config.meta, http=http, retry=retry)
    raise ValueError(f"Unsupported channel type: {channel_type}")


def build_clients(
    *,
    config: ChannelSyncConfig,
    http: httpx.AsyncClient,
    retry: RetryExecutor,
) -> dict[ChannelType, ChannelClient]:
    """One client per channel type, built once at startup."""
    return {
        channel_type: create_client(channel_type, config=config, http=http, retry=retry)
        for channel_type in ChannelType
    }
