"""Channel listing, authorization and provisioning endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from channelsync.api.middleware.auth import verify_api_key
from channelsync.channels.models import ChannelType
from channelsync.errors import ChannelNotFound

router = APIRouter()


class ProvisionRequest(BaseModel):
    code: str = ""
    state: str = Field(min_length=1)


def _client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.get("/v1/channels")
async def list_channels(
    request: Request,
    owner_id: str | None = Query(default=None),
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    channels = await request.app.state.db.list_channels(owner_id)
    return {"channels": [channel.summary() for channel in channels]}


@router.get("/v1/channels/{channel_id}")
async def get_channel(
    channel_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    channel = await request.app.state.db.get_channel(channel_id)
    if channel is None:
        raise ChannelNotFound(f"channel {channel_id} not found")
    return channel.summary()


@router.get("/v1/channels/{channel_type}/auth-url")
async def authorize_url(
    channel_type: ChannelType,
    request: Request,
    owner_id: str = Query(min_length=1),
    source: str = Query(default="dashboard"),
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    return request.app.state.pipeline.authorize(channel_type, owner_id, source=source)


@router.post("/v1/channels/{channel_type}/provision")
async def provision_channel(
    channel_type: ChannelType,
    body: ProvisionRequest,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    request.app.state.rate_limiter.check(_client_key(request))
    result = await request.app.state.pipeline.run(channel_type, body.code, body.state)
    return {
        "status": "connected" if result.channel.is_connected else "pending",
        "stage": result.stage.value,
        "history": [stage.value for stage in result.history],
        "short_circuited": result.short_circuited,
        "channel": result.channel.summary(),
    }


@router.post("/v1/channels/{channel_id}/disconnect")
async def disconnect_channel(
    channel_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    channel = await request.app.state.pipeline.disconnect(channel_id)
    await request.app.state.verification.cancel(channel_id)
    return channel.summary()
