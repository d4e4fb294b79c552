"""Instagram identity verification endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from channelsync.api.middleware.auth import verify_api_key
from channelsync.verification.models import VerificationChallenge

router = APIRouter()


def _challenge_view(challenge: VerificationChallenge | None, *, polling: bool) -> dict:
    if challenge is None:
        return {"challenge": None, "polling": polling}
    return {"challenge": challenge.model_dump(mode="json"), "polling": polling}


@router.post("/v1/channels/{channel_id}/verification")
async def generate_challenge(
    channel_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    service = request.app.state.verification
    challenge = await service.generate(channel_id)
    return _challenge_view(challenge, polling=service.is_polling(channel_id))


@router.get("/v1/channels/{channel_id}/verification")
async def get_challenge(
    channel_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    service = request.app.state.verification
    challenge = await service.get(channel_id)
    return _challenge_view(challenge, polling=service.is_polling(channel_id))


@router.delete("/v1/channels/{channel_id}/verification")
async def cancel_challenge(
    channel_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    cancelled = await request.app.state.verification.cancel(channel_id)
    return {"channel_id": channel_id, "cancelled": cancelled}
