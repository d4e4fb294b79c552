"""Meta webhook ingress: subscription handshake and message events."""

from __future__ import annotations

import json

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.responses import PlainTextResponse

from channelsync.webhooks.meta import parse_messages, verify_handshake, verify_signature

logger = structlog.get_logger()

router = APIRouter()


@router.get("/v1/webhooks/meta")
async def meta_handshake(request: Request) -> PlainTextResponse:
    challenge = verify_handshake(request.query_params, request.app.state.config.meta.verify_token)
    if challenge is None:
        logger.warning("webhooks.meta.handshake_rejected")
        raise HTTPException(status_code=403, detail="Verification failed")
    return PlainTextResponse(challenge)


@router.post("/v1/webhooks/meta")
async def meta_events(
    request: Request,
    x_hub_signature_256: str | None = Header(default=None),
) -> dict:
    body = await request.body()
    app_secret = request.app.state.config.meta.app_secret
    if app_secret and not verify_signature(body, x_hub_signature_256, app_secret):
        logger.warning("webhooks.meta.bad_signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload")

    verification = request.app.state.verification
    messages = parse_messages(payload)
    matched = 0
    for message in messages:
        if await verification.observe_inbound(message) is not None:
            matched += 1

    logger.info("webhooks.meta.received", messages=len(messages), challenges_matched=matched)
    return {"status": "ok", "messages": len(messages), "challenges_matched": matched}
