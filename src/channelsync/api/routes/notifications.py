"""Notification polling endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from channelsync.api.middleware.auth import verify_api_key

router = APIRouter()


@router.get("/v1/notifications/{recipient}")
async def list_notifications(
    recipient: str,
    request: Request,
    drain: bool = Query(default=True),
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    store = request.app.state.notifications
    items = store.drain(recipient) if drain else store.peek(recipient)
    return {
        "recipient": recipient,
        "notifications": [item.model_dump(mode="json") for item in items],
    }
