"""Conversation timeline endpoints: optimistic sends and the backend change feed."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from channelsync.api.middleware.auth import verify_api_key
from channelsync.sync.models import ChangeEvent, Message
from channelsync.sync.timeline import ConversationTimeline

router = APIRouter()


class OpenRequest(BaseModel):
    recipient: str | None = None
    messages: list[dict[str, Any]] = Field(default_factory=list)


class SendRequest(BaseModel):
    content: str = Field(min_length=1)
    sender_type: str = "agent"
    sender_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


def _timeline(request: Request, conversation_id: str) -> ConversationTimeline:
    timeline = request.app.state.sync.get(conversation_id)
    if timeline is None:
        raise HTTPException(status_code=404, detail="Conversation is not open")
    return timeline


def _dump(messages: list[Message]) -> list[dict]:
    return [message.model_dump(mode="json") for message in messages]


@router.post("/v1/conversations/{conversation_id}/open")
async def open_conversation(
    conversation_id: str,
    body: OpenRequest,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    timeline = request.app.state.sync.open(conversation_id, recipient=body.recipient)
    if body.messages:
        await timeline.load(
            Message.model_validate({**raw, "conversation_id": conversation_id}) for raw in body.messages
        )
    return {"conversation_id": conversation_id, "messages": _dump(timeline.messages)}


@router.delete("/v1/conversations/{conversation_id}")
async def close_conversation(
    conversation_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    return {"conversation_id": conversation_id, "closed": request.app.state.sync.close(conversation_id)}


@router.get("/v1/conversations/{conversation_id}/timeline")
async def get_timeline(
    conversation_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    timeline = _timeline(request, conversation_id)
    return {
        "conversation_id": conversation_id,
        "messages": _dump(timeline.messages),
        "pending": [message.temp_id for message in timeline.pending],
    }


@router.post("/v1/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    body: SendRequest,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    timeline = _timeline(request, conversation_id)
    message = await timeline.send_optimistic(
        body.content,
        body.sender_type,
        sender_name=body.sender_name,
        metadata=body.metadata,
    )
    return message.model_dump(mode="json")


@router.post("/v1/conversations/{conversation_id}/messages/{temp_id}/confirm")
async def confirm_message(
    conversation_id: str,
    temp_id: str,
    body: dict[str, Any],
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    timeline = _timeline(request, conversation_id)
    saved = Message.model_validate({**body, "conversation_id": conversation_id})
    confirmed = await timeline.confirm(temp_id, saved)
    return {"confirmed": confirmed.model_dump(mode="json") if confirmed else None}


@router.delete("/v1/conversations/{conversation_id}/messages/{temp_id}")
async def discard_message(
    conversation_id: str,
    temp_id: str,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    timeline = _timeline(request, conversation_id)
    return {"discarded": await timeline.discard(temp_id)}


@router.post("/v1/conversations/changes")
async def ingest_change(
    body: ChangeEvent,
    request: Request,
    _api_key: str | None = Depends(verify_api_key),
) -> dict:
    outcome = await request.app.state.sync.apply_change(body)
    if outcome is None:
        return {"applied": False, "outcome": None}
    return {"applied": True, "outcome": outcome if isinstance(outcome, bool) else outcome.value}
