"""Meta webhook ingestion: subscription handshake, signature check, payload normalization."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Hub-Signature-256"


@dataclass
class InboundMessage:
    """One inbound (or echoed) message reduced to what verification and sync need."""

    resource_id: str
    sender_id: str
    text: str
    timestamp: datetime
    message_id: str | None = None
    is_echo: bool = False
    platform: str = "instagram"


def verify_signature(body: bytes, header: str | None, app_secret: str) -> bool:
    """Check ``X-Hub-Signature-256: sha256=<hex>`` against the app secret."""
    if not header or not app_secret or not header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, header.removeprefix("sha256="))


def verify_handshake(params: Mapping[str, str], verify_token: str) -> str | None:
    """Return ``hub.challenge`` when the subscription request carries our token."""
    mode = params.get("hub.mode")
    token = params.get("hub.verify_token") or ""
    challenge = params.get("hub.challenge")
    if mode != "subscribe" or not verify_token or challenge is None:
        return None
    if not hmac.compare_digest(token, verify_token):
        return None
    return challenge


def _event_time(raw: Any) -> datetime:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        # Graph sends epoch milliseconds.
        return datetime.fromtimestamp(raw / 1000, tz=UTC)
    return datetime.now(UTC)


def _account_id(value: Any) -> str:
    if isinstance(value, dict) and value.get("id") is not None:
        return str(value["id"])
    return ""


def parse_messages(payload: dict[str, Any]) -> list[InboundMessage]:
    """Flatten ``entry[].messaging[]`` into ``InboundMessage`` items.

    Events without a ``message`` (reads, deliveries, postbacks) are skipped.
    For echoes the account that sent the message is the resource.
    """
    platform = "facebook" if payload.get("object") == "page" else "instagram"
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return []

    messages: list[InboundMessage] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        entry_id = str(entry.get("id") or "")
        for event in entry.get("messaging") or []:
            if not isinstance(event, dict):
                continue
            message = event.get("message")
            if not isinstance(message, dict):
                continue

            sender_id = _account_id(event.get("sender"))
            recipient_id = _account_id(event.get("recipient"))
            is_echo = bool(message.get("is_echo"))
            resource_id = (sender_id if is_echo else recipient_id) or entry_id
            if not resource_id:
                continue

            messages.append(
                InboundMessage(
                    resource_id=resource_id,
                    sender_id=recipient_id if is_echo else sender_id,
                    text=str(message.get("text") or ""),
                    timestamp=_event_time(event.get("timestamp")),
                    message_id=message.get("mid"),
                    is_echo=is_echo,
                    platform=platform,
                )
            )

    if messages:
        logger.debug("webhooks.meta.parsed", platform=platform, count=len(messages))
    return messages
