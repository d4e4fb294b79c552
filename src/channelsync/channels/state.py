"""OAuth ``state`` blob: issue, encode, decode and validate."""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, unquote

from channelsync.errors import ValidationError


@dataclass(frozen=True)
class ProvisioningState:
    """Identity and freshness data carried through the provider redirect."""

    owner_id: str
    issued_at: datetime
    nonce: str
    source: str | None = None

    @classmethod
    def issue(
        cls,
        owner_id: str,
        *,
        source: str | None = "dashboard",
        now: datetime | None = None,
    ) -> ProvisioningState:
        owner = (owner_id or "").strip()
        if not owner:
            raise ValidationError("owner_id is required to issue a state")
        return cls(
            owner_id=owner,
            issued_at=now or datetime.now(UTC),
            nonce=secrets.token_urlsafe(12),
            source=source,
        )

    def encode(self) -> str:
        payload: dict[str, Any] = {
            "user_id": self.owner_id,
            "timestamp": int(self.issued_at.timestamp() * 1000),
            "nonce": self.nonce,
        }
        if self.source:
            payload["source"] = self.source
        return quote(json.dumps(payload, separators=(",", ":")), safe="")

    @classmethod
    def decode(cls, raw: str) -> ProvisioningState:
        text = (raw or "").strip()
        if not text:
            raise ValidationError("Missing state parameter")
        try:
            parsed = json.loads(unquote(text))
        except ValueError as exc:
            raise ValidationError(f"Invalid state parameter: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ValidationError("Invalid state structure")

        owner_id = str(parsed.get("user_id") or "").strip()
        nonce = str(parsed.get("nonce") or "").strip()
        timestamp = parsed.get("timestamp")
        if not owner_id or not nonce or not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            raise ValidationError("Invalid state structure")

        try:
            issued_at = datetime.fromtimestamp(timestamp / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError) as exc:
            raise ValidationError(f"Invalid state timestamp: {exc}") from exc

        source = parsed.get("source")
        return cls(
            owner_id=owner_id,
            issued_at=issued_at,
            nonce=nonce,
            source=str(source) if source else None,
        )

    def ensure_fresh(self, *, ttl_s: float, now: datetime | None = None, skew_s: float = 60) -> None:
        current = now or datetime.now(UTC)
        if current - self.issued_at > timedelta(seconds=ttl_s):
            raise ValidationError("State parameter expired")
        if self.issued_at - current > timedelta(seconds=skew_s):
            raise ValidationError("State parameter issued in the future")


def validate_state(
    raw: str,
    *,
    ttl_s: float,
    skew_s: float = 60,
    now: datetime | None = None,
) -> ProvisioningState:
    """Decode ``raw`` and check it is fresh; raises ``ValidationError`` otherwise."""
    state = ProvisioningState.decode(raw)
    state.ensure_fresh(ttl_s=ttl_s, now=now, skew_s=skew_s)
    return state
