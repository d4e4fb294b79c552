"""Verification challenge record."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

from channelsync.channels.models import utcnow


class ChallengeStatus(StrEnum):
    PENDING = "pending"
    COMPLETED = "completed"
    EXPIRED = "expired"


class VerificationChallenge(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    channel_id: str
    code: str
    status: ChallengeStatus = ChallengeStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    observed_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ChallengeStatus.PENDING

    def is_due(self, now: datetime | None = None) -> bool:
        """Pending but past its expiry."""
        return self.is_pending and self.expires_at <= (now or utcnow())
