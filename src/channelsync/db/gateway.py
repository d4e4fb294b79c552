"""Storage interface the pipeline and services depend on."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from channelsync.channels.models import Channel, ChannelType
from channelsync.verification.models import VerificationChallenge


class PersistenceGateway(Protocol):
    async def find_channel(self, owner_id: str, channel_type: ChannelType) -> Channel | None: ...

    async def get_channel(self, channel_id: str) -> Channel | None: ...

    async def find_channel_by_resource(self, channel_type: ChannelType, resource_id: str) -> Channel | None: ...

    async def list_channels(self, owner_id: str | None = None) -> list[Channel]: ...

    async def upsert_channel(self, channel: Channel) -> Channel: ...

    async def set_channel_connected(self, channel_id: str, connected: bool) -> Channel | None: ...

    async def create_challenge(self, challenge: VerificationChallenge) -> VerificationChallenge: ...

    async def get_challenge(self, challenge_id: str) -> VerificationChallenge | None: ...

    async def latest_challenge(self, channel_id: str) -> VerificationChallenge | None: ...

    async def find_pending_challenge_by_code(self, code: str) -> VerificationChallenge | None: ...

    async def list_pending_challenges(self) -> list[VerificationChallenge]: ...

    async def update_challenge(self, challenge: VerificationChallenge) -> None: ...

    async def expire_pending_challenges(self, channel_id: str, now: datetime) -> int: ...

    async def expire_due_challenges(self, now: datetime) -> list[VerificationChallenge]: ...

    async def delete_expired_challenges(self, now: datetime, retention_s: float = 0.0) -> int: ...
