from __future__ import annotations

from datetime import timedelta

import pytest

from channelsync.channels.models import (
    Channel,
    ChannelType,
    FacebookConfig,
    InstagramConfig,
    WhatsAppCloudConfig,
    utcnow,
)
from channelsync.db.engine import Database
from channelsync.verification.models import ChallengeStatus, VerificationChallenge


def _facebook(owner_id: str = "user-1", page_id: str = "P1", **kwargs) -> Channel:
    return Channel(
        owner_id=owner_id,
        type=ChannelType.FACEBOOK,
        config=FacebookConfig(resource_id=page_id, page_id=page_id, access_token="PT"),
        **kwargs,
    )


def _challenge(channel_id: str, code: str, *, ttl_s: int = 1800, age_s: int = 0) -> VerificationChallenge:
    created = utcnow() - timedelta(seconds=age_s)
    return VerificationChallenge(
        channel_id=channel_id,
        code=code,
        created_at=created,
        expires_at=created + timedelta(seconds=ttl_s),
    )


@pytest.mark.asyncio
async def test_upsert_keeps_one_row_per_owner_and_type(db: Database) -> None:
    first = await db.upsert_channel(_facebook(page_id="P1", is_connected=True))
    second = await db.upsert_channel(_facebook(page_id="P2", is_connected=True))

    rows = await db.list_channels("user-1")

    assert len(rows) == 1
    assert second.id == first.id
    assert second.created_at == first.created_at
    assert rows[0].resource_id == "P2"
    assert rows[0].config.access_token == "PT"


@pytest.mark.asyncio
async def test_upsert_resource_match_never_changes_channel_type(db: Database) -> None:
    stored = await db.upsert_channel(
        Channel(
            owner_id="user-1",
            type=ChannelType.INSTAGRAM,
            config=InstagramConfig(resource_id="IG1", instagram_user_id="IG1"),
        )
    )
    # Same resource id under another type is a different channel.
    other = await db.upsert_channel(
        Channel(
            owner_id="user-1",
            type=ChannelType.WHATSAPP,
            config=WhatsAppCloudConfig(resource_id="IG1", phone_number_id="IG1", business_account_id="W1"),
        )
    )

    assert other.id != stored.id
    assert sorted(c.type.value for c in await db.list_channels("user-1")) == ["instagram", "whatsapp"]
    instagram = await db.get_channel(stored.id)
    assert instagram is not None
    assert instagram.type == ChannelType.INSTAGRAM


@pytest.mark.asyncio
async def test_channel_lookups(db: Database) -> None:
    stored = await db.upsert_channel(_facebook(page_id="P9"))
    await db.upsert_channel(_facebook(owner_id="user-2", page_id="P3"))

    assert (await db.find_channel("user-1", ChannelType.FACEBOOK)).id == stored.id
    assert (await db.find_channel_by_resource(ChannelType.FACEBOOK, "P9")).id == stored.id
    assert await db.find_channel("user-1", ChannelType.INSTAGRAM) is None
    assert len(await db.list_channels()) == 2


@pytest.mark.asyncio
async def test_set_channel_connected(db: Database) -> None:
    stored = await db.upsert_channel(_facebook(is_connected=True))

    updated = await db.set_channel_connected(stored.id, False)

    assert updated is not None
    assert updated.is_connected is False
    assert await db.set_channel_connected("missing", True) is None


@pytest.mark.asyncio
async def test_expire_due_challenges_only_touches_overdue_pending(db: Database) -> None:
    channel = await db.upsert_channel(_facebook())
    overdue = await db.create_challenge(_challenge(channel.id, "IG-11111", ttl_s=60, age_s=120))
    fresh = await db.create_challenge(_challenge(channel.id, "IG-22222"))

    expired = await db.expire_due_challenges(utcnow())

    assert [c.id for c in expired] == [overdue.id]
    assert expired[0].status == ChallengeStatus.EXPIRED
    assert (await db.get_challenge(overdue.id)).status == ChallengeStatus.EXPIRED
    assert (await db.get_challenge(fresh.id)).status == ChallengeStatus.PENDING
    assert await db.find_pending_challenge_by_code("IG-11111") is None
    assert (await db.find_pending_challenge_by_code("IG-22222")).id == fresh.id


@pytest.mark.asyncio
async def test_expire_pending_challenges_for_channel(db: Database) -> None:
    channel = await db.upsert_channel(_facebook())
    await db.create_challenge(_challenge(channel.id, "IG-33333"))

    assert await db.expire_pending_challenges(channel.id, utcnow()) == 1
    assert await db.expire_pending_challenges(channel.id, utcnow()) == 0
    assert await db.list_pending_challenges() == []


@pytest.mark.asyncio
async def test_delete_expired_respects_retention(db: Database) -> None:
    channel = await db.upsert_channel(_facebook())
    finished = await db.create_challenge(_challenge(channel.id, "IG-44444", ttl_s=60, age_s=120))
    pending = await db.create_challenge(_challenge(channel.id, "IG-55555"))
    await db.expire_due_challenges(utcnow())

    assert await db.delete_expired_challenges(utcnow(), retention_s=3600) == 0
    assert await db.delete_expired_challenges(utcnow() + timedelta(hours=2), retention_s=3600) == 1
    assert await db.get_challenge(finished.id) is None
    assert await db.get_challenge(pending.id) is not None


@pytest.mark.asyncio
async def test_latest_challenge_round_trips_timestamps(db: Database) -> None:
    channel = await db.upsert_channel(_facebook())
    await db.create_challenge(_challenge(channel.id, "IG-66666", age_s=10))
    newest = await db.create_challenge(_challenge(channel.id, "IG-77777"))
    newest.observed_at = utcnow()
    await db.update_challenge(newest)

    latest = await db.latest_challenge(channel.id)

    assert latest is not None
    assert latest.id == newest.id
    assert latest.expires_at == newest.expires_at
    assert latest.observed_at == newest.observed_at
