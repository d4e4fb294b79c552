"""SQLite async database for channels and verification challenges.

Provides:
- Channel rows, one per (owner_id, type), upserted idempotently
- Verification challenges with expiry and retention cleanup
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from channelsync.channels.models import Channel, ChannelType, parse_channel_config, utcnow
from channelsync.verification.models import ChallengeStatus, VerificationChallenge

logger = structlog.get_logger()

SCHEMA = """
CREATE TABLE IF NOT EXISTS channels (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    type TEXT NOT NULL,
    resource_id TEXT,
    config TEXT NOT NULL,
    is_connected INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (owner_id, type)
);

CREATE TABLE IF NOT EXISTS verification_challenges (
    id TEXT PRIMARY KEY,
    channel_id TEXT NOT NULL,
    code TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    observed_at TEXT,
    completed_at TEXT,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (channel_id) REFERENCES channels(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_channels_resource ON channels(type, resource_id);
CREATE INDEX IF NOT EXISTS idx_challenges_channel ON verification_challenges(channel_id, created_at);
CREATE INDEX IF NOT EXISTS idx_challenges_status ON verification_challenges(status, expires_at);
"""


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_channel(row: dict[str, Any]) -> Channel:
    return Channel(
        id=row["id"],
        owner_id=row["owner_id"],
        type=ChannelType(row["type"]),
        config=parse_channel_config(row["config"]),
        is_connected=bool(row["is_connected"]),
        created_at=_dt(row["created_at"]),
        updated_at=_dt(row["updated_at"]),
    )


def _row_to_challenge(row: dict[str, Any]) -> VerificationChallenge:
    return VerificationChallenge(
        id=row["id"],
        channel_id=row["channel_id"],
        code=row["code"],
        status=ChallengeStatus(row["status"]),
        created_at=_dt(row["created_at"]),
        expires_at=_dt(row["expires_at"]),
        observed_at=_dt(row["observed_at"]),
        completed_at=_dt(row["completed_at"]),
    )


class Database:
    """Async SQLite database for channelsync."""

    def __init__(
        self,
        data_dir: str,
        journal_mode: str = "WAL",
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.db_path = self.data_dir / "channelsync.db"
        self.journal_mode = journal_mode.upper()
        if self.journal_mode not in {"WAL", "DELETE"}:
            raise ValueError(f"Unsupported SQLite journal mode: {journal_mode}")
        self.busy_timeout_ms = int(busy_timeout_ms)
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create the database and tables."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        self._conn.row_factory = aiosqlite.Row

        # WAL can be unavailable on network filesystems.
        try:
            await self._conn.execute(f"PRAGMA journal_mode={self.journal_mode}")
        except aiosqlite.OperationalError as exc:
            if self.journal_mode != "WAL":
                raise
            logger.warning("db.wal_unavailable_fallback", path=str(self.db_path), error=str(exc))
            await self._conn.execute("PRAGMA journal_mode=DELETE")

        await self._conn.execute(f"PRAGMA busy_timeout={self.busy_timeout_ms}")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()

        logger.info("db.initialized", path=str(self.db_path))

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("db.closed")

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        await self._conn.commit()
        return cursor

    async def fetch_one(self, sql: str, params: tuple = ()) -> dict[str, Any] | None:
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetch_all(self, sql: str, params: tuple = ()) -> list[dict[str, Any]]:
        assert self._conn, "Database not initialized"
        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ── Channels ────────────────────────────────────────────────────

    async def find_channel(self, owner_id: str, channel_type: ChannelType) -> Channel | None:
        row = await self.fetch_one(
            "SELECT * FROM channels WHERE owner_id = ? AND type = ?",
            (owner_id, channel_type.value),
        )
        return _row_to_channel(row) if row else None

    async def get_channel(self, channel_id: str) -> Channel | None:
        row = await self.fetch_one("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return _row_to_channel(row) if row else None

    async def find_channel_by_resource(self, channel_type: ChannelType, resource_id: str) -> Channel | None:
        """Most recently updated channel backed by a provider resource."""
        row = await self.fetch_one(
            """SELECT * FROM channels WHERE type = ? AND resource_id = ?
               ORDER BY updated_at DESC LIMIT 1""",
            (channel_type.value, resource_id),
        )
        return _row_to_channel(row) if row else None

    async def list_channels(self, owner_id: str | None = None) -> list[Channel]:
        if owner_id is None:
            rows = await self.fetch_all("SELECT * FROM channels ORDER BY owner_id, type")
        else:
            rows = await self.fetch_all(
                "SELECT * FROM channels WHERE owner_id = ? ORDER BY type",
                (owner_id,),
            )
        return [_row_to_channel(row) for row in rows]

    async def upsert_channel(self, channel: Channel) -> Channel:
        """Insert or update by (owner_id, type), falling back to (owner_id, type, resource_id).

        The stored row keeps its original id and created_at.
        """
        existing = await self.find_channel(channel.owner_id, channel.type)
        if existing is None and channel.resource_id:
            row = await self.fetch_one(
                "SELECT * FROM channels WHERE owner_id = ? AND type = ? AND resource_id = ?",
                (channel.owner_id, channel.type.value, channel.resource_id),
            )
            existing = _row_to_channel(row) if row else None

        now = utcnow()
        if existing is not None:
            stored = channel.model_copy(
                update={"id": existing.id, "created_at": existing.created_at, "updated_at": now}
            )
            await self.execute(
                """UPDATE channels
                   SET type = ?, resource_id = ?, config = ?, is_connected = ?, updated_at = ?
                   WHERE id = ?""",
                (
                    stored.type.value,
                    stored.resource_id,
                    stored.config.model_dump_json(),
                    1 if stored.is_connected else 0,
                    _ts(now),
                    stored.id,
                ),
            )
            logger.info("db.channel.updated", channel_id=stored.id, owner_id=stored.owner_id, type=stored.type.value)
            return stored

        await self.execute(
            """INSERT INTO channels
                   (id, owner_id, type, resource_id, config, is_connected, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(owner_id, type) DO UPDATE SET
                   resource_id = excluded.resource_id,
                   config = excluded.config,
                   is_connected = excluded.is_connected,
                   updated_at = excluded.updated_at""",
            (
                channel.id,
                channel.owner_id,
                channel.type.value,
                channel.resource_id,
                channel.config.model_dump_json(),
                1 if channel.is_connected else 0,
                _ts(channel.created_at),
                _ts(now),
            ),
        )
        stored = await self.find_channel(channel.owner_id, channel.type)
        assert stored is not None
        logger.info("db.channel.created", channel_id=stored.id, owner_id=stored.owner_id, type=stored.type.value)
        return stored

    async def set_channel_connected(self, channel_id: str, connected: bool) -> Channel | None:
        cursor = await self.execute(
            "UPDATE channels SET is_connected = ?, updated_at = ? WHERE id = ?",
            (1 if connected else 0, _ts(utcnow()), channel_id),
        )
        if cursor.rowcount == 0:
            return None
        return await self.get_channel(channel_id)

    # ── Verification challenges ─────────────────────────────────────

    async def create_challenge(self, challenge: VerificationChallenge) -> VerificationChallenge:
        await self.execute(
            """INSERT INTO verification_challenges
                   (id, channel_id, code, status, created_at, expires_at,
                    observed_at, completed_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                challenge.id,
                challenge.channel_id,
                challenge.code,
                challenge.status.value,
                _ts(challenge.created_at),
                _ts(challenge.expires_at),
                _ts(challenge.observed_at),
                _ts(challenge.completed_at),
                _ts(utcnow()),
            ),
        )
        return challenge

    async def get_challenge(self, challenge_id: str) -> VerificationChallenge | None:
        row = await self.fetch_one("SELECT * FROM verification_challenges WHERE id = ?", (challenge_id,))
        return _row_to_challenge(row) if row else None

    async def latest_challenge(self, channel_id: str) -> VerificationChallenge | None:
        row = await self.fetch_one(
            """SELECT * FROM verification_challenges WHERE channel_id = ?
               ORDER BY created_at DESC LIMIT 1""",
            (channel_id,),
        )
        return _row_to_challenge(row) if row else None

    async def find_pending_challenge_by_code(self, code: str) -> VerificationChallenge | None:
        row = await self.fetch_one(
            "SELECT * FROM verification_challenges WHERE code = ? AND status = ?",
            (code, ChallengeStatus.PENDING.value),
        )
        return _row_to_challenge(row) if row else None

    async def list_pending_challenges(self) -> list[VerificationChallenge]:
        rows = await self.fetch_all(
            "SELECT * FROM verification_challenges WHERE status = ? ORDER BY created_at",
            (ChallengeStatus.PENDING.value,),
        )
        return [_row_to_challenge(row) for row in rows]

    async def update_challenge(self, challenge: VerificationChallenge) -> None:
        await self.execute(
            """UPDATE verification_challenges
               SET status = ?, expires_at = ?, observed_at = ?, completed_at = ?, updated_at = ?
               WHERE id = ?""",
            (
                challenge.status.value,
                _ts(challenge.expires_at),
                _ts(challenge.observed_at),
                _ts(challenge.completed_at),
                _ts(utcnow()),
                challenge.id,
            ),
        )

    async def expire_pending_challenges(self, channel_id: str, now: datetime) -> int:
        """Expire every pending challenge of a channel. Returns the row count."""
        cursor = await self.execute(
            """UPDATE verification_challenges SET status = ?, updated_at = ?
               WHERE channel_id = ? AND status = ?""",
            (ChallengeStatus.EXPIRED.value, _ts(now), channel_id, ChallengeStatus.PENDING.value),
        )
        return cursor.rowcount

    async def expire_due_challenges(self, now: datetime) -> list[VerificationChallenge]:
        """Mark pending challenges past expires_at as expired and return them."""
        rows = await self.fetch_all(
            "SELECT * FROM verification_challenges WHERE status = ? AND expires_at <= ?",
            (ChallengeStatus.PENDING.value, _ts(now)),
        )
        if not rows:
            return []
        await self.execute(
            """UPDATE verification_challenges SET status = ?, updated_at = ?
               WHERE status = ? AND expires_at <= ?""",
            (ChallengeStatus.EXPIRED.value, _ts(now), ChallengeStatus.PENDING.value, _ts(now)),
        )
        expired = []
        for row in rows:
            challenge = _row_to_challenge(row)
            challenge.status = ChallengeStatus.EXPIRED
            expired.append(challenge)
        return expired

    async def delete_expired_challenges(self, now: datetime, retention_s: float = 0.0) -> int:
        """Delete finished (expired or completed) challenges older than the retention window."""
        cutoff = now - timedelta(seconds=retention_s)
        cursor = await self.execute(
            """DELETE FROM verification_challenges
               WHERE status != ? AND updated_at <= ?""",
            (ChallengeStatus.PENDING.value, _ts(cutoff)),
        )
        if cursor.rowcount:
            logger.info("db.challenges.purged", count=cursor.rowcount)
        return cursor.rowcount
