"""Challenge-response verification for Instagram accounts with an ambiguous identity.

The user sends a short code (``IG-12345``) to their own account. When the
webhook delivers that message, the recipient id it carries is the business
account id we could not resolve during provisioning.
"""

from __future__ import annotations

import asyncio
import re
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import structlog

from channelsync.channels.models import Channel, InstagramConfig, utcnow
from channelsync.config import VerificationConfig
from channelsync.db.gateway import PersistenceGateway
from channelsync.errors import ChannelNotFound, ChannelSyncError, ValidationError
from channelsync.guard.locks import KeyedLock
from channelsync.notifications.store import Notification, NotificationSink, NotificationType
from channelsync.verification.models import ChallengeStatus, VerificationChallenge
from channelsync.webhooks.meta import InboundMessage

logger = structlog.get_logger()


@dataclass
class _PollHandle:
    challenge_id: str
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task[None] | None = None


class VerificationChallengeService:
    """Generates codes, watches inbound messages and completes challenges.

    One poll loop runs per channel. Each loop re-checks the challenge every
    ``poll_interval_s`` or as soon as a matching message is observed, and
    gives up after ``poll_ceiling_s`` whatever the challenge's own expiry.
    A separate sweep expires overdue challenges and purges old ones.
    """

    def __init__(
        self,
        *,
        db: PersistenceGateway,
        config: VerificationConfig,
        notifications: NotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.db = db
        self.config = config
        self.notifications = notifications
        self._clock = clock
        self._monotonic = monotonic
        self._polls: dict[str, _PollHandle] = {}
        self._locks = KeyedLock()
        self._sweep_task: asyncio.Task[None] | None = None
        self._running = False
        self._code_pattern = re.compile(re.escape(config.code_prefix) + r"\d{5}", re.IGNORECASE)

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the expiry sweep and resume loops for challenges still pending."""
        if self._running:
            return
        self._running = True
        for challenge in await self.db.list_pending_challenges():
            await self._start_poll(challenge)
        self._sweep_task = asyncio.create_task(self._sweep_loop(), name="channelsync-verification-sweep")
        logger.info("verification.started", resumed=len(self._polls))

    async def stop(self) -> None:
        self._running = False
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
        self._sweep_task = None
        for channel_id in list(self._polls):
            await self._stop_poll(channel_id)

    def is_polling(self, channel_id: str) -> bool:
        handle = self._polls.get(channel_id)
        return bool(handle and handle.task and not handle.task.done())

    # ── Operations ──────────────────────────────────────────────────

    async def generate(self, channel_id: str) -> VerificationChallenge:
        channel = await self._instagram_channel(channel_id)
        if not channel.config.needs_verification:
            raise ValidationError(
                "Channel identity is already verified",
                user_message="This Instagram account does not need verification.",
            )

        async with self._locks.hold(channel_id):
            now = self._clock()
            await self._stop_poll(channel_id)
            await self.db.expire_pending_challenges(channel_id, now)

            challenge = VerificationChallenge(
                channel_id=channel_id,
                code=await self._unique_code(),
                created_at=now,
                expires_at=now + timedelta(seconds=self.config.code_ttl_s),
            )
            await self.db.create_challenge(challenge)
            await self._start_poll(challenge)

        logger.info("verification.generated", channel_id=channel_id, challenge_id=challenge.id)
        self._notify(
            NotificationType.VERIFICATION_NEEDED,
            channel,
            {"code": challenge.code, "expires_at": challenge.expires_at.isoformat()},
        )
        return challenge

    async def get(self, channel_id: str) -> VerificationChallenge | None:
        """Latest challenge for the channel, expired on the spot if overdue."""
        challenge = await self.db.latest_challenge(channel_id)
        if challenge is not None and challenge.is_due(self._clock()):
            await self._expire(challenge)
            await self._stop_poll(channel_id)
        return challenge

    async def cancel(self, channel_id: str) -> bool:
        """Stop polling and expire any pending challenge. Safe to call repeatedly."""
        async with self._locks.hold(channel_id):
            was_polling = self.is_polling(channel_id)
            await self._stop_poll(channel_id)
            expired = await self.db.expire_pending_challenges(channel_id, self._clock())
        if was_polling or expired:
            logger.info("verification.cancelled", channel_id=channel_id)
        return bool(was_polling or expired)

    async def observe_inbound(self, message: InboundMessage) -> VerificationChallenge | None:
        """Match an inbound message against pending codes and record what it proves."""
        if message.is_echo or not message.text:
            return None

        for match in self._code_pattern.finditer(message.text):
            code = match.group(0).upper()
            challenge = await self.db.find_pending_challenge_by_code(code)
            if challenge is None:
                continue

            now = self._clock()
            if challenge.is_due(now):
                await self._expire(challenge)
                continue

            channel = await self.db.get_channel(challenge.channel_id)
            if channel is None or not isinstance(channel.config, InstagramConfig):
                continue

            config = channel.config
            if message.resource_id and message.resource_id != config.instagram_user_id:
                config = config.model_copy(
                    update={"instagram_business_account_id": message.resource_id, "verified_at": now}
                )
                await self.db.upsert_channel(channel.model_copy(update={"config": config}))

            challenge.observed_at = now
            await self.db.update_challenge(challenge)
            logger.info(
                "verification.code_observed",
                channel_id=challenge.channel_id,
                challenge_id=challenge.id,
                identity_resolved=not config.needs_verification,
            )
            self._wake(challenge.channel_id)
            return challenge
        return None

    async def sweep(self) -> list[VerificationChallenge]:
        """Expire overdue pending challenges, stop their loops and purge old rows."""
        now = self._clock()
        expired = await self.db.expire_due_challenges(now)
        for challenge in expired:
            handle = self._polls.get(challenge.channel_id)
            if handle and handle.challenge_id == challenge.id:
                await self._stop_poll(challenge.channel_id)
            logger.info("verification.expired", channel_id=challenge.channel_id, challenge_id=challenge.id)
        await self.db.delete_expired_challenges(now, self.config.retention_s)
        return expired

    # ── Internals ───────────────────────────────────────────────────

    async def _instagram_channel(self, channel_id: str) -> Channel:
        channel = await self.db.get_channel(channel_id)
        if channel is None:
            raise ChannelNotFound(f"channel {channel_id} not found")
        if not isinstance(channel.config, InstagramConfig):
            raise ValidationError(
                f"channel {channel_id} is {channel.type.value}",
                user_message="Verification is only available for Instagram channels.",
            )
        return channel

    async def _unique_code(self) -> str:
        for _ in range(self.config.max_code_attempts):
            code = f"{self.config.code_prefix}{10000 + secrets.randbelow(90000)}".upper()
            if await self.db.find_pending_challenge_by_code(code) is None:
                return code
        raise ChannelSyncError("Failed to generate a unique verification code")

    async def _expire(self, challenge: VerificationChallenge) -> None:
        challenge.status = ChallengeStatus.EXPIRED
        await self.db.update_challenge(challenge)
        logger.info("verification.expired", channel_id=challenge.channel_id, challenge_id=challenge.id)

    async def _start_poll(self, challenge: VerificationChallenge) -> None:
        # At most one loop per channel.
        await self._stop_poll(challenge.channel_id)
        handle = _PollHandle(challenge_id=challenge.id)
        handle.task = asyncio.create_task(
            self._poll(challenge.channel_id, handle),
            name=f"channelsync-verification-{challenge.channel_id}",
        )
        self._polls[challenge.channel_id] = handle

    async def _stop_poll(self, channel_id: str) -> None:
        handle = self._polls.pop(channel_id, None)
        if handle is None or handle.task is None or handle.task is asyncio.current_task():
            return
        if not handle.task.done():
            handle.task.cancel()
            try:
                await handle.task
            except asyncio.CancelledError:
                pass

    def _wake(self, channel_id: str) -> None:
        handle = self._polls.get(channel_id)
        if handle:
            handle.wakeup.set()

    async def _poll(self, channel_id: str, handle: _PollHandle) -> None:
        deadline = self._monotonic() + self.config.poll_ceiling_s
        try:
            while True:
                try:
                    if await self._check(handle.challenge_id):
                        return
                except Exception as exc:
                    logger.warning("verification.poll_error", channel_id=channel_id, error=str(exc))

                remaining = deadline - self._monotonic()
                if remaining <= 0:
                    logger.warning("verification.poll_ceiling_reached", channel_id=channel_id)
                    return
                try:
                    await asyncio.wait_for(
                        handle.wakeup.wait(),
                        timeout=min(self.config.poll_interval_s, remaining),
                    )
                except TimeoutError:
                    pass
                handle.wakeup.clear()
        finally:
            if self._polls.get(channel_id) is handle:
                del self._polls[channel_id]

    async def _check(self, challenge_id: str) -> bool:
        """One poll tick. Returns True when the loop should stop."""
        challenge = await self.db.get_challenge(challenge_id)
        if challenge is None or not challenge.is_pending:
            return True

        now = self._clock()
        if challenge.is_due(now):
            await self._expire(challenge)
            return True

        channel = await self.db.get_channel(challenge.channel_id)
        if channel is None or not isinstance(channel.config, InstagramConfig):
            await self._expire(challenge)
            return True
        if channel.config.needs_verification or challenge.observed_at is None:
            return False

        challenge.status = ChallengeStatus.COMPLETED
        challenge.completed_at = now
        await self.db.update_challenge(challenge)
        logger.info("verification.completed", channel_id=channel.id, challenge_id=challenge.id)
        self._notify(
            NotificationType.VERIFICATION_COMPLETED,
            channel,
            {"instagram_business_account_id": channel.config.instagram_business_account_id},
        )
        return True

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep()
            except Exception as exc:
                logger.warning("verification.sweep_error", error=str(exc))
            await asyncio.sleep(self.config.sweep_interval_s)

    def _notify(self, kind: NotificationType, channel: Channel, payload: dict[str, str | None]) -> None:
        if self.notifications is None:
            return
        self.notifications.emit(
            Notification(type=kind, recipient=channel.owner_id, channel_id=channel.id, payload=payload)
        )
