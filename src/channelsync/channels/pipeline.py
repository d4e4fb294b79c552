"""Channel provisioning: turn an OAuth code into a persisted, working channel.

One run walks a fixed sequence of stages::

    VALIDATING_STATE -> EXCHANGING_TOKEN -> DISCOVERING_RESOURCES
        -> REGISTERING -> SUBSCRIBING_WEBHOOK -> PERSISTING -> DONE

Any stage may end the run in FAILED. Nothing is written before PERSISTING,
except when a run is cancelled after a resource was discovered: the partial
config is then stored disconnected so the next attempt has something to
update. A channel that is already connected is never downgraded by a
cancelled run.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

import structlog

from channelsync.channels.models import Channel, ChannelType, InstagramConfig, utcnow
from channelsync.channels.state import ProvisioningState, validate_state
from channelsync.config import ProvisioningConfig
from channelsync.db.gateway import PersistenceGateway
from channelsync.errors import (
    AuthError,
    ChannelNotFound,
    ChannelSyncError,
    NoResourcesFound,
    ProvisioningCancelled,
    TransientError,
    ValidationError,
)
from channelsync.guard.locks import KeyedLock
from channelsync.notifications.store import Notification, NotificationSink, NotificationType
from channelsync.providers.base import ChannelClient, ProviderResource, ProviderToken

logger = structlog.get_logger()


class ProvisioningStage(StrEnum):
    VALIDATING_STATE = "validating_state"
    EXCHANGING_TOKEN = "exchanging_token"
    DISCOVERING_RESOURCES = "discovering_resources"
    REGISTERING = "registering"
    SUBSCRIBING_WEBHOOK = "subscribing_webhook"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ProvisioningResult:
    channel: Channel
    stage: ProvisioningStage
    history: list[ProvisioningStage] = field(default_factory=list)
    short_circuited: bool = False

    @property
    def warnings(self) -> list[str]:
        return self.channel.config.warnings()


class CancelToken:
    """Cooperative cancellation flag checked between external calls."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "") -> None:
        self._cancelled = True
        self.reason = reason

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ProvisioningCancelled(self.reason or "provisioning cancelled")


class ChannelProvisioningPipeline:
    """Runs provisioning for every channel type through one client per type."""

    def __init__(
        self,
        *,
        db: PersistenceGateway,
        clients: dict[ChannelType, ChannelClient],
        config: ProvisioningConfig,
        notifications: NotificationSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.clients = clients
        self.config = config
        self.notifications = notifications
        self._clock = clock
        self._locks = KeyedLock()

    def client_for(self, channel_type: ChannelType) -> ChannelClient:
        client = self.clients.get(channel_type)
        if client is None:
            raise ValidationError(f"Unsupported channel type: {channel_type}")
        return client

    def authorize(self, channel_type: ChannelType, owner_id: str, *, source: str = "dashboard") -> dict[str, str | None]:
        """Issue a fresh state and the provider consent URL (None for redirect-less providers)."""
        client = self.client_for(channel_type)
        state = ProvisioningState.issue(owner_id, source=source, now=self._clock()).encode()
        return {"channel_type": channel_type.value, "state": state, "url": client.authorize_url(state)}

    async def run(
        self,
        channel_type: ChannelType,
        code: str,
        state: str,
        *,
        cancel: CancelToken | None = None,
    ) -> ProvisioningResult:
        cancel = cancel or CancelToken()
        history: list[ProvisioningStage] = []
        log = logger.bind(channel_type=channel_type.value)

        def enter(stage: ProvisioningStage) -> None:
            history.append(stage)
            log.info("provisioning.stage.started", stage=stage.value)

        try:
            enter(ProvisioningStage.VALIDATING_STATE)
            parsed = validate_state(
                state,
                ttl_s=self.config.state_ttl_s,
                skew_s=self.config.state_clock_skew_s,
                now=self._clock(),
            )
            client = self.client_for(channel_type)
            if not (code or "").strip() and not client.allocates_resources:
                raise ValidationError("Missing authorization code")
            log = log.bind(owner_id=parsed.owner_id, provider=client.name)

            async with self._locks.hold(f"{parsed.owner_id}:{channel_type.value}"):
                if client.allocates_resources:
                    existing = await self.db.find_channel(parsed.owner_id, channel_type)
                    if existing is not None and existing.is_connected:
                        history.append(ProvisioningStage.DONE)
                        log.info("provisioning.short_circuited", channel_id=existing.id)
                        return ProvisioningResult(
                            channel=existing,
                            stage=ProvisioningStage.DONE,
                            history=history,
                            short_circuited=True,
                        )

                result = await self._provision(client, parsed, code, cancel, enter)
        except ChannelSyncError as exc:
            failed_at = history[-1] if history else ProvisioningStage.VALIDATING_STATE
            history.append(ProvisioningStage.FAILED)
            log.warning(
                "provisioning.failed",
                stage=failed_at.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        result.history = history
        log.info(
            "provisioning.completed",
            channel_id=result.channel.id,
            warnings=result.warnings,
        )
        return result

    async def _provision(
        self,
        client: ChannelClient,
        state: ProvisioningState,
        code: str,
        cancel: CancelToken,
        enter: Callable[[ProvisioningStage], None],
    ) -> ProvisioningResult:
        cancel.raise_if_cancelled()
        enter(ProvisioningStage.EXCHANGING_TOKEN)
        token = await client.exchange_code(code)

        cancel.raise_if_cancelled()
        enter(ProvisioningStage.DISCOVERING_RESOURCES)
        resources = await client.discover_resources(token)
        if not resources:
            raise NoResourcesFound(client.name)
        # Deterministic pick; the rest is kept for audit.
        resource = resources[0]

        registered = False
        webhook_configured = False
        try:
            cancel.raise_if_cancelled()
            enter(ProvisioningStage.REGISTERING)
            registered = await self._best_effort(
                "register", client, lambda: client.register_resource(resource, token)
            )

            cancel.raise_if_cancelled()
            enter(ProvisioningStage.SUBSCRIBING_WEBHOOK)
            webhook_configured = await self._best_effort(
                "subscribe_webhook", client, lambda: client.subscribe_webhook(resource, token)
            )

            cancel.raise_if_cancelled()
        except ProvisioningCancelled:
            await self._persist_cancelled(
                client, state, token, resource, resources, registered, webhook_configured
            )
            raise

        enter(ProvisioningStage.PERSISTING)
        channel = await self._persist(
            client, state, token, resource, resources, registered, webhook_configured, connected=True
        )
        if isinstance(channel.config, InstagramConfig) and channel.config.needs_verification:
            self._notify_verification_needed(channel)

        return ProvisioningResult(channel=channel, stage=ProvisioningStage.DONE)

    async def _best_effort(
        self,
        step: str,
        client: ChannelClient,
        call: Callable[[], Awaitable[bool]],
    ) -> bool:
        try:
            return bool(await call())
        except (AuthError, TransientError) as exc:
            logger.warning(
                "provisioning.step_degraded",
                step=step,
                provider=client.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False

    async def _persist(
        self,
        client: ChannelClient,
        state: ProvisioningState,
        token: ProviderToken,
        resource: ProviderResource,
        available: list[ProviderResource],
        registered: bool,
        webhook_configured: bool,
        *,
        connected: bool,
    ) -> Channel:
        config = client.build_config(
            token=token,
            resource=resource,
            available=available,
            registered=registered,
            webhook_configured=webhook_configured,
        )
        return await self.db.upsert_channel(
            Channel(
                owner_id=state.owner_id,
                type=client.channel_type,
                config=config,
                is_connected=connected,
            )
        )

    async def _persist_cancelled(
        self,
        client: ChannelClient,
        state: ProvisioningState,
        token: ProviderToken,
        resource: ProviderResource,
        available: list[ProviderResource],
        registered: bool,
        webhook_configured: bool,
    ) -> None:
        """Keep what a cancelled run learned without breaking a working channel.

        A connected channel for the same resource only gains the flags this
        run confirmed; a connected channel for another resource is left
        alone. With no connected channel the partial config is stored
        disconnected.
        """
        existing = await self.db.find_channel(state.owner_id, client.channel_type)
        if existing is None or not existing.is_connected:
            partial = await self._persist(
                client, state, token, resource, available, registered, webhook_configured, connected=False
            )
            logger.warning("provisioning.cancelled_partial_saved", channel_id=partial.id, owner_id=state.owner_id)
            return

        learned: dict[str, bool] = {}
        if existing.resource_id == resource.id:
            if webhook_configured:
                learned["webhook_configured"] = True
            if registered and "phone_registered" in type(existing.config).model_fields:
                learned["phone_registered"] = True
        if learned:
            config = existing.config.model_copy(update=learned)
            await self.db.upsert_channel(existing.model_copy(update={"config": config}))
        logger.warning(
            "provisioning.cancelled_existing_kept",
            channel_id=existing.id,
            owner_id=state.owner_id,
            merged=sorted(learned),
        )

    def _notify_verification_needed(self, channel: Channel) -> None:
        if self.notifications is None:
            return
        self.notifications.emit(
            Notification(
                type=NotificationType.VERIFICATION_NEEDED,
                recipient=channel.owner_id,
                channel_id=channel.id,
                payload={"channel_type": channel.type.value, "reason": "ambiguous_account_identity"},
            )
        )

    async def disconnect(self, channel_id: str) -> Channel:
        """Mark the channel disconnected, releasing any allocated provider resource first.

        A failed release is logged and does not block the disconnect.
        """
        channel = await self.db.get_channel(channel_id)
        if channel is None:
            raise ChannelNotFound(f"channel {channel_id} not found")

        released = False
        client = self.clients.get(channel.type)
        if client is not None and channel.is_connected:
            released = await self._best_effort(
                "release_resource", client, lambda: client.release_resource(channel.config)
            )

        updated = await self.db.set_channel_connected(channel_id, False)
        if updated is None:
            raise ChannelNotFound(f"channel {channel_id} not found")
        logger.info(
            "provisioning.disconnected",
            channel_id=channel_id,
            owner_id=updated.owner_id,
            resource_released=released,
        )
        return updated
