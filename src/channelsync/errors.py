"""Error taxonomy for provisioning, verification and sync."""

from __future__ import annotations


class ChannelSyncError(Exception):
    """Base class for all channelsync errors."""

    user_message = "Something went wrong while connecting the channel."

    def __init__(self, message: str = "", *, user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(ChannelSyncError):
    """Bad, expired or structurally invalid input. Terminal, never retried."""

    user_message = "The connection request is invalid or has expired. Please start again."


class AuthError(ChannelSyncError):
    """The provider answered with a 4xx. Terminal, never retried."""

    user_message = "The provider rejected the request."

    def __init__(self, status_code: int, provider_message: str, *, provider: str = "") -> None:
        self.status_code = status_code
        self.provider_message = provider_message
        self.provider = provider
        super().__init__(
            f"{provider or 'provider'} returned HTTP {status_code}: {provider_message}",
            user_message=provider_message or self.user_message,
        )


class TransientError(ChannelSyncError):
    """Network failure, timeout or 5xx that persisted through all retries."""

    user_message = "The provider is temporarily unavailable. Please try again in a few minutes."

    def __init__(self, message: str = "", *, status_code: int | None = None, attempts: int = 0) -> None:
        self.status_code = status_code
        self.attempts = attempts
        super().__init__(message)


class NoResourcesFound(ChannelSyncError):
    """Discovery succeeded but returned nothing connectable."""

    user_message = "No connectable accounts were found for this login."

    def __init__(self, provider: str, message: str = "") -> None:
        self.provider = provider
        super().__init__(message or f"{provider}: no resources found")


class RateLimited(ChannelSyncError):
    """Too many requests from one client in the current window."""

    user_message = "Rate limit exceeded. Try again later."

    def __init__(self, client_key: str, retry_after_s: float) -> None:
        self.client_key = client_key
        self.retry_after_s = retry_after_s
        super().__init__(f"rate limit exceeded for {client_key}")


class ProvisioningCancelled(ChannelSyncError):
    """The caller cancelled a provisioning run."""

    user_message = "The connection was cancelled."


class ChannelNotFound(ChannelSyncError):
    """No channel matches the requested id."""

    user_message = "Channel not found."
