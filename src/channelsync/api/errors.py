"""Map channelsync errors to HTTP responses."""

from __future__ import annotations

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from channelsync.errors import (
    AuthError,
    ChannelNotFound,
    ChannelSyncError,
    NoResourcesFound,
    ProvisioningCancelled,
    RateLimited,
    TransientError,
    ValidationError,
)

logger = structlog.get_logger()

_STATUS: list[tuple[type[ChannelSyncError], int]] = [
    (ValidationError, 400),
    (AuthError, 400),
    (NoResourcesFound, 404),
    (ChannelNotFound, 404),
    (RateLimited, 429),
    (TransientError, 502),
    (ProvisioningCancelled, 409),
]


def status_for(exc: ChannelSyncError) -> int:
    for error_type, status in _STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


async def channelsync_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, ChannelSyncError)
    status = status_for(exc)
    body: dict[str, object] = {
        "error": type(exc).__name__,
        "detail": exc.user_message,
    }
    headers: dict[str, str] = {}
    if isinstance(exc, AuthError):
        body["provider"] = exc.provider
        body["provider_status"] = exc.status_code
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(max(1, round(exc.retry_after_s)))

    if status >= 500:
        logger.error("api.error", path=request.url.path, error_type=type(exc).__name__, error=str(exc))
    else:
        logger.info("api.error", path=request.url.path, status=status, error_type=type(exc).__name__)
    return JSONResponse(status_code=status, content=body, headers=headers)
