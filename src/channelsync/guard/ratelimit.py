"""Per-client fixed window rate limiter."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from channelsync.errors import RateLimited

logger = structlog.get_logger()

_PRUNE_AT = 4096


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allows at most ``max_requests`` per ``window_s`` for each client key."""

    def __init__(
        self,
        *,
        max_requests: int,
        window_s: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max(1, int(max_requests))
        self.window_s = float(window_s)
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def allow(self, client_key: str) -> bool:
        if len(self._windows) >= _PRUNE_AT:
            self.prune()
        now = self._clock()
        window = self._windows.get(client_key)
        if window is None or now >= window.reset_at:
            self._windows[client_key] = _Window(count=1, reset_at=now + self.window_s)
            return True
        if window.count >= self.max_requests:
            return False
        window.count += 1
        return True

    def check(self, client_key: str) -> None:
        """Raise ``RateLimited`` when the client is over its budget."""
        if self.allow(client_key):
            return
        window = self._windows[client_key]
        retry_after = max(0.0, window.reset_at - self._clock())
        logger.warning("guard.rate_limited", client_key=client_key, retry_after_s=round(retry_after, 1))
        raise RateLimited(client_key, retry_after)

    def prune(self) -> int:
        """Drop windows that already reset; returns how many were removed."""
        now = self._clock()
        stale = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in stale:
            del self._windows[key]
        return len(stale)
