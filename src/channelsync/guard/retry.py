"""Time-boxed exponential backoff retry for provider calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx
import structlog

from channelsync.config import RetryConfig
from channelsync.errors import TransientError

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]
RequestOp = Callable[[], Awaitable[httpx.Response]]


class RetryExecutor:
    """Runs an HTTP operation, retrying only transient failures.

    A response below 500 (success or 4xx) is returned as-is on the first
    attempt that produces it. 5xx responses, transport errors and attempts
    that exceed ``timeout_s`` are retried with ``backoff_base_s * 2^(n-1)``
    seconds between attempts. When every attempt failed, ``TransientError``
    is raised with the last failure attached as ``__cause__``.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        timeout_s: float = 30.0,
        backoff_base_s: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.timeout_s = float(timeout_s)
        self.backoff_base_s = float(backoff_base_s)
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RetryConfig, *, sleep: Sleep = asyncio.sleep) -> RetryExecutor:
        return cls(
            max_attempts=config.max_attempts,
            timeout_s=config.timeout_s,
            backoff_base_s=config.backoff_base_s,
            sleep=sleep,
        )

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_s * (2 ** (attempt - 1))

    async def execute_with_retry(
        self,
        op: RequestOp,
        *,
        max_attempts: int | None = None,
        timeout_per_attempt: float | None = None,
        label: str = "request",
    ) -> httpx.Response:
        attempts = max(1, int(max_attempts or self.max_attempts))
        timeout = float(timeout_per_attempt or self.timeout_s)

        last_exc: Exception | None = None
        last_status: int | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = await asyncio.wait_for(op(), timeout=timeout)
            except TimeoutError as exc:
                last_exc, last_status = exc, None
                reason = "timeout"
            except httpx.TransportError as exc:
                last_exc, last_status = exc, None
                reason = f"network:{type(exc).__name__}"
            else:
                if response.status_code < 500:
                    return response
                last_exc, last_status = None, response.status_code
                reason = f"http_{response.status_code}"

            logger.warning(
                "guard.retry.attempt_failed",
                label=label,
                attempt=attempt,
                max_attempts=attempts,
                reason=reason,
            )
            if attempt < attempts:
                await self._sleep(self.backoff_delay(attempt))

        message = f"{label} failed after {attempts} attempts"
        if last_status is not None:
            message += f" (last status {last_status})"
        elif last_exc is not None:
            message += f" ({type(last_exc).__name__}: {last_exc})"
        raise TransientError(message, status_code=last_status, attempts=attempts) from last_exc
