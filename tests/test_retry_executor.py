from __future__ import annotations

import asyncio

import httpx
import pytest

from channelsync.config import RetryConfig
from channelsync.errors import TransientError
from channelsync.guard.retry import RetryExecutor


class _Recorder:
    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _responder(*statuses: int):
    calls: list[int] = []

    async def op() -> httpx.Response:
        status = statuses[min(len(calls), len(statuses) - 1)]
        calls.append(status)
        return httpx.Response(status, json={"status": status})

    return op, calls


@pytest.mark.asyncio
async def test_always_503_makes_max_attempts_with_exponential_backoff() -> None:
    recorder = _Recorder()
    retry = RetryExecutor(max_attempts=3, sleep=recorder.sleep)
    op, calls = _responder(503)

    with pytest.raises(TransientError) as exc_info:
        await retry.execute_with_retry(op)

    assert len(calls) == 3
    assert recorder.sleeps == [1.0, 2.0]
    assert exc_info.value.status_code == 503
    assert exc_info.value.attempts == 3


@pytest.mark.asyncio
async def test_401_is_returned_after_a_single_call() -> None:
    recorder = _Recorder()
    retry = RetryExecutor(max_attempts=3, sleep=recorder.sleep)
    op, calls = _responder(401)

    response = await retry.execute_with_retry(op)

    assert response.status_code == 401
    assert calls == [401]
    assert recorder.sleeps == []


@pytest.mark.asyncio
async def test_recovers_when_a_later_attempt_succeeds() -> None:
    recorder = _Recorder()
    retry = RetryExecutor(max_attempts=4, sleep=recorder.sleep)
    op, calls = _responder(502, 500, 200)

    response = await retry.execute_with_retry(op)

    assert response.status_code == 200
    assert calls == [502, 500, 200]
    assert recorder.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_network_errors_and_timeouts_are_retried() -> None:
    recorder = _Recorder()
    retry = RetryExecutor(max_attempts=3, sleep=recorder.sleep)
    attempts = 0

    async def op() -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise httpx.ConnectError("connection refused")
        if attempts == 2:
            await asyncio.sleep(1)
        return httpx.Response(200)

    response = await retry.execute_with_retry(op, timeout_per_attempt=0.05)

    assert response.status_code == 200
    assert attempts == 3
    assert recorder.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_network_errors_chain_the_cause() -> None:
    recorder = _Recorder()
    retry = RetryExecutor(max_attempts=2, sleep=recorder.sleep)

    async def op() -> httpx.Response:
        raise httpx.ReadTimeout("slow")

    with pytest.raises(TransientError) as exc_info:
        await retry.execute_with_retry(op, label="graph.exchange_code")

    assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)
    assert exc_info.value.status_code is None
    assert "graph.exchange_code" in str(exc_info.value)
    assert recorder.sleeps == [1.0]


def test_from_config_uses_configured_backoff() -> None:
    retry = RetryExecutor.from_config(RetryConfig(max_attempts=5, timeout_s=10, backoff_base_s=0.5))

    assert retry.max_attempts == 5
    assert retry.timeout_s == 10
    assert [retry.backoff_delay(n) for n in (1, 2, 3, 4)] == [0.5, 1.0, 2.0, 4.0]
