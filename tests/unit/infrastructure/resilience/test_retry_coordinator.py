import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from quotasync.domain.events.sync_events import RemoteCallFailed, RetryScheduled
from quotasync.domain.models.config import RetryPolicy
from quotasync.domain.models.errors import (
    AuthError, CircuitOpenError, ExhaustedRetries, NetworkError, OperationCancelled,
    RateLimited, ValidationError,
)
from quotasync.infrastructure.resilience.circuit_breaker import CircuitBreaker
from quotasync.infrastructure.resilience.rate_limiter import RateLimiter
from quotasync.infrastructure.resilience.retry_coordinator import (
    FailureKind, RetryCoordinator, classify,
)

@pytest.fixture
def policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay_ms=1000, max_delay_ms=10000, jitter_ratio=0.0)

@pytest.fixture
def retry(policy, events, no_sleep) -> RetryCoordinator:
    return RetryCoordinator(policy=policy, events=events, sleep=no_sleep)

def test_classify():
    assert classify(NetworkError("down")) is FailureKind.RETRYABLE
    assert classify(RateLimited()) is FailureKind.RETRYABLE
    assert classify(ConnectionResetError()) is FailureKind.RETRYABLE
    assert classify(asyncio.TimeoutError()) is FailureKind.RETRYABLE
    assert classify(AuthError()) is FailureKind.FATAL
    assert classify(ValidationError("bad")) is FailureKind.FATAL
    assert classify(KeyError("x")) is FailureKind.UNKNOWN

def test_compute_delay_doubles_and_caps(retry: RetryCoordinator):
    delays = [retry.compute_delay(n) for n in range(1, 7)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

def test_succeeds_after_two_network_failures(retry, no_sleep):
    op = AsyncMock(side_effect=[NetworkError("drop"), NetworkError("drop"), "ok"])

    result = asyncio.run(retry.with_retry(op))

    assert result == "ok"
    assert op.await_count == 3
    assert no_sleep.delays == [1.0, 2.0]

def test_exhausted_retries_after_max_attempts(retry, no_sleep, recorded_events):
    op = AsyncMock(side_effect=NetworkError("down", status_code=503))

    with pytest.raises(ExhaustedRetries) as exc_info:
        asyncio.run(retry.with_retry(op, operation_name="submit"))

    assert op.await_count == 5
    assert exc_info.value.attempts == 5
    assert isinstance(exc_info.value.last_error, NetworkError)
    # No sleep after the final attempt
    assert len(no_sleep.delays) == 4
    assert len([e for e in recorded_events if isinstance(e, RetryScheduled)]) == 4
    failed = [e for e in recorded_events if isinstance(e, RemoteCallFailed)]
    assert len(failed) == 1 and failed[0].operation == "submit"

def test_jittered_delays_are_non_decreasing_and_capped(events, no_sleep):
    policy = RetryPolicy(max_attempts=8, base_delay_ms=1000, max_delay_ms=5000, jitter_ratio=0.5)
    retry = RetryCoordinator(policy=policy, events=events, sleep=no_sleep, rng=random.Random(7))
    op = AsyncMock(side_effect=TimeoutError())

    with pytest.raises(ExhaustedRetries):
        asyncio.run(retry.with_retry(op))

    assert op.await_count == 8
    assert no_sleep.delays == sorted(no_sleep.delays)
    assert max(no_sleep.delays) <= 5.0

@pytest.mark.parametrize("error", [AuthError("expired", status_code=401), ValidationError("bad", ["a"])])
def test_fatal_errors_surface_immediately(retry, no_sleep, error):
    op = AsyncMock(side_effect=error)

    with pytest.raises(type(error)):
        asyncio.run(retry.with_retry(op))

    assert op.await_count == 1
    assert no_sleep.delays == []

def test_unknown_errors_propagate_without_retry(retry):
    op = AsyncMock(side_effect=KeyError("programming error"))
    with pytest.raises(KeyError):
        asyncio.run(retry.with_retry(op))
    assert op.await_count == 1

def test_retry_after_hint_replaces_backoff(retry, no_sleep):
    op = AsyncMock(side_effect=[RateLimited(retry_after=7.5), "ok"])
    assert asyncio.run(retry.with_retry(op)) == "ok"
    assert no_sleep.delays == [7.5]

def test_cancel_before_first_attempt(retry):
    op = AsyncMock(return_value="ok")

    async def run():
        cancel = asyncio.Event()
        cancel.set()
        return await retry.with_retry(op, cancel_event=cancel)

    with pytest.raises(OperationCancelled):
        asyncio.run(run())
    op.assert_not_awaited()

def test_cancel_is_checked_between_attempts(policy, events):
    async def run():
        cancel = asyncio.Event()

        async def sleep_and_cancel(_delay):
            cancel.set()

        retry = RetryCoordinator(policy=policy, events=events, sleep=sleep_and_cancel)
        op = AsyncMock(side_effect=NetworkError("drop"))
        try:
            await retry.with_retry(op, cancel_event=cancel)
        finally:
            assert op.await_count == 1

    with pytest.raises(OperationCancelled):
        asyncio.run(run())

def test_open_circuit_fails_fast(policy, events, no_sleep):
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout=60.0, clock=lambda: 0.0)
    retry = RetryCoordinator(policy=policy, events=events, sleep=no_sleep, circuit_breaker=breaker)
    failing = AsyncMock(side_effect=NetworkError("down"))

    with pytest.raises(ExhaustedRetries) as first:
        asyncio.run(retry.with_retry(failing))
    # Opened after the second failed attempt
    assert failing.await_count == 2
    assert isinstance(first.value.last_error, CircuitOpenError)

    op = AsyncMock(return_value="ok")
    with pytest.raises(ExhaustedRetries):
        asyncio.run(retry.with_retry(op))
    op.assert_not_awaited()

def test_rate_limiter_is_awaited_before_each_attempt(policy, events, no_sleep, mocker):
    limiter = mocker.MagicMock()
    limiter.wait_for_permission = AsyncMock()
    retry = RetryCoordinator(policy=policy, events=events, sleep=no_sleep, rate_limiter=limiter)
    op = AsyncMock(side_effect=[NetworkError("drop"), "ok"])

    asyncio.run(retry.with_retry(op))

    assert limiter.wait_for_permission.await_count == 2

def test_cancel_interrupts_wait_for_write_budget(policy, events, no_sleep):
    limiter = RateLimiter(max_requests=1, time_window=3600.0)
    retry = RetryCoordinator(policy=policy, events=events, sleep=no_sleep, rate_limiter=limiter)
    op = AsyncMock(return_value="ok")

    async def run():
        await limiter.wait_for_permission()
        cancel = asyncio.Event()
        call = asyncio.ensure_future(retry.with_retry(op, operation_name="submit", cancel_event=cancel))
        for _ in range(3):
            await asyncio.sleep(0)
        assert not call.done()
        cancel.set()
        return await asyncio.wait_for(call, timeout=5)

    with pytest.raises(OperationCancelled):
        asyncio.run(run())
    op.assert_not_awaited()
