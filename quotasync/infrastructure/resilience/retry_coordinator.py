"""Service for executing remote operations with automatic retries.

Implements bounded exponential backoff with jitter for transient failures
(network drops, 5xx responses, rate limiting) and surfaces fatal failures
(authentication, validation) immediately. Shared by every component that
talks to the remote store; nothing else re-implements backoff.
"""

import asyncio
import enum
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from quotasync.domain.events.dispatcher import EventDispatcher
from quotasync.domain.events.sync_events import RemoteCallFailed, RetryScheduled
from quotasync.domain.models.config import RetryPolicy
from quotasync.domain.models.errors import (
    CircuitOpenError, ExhaustedRetries, OperationCancelled, QuotaSyncError, RateLimited,
)
from quotasync.infrastructure.resilience.circuit_breaker import CircuitBreaker
from quotasync.infrastructure.resilience.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Builtin exceptions treated as transient transport failures
TRANSIENT_EXCEPTIONS = (ConnectionError, TimeoutError, asyncio.TimeoutError)

class FailureKind(str, enum.Enum):
    RETRYABLE = "retryable"
    FATAL = "fatal"
    UNKNOWN = "unknown"

def classify(error: BaseException) -> FailureKind:
    """Classifies a failure raised by a remote operation."""
    if isinstance(error, QuotaSyncError):
        return FailureKind.RETRYABLE if error.retryable else FailureKind.FATAL
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return FailureKind.RETRYABLE
    return FailureKind.UNKNOWN

class RetryCoordinator:
    """Runs remote operations under a bounded retry policy."""

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        rate_limiter: Optional[RateLimiter] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        events: Optional[EventDispatcher] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """Initializes the RetryCoordinator.

        Args:
            policy: Default policy used when `with_retry` is not given one.
            rate_limiter: Optional client-side throttle awaited before each attempt.
            circuit_breaker: Optional breaker consulted before each attempt.
            events: Optional dispatcher for RetryScheduled/RemoteCallFailed events.
            sleep: Coroutine used to wait between attempts (injectable for tests).
            rng: Random source for jitter (injectable for tests).
        """
        self.policy = policy or RetryPolicy()
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.events = events
        self._sleep = sleep
        self._rng = rng or random.Random()

        logger.debug(
            f"RetryCoordinator initialized: max_attempts={self.policy.max_attempts}, "
            f"base={self.policy.base_delay_ms}ms, max={self.policy.max_delay_ms}ms, "
            f"jitter={self.policy.jitter_ratio}"
        )

    def _publish(self, event) -> None:
        if self.events:
            self.events.publish(event)

    def compute_delay(self, attempt: int, policy: Optional[RetryPolicy] = None) -> float:
        """Backoff in seconds after failed attempt `attempt` (1-based).

        min(max_delay, base_delay * 2^(attempt-1)) * (1 +/- jitter_ratio)
        """
        policy = policy or self.policy
        base_ms = min(policy.max_delay_ms, policy.base_delay_ms * (2 ** (attempt - 1)))
        jitter = self._rng.uniform(-policy.jitter_ratio, policy.jitter_ratio) if policy.jitter_ratio else 0.0
        return base_ms * (1.0 + jitter) / 1000.0

    @staticmethod
    def _check_cancelled(cancel_event: Optional[asyncio.Event], name: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            logger.info(f"Operation '{name}' cancelled between attempts.")
            raise OperationCancelled(f"Operation '{name}' was cancelled")

    async def _wait_for_write_budget(self, cancel_event: Optional[asyncio.Event], name: str) -> None:
        """Waits for the rate limiter, giving up early if `cancel_event` is set."""
        if cancel_event is None:
            await self.rate_limiter.wait_for_permission()
            return
        permission = asyncio.ensure_future(self.rate_limiter.wait_for_permission())
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({permission, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (permission, cancelled):
                if not task.done():
                    task.cancel()
        if permission.done() and not permission.cancelled():
            permission.result()
        self._check_cancelled(cancel_event, name)

    async def with_retry(
        self,
        op: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        *,
        operation_name: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> T:
        """Executes an async operation with retries.

        Args:
            op: Zero-argument coroutine function performing the remote call.
            policy: Retry policy (defaults to the coordinator's policy).
            operation_name: Name used in logs and events.
            cancel_event: Cooperative cancellation flag, checked between attempts.

        Returns:
            The operation's result.

        Raises:
            ExhaustedRetries: After `max_attempts` retryable failures, or when
                the circuit breaker is open.
            OperationCancelled: If `cancel_event` was set between attempts.
            AuthError, ValidationError: Fatal failures, raised on first occurrence.
        """
        policy = policy or self.policy
        name = operation_name or getattr(op, "__name__", "remote_call")
        last_error: Optional[Exception] = None
        previous_delay = 0.0
        max_delay = policy.max_delay_ms / 1000.0
        attempt = 0

        while attempt < policy.max_attempts:
            self._check_cancelled(cancel_event, name)

            if self.circuit_breaker and not self.circuit_breaker.allow_request():
                open_error = CircuitOpenError(self.circuit_breaker.retry_in())
                logger.warning(f"Skipping '{name}': {open_error}")
                self._publish(RemoteCallFailed(operation=name, error_type=type(open_error).__name__,
                                               error_message=str(open_error), attempts=attempt))
                raise ExhaustedRetries(open_error, attempt)

            if self.rate_limiter:
                await self._wait_for_write_budget(cancel_event, name)

            attempt += 1
            try:
                result = await op()
            except Exception as e:
                kind = classify(e)
                if kind is FailureKind.UNKNOWN:
                    logger.error(f"Unexpected error in '{name}' on attempt {attempt}: {e}", exc_info=True)
                    raise
                if kind is FailureKind.FATAL:
                    logger.error(f"Non-retryable error in '{name}' on attempt {attempt}: {type(e).__name__}: {e}")
                    self._publish(RemoteCallFailed(operation=name, error_type=type(e).__name__,
                                                   error_message=str(e), attempts=attempt))
                    raise

                last_error = e
                if self.circuit_breaker:
                    self.circuit_breaker.record_failure()
                if attempt >= policy.max_attempts:
                    break

                if isinstance(e, RateLimited) and e.retry_after is not None:
                    # Server hint replaces computed backoff
                    delay = max(0.0, float(e.retry_after))
                else:
                    delay = min(max_delay, max(previous_delay, self.compute_delay(attempt, policy)))
                    previous_delay = delay

                logger.warning(
                    f"Retryable error in '{name}' on attempt {attempt}/{policy.max_attempts}: "
                    f"{type(e).__name__}: {e}. Waiting {delay:.2f}s..."
                )
                self._publish(RetryScheduled(operation=name, attempt_number=attempt,
                                             delay_seconds=delay, error_type=type(e).__name__))
                await self._sleep(delay)
            else:
                if self.circuit_breaker:
                    self.circuit_breaker.record_success()
                if attempt > 1:
                    logger.info(f"'{name}' succeeded on attempt {attempt}.")
                return result

        final_error = last_error or RuntimeError(f"'{name}' made no attempts")
        logger.error(f"Max attempts ({policy.max_attempts}) reached for '{name}'. Last error: {final_error}")
        self._publish(RemoteCallFailed(operation=name, error_type=type(final_error).__name__,
                                       error_message=str(final_error), attempts=attempt))
        raise ExhaustedRetries(final_error, attempt)
