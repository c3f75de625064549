import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Final, TypeVar

from loguru import logger
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from detention_pyutils.errors import (
    CircuitOpenError,
    ErrorCategory,
    RateLimitError,
    UpstreamTimeoutError,
    classify_error,
)
from src.detention_pipeline.resilience.circuit_breaker import CircuitBreaker

T = TypeVar("T")

DEFAULT_TIMEOUT: Final[float] = 30.0
DEFAULT_MAX_ATTEMPTS: Final[int] = 3

# Categories that say the upstream itself is unhealthy; the rest prove it answered.
_BREAKER_FAILURES: Final[frozenset[ErrorCategory]] = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.TIMEOUT,
        ErrorCategory.RATE_LIMIT,
        ErrorCategory.PARSE,
    }
)


class BackoffWait(wait_base):
    """Exponential backoff with jitter, capped, and stretched for rate limits.

    Args:
        base_delay: Delay before the first retry
        max_delay: Cap on the exponential component
        jitter: Upper bound of the uniform random addition
        rate_limit_multiplier: Extra factor applied after a rate-limit error
        rng: Source of uniform [0, 1) values
    """

    def __init__(
        self,
        *,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        rate_limit_multiplier: float = 3.0,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.rate_limit_multiplier = rate_limit_multiplier
        self._rng = rng

    def delay_for(self, *, attempt: int, error: BaseException | None) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        delay = min(self.max_delay, self.base_delay * 2 ** (attempt - 1))
        if error is not None and classify_error(error) is ErrorCategory.RATE_LIMIT:
            delay *= self.rate_limit_multiplier
            if isinstance(error, RateLimitError) and error.retry_after:
                delay = max(delay, error.retry_after)
        return delay + self._rng() * self.jitter

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        return self.delay_for(attempt=retry_state.attempt_number, error=error)


class RetryingClient:
    """Runs upstream calls with a hard timeout, circuit breaking and backoff.

    Whether an error is worth retrying is the caller's decision, passed as
    ``retry_if``; without it each call gets exactly one attempt.

    Args:
        breaker: Circuit breaker consulted before every attempt
        timeout: Hard deadline per attempt in seconds
        max_attempts: Attempt bound when retrying
        wait: Backoff strategy between attempts
        sleep: Coroutine used for backoff delays
    """

    def __init__(
        self,
        *,
        breaker: CircuitBreaker,
        timeout: float = DEFAULT_TIMEOUT,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait: BackoffWait | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._breaker = breaker
        self._timeout = timeout
        self._max_attempts = max(1, max_attempts)
        self._wait = wait or BackoffWait()
        self._sleep = sleep

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    async def call(
        self,
        upstream: str,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_if: Callable[[BaseException], bool] | None = None,
    ) -> T:
        """Call an upstream operation.

        Args:
            upstream: Name used for circuit breaking and logs
            operation: Zero-argument coroutine factory making one attempt
            retry_if: Retry policy; None means a single attempt

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: Immediately, without consuming an attempt
            UpstreamTimeoutError: If the last attempt hit the deadline
        """
        attempts = self._max_attempts if retry_if is not None else 1

        def _should_retry(error: BaseException) -> bool:
            if isinstance(error, CircuitOpenError) or retry_if is None:
                return False
            return retry_if(error)

        def _log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.warning(
                f"Call to '{upstream}' failed (attempt {retry_state.attempt_number}/{attempts}): "
                f"{type(error).__name__}; retrying in {delay:.1f}s"
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=self._wait,
            retry=retry_if_exception(_should_retry),
            before_sleep=_log_retry,
            sleep=self._sleep,
            reraise=True,
        ):
            with attempt:
                return await self._attempt(upstream=upstream, operation=operation)
        raise AssertionError("unreachable: AsyncRetrying reraises the last error")

    async def _attempt(self, *, upstream: str, operation: Callable[[], Awaitable[T]]) -> T:
        self._breaker.before_call(upstream)
        try:
            result = await asyncio.wait_for(operation(), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            self._breaker.record_failure(upstream)
            raise UpstreamTimeoutError(upstream=upstream, timeout_seconds=self._timeout) from e
        except Exception as e:
            if classify_error(e) in _BREAKER_FAILURES:
                self._breaker.record_failure(upstream)
            else:
                self._breaker.record_success(upstream)
            raise
        self._breaker.record_success(upstream)
        return result
