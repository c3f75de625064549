import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

from loguru import logger

from detention_pyutils.errors import CircuitOpenError


class CircuitStatus(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    """Failure tracking for one upstream."""

    status: CircuitStatus = CircuitStatus.CLOSED
    failure_count: int = 0
    success_count: int = 0
    next_retry_at: float = 0.0


class CircuitBreaker:
    """Per-upstream circuit breaker.

    CLOSED allows everything. ``failure_threshold`` consecutive failures open the
    circuit for ``reset_timeout`` seconds, during which calls are rejected without
    being attempted. The first call after the deadline runs HALF_OPEN;
    ``success_threshold`` consecutive successes close the circuit again and any
    failure reopens it with a fresh deadline.

    Args:
        failure_threshold: Consecutive failures that open a closed circuit
        success_threshold: Consecutive half-open successes that close it
        reset_timeout: Seconds an open circuit rejects calls
        clock: Monotonic time source
    """

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        success_threshold: int = 2,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._success_threshold = success_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._states: dict[str, CircuitState] = {}

    def _state(self, upstream: str) -> CircuitState:
        return self._states.setdefault(upstream, CircuitState())

    def status(self, upstream: str) -> CircuitStatus:
        """Current status, moving OPEN to HALF_OPEN once the deadline has passed."""
        state = self._state(upstream)
        if state.status is CircuitStatus.OPEN and self._clock() >= state.next_retry_at:
            state.status = CircuitStatus.HALF_OPEN
            state.success_count = 0
            logger.info(f"Circuit for '{upstream}' half-open, allowing trial call")
        return state.status

    def before_call(self, upstream: str) -> None:
        """Gate one attempt.

        Raises:
            CircuitOpenError: If the circuit is open; the rejection is not a failure.
        """
        if self.status(upstream) is CircuitStatus.OPEN:
            state = self._states[upstream]
            raise CircuitOpenError(
                upstream=upstream,
                failure_count=state.failure_count,
                retry_in=state.next_retry_at - self._clock(),
            )

    def record_success(self, upstream: str) -> None:
        state = self._state(upstream)
        if state.status is CircuitStatus.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self._success_threshold:
                logger.info(f"Circuit for '{upstream}' closed after {state.success_count} successes")
                self._states[upstream] = CircuitState()
            return
        state.failure_count = 0

    def record_failure(self, upstream: str) -> None:
        state = self._state(upstream)
        if state.status is CircuitStatus.HALF_OPEN:
            self._open(upstream, state)
            return
        state.failure_count += 1
        if state.status is CircuitStatus.CLOSED and state.failure_count >= self._failure_threshold:
            self._open(upstream, state)

    def _open(self, upstream: str, state: CircuitState) -> None:
        state.status = CircuitStatus.OPEN
        state.success_count = 0
        state.next_retry_at = self._clock() + self._reset_timeout
        logger.warning(
            f"Circuit for '{upstream}' opened after {state.failure_count} failures, "
            f"cooling down {self._reset_timeout:.0f}s"
        )

    def snapshot(self, upstream: str) -> CircuitState:
        """Copy of the tracked state for inspection."""
        state = self._state(upstream)
        return CircuitState(
            status=state.status,
            failure_count=state.failure_count,
            success_count=state.success_count,
            next_retry_at=state.next_retry_at,
        )

    def reset(self, upstream: str) -> None:
        self._states.pop(upstream, None)

    def reset_all(self) -> None:
        """Close every circuit."""
        if self._states:
            logger.info(f"Resetting {len(self._states)} circuit breakers")
        self._states.clear()
