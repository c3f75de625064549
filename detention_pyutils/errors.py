import asyncio
from enum import StrEnum
from typing import Final

import aiohttp
import orjson
import pydantic


class ErrorCategory(StrEnum):
    """Classification used for retry policy and user-facing messages."""

    NETWORK = "network"
    AUTH = "auth"
    VALIDATION = "validation"
    BUSINESS = "business"
    TIMEOUT = "timeout"
    PARSE = "parse"
    RATE_LIMIT = "rate_limit"
    CIRCUIT_OPEN = "circuit_open"
    CONFIG = "config"


RETRYABLE_CATEGORIES: Final[frozenset[ErrorCategory]] = frozenset(
    {ErrorCategory.NETWORK, ErrorCategory.TIMEOUT, ErrorCategory.RATE_LIMIT}
)

_USER_MESSAGES: Final[dict[ErrorCategory, str]] = {
    ErrorCategory.NETWORK: "Could not reach the order service. Try again shortly.",
    ErrorCategory.AUTH: "Your session has expired. Sign in again and retry.",
    ErrorCategory.VALIDATION: "The order data did not pass validation.",
    ErrorCategory.BUSINESS: "The order could not be updated in its current state.",
    ErrorCategory.TIMEOUT: "The order service took too long to respond.",
    ErrorCategory.PARSE: "The order service returned data that could not be read.",
    ErrorCategory.RATE_LIMIT: "Too many requests were sent. The batch slowed down and retried.",
    ErrorCategory.CIRCUIT_OPEN: "The order service is temporarily unavailable. Skipped for now.",
    ErrorCategory.CONFIG: "The shipper's contract configuration is missing or incomplete.",
}


class DetentionError(Exception):
    """Root class for all distinguished errors raised by the detention engine.

    Args:
        msg: Error message
        retryable: Whether the operation that caused this error can be retried
    """

    category: ErrorCategory = ErrorCategory.BUSINESS

    def __init__(self, *, msg: str, retryable: bool = False) -> None:
        super().__init__(msg)
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        """Whether this error indicates a retryable operation."""
        return self._retryable


# Transport errors
class NetworkError(DetentionError):
    """Connection-level failure talking to an upstream.

    Args:
        upstream: Name of the upstream service
        error_details: Additional error information
    """

    category = ErrorCategory.NETWORK

    def __init__(self, *, upstream: str, error_details: str) -> None:
        super().__init__(msg=f"Network failure calling '{upstream}': {error_details}", retryable=True)
        self.upstream = upstream


class UpstreamTimeoutError(DetentionError):
    """Error when a single upstream attempt exceeds its hard deadline.

    Args:
        upstream: Name of the upstream service
        timeout_seconds: The timeout value that was exceeded
    """

    category = ErrorCategory.TIMEOUT

    def __init__(self, *, upstream: str, timeout_seconds: float) -> None:
        super().__init__(
            msg=f"Call to '{upstream}' timed out after {timeout_seconds:.1f}s", retryable=True
        )
        self.upstream = upstream
        self.timeout_seconds = timeout_seconds


class RateLimitError(DetentionError):
    """Error when an upstream signals that the request rate is too high.

    Args:
        upstream: Name of the rate-limited service
        retry_after: Seconds the upstream asked us to wait, if provided
    """

    category = ErrorCategory.RATE_LIMIT

    def __init__(self, *, upstream: str, retry_after: float | None = None) -> None:
        msg = f"Rate limit exceeded for '{upstream}'"
        if retry_after is not None:
            msg += f". Retry after: {retry_after:.1f}s"
        super().__init__(msg=msg, retryable=True)
        self.upstream = upstream
        self.retry_after = retry_after


class CircuitOpenError(DetentionError):
    """Error when the circuit breaker for an upstream is OPEN.

    Args:
        upstream: Name of the protected service
        failure_count: Consecutive failures that opened the circuit
        retry_in: Seconds until the circuit allows a trial call
    """

    category = ErrorCategory.CIRCUIT_OPEN

    def __init__(self, *, upstream: str, failure_count: int, retry_in: float) -> None:
        msg = (
            f"Circuit breaker for '{upstream}' is OPEN. "
            f"Failures: {failure_count}, retry in {max(retry_in, 0.0):.1f}s"
        )
        super().__init__(msg=msg, retryable=False)
        self.upstream = upstream
        self.failure_count = failure_count


class ParseError(DetentionError):
    """Error when an upstream payload cannot be decoded.

    Args:
        data_type: Type of data being decoded
        error_details: Additional error information
    """

    category = ErrorCategory.PARSE

    def __init__(self, *, data_type: str, error_details: str) -> None:
        super().__init__(msg=f"Failed to parse {data_type}: {error_details}", retryable=False)
        self.data_type = data_type


class AuthError(DetentionError):
    """Credential rejected or unobtainable.

    Args:
        msg: Error message
    """

    category = ErrorCategory.AUTH

    def __init__(self, *, msg: str) -> None:
        super().__init__(msg=msg, retryable=False)


# Data and business errors
class ValidationError(DetentionError):
    """Error from data validation.

    Args:
        field_name: Name of the field that failed validation
        constraint: The validation constraint that was violated
    """

    category = ErrorCategory.VALIDATION

    def __init__(self, *, field_name: str, constraint: str) -> None:
        super().__init__(msg=f"Validation failed for '{field_name}': {constraint}", retryable=False)
        self.field_name = field_name


class BatchStateError(ValidationError):
    """Control operation requested from a state that does not allow it."""

    def __init__(self, *, operation: str, state: str) -> None:
        super().__init__(field_name="state", constraint=f"cannot {operation} while {state}")
        self.operation = operation
        self.state = state


class BusinessError(DetentionError):
    """Upstream refused the request for a business reason."""

    category = ErrorCategory.BUSINESS

    def __init__(self, *, msg: str) -> None:
        super().__init__(msg=msg, retryable=False)


class VersionConflictError(BusinessError):
    """The order changed between read and write.

    Args:
        order_id: Order being mutated
        version: Version the write was based on
    """

    def __init__(self, *, order_id: str, version: int) -> None:
        super().__init__(msg=f"Order {order_id} changed since version {version}")
        self.order_id = order_id
        self.version = version


# Configuration errors
class ContractConfigError(DetentionError):
    """The shipper's contract configuration cannot be used.

    Args:
        shipper_id: Shipper whose contract is unusable
        reason: Why it is unusable
    """

    category = ErrorCategory.CONFIG

    def __init__(self, *, shipper_id: str, reason: str) -> None:
        super().__init__(msg=f"Contract for shipper '{shipper_id}': {reason}", retryable=False)
        self.shipper_id = shipper_id
        self.reason = reason


class MissingStopRuleError(ContractConfigError):
    """No eligibility rule for a stop type / load type combination."""

    def __init__(self, *, shipper_id: str, stop_type: str, load_type: str) -> None:
        super().__init__(
            shipper_id=shipper_id, reason=f"no rule for {stop_type} / {load_type} stops"
        )
        self.stop_type = stop_type
        self.load_type = load_type


class ConfigurationError(DetentionError):
    """Raised when runtime configuration is invalid or missing."""

    category = ErrorCategory.CONFIG

    def __init__(self, msg: str) -> None:
        super().__init__(msg=msg, retryable=False)


def classify_error(error: BaseException) -> ErrorCategory:
    """Map any exception into the error taxonomy.

    Args:
        error: The exception to classify

    Returns:
        The category; unrecognized exceptions are treated as business errors
    """
    if isinstance(error, DetentionError):
        return error.category
    if isinstance(error, (asyncio.TimeoutError, aiohttp.ServerTimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in (401, 403):
            return ErrorCategory.AUTH
        if error.status == 429:
            return ErrorCategory.RATE_LIMIT
        if error.status >= 500:
            return ErrorCategory.NETWORK
        return ErrorCategory.BUSINESS
    if isinstance(error, (aiohttp.ClientError, ConnectionError)):
        return ErrorCategory.NETWORK
    if isinstance(error, orjson.JSONDecodeError):
        return ErrorCategory.PARSE
    if isinstance(error, pydantic.ValidationError):
        return ErrorCategory.VALIDATION
    return ErrorCategory.BUSINESS


def is_retryable(error: BaseException) -> bool:
    """Whether the orchestrator should retry after this error."""
    return classify_error(error) in RETRYABLE_CATEGORIES


def user_message(category: ErrorCategory) -> str:
    """Category-appropriate text for the presentation layer."""
    return _USER_MESSAGES[category]
