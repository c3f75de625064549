from .circuit_breaker import CircuitBreaker, CircuitState, CircuitStatus
from .retrying_client import BackoffWait, RetryingClient

__all__ = [
    "BackoffWait",
    "CircuitBreaker",
    "CircuitState",
    "CircuitStatus",
    "RetryingClient",
]
