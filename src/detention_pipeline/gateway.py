from collections.abc import Awaitable, Callable
from decimal import Decimal
from typing import Any, TypeVar

from loguru import logger

from detention_pyutils.errors import AuthError, is_retryable
from src.detention_pipeline.cache import RateLimitedCache
from src.detention_pipeline.constants import (
    UPSTREAM_EXECUTION,
    UPSTREAM_ORDERS,
    UPSTREAM_PRICING,
    UPSTREAM_TIMESTAMPS,
)
from src.detention_pipeline.credentials import CredentialManager
from src.detention_pipeline.models import (
    ExecutionLeg,
    OrderDetails,
    OrderSummary,
    PricingLine,
    TimestampPair,
)
from src.detention_pipeline.ports import OrderDataProvider, PricingMutator
from src.detention_pipeline.resilience.retrying_client import RetryingClient

T = TypeVar("T")


class OrderGateway:
    """Authenticated, cached, circuit-protected access to the order APIs.

    Reads are cache-first and retried on transient errors. Mutations get a single
    attempt; the orchestrator retries the whole item instead. An authentication
    failure invalidates the credential and repeats the call exactly once.

    Args:
        provider: Read side of the order APIs
        mutator: Write side of the order APIs
        client: Retrying client for every upstream call
        credentials: Credential manager supplying tokens
        cache: Cache of fetched entities
    """

    def __init__(
        self,
        *,
        provider: OrderDataProvider,
        mutator: PricingMutator,
        client: RetryingClient,
        credentials: CredentialManager,
        cache: RateLimitedCache[Any],
    ) -> None:
        self._provider = provider
        self._mutator = mutator
        self._client = client
        self._credentials = credentials
        self._cache = cache

    @property
    def client(self) -> RetryingClient:
        return self._client

    async def _call(
        self,
        upstream: str,
        request: Callable[[str], Awaitable[T]],
        *,
        retry: bool,
    ) -> T:
        retry_if = is_retryable if retry else None
        token = await self._credentials.ensure()
        try:
            return await self._client.call(upstream, lambda: request(token), retry_if=retry_if)
        except AuthError:
            logger.info(f"Authentication rejected by '{upstream}', re-acquiring credential")
            self._credentials.invalidate()
            token = await self._credentials.ensure()
            return await self._client.call(upstream, lambda: request(token), retry_if=retry_if)

    async def _cached(
        self, key: str, upstream: str, request: Callable[[str], Awaitable[T]]
    ) -> T:
        hit = self._cache.get(key)
        if hit is not None:
            return hit
        value = await self._call(upstream, request, retry=True)
        self._cache.add(key, value)
        return value

    async def fetch_summary(self, order_id: str) -> OrderSummary:
        return await self._cached(
            f"summary:{order_id}",
            UPSTREAM_ORDERS,
            lambda token: self._provider.fetch_order_summary(order_id, token=token),
        )

    async def fetch_order(self, order_id: str) -> OrderDetails:
        return await self._cached(
            f"order:{order_id}",
            UPSTREAM_ORDERS,
            lambda token: self._provider.fetch_order_full(order_id, token=token),
        )

    async def fetch_execution_leg(self, order_id: str) -> ExecutionLeg:
        return await self._cached(
            f"leg:{order_id}",
            UPSTREAM_EXECUTION,
            lambda token: self._provider.fetch_execution_leg(order_id, token=token),
        )

    async def fetch_timestamps(self, order_id: str, tour_id: str) -> dict[int, TimestampPair]:
        return await self._cached(
            f"tour:{order_id}:{tour_id}",
            UPSTREAM_TIMESTAMPS,
            lambda token: self._provider.fetch_timestamps_by_tour(tour_id, token=token),
        )

    async def update_pricing_lines(
        self, order_id: str, version: int, lines: list[PricingLine]
    ) -> int:
        return await self._call(
            UPSTREAM_PRICING,
            lambda token: self._mutator.update_pricing_lines(order_id, version, lines, token=token),
            retry=False,
        )

    async def add_pricing_line(
        self, order_id: str, version: int, code: str, amount: Decimal
    ) -> int:
        return await self._call(
            UPSTREAM_PRICING,
            lambda token: self._mutator.add_pricing_line(
                order_id, version, code, amount, token=token
            ),
            retry=False,
        )

    async def add_comment(self, order_id: str, text: str) -> None:
        await self._call(
            UPSTREAM_PRICING,
            lambda token: self._mutator.add_comment(order_id, text, token=token),
            retry=False,
        )

    def invalidate(self, order_id: str) -> int:
        """Forget everything cached for one order."""
        exact = {f"summary:{order_id}", f"order:{order_id}", f"leg:{order_id}"}
        tour_prefix = f"tour:{order_id}:"
        return self._cache.invalidate_where(
            lambda key: key in exact or key.startswith(tour_prefix)
        )
