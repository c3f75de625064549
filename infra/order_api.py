"""
HTTP adapters for the order, execution, timestamp, pricing and auth APIs.

Every failure leaves this module as a classified DetentionError. Retries,
deadlines and circuit breaking are applied by the caller.
"""

import os
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Final

import aiohttp
import orjson as json
from aiohttp import ClientSession, ClientTimeout
from loguru import logger

from detention_pyutils.errors import (
    AuthError,
    BusinessError,
    NetworkError,
    ParseError,
    RateLimitError,
    UpstreamTimeoutError,
    VersionConflictError,
)
from src.detention_pipeline.constants import (
    UPSTREAM_AUTH,
    UPSTREAM_EXECUTION,
    UPSTREAM_ORDERS,
    UPSTREAM_PRICING,
    UPSTREAM_TIMESTAMPS,
    LoadType,
    StopType,
)
from src.detention_pipeline.models import (
    ExecutionLeg,
    OrderDetails,
    OrderSummary,
    PricingLine,
    StopRecord,
    TimestampPair,
)

DEFAULT_SESSION_TIMEOUT: Final[float] = 60.0
DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0
ISSUED_AT_ENV_SUFFIX: Final[str] = "_ISSUED_AT"


@dataclass(frozen=True)
class OrderApiConfig:
    """Configuration for the order API client."""

    base_url: str
    session_timeout: float = DEFAULT_SESSION_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def __post_init__(self) -> None:
        if not self.base_url.startswith(("https://", "http://")):
            raise ValueError("URL must include protocol (https://)")


def _parse_time(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromisoformat(str(value))


def _parse_money(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"invalid amount {value!r}") from e


def _retry_after(response: aiohttp.ClientResponse) -> float | None:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class OrderApiClient:
    """Async client implementing both the read and the mutation side of the order APIs."""

    def __init__(self, *, config: OrderApiConfig) -> None:
        """Initialize the client.

        Args:
            config: Endpoint and session timeouts
        """
        self._config = config
        self._session: ClientSession | None = None

    async def __aenter__(self) -> "OrderApiClient":
        await self._ensure_session()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def _ensure_session(self) -> ClientSession:
        if self._session is None:
            timeout = ClientTimeout(
                total=self._config.session_timeout,
                connect=self._config.connect_timeout,
            )
            self._session = ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        upstream: str,
        token: str | None = None,
        payload: dict[str, Any] | None = None,
        order_id: str | None = None,
        version: int | None = None,
    ) -> dict[str, Any]:
        """Send one request and decode the JSON body.

        Raises:
            AuthError: On 401/403
            VersionConflictError: On 409 for a versioned mutation
            RateLimitError: On 429
            NetworkError: On 5xx or a transport failure
            UpstreamTimeoutError: When the session deadline passes
            BusinessError: On any other non-success status
            ParseError: When the body is not a JSON object
        """
        session = await self._ensure_session()
        url = f"{self._config.base_url}{path}"
        headers = {"Accept": "application/json"}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"
        body = json.dumps(payload) if payload is not None else None
        if body is not None:
            headers["Content-Type"] = "application/json"

        try:
            async with session.request(method, url, data=body, headers=headers) as response:
                status = response.status
                if status in (401, 403):
                    raise AuthError(msg=f"'{upstream}' rejected the credential ({status})")
                if status == 409 and order_id is not None and version is not None:
                    raise VersionConflictError(order_id=order_id, version=version)
                if status == 429:
                    raise RateLimitError(upstream=upstream, retry_after=_retry_after(response))
                if status >= 500:
                    raise NetworkError(upstream=upstream, error_details=f"HTTP {status}")
                if status >= 400:
                    text = await response.text()
                    raise BusinessError(msg=f"'{upstream}' returned {status}: {text[:200]}")
                raw = await response.read()
        except aiohttp.ServerTimeoutError as e:
            raise UpstreamTimeoutError(
                upstream=upstream, timeout_seconds=self._config.session_timeout
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkError(upstream=upstream, error_details=str(e)) from e

        if not raw:
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ParseError(data_type=f"{upstream} response", error_details=str(e)) from e
        if not isinstance(data, dict):
            raise ParseError(data_type=f"{upstream} response", error_details="expected a JSON object")
        return data

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_order_summary(self, order_id: str, *, token: str) -> OrderSummary:
        data = await self.request_json(
            "GET", f"/orders/{order_id}/summary", upstream=UPSTREAM_ORDERS, token=token
        )
        try:
            return OrderSummary(
                order_id=str(data["orderId"]),
                status=str(data["status"]),
                shipper_id=str(data["shipperId"]),
                version=int(data["version"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(data_type="order summary", error_details=str(e)) from e

    async def fetch_order_full(self, order_id: str, *, token: str) -> OrderDetails:
        data = await self.request_json("GET", f"/orders/{order_id}", upstream=UPSTREAM_ORDERS, token=token)
        try:
            stops = tuple(
                StopRecord(
                    sequence=int(stop["sequence"]),
                    stop_type=StopType(str(stop["stopType"]).lower()),
                    load_type=LoadType(str(stop["loadType"]).lower()),
                    location=str(stop.get("location") or ""),
                )
                for stop in data.get("stops", [])
            )
            lines = tuple(
                PricingLine(
                    code=str(line["code"]),
                    amount=_parse_money(line["amount"]),
                    description=str(line.get("description") or ""),
                )
                for line in data.get("pricingLines", [])
            )
            return OrderDetails(
                order_id=str(data["orderId"]),
                version=int(data["version"]),
                status=str(data["status"]),
                shipper_id=str(data["shipperId"]),
                stops=stops,
                pricing_lines=lines,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(data_type="order", error_details=str(e)) from e

    async def fetch_execution_leg(self, order_id: str, *, token: str) -> ExecutionLeg:
        data = await self.request_json(
            "GET", f"/orders/{order_id}/execution-leg", upstream=UPSTREAM_EXECUTION, token=token
        )
        tour_id = data.get("tourId")
        return ExecutionLeg(order_id=order_id, tour_id=str(tour_id) if tour_id else None)

    async def fetch_timestamps_by_tour(self, tour_id: str, *, token: str) -> dict[int, TimestampPair]:
        data = await self.request_json(
            "GET", f"/tours/{tour_id}/timestamps", upstream=UPSTREAM_TIMESTAMPS, token=token
        )
        try:
            return {
                int(stop["sequence"]): TimestampPair(
                    planned_arrival=_parse_time(stop.get("plannedArrival")),
                    actual_arrival=_parse_time(stop.get("actualArrival")),
                    planned_departure=_parse_time(stop.get("plannedDeparture")),
                    actual_departure=_parse_time(stop.get("actualDeparture")),
                    timezone=str(stop.get("timezone") or "UTC"),
                )
                for stop in data.get("stops", [])
            }
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(data_type="tour timestamps", error_details=str(e)) from e

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @staticmethod
    def _new_version(data: dict[str, Any], *, data_type: str) -> int:
        try:
            return int(data["version"])
        except (KeyError, TypeError, ValueError) as e:
            raise ParseError(data_type=data_type, error_details=str(e)) from e

    async def update_pricing_lines(
        self, order_id: str, version: int, lines: list[PricingLine], *, token: str
    ) -> int:
        payload = {
            "version": version,
            "lines": [
                {"code": line.code, "amount": str(line.amount), "description": line.description}
                for line in lines
            ],
        }
        data = await self.request_json(
            "PUT",
            f"/orders/{order_id}/pricing-lines",
            upstream=UPSTREAM_PRICING,
            token=token,
            payload=payload,
            order_id=order_id,
            version=version,
        )
        return self._new_version(data, data_type="pricing update")

    async def add_pricing_line(
        self, order_id: str, version: int, code: str, amount: Decimal, *, token: str
    ) -> int:
        data = await self.request_json(
            "POST",
            f"/orders/{order_id}/pricing-lines",
            upstream=UPSTREAM_PRICING,
            token=token,
            payload={"version": version, "code": code, "amount": str(amount)},
            order_id=order_id,
            version=version,
        )
        return self._new_version(data, data_type="pricing line")

    async def add_comment(self, order_id: str, text: str, *, token: str) -> None:
        await self.request_json(
            "POST",
            f"/orders/{order_id}/comments",
            upstream=UPSTREAM_PRICING,
            token=token,
            payload={"text": text},
        )


class HttpCredentialFetcher:
    """Client-credentials exchange against the auth endpoint."""

    def __init__(self, *, api: OrderApiClient, client_id: str | None, client_secret: str | None) -> None:
        self._api = api
        self._client_id = client_id
        self._client_secret = client_secret

    async def fetch_token(self) -> str:
        if not self._client_id or not self._client_secret:
            raise AuthError(msg="No client credentials configured")
        data = await self._api.request_json(
            "POST",
            "/auth/token",
            upstream=UPSTREAM_AUTH,
            payload={"clientId": self._client_id, "clientSecret": self._client_secret},
        )
        token = data.get("accessToken")
        if not token:
            raise ParseError(data_type="auth token", error_details="missing accessToken")
        logger.debug("Fetched a new API credential")
        return str(token)


class EnvironmentCredentialSource:
    """Credential handed over by the surrounding session through the environment.

    The token is read from ``env_var`` and its issue time (epoch seconds) from
    ``env_var`` + ``_ISSUED_AT``. Without an issue time the token is treated as
    freshly issued when first observed.
    """

    def __init__(self, *, env_var: str) -> None:
        self._env_var = env_var
        self._first_seen: dict[str, float] = {}

    def observe(self) -> tuple[str, float] | None:
        token = os.getenv(self._env_var)
        if not token:
            return None
        now = time.time()
        issued_raw = os.getenv(self._env_var + ISSUED_AT_ENV_SUFFIX)
        if issued_raw:
            try:
                return token, max(0.0, now - float(issued_raw))
            except ValueError:
                logger.warning(f"Ignoring malformed {self._env_var}{ISSUED_AT_ENV_SUFFIX}")
        issued_at = self._first_seen.setdefault(token, now)
        return token, now - issued_at
