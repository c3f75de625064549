"""Pytest configuration and fixtures for the detention pipeline tests."""

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from detention_pyutils.errors import BusinessError
from infra.storage import InMemoryStorage
from src.detention_pipeline.constants import LoadType, StopType
from src.detention_pipeline.contracts import validate_contract_rows
from src.detention_pipeline.factory import DetentionService, build_service
from src.detention_pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    BatchProgress,
    ExecutionLeg,
    OrderDetails,
    OrderSummary,
    PricingLine,
    ProgressSnapshot,
    StopRecord,
    TimestampPair,
)
from utils.config import (
    ApprovalConfig,
    BatchConfig,
    EngineConfig,
    ProgressConfig,
    RetryConfig,
)

BASE_TIME = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)

ACME_ROW: dict[str, Any] = {
    "shipper_id": "ACME",
    "status": "active",
    "rate": "$50.00",
    "rate_unit": "per_hour",
    "max_charge": "$500.00",
    "auto_charge_allowed": True,
    "pickup_live_eligible": True,
    "pickup_live_free_time": 30,
    "dropoff_live_eligible": True,
    "dropoff_live_free_time": 30,
    "dropoff_drop_and_hook_eligible": False,
    "dropoff_drop_and_hook_free_time": 0,
}

GLOBEX_ROW: dict[str, Any] = {
    "shipper_id": "GLOBEX",
    "rate": "60",
    "max_charge": "1,000",
    "requires_approval": True,
    "dropoff_live_eligible": True,
    "dropoff_live_free_time": 30,
}


class FakeOrderApi:
    """In-memory order APIs covering both the read and the mutation side.

    ``failures`` maps ``"<operation>:<order_id>"`` to errors raised, one per call,
    before the real answer is returned.
    """

    def __init__(self) -> None:
        self.orders: dict[str, OrderDetails] = {}
        self.legs: dict[str, ExecutionLeg] = {}
        self.tours: dict[str, dict[int, TimestampPair]] = {}
        self.failures: dict[str, list[BaseException]] = {}
        self.calls: list[tuple[str, str]] = []
        self.tokens: list[str] = []
        self.comments: dict[str, list[str]] = {}
        self.gate: asyncio.Event | None = None

    def _record(self, operation: str, key: str, token: str) -> None:
        self.calls.append((operation, key))
        self.tokens.append(token)
        pending = self.failures.get(f"{operation}:{key}")
        if pending:
            raise pending.pop(0)

    def calls_for(self, operation: str) -> list[str]:
        return [key for op, key in self.calls if op == operation]

    def _order(self, order_id: str) -> OrderDetails:
        order = self.orders.get(order_id)
        if order is None:
            raise BusinessError(msg=f"order {order_id} not found")
        return order

    async def fetch_order_summary(self, order_id: str, *, token: str) -> OrderSummary:
        if self.gate is not None:
            await self.gate.wait()
        self._record("summary", order_id, token)
        order = self._order(order_id)
        return OrderSummary(
            order_id=order.order_id,
            status=order.status,
            shipper_id=order.shipper_id,
            version=order.version,
        )

    async def fetch_order_full(self, order_id: str, *, token: str) -> OrderDetails:
        self._record("order", order_id, token)
        return self._order(order_id)

    async def fetch_execution_leg(self, order_id: str, *, token: str) -> ExecutionLeg:
        self._record("leg", order_id, token)
        return self.legs.get(order_id, ExecutionLeg(order_id=order_id))

    async def fetch_timestamps_by_tour(self, tour_id: str, *, token: str) -> dict[int, TimestampPair]:
        self._record("tour", tour_id, token)
        return self.tours.get(tour_id, {})

    async def update_pricing_lines(
        self, order_id: str, version: int, lines: list[PricingLine], *, token: str
    ) -> int:
        self._record("update_pricing", order_id, token)
        order = self._order(order_id)
        self.orders[order_id] = replace(order, version=version + 1, pricing_lines=tuple(lines))
        return version + 1

    async def add_pricing_line(
        self, order_id: str, version: int, code: str, amount: Decimal, *, token: str
    ) -> int:
        self._record("add_pricing", order_id, token)
        order = self._order(order_id)
        lines = (*order.pricing_lines, PricingLine(code=code, amount=amount))
        self.orders[order_id] = replace(order, version=version + 1, pricing_lines=lines)
        return version + 1

    async def add_comment(self, order_id: str, text: str, *, token: str) -> None:
        self._record("comment", order_id, token)
        self.comments.setdefault(order_id, []).append(text)


class FakeCredentialFetcher:
    """Hands out numbered tokens; ``errors`` are raised first, one per fetch."""

    def __init__(self) -> None:
        self.fetches = 0
        self.errors: list[BaseException] = []
        self.delay = 0.0

    async def fetch_token(self) -> str:
        self.fetches += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        return f"token-{self.fetches}"


class FakePresenter:
    """Records progress and answers prompts from scripted queues."""

    def __init__(self) -> None:
        self.progress: list[BatchProgress] = []
        self.approval_requests: list[ApprovalRequest] = []
        self.decisions: list[ApprovalDecision] = []
        self.resume_answer = True
        self.resume_offers: list[ProgressSnapshot] = []
        self.on_progress: Callable[[BatchProgress], None] | None = None

    def report_batch_progress(self, progress: BatchProgress) -> None:
        self.progress.append(progress)
        if self.on_progress is not None:
            self.on_progress(progress)

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision:
        self.approval_requests.append(request)
        if not self.decisions:
            # Nobody answers; the caller's countdown or dismissal decides.
            await asyncio.Event().wait()
        return self.decisions.pop(0)

    async def offer_resume(self, snapshot: ProgressSnapshot) -> bool:
        self.resume_offers.append(snapshot)
        return self.resume_answer


class RecordingSleep:
    """Sleep replacement that records delays and only yields to the loop."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _stop_times(
    *,
    arrival_delay: int = 0,
    dwell_after_planned_departure: int | None = 50,
    arrived: bool = True,
) -> TimestampPair:
    """Timestamps for a stop planned 09:00-10:00."""
    planned_arrival = BASE_TIME
    planned_departure = BASE_TIME + timedelta(hours=1)
    actual_departure = (
        planned_departure + timedelta(minutes=dwell_after_planned_departure)
        if dwell_after_planned_departure is not None
        else None
    )
    return TimestampPair(
        planned_arrival=planned_arrival,
        actual_arrival=planned_arrival + timedelta(minutes=arrival_delay) if arrived else None,
        planned_departure=planned_departure,
        actual_departure=actual_departure,
    )


@pytest.fixture
def order_api() -> FakeOrderApi:
    return FakeOrderApi()


@pytest.fixture
def add_order(order_api: FakeOrderApi) -> Callable[..., OrderDetails]:
    """Register an order with one live dropoff stop and its tour timestamps."""

    def _add(
        order_id: str,
        *,
        shipper_id: str = "ACME",
        status: str = "DELIVERED",
        stops: tuple[StopRecord, ...] | None = None,
        pricing_lines: tuple[PricingLine, ...] = (),
        timestamps: dict[int, TimestampPair] | None = None,
        tour_id: str | None = "auto",
    ) -> OrderDetails:
        order = OrderDetails(
            order_id=order_id,
            version=1,
            status=status,
            shipper_id=shipper_id,
            stops=stops or (StopRecord(sequence=1, stop_type=StopType.DROPOFF, load_type=LoadType.LIVE),),
            pricing_lines=pricing_lines,
        )
        order_api.orders[order_id] = order
        tour = f"T-{order_id}" if tour_id == "auto" else tour_id
        order_api.legs[order_id] = ExecutionLeg(order_id=order_id, tour_id=tour)
        if tour is not None:
            order_api.tours[tour] = timestamps if timestamps is not None else {1: _stop_times()}
        return order

    return _add


@pytest.fixture
def fetcher() -> FakeCredentialFetcher:
    return FakeCredentialFetcher()


@pytest.fixture
def presenter() -> FakePresenter:
    return FakePresenter()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Small chunks, no jitter and no checkpoint throttling."""
    return EngineConfig(
        batch=BatchConfig(
            chunk_size=4,
            parallelism=2,
            sub_batch_delay=0.5,
            chunk_cooldown=3.0,
            pause_poll_interval=0.1,
            item_max_attempts=3,
        ),
        retry=RetryConfig(base_delay=0.01, max_delay=0.05, jitter=0.0, timeout=5.0),
        progress=ProgressConfig(throttle=0.0),
        approval=ApprovalConfig(window_seconds=0.2),
    )


@pytest.fixture
def make_service(
    engine_config: EngineConfig,
    order_api: FakeOrderApi,
    fetcher: FakeCredentialFetcher,
    presenter: FakePresenter,
    storage: InMemoryStorage,
    recording_sleep: RecordingSleep,
) -> Callable[..., DetentionService]:
    """Build a wired service with contracts for ACME and GLOBEX published."""

    def _make(
        *, config: EngineConfig | None = None, rows: list[dict[str, Any]] | None = None
    ) -> DetentionService:
        service = build_service(
            config=config or engine_config,
            provider=order_api,
            mutator=order_api,
            fetcher=fetcher,
            presenter=presenter,
            storage=storage,
            sleep=recording_sleep,
        )
        service.contracts.publish(validate_contract_rows(rows or [ACME_ROW, GLOBEX_ROW]))
        return service

    return _make


@pytest.fixture
def stop_times() -> Callable[..., TimestampPair]:
    return _stop_times


@pytest.fixture
def acme_row() -> dict[str, Any]:
    return dict(ACME_ROW)


@pytest.fixture
def globex_row() -> dict[str, Any]:
    return dict(GLOBEX_ROW)
