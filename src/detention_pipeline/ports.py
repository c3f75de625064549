"""Collaborators the core consumes or reports to.

Implementations live in ``infra`` (HTTP, files) and ``main`` (console); tests
substitute in-memory fakes.
"""

from decimal import Decimal
from typing import Any, Protocol

from src.detention_pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    BatchProgress,
    ExecutionLeg,
    OrderDetails,
    OrderSummary,
    PricingLine,
    ProgressSnapshot,
    TimestampPair,
)


class OrderDataProvider(Protocol):
    """Read side of the order APIs. Errors are raised as classified DetentionErrors."""

    async def fetch_order_summary(self, order_id: str, *, token: str) -> OrderSummary: ...

    async def fetch_order_full(self, order_id: str, *, token: str) -> OrderDetails: ...

    async def fetch_execution_leg(self, order_id: str, *, token: str) -> ExecutionLeg: ...

    async def fetch_timestamps_by_tour(
        self, tour_id: str, *, token: str
    ) -> dict[int, TimestampPair]: ...


class PricingMutator(Protocol):
    """Write side of the order APIs; mutations return the order's new version."""

    async def update_pricing_lines(
        self, order_id: str, version: int, lines: list[PricingLine], *, token: str
    ) -> int: ...

    async def add_pricing_line(
        self, order_id: str, version: int, code: str, amount: Decimal, *, token: str
    ) -> int: ...

    async def add_comment(self, order_id: str, text: str, *, token: str) -> None: ...


class ContractConfigProvider(Protocol):
    async def fetch_rows(self) -> list[dict[str, Any]]: ...


class KeyValueStorage(Protocol):
    """Opaque key to JSON blob storage with process-wide visibility."""

    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> None: ...


class CredentialFetcher(Protocol):
    """Network fetch of a fresh credential."""

    async def fetch_token(self) -> str: ...


class CredentialSource(Protocol):
    """Credential the surrounding session already holds, if it can be observed.

    Returns the token and its age in seconds.
    """

    def observe(self) -> tuple[str, float] | None: ...


class Presenter(Protocol):
    """Presentation collaborator; the core never renders anything itself."""

    def report_batch_progress(self, progress: BatchProgress) -> None: ...

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision: ...

    async def offer_resume(self, snapshot: ProgressSnapshot) -> bool: ...
