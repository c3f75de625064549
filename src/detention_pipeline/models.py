from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator

from detention_pyutils.errors import ErrorCategory
from src.detention_pipeline.constants import (
    ApprovalVerdict,
    BatchState,
    ChargeAction,
    LoadType,
    OutcomeKind,
    RateUnit,
    ReportOutcome,
    ResultKind,
    RoundingRule,
    StopType,
)


class StopRule(BaseModel):
    """Eligibility and free time for one stop type / load type combination."""

    model_config = ConfigDict(frozen=True)

    stop_type: StopType
    load_type: LoadType
    eligible: bool
    free_time_minutes: int = Field(ge=0)


class ContractConfig(BaseModel):
    """Per-shipper detention terms.

    Shared read-only across concurrent analyses and replaced wholesale on refresh.
    """

    model_config = ConfigDict(frozen=True)

    shipper_id: str = Field(min_length=1)
    rate: Decimal = Field(ge=0)
    rate_unit: RateUnit = RateUnit.PER_HOUR
    max_charge: Decimal = Field(ge=0)
    billing_increment_minutes: int | None = Field(default=None, ge=0)
    rounding_rule: RoundingRule = RoundingRule.UP
    minimum_threshold_minutes: int | None = Field(default=None, ge=0)
    late_threshold_minutes: int = Field(default=0, ge=0)
    requires_approval: bool = False
    auto_charge_allowed: bool = False
    requires_auth: bool = False
    stop_rules: tuple[StopRule, ...] = ()

    @field_validator("rounding_rule", mode="before")
    @classmethod
    def default_unknown_rounding(cls, v: Any) -> Any:
        """Coerce unrecognized rounding values to UP."""
        if v is None:
            return RoundingRule.UP
        normalized = str(v).strip().lower()
        if normalized not in {rule.value for rule in RoundingRule}:
            logger.warning(f"Unrecognized rounding rule {v!r}, defaulting to round up")
            return RoundingRule.UP
        return normalized

    def rule_for(self, *, stop_type: StopType, load_type: LoadType) -> StopRule | None:
        """Look up the rule for a stop, or None when the contract has none."""
        for rule in self.stop_rules:
            if rule.stop_type == stop_type and rule.load_type == load_type:
                return rule
        return None


@dataclass(frozen=True)
class StopRecord:
    """One pickup or dropoff leg of an order."""

    sequence: int
    stop_type: StopType
    load_type: LoadType
    location: str = ""


@dataclass(frozen=True)
class TimestampPair:
    """Planned versus actual arrival and departure at a stop.

    Any actual may be absent while the stop is still pending.
    """

    planned_arrival: datetime | None = None
    actual_arrival: datetime | None = None
    planned_departure: datetime | None = None
    actual_departure: datetime | None = None
    timezone: str = "UTC"


@dataclass(frozen=True)
class PricingLine:
    code: str
    amount: Decimal
    description: str = ""


@dataclass(frozen=True)
class PricingHold:
    """Existing detention pricing line for one side of an order."""

    code: str
    amount: Decimal

    @property
    def has_amount(self) -> bool:
        return self.amount != 0


@dataclass(frozen=True)
class OrderSummary:
    order_id: str
    status: str
    shipper_id: str
    version: int


@dataclass(frozen=True)
class OrderDetails:
    """Full order with stops and pricing lines."""

    order_id: str
    version: int
    status: str
    shipper_id: str
    stops: tuple[StopRecord, ...] = ()
    pricing_lines: tuple[PricingLine, ...] = ()


@dataclass(frozen=True)
class ExecutionLeg:
    order_id: str
    tour_id: str | None = None


class ProcessedOutcome(BaseModel):
    """What execution did for one stop."""

    kind: OutcomeKind
    amount: Decimal | None = None
    error: str | None = None


class AnalysisResult(BaseModel):
    """Decision for one stop of one order."""

    order_id: str
    stop_sequence: int
    stop_type: StopType
    load_type: LoadType
    kind: ResultKind
    action: ChargeAction
    charge: Decimal = Decimal("0.00")
    hit_max: bool = False
    delay_minutes: int | None = None
    chargeable_minutes: int = 0
    free_time_minutes: int | None = None
    existing_hold: Decimal | None = None
    comment: str = ""
    requires_approval: bool = False
    requires_auth: bool = False
    outcome: ProcessedOutcome | None = None

    @property
    def needs_mutation(self) -> bool:
        return self.action in {
            ChargeAction.RELEASE_HOLD,
            ChargeAction.ADD_CHARGE_CREATE,
            ChargeAction.ADD_CHARGE_UPDATE,
        }


class ReportEntry(BaseModel):
    """One order's line in the batch report."""

    order_id: str
    shipper_id: str | None = None
    outcome: ReportOutcome
    stops: list[AnalysisResult] = Field(default_factory=list)
    total_charge: Decimal = Decimal("0.00")
    error_category: ErrorCategory | None = None
    message: str = ""


class ProgressSnapshot(BaseModel):
    """Resumable checkpoint of a batch run."""

    order_ids: list[str]
    chunk_index: int = 0
    processed_count: int = 0
    failed_count: int = 0
    report: list[ReportEntry] = Field(default_factory=list)
    saved_at: float = 0.0
    format_version: int

    @property
    def completed_ids(self) -> set[str]:
        """Orders that do not need another attempt; failed ones are retried on resume."""
        return {
            entry.order_id for entry in self.report if entry.outcome != ReportOutcome.FAILED
        }


@dataclass(frozen=True)
class ApprovalDecision:
    verdict: ApprovalVerdict
    auth_token: str | None = None


@dataclass(frozen=True)
class StopCharge:
    """Per-stop line shown to the approver."""

    stop_sequence: int
    stop_type: StopType
    charge: Decimal
    chargeable_minutes: int
    hit_max: bool


@dataclass(frozen=True)
class ApprovalRequest:
    order_id: str
    shipper_id: str
    total_charge: Decimal
    breakdown: tuple[StopCharge, ...]
    requires_auth: bool
    expires_in: float


@dataclass(frozen=True)
class BatchProgress:
    """Counters published to the presentation sink."""

    batch_id: str
    state: BatchState
    total: int
    processed: int
    failed: int
    pending_approvals: int = 0
    chunk_index: int = 0
    chunk_count: int = 0


@dataclass
class BatchReport:
    """Outcome map for a batch, keyed by order id."""

    entries: dict[str, ReportEntry] = field(default_factory=dict)
    failed_orders: list[str] = field(default_factory=list)

    def record(self, entry: ReportEntry) -> None:
        self.entries[entry.order_id] = entry
        if entry.outcome == ReportOutcome.FAILED:
            if entry.order_id not in self.failed_orders:
                self.failed_orders.append(entry.order_id)
        elif entry.order_id in self.failed_orders:
            self.failed_orders.remove(entry.order_id)

    @property
    def processed_count(self) -> int:
        return len(self.entries) - len(self.failed_orders)

    @property
    def failed_count(self) -> int:
        return len(self.failed_orders)

    def ordered(self, order_ids: list[str]) -> list[ReportEntry]:
        """Entries in original batch order."""
        return [self.entries[oid] for oid in order_ids if oid in self.entries]
