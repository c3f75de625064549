from decimal import Decimal
from enum import StrEnum
from typing import Final


class StopType(StrEnum):
    """Which leg of the order a stop belongs to."""

    PICKUP = "pickup"
    DROPOFF = "dropoff"


class LoadType(StrEnum):
    """Driver-attended loading versus trailer swap."""

    LIVE = "live"
    DROP_AND_HOOK = "drop_and_hook"


class RateUnit(StrEnum):
    PER_HOUR = "per_hour"
    PER_MINUTE = "per_minute"


class RoundingRule(StrEnum):
    """Billing-increment rounding applied to chargeable minutes."""

    UP = "up"
    DOWN = "down"
    NEAREST = "nearest"


class ResultKind(StrEnum):
    """Why a stop ended up with its action."""

    CANCELLED = "cancelled"
    INVOICED = "invoiced"
    CHARGE_EXISTS = "charge_exists"
    AWAITING_ARRIVAL = "awaiting_arrival"
    AWAITING_DEPARTURE = "awaiting_departure"
    NOT_ELIGIBLE = "not_eligible"
    DRIVER_LATE = "driver_late"
    WITHIN_FREE_TIME = "within_free_time"
    BELOW_MINIMUM = "below_minimum"
    CHARGEABLE = "chargeable"
    CONFIG_ERROR = "config_error"


class ChargeAction(StrEnum):
    """Mutation (or lack of one) chosen for a stop."""

    NO_ACTION = "no_action"
    REPORT_EXISTING = "report_existing"
    RETRY_LATER = "retry_later"
    RELEASE_HOLD = "release_hold"
    ADD_CHARGE_UPDATE = "add_charge_update"
    ADD_CHARGE_CREATE = "add_charge_create"
    PENDING_APPROVAL = "pending_approval"
    ANALYSIS_ONLY = "analysis_only"


class OutcomeKind(StrEnum):
    """What actually happened to a stop after execution."""

    CHARGE_ADDED = "charge_added"
    CHARGE_UPDATED = "charge_updated"
    HOLD_RELEASED = "hold_released"
    NO_CHANGE = "no_change"
    ANALYZED = "analyzed"
    APPROVAL_DECLINED = "approval_declined"
    APPROVAL_SKIPPED = "approval_skipped"
    APPROVAL_TIMEOUT = "approval_timeout"
    ERROR = "error"


class ApprovalVerdict(StrEnum):
    YES = "yes"
    NO = "no"
    SKIP = "skip"
    TIMEOUT = "timeout"


class BatchState(StrEnum):
    """Lifecycle of one batch run."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ContractStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    VALIDATION_ERROR = "validation_error"


class ReportOutcome(StrEnum):
    """Order-level summary recorded in the batch report."""

    COMPLETED = "completed"
    FAILED = "failed"
    APPROVED = "approved"
    DECLINED = "declined"
    SKIPPED = "skipped"
    TIMED_OUT = "timed_out"


# Pricing line codes that hold detention for each side of an order.
HOLD_CODES: Final[dict[StopType, str]] = {
    StopType.PICKUP: "DET-PU",
    StopType.DROPOFF: "DET-DO",
}

CANCELLED_STATUSES: Final[frozenset[str]] = frozenset({"CANCELLED", "CANCELED", "VOID"})
BILLED_STATUSES: Final[frozenset[str]] = frozenset({"INVOICED", "PAID"})

CENT: Final[Decimal] = Decimal("0.01")
MINUTES_PER_HOUR: Final[int] = 60

# Storage keys shared with other tools reading the same store.
PROGRESS_STORAGE_KEY: Final[str] = "detention.batch_progress"
CREDENTIAL_STORAGE_KEY: Final[str] = "detention.credential"
PROGRESS_FORMAT_VERSION: Final[int] = 2

# Upstream names used for circuit breaking.
UPSTREAM_ORDERS: Final[str] = "orders"
UPSTREAM_EXECUTION: Final[str] = "execution"
UPSTREAM_TIMESTAMPS: Final[str] = "timestamps"
UPSTREAM_PRICING: Final[str] = "pricing"
UPSTREAM_AUTH: Final[str] = "auth"
