"""
Detention decision rules.

Turns one stop's timestamps, the shipper's contract terms, the order status and
any existing hold into a single AnalysisResult. Everything here is pure: no I/O,
no clocks, no shared state.
"""

import math
from datetime import datetime
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from loguru import logger

from detention_pyutils.errors import MissingStopRuleError
from src.detention_pipeline.constants import (
    BILLED_STATUSES,
    CANCELLED_STATUSES,
    CENT,
    HOLD_CODES,
    MINUTES_PER_HOUR,
    ChargeAction,
    OutcomeKind,
    RateUnit,
    ResultKind,
    RoundingRule,
    StopType,
)
from src.detention_pipeline.models import (
    AnalysisResult,
    ContractConfig,
    OrderDetails,
    PricingHold,
    PricingLine,
    ProcessedOutcome,
    StopRecord,
    TimestampPair,
)


def minutes_between(*, start: datetime, end: datetime) -> int:
    """Signed difference in whole minutes, rounded to the nearest minute."""
    return round((end - start).total_seconds() / 60)


def round_to_increment(*, minutes: int, increment: int | None, rule: RoundingRule) -> int:
    """Apply billing-increment rounding to chargeable minutes.

    Args:
        minutes: Chargeable minutes (positive)
        increment: Billing increment in minutes; None or 0 disables rounding
        rule: UP, DOWN or NEAREST (ties round up)

    Returns:
        Rounded minutes
    """
    if not increment:
        return minutes
    match rule:
        case RoundingRule.DOWN:
            return (minutes // increment) * increment
        case RoundingRule.NEAREST:
            whole, remainder = divmod(minutes, increment)
            return (whole + (1 if remainder * 2 >= increment else 0)) * increment
        case _:
            return math.ceil(minutes / increment) * increment


def compute_charge(*, minutes: int, contract: ContractConfig) -> tuple[Decimal, bool]:
    """Price chargeable minutes under the contract.

    Returns:
        (charge capped at max_charge, whether the uncapped charge reached the cap)
    """
    if contract.rate_unit is RateUnit.PER_MINUTE:
        raw = Decimal(minutes) * contract.rate
    else:
        raw = Decimal(minutes) / MINUTES_PER_HOUR * contract.rate
    charge = raw.quantize(CENT, rounding=ROUND_HALF_UP)
    hit_max = charge >= contract.max_charge
    return min(charge, contract.max_charge.quantize(CENT, rounding=ROUND_DOWN)), hit_max


def find_hold(*, pricing_lines: tuple[PricingLine, ...], stop_type: StopType) -> PricingHold | None:
    """Existing detention line for the stop's side of the order, if any."""
    code = HOLD_CODES[stop_type]
    for line in pricing_lines:
        if line.code == code:
            return PricingHold(code=line.code, amount=line.amount)
    return None


class RuleEngine:
    """Evaluates detention rules for stops; first matching rule wins."""

    @classmethod
    def analyze(
        cls,
        *,
        order_id: str,
        stop: StopRecord,
        contract: ContractConfig,
        order_status: str,
        timestamps: TimestampPair | None,
        hold: PricingHold | None,
    ) -> AnalysisResult:
        """Decide what to do about detention at one stop.

        Args:
            order_id: Order the stop belongs to.
            stop: The stop being analyzed.
            contract: Shipper contract terms.
            order_status: Current order status as reported upstream.
            timestamps: Resolved planned/actual times, None when unavailable.
            hold: Existing detention hold on this stop's side, if any.

        Returns:
            AnalysisResult for the stop.

        Raises:
            MissingStopRuleError: If the contract has no rule for the stop/load combination.
        """
        base = AnalysisResult(
            order_id=order_id,
            stop_sequence=stop.sequence,
            stop_type=stop.stop_type,
            load_type=stop.load_type,
            kind=ResultKind.CHARGEABLE,
            action=ChargeAction.NO_ACTION,
            existing_hold=hold.amount if hold else None,
            requires_approval=contract.requires_approval,
            requires_auth=contract.requires_auth,
        )
        status = order_status.strip().upper()

        if status in CANCELLED_STATUSES:
            return base.model_copy(update={"kind": ResultKind.CANCELLED})
        if status in BILLED_STATUSES:
            return base.model_copy(update={"kind": ResultKind.INVOICED})
        if hold is not None and hold.has_amount:
            return base.model_copy(
                update={"kind": ResultKind.CHARGE_EXISTS, "action": ChargeAction.REPORT_EXISTING}
            )

        rule = contract.rule_for(stop_type=stop.stop_type, load_type=stop.load_type)
        if rule is None:
            raise MissingStopRuleError(
                shipper_id=contract.shipper_id,
                stop_type=stop.stop_type.value,
                load_type=stop.load_type.value,
            )
        base = base.model_copy(update={"free_time_minutes": rule.free_time_minutes})
        # Ineligible stops release holds regardless of timestamps.
        if not rule.eligible:
            return cls._no_charge(
                base=base, kind=ResultKind.NOT_ELIGIBLE, hold=hold, reason="stop not eligible"
            )

        pending = cls._pending_kind(timestamps=timestamps)
        if pending is not None:
            return base.model_copy(update={"kind": pending, "action": ChargeAction.RETRY_LATER})
        assert timestamps is not None and timestamps.actual_departure is not None

        if timestamps.planned_arrival is not None and timestamps.actual_arrival is not None:
            arrival_delay = minutes_between(
                start=timestamps.planned_arrival, end=timestamps.actual_arrival
            )
            if arrival_delay > contract.late_threshold_minutes:
                return cls._no_charge(
                    base=base.model_copy(update={"delay_minutes": arrival_delay}),
                    kind=ResultKind.DRIVER_LATE,
                    hold=hold,
                    reason=f"driver arrived {arrival_delay} min late",
                )

        baseline = timestamps.planned_departure or timestamps.planned_arrival
        assert baseline is not None
        delay = max(0, minutes_between(start=baseline, end=timestamps.actual_departure))
        chargeable = delay - rule.free_time_minutes
        base = base.model_copy(update={"delay_minutes": delay})

        if chargeable <= 0:
            return cls._no_charge(
                base=base, kind=ResultKind.WITHIN_FREE_TIME, hold=hold, reason="within free time"
            )
        if contract.minimum_threshold_minutes and chargeable < contract.minimum_threshold_minutes:
            return cls._no_charge(
                base=base.model_copy(update={"chargeable_minutes": chargeable}),
                kind=ResultKind.BELOW_MINIMUM,
                hold=hold,
                reason=f"{chargeable} min is below the {contract.minimum_threshold_minutes} min minimum",
            )

        billable = round_to_increment(
            minutes=chargeable,
            increment=contract.billing_increment_minutes,
            rule=contract.rounding_rule,
        )
        if billable <= 0:
            return cls._no_charge(
                base=base, kind=ResultKind.WITHIN_FREE_TIME, hold=hold, reason="rounds to zero"
            )

        charge, hit_max = compute_charge(minutes=billable, contract=contract)
        action = cls.select_action(contract=contract, hold=hold)
        comment = (
            f"Detention {stop.stop_type.value} stop {stop.sequence}: {billable} min over "
            f"{rule.free_time_minutes} min free time, ${charge}"
            + (" (capped at contract maximum)" if hit_max else "")
        )
        logger.debug(
            f"Order {order_id} stop {stop.sequence}: delay={delay} billable={billable} "
            f"charge={charge} action={action.value}"
        )
        return base.model_copy(
            update={
                "kind": ResultKind.CHARGEABLE,
                "action": action,
                "charge": charge,
                "hit_max": hit_max,
                "chargeable_minutes": billable,
                "comment": comment,
            }
        )

    @staticmethod
    def select_action(*, contract: ContractConfig, hold: PricingHold | None) -> ChargeAction:
        """Action matrix for a chargeable stop.

        Approval wins over auto-charge; without either the charge is analysis only.
        """
        if contract.requires_approval:
            return ChargeAction.PENDING_APPROVAL
        if contract.auto_charge_allowed:
            return ChargeAction.ADD_CHARGE_UPDATE if hold else ChargeAction.ADD_CHARGE_CREATE
        return ChargeAction.ANALYSIS_ONLY

    @staticmethod
    def _pending_kind(*, timestamps: TimestampPair | None) -> ResultKind | None:
        if timestamps is None or timestamps.actual_arrival is None:
            return ResultKind.AWAITING_ARRIVAL
        if timestamps.planned_departure is None and timestamps.planned_arrival is None:
            return ResultKind.AWAITING_ARRIVAL
        if timestamps.actual_departure is None:
            return ResultKind.AWAITING_DEPARTURE
        return None

    @staticmethod
    def _no_charge(
        *, base: AnalysisResult, kind: ResultKind, hold: PricingHold | None, reason: str
    ) -> AnalysisResult:
        if hold is None:
            return base.model_copy(update={"kind": kind, "action": ChargeAction.NO_ACTION})
        comment = f"Detention hold released for {base.stop_type.value} stop {base.stop_sequence}: {reason}"
        return base.model_copy(
            update={"kind": kind, "action": ChargeAction.RELEASE_HOLD, "comment": comment}
        )

    @classmethod
    def analyze_order(
        cls,
        *,
        order: OrderDetails,
        contract: ContractConfig,
        timestamps: dict[int, TimestampPair] | None,
    ) -> list[AnalysisResult]:
        """Analyze every stop of an order, one result per stop.

        A missing rule only fails its own stop.
        """
        results: list[AnalysisResult] = []
        for stop in order.stops:
            hold = find_hold(pricing_lines=order.pricing_lines, stop_type=stop.stop_type)
            stop_times = timestamps.get(stop.sequence) if timestamps is not None else None
            try:
                result = cls.analyze(
                    order_id=order.order_id,
                    stop=stop,
                    contract=contract,
                    order_status=order.status,
                    timestamps=stop_times,
                    hold=hold,
                )
            except MissingStopRuleError as e:
                logger.warning(f"Order {order.order_id} stop {stop.sequence}: {e}")
                result = AnalysisResult(
                    order_id=order.order_id,
                    stop_sequence=stop.sequence,
                    stop_type=stop.stop_type,
                    load_type=stop.load_type,
                    kind=ResultKind.CONFIG_ERROR,
                    action=ChargeAction.NO_ACTION,
                    existing_hold=hold.amount if hold else None,
                    outcome=ProcessedOutcome(kind=OutcomeKind.ERROR, error=e.reason),
                )
            results.append(result)
        return results
