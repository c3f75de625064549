from dataclasses import replace
from decimal import Decimal
from typing import Final

from loguru import logger

from src.detention_pipeline.constants import (
    HOLD_CODES,
    ApprovalVerdict,
    ChargeAction,
    OutcomeKind,
    ResultKind,
)
from src.detention_pipeline.gateway import OrderGateway
from src.detention_pipeline.models import (
    AnalysisResult,
    ApprovalDecision,
    OrderDetails,
    PricingLine,
    ProcessedOutcome,
)
from src.detention_pipeline.rules.engine import find_hold

_DECLINED_OUTCOMES: Final[dict[ApprovalVerdict, OutcomeKind]] = {
    ApprovalVerdict.NO: OutcomeKind.APPROVAL_DECLINED,
    ApprovalVerdict.SKIP: OutcomeKind.APPROVAL_SKIPPED,
    ApprovalVerdict.TIMEOUT: OutcomeKind.APPROVAL_TIMEOUT,
}

DETENTION_LINE_DESCRIPTION: Final[str] = "Driver detention"


class RemediationExecutor:
    """Applies analysis results to an order through the pricing mutation API.

    Mutations run stop by stop, threading the order version returned by each
    write. Every pricing change is followed by the result's comment.
    """

    def __init__(self, *, gateway: OrderGateway) -> None:
        self._gateway = gateway

    async def execute(
        self,
        *,
        order: OrderDetails,
        results: list[AnalysisResult],
        approval: ApprovalDecision | None = None,
    ) -> list[AnalysisResult]:
        """Execute the order's mutations and record each stop's outcome.

        Args:
            order: Order as last fetched (version and pricing lines)
            results: One analysis result per stop
            approval: Decision for PENDING_APPROVAL stops; anything but YES
                executes nothing for the order

        Returns:
            Results with ``outcome`` filled in, in stop order
        """
        if approval is not None and approval.verdict is not ApprovalVerdict.YES:
            return [self._without_execution(r, verdict=approval.verdict) for r in results]

        version = order.version
        lines = list(order.pricing_lines)
        executed: list[AnalysisResult] = []
        for result in results:
            if result.outcome is not None:
                executed.append(result)
                continue
            action = result.action
            if action is ChargeAction.PENDING_APPROVAL:
                # The order may have changed while the approver decided.
                hold = find_hold(pricing_lines=order.pricing_lines, stop_type=result.stop_type)
                if hold is not None and hold.has_amount:
                    logger.info(
                        f"Order {order.order_id} stop {result.stop_sequence}: charge of "
                        f"${hold.amount} added during approval, leaving it in place"
                    )
                    executed.append(
                        result.model_copy(
                            update={
                                "kind": ResultKind.CHARGE_EXISTS,
                                "action": ChargeAction.REPORT_EXISTING,
                                "existing_hold": hold.amount,
                                "outcome": ProcessedOutcome(kind=OutcomeKind.NO_CHANGE),
                            }
                        )
                    )
                    continue
                action = (
                    ChargeAction.ADD_CHARGE_UPDATE if hold is not None else ChargeAction.ADD_CHARGE_CREATE
                )
                result = result.model_copy(update={"existing_hold": hold.amount if hold else None})
            code = HOLD_CODES[result.stop_type]
            outcome: ProcessedOutcome
            match action:
                case ChargeAction.ADD_CHARGE_UPDATE:
                    lines = [
                        replace(line, amount=result.charge) if line.code == code else line
                        for line in lines
                    ]
                    version = await self._gateway.update_pricing_lines(order.order_id, version, lines)
                    outcome = ProcessedOutcome(kind=OutcomeKind.CHARGE_UPDATED, amount=result.charge)
                case ChargeAction.ADD_CHARGE_CREATE:
                    version = await self._gateway.add_pricing_line(
                        order.order_id, version, code, result.charge
                    )
                    lines.append(
                        PricingLine(code=code, amount=result.charge, description=DETENTION_LINE_DESCRIPTION)
                    )
                    outcome = ProcessedOutcome(kind=OutcomeKind.CHARGE_ADDED, amount=result.charge)
                case ChargeAction.RELEASE_HOLD if any(line.code == code for line in lines):
                    lines = [line for line in lines if line.code != code]
                    version = await self._gateway.update_pricing_lines(order.order_id, version, lines)
                    outcome = ProcessedOutcome(
                        kind=OutcomeKind.HOLD_RELEASED, amount=result.existing_hold or Decimal("0.00")
                    )
                case ChargeAction.ANALYSIS_ONLY:
                    outcome = ProcessedOutcome(kind=OutcomeKind.ANALYZED, amount=result.charge)
                case _:
                    outcome = ProcessedOutcome(kind=OutcomeKind.NO_CHANGE)

            if outcome.kind in {
                OutcomeKind.CHARGE_UPDATED,
                OutcomeKind.CHARGE_ADDED,
                OutcomeKind.HOLD_RELEASED,
            }:
                comment = result.comment
                if approval is not None and approval.auth_token:
                    comment += f" Authorization: {approval.auth_token.strip()}"
                await self._gateway.add_comment(order.order_id, comment)
                logger.debug(f"Order {order.order_id} stop {result.stop_sequence}: {outcome.kind.value}")
            executed.append(result.model_copy(update={"action": action, "outcome": outcome}))
        return executed

    @staticmethod
    def _without_execution(result: AnalysisResult, *, verdict: ApprovalVerdict) -> AnalysisResult:
        if result.outcome is not None:
            return result
        if result.action is ChargeAction.PENDING_APPROVAL:
            kind = _DECLINED_OUTCOMES[verdict]
            return result.model_copy(
                update={"outcome": ProcessedOutcome(kind=kind, amount=result.charge)}
            )
        return result.model_copy(update={"outcome": ProcessedOutcome(kind=OutcomeKind.NO_CHANGE)})
