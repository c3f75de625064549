import asyncio
import contextlib
import time
from collections.abc import Callable
from decimal import Decimal

from loguru import logger

from src.detention_pipeline.constants import ApprovalVerdict, ChargeAction
from src.detention_pipeline.models import (
    AnalysisResult,
    ApprovalDecision,
    ApprovalRequest,
    StopCharge,
)
from src.detention_pipeline.ports import Presenter


class ApprovalCoordinator:
    """Runs one bounded-time human approval at a time.

    The approver sees the aggregate charge and per-stop breakdown and answers
    YES, NO or SKIP. The countdown expiring yields TIMEOUT; ``dismiss`` (the
    surface went away, or the batch was cancelled) yields SKIP. A YES without an
    authorization string is not accepted when the contract requires one.

    Args:
        presenter: Presentation collaborator that asks the human
        window_seconds: Countdown for one approval
        clock: Monotonic time source
    """

    def __init__(
        self,
        *,
        presenter: Presenter,
        window_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._presenter = presenter
        self._window = window_seconds
        self._clock = clock
        self._lock = asyncio.Lock()
        self._dismissed: asyncio.Event | None = None

    @property
    def outstanding(self) -> bool:
        return self._dismissed is not None

    def dismiss(self) -> None:
        """Signal that the outstanding interaction was dismissed."""
        if self._dismissed is not None:
            self._dismissed.set()

    @staticmethod
    def build_request(
        *,
        order_id: str,
        shipper_id: str,
        results: list[AnalysisResult],
        requires_auth: bool,
        expires_in: float,
    ) -> ApprovalRequest:
        pending = [r for r in results if r.action is ChargeAction.PENDING_APPROVAL]
        breakdown = tuple(
            StopCharge(
                stop_sequence=r.stop_sequence,
                stop_type=r.stop_type,
                charge=r.charge,
                chargeable_minutes=r.chargeable_minutes,
                hit_max=r.hit_max,
            )
            for r in pending
        )
        return ApprovalRequest(
            order_id=order_id,
            shipper_id=shipper_id,
            total_charge=sum((r.charge for r in pending), Decimal("0.00")),
            breakdown=breakdown,
            requires_auth=requires_auth,
            expires_in=expires_in,
        )

    async def request(
        self,
        *,
        order_id: str,
        shipper_id: str,
        results: list[AnalysisResult],
        requires_auth: bool,
    ) -> ApprovalDecision:
        """Ask for a decision on the order's pending charges."""
        async with self._lock:
            self._dismissed = asyncio.Event()
            try:
                decision = await self._await_decision(
                    order_id=order_id,
                    shipper_id=shipper_id,
                    results=results,
                    requires_auth=requires_auth,
                    dismissed=self._dismissed,
                )
            finally:
                self._dismissed = None
        logger.info(f"Approval for order {order_id}: {decision.verdict.value}")
        return decision

    async def _await_decision(
        self,
        *,
        order_id: str,
        shipper_id: str,
        results: list[AnalysisResult],
        requires_auth: bool,
        dismissed: asyncio.Event,
    ) -> ApprovalDecision:
        deadline = self._clock() + self._window
        dismissal = asyncio.ensure_future(dismissed.wait())
        try:
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return ApprovalDecision(verdict=ApprovalVerdict.TIMEOUT)
                request = self.build_request(
                    order_id=order_id,
                    shipper_id=shipper_id,
                    results=results,
                    requires_auth=requires_auth,
                    expires_in=remaining,
                )
                prompt = asyncio.ensure_future(self._presenter.request_approval(request))
                done, _ = await asyncio.wait(
                    {prompt, dismissal}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                if prompt not in done:
                    prompt.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await prompt
                    verdict = ApprovalVerdict.SKIP if dismissal in done else ApprovalVerdict.TIMEOUT
                    return ApprovalDecision(verdict=verdict)

                decision = prompt.result()
                if (
                    decision.verdict is ApprovalVerdict.YES
                    and requires_auth
                    and not (decision.auth_token or "").strip()
                ):
                    logger.info(f"Approval for order {order_id} needs an authorization code")
                    continue
                return decision
        finally:
            dismissal.cancel()
