"""Test coverage for the human approval coordinator."""

import asyncio
from decimal import Decimal

import pytest

from src.detention_pipeline.approval import ApprovalCoordinator
from src.detention_pipeline.constants import (
    ApprovalVerdict,
    ChargeAction,
    LoadType,
    ResultKind,
    StopType,
)
from src.detention_pipeline.models import AnalysisResult, ApprovalDecision


def pending_result(sequence: int, charge: str, *, action=ChargeAction.PENDING_APPROVAL) -> AnalysisResult:
    return AnalysisResult(
        order_id="ORD-9",
        stop_sequence=sequence,
        stop_type=StopType.DROPOFF,
        load_type=LoadType.LIVE,
        kind=ResultKind.CHARGEABLE,
        action=action,
        charge=Decimal(charge),
        chargeable_minutes=25,
    )


@pytest.fixture
def results() -> list[AnalysisResult]:
    return [
        pending_result(1, "12.50"),
        pending_result(2, "12.50"),
        pending_result(3, "0.00", action=ChargeAction.NO_ACTION),
    ]


@pytest.mark.unit
class TestApprovalCoordinator:
    """Test decision outcomes and the countdown."""

    def test_request_aggregates_pending_stops(self, results: list[AnalysisResult]) -> None:
        """Test the request totals only stops awaiting approval."""
        request = ApprovalCoordinator.build_request(
            order_id="ORD-9", shipper_id="GLOBEX", results=results, requires_auth=False, expires_in=120
        )
        assert request.total_charge == Decimal("25.00")
        assert [stop.stop_sequence for stop in request.breakdown] == [1, 2]

    @pytest.mark.asyncio
    async def test_explicit_answer_returned(self, presenter, results) -> None:
        """Test a presenter answer is returned as the decision."""
        presenter.decisions = [ApprovalDecision(verdict=ApprovalVerdict.NO)]
        coordinator = ApprovalCoordinator(presenter=presenter, window_seconds=1.0)

        decision = await coordinator.request(
            order_id="ORD-9", shipper_id="GLOBEX", results=results, requires_auth=False
        )
        assert decision.verdict is ApprovalVerdict.NO
        assert not coordinator.outstanding

    @pytest.mark.asyncio
    async def test_no_answer_times_out(self, presenter, results) -> None:
        """Test an unanswered request resolves to TIMEOUT after the window."""
        coordinator = ApprovalCoordinator(presenter=presenter, window_seconds=0.05)
        decision = await coordinator.request(
            order_id="ORD-9", shipper_id="GLOBEX", results=results, requires_auth=False
        )
        assert decision.verdict is ApprovalVerdict.TIMEOUT
        assert len(presenter.approval_requests) == 1

    @pytest.mark.asyncio
    async def test_dismissal_is_skip(self, presenter, results) -> None:
        """Test a dismissed interaction counts as SKIP."""
        coordinator = ApprovalCoordinator(presenter=presenter, window_seconds=5.0)
        task = asyncio.create_task(
            coordinator.request(
                order_id="ORD-9", shipper_id="GLOBEX", results=results, requires_auth=False
            )
        )
        while not presenter.approval_requests:
            await asyncio.sleep(0)
        assert coordinator.outstanding

        coordinator.dismiss()
        decision = await asyncio.wait_for(task, timeout=1.0)
        assert decision.verdict is ApprovalVerdict.SKIP

    @pytest.mark.asyncio
    async def test_yes_without_required_auth_is_asked_again(self, presenter, results) -> None:
        """Test YES is only accepted with an authorization code when one is required."""
        presenter.decisions = [
            ApprovalDecision(verdict=ApprovalVerdict.YES, auth_token="  "),
            ApprovalDecision(verdict=ApprovalVerdict.YES, auth_token="PO-7781"),
        ]
        coordinator = ApprovalCoordinator(presenter=presenter, window_seconds=1.0)

        decision = await coordinator.request(
            order_id="ORD-9", shipper_id="GLOBEX", results=results, requires_auth=True
        )
        assert decision.verdict is ApprovalVerdict.YES
        assert decision.auth_token == "PO-7781"
        assert len(presenter.approval_requests) == 2
        assert presenter.approval_requests[0].requires_auth

    @pytest.mark.asyncio
    async def test_one_interaction_at_a_time(self, presenter, results) -> None:
        """Test concurrent requests are serialized."""
        presenter.decisions = [
            ApprovalDecision(verdict=ApprovalVerdict.YES),
            ApprovalDecision(verdict=ApprovalVerdict.NO),
        ]
        coordinator = ApprovalCoordinator(presenter=presenter, window_seconds=1.0)

        first, second = await asyncio.gather(
            coordinator.request(order_id="A", shipper_id="S", results=results, requires_auth=False),
            coordinator.request(order_id="B", shipper_id="S", results=results, requires_auth=False),
        )
        assert [r.order_id for r in presenter.approval_requests] == ["A", "B"]
        assert first.verdict is ApprovalVerdict.YES
        assert second.verdict is ApprovalVerdict.NO
