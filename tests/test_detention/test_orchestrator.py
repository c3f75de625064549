"""
Integration tests for batch orchestration.

These run the wired engine against the in-memory order APIs from conftest and
check chunking, item isolation, control operations, resumption and the
approval drain.
"""

import asyncio
from dataclasses import replace
from decimal import Decimal

import pytest

from detention_pyutils.errors import AuthError, BatchStateError, ErrorCategory, NetworkError
from src.detention_pipeline.constants import (
    PROGRESS_STORAGE_KEY,
    ApprovalVerdict,
    BatchState,
    OutcomeKind,
    ReportOutcome,
    ResultKind,
)
from src.detention_pipeline.models import ApprovalDecision, BatchProgress, PricingLine, ReportEntry
from src.detention_pipeline.resilience import CircuitStatus


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.integration
class TestBatchRun:
    """Test a full batch from analysis to remediation."""

    @pytest.mark.asyncio
    async def test_full_run(
        self, make_service, add_order, order_api, presenter, recording_sleep, storage
    ) -> None:
        """Test every order gets an entry and failures stay isolated."""
        for order_id in ("A1", "A2", "A3", "A4", "A5"):
            add_order(order_id)
        add_order("C1", status="CANCELLED")
        add_order("X1", shipper_id="NOBODY")
        order_ids = ["A1", "A2", "A3", "MISSING", "A4", "C1", "X1", "A5"]
        service = make_service()

        report = await service.orchestrator.analyze(order_ids)

        assert service.orchestrator.state is BatchState.COMPLETED
        assert report.processed_count == 6
        assert report.failed_count == 2
        assert report.failed_orders == ["MISSING", "X1"]
        assert [e.order_id for e in report.ordered(order_ids)] == order_ids

        charged = report.entries["A1"]
        assert charged.outcome is ReportOutcome.COMPLETED
        assert charged.total_charge == Decimal("16.67")
        assert charged.stops[0].outcome.kind is OutcomeKind.CHARGE_ADDED
        assert sorted(order_api.calls_for("add_pricing")) == ["A1", "A2", "A3", "A4", "A5"]

        assert report.entries["C1"].stops[0].kind is ResultKind.CANCELLED
        assert "C1" not in order_api.calls_for("leg")

        config_failure = report.entries["X1"]
        assert config_failure.error_category is ErrorCategory.CONFIG
        assert config_failure.message
        assert "NOBODY" not in config_failure.message
        assert report.entries["MISSING"].error_category is ErrorCategory.BUSINESS

        assert recording_sleep.delays == [0.5, 3.0, 0.5]
        assert storage.get(PROGRESS_STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_counters_never_exceed_total(self, make_service, add_order, presenter) -> None:
        """Test processed + failed stays within the total at every notification."""
        for index in range(9):
            add_order(f"A{index}")
        order_ids = [f"A{index}" for index in range(9)] + ["MISSING"]

        await make_service().orchestrator.analyze(order_ids)

        assert presenter.progress
        for progress in presenter.progress:
            assert progress.processed + progress.failed <= progress.total
        final = presenter.progress[-1]
        assert (final.processed, final.failed, final.total) == (9, 1, 10)
        assert final.state is BatchState.COMPLETED

    @pytest.mark.asyncio
    async def test_transient_item_failure_retried(
        self, make_service, add_order, order_api
    ) -> None:
        """Test an item whose reads keep failing is retried as a whole."""
        add_order("A1")
        order_api.failures["summary:A1"] = [
            NetworkError(upstream="orders", error_details="reset") for _ in range(3)
        ]

        report = await make_service().orchestrator.analyze(["A1"])

        assert report.entries["A1"].outcome is ReportOutcome.COMPLETED
        assert order_api.calls_for("summary") == ["A1"] * 4

    @pytest.mark.asyncio
    async def test_open_circuit_recorded_per_item(
        self, make_service, add_order, order_api
    ) -> None:
        """Test a tripped circuit fails the item without exhausting attempts."""
        add_order("A1")
        order_api.failures["summary:A1"] = [
            NetworkError(upstream="orders", error_details="reset") for _ in range(10)
        ]
        service = make_service()

        report = await service.orchestrator.analyze(["A1"])

        entry = report.entries["A1"]
        assert entry.outcome is ReportOutcome.FAILED
        assert entry.error_category is ErrorCategory.CIRCUIT_OPEN
        assert len(order_api.calls_for("summary")) == 5

        service.orchestrator.reset_circuit_breakers()
        assert service.gateway.client.breaker.status("orders") is CircuitStatus.CLOSED

    @pytest.mark.asyncio
    async def test_duplicate_ids_processed_once(self, make_service, add_order, order_api) -> None:
        """Test repeated ids are collapsed."""
        add_order("A1")
        report = await make_service().orchestrator.analyze(["A1", "A1"])
        assert list(report.entries) == ["A1"]
        assert order_api.calls_for("add_pricing") == ["A1"]


@pytest.mark.integration
class TestBatchControl:
    """Test pause, resume, cancellation and state validation."""

    @pytest.mark.asyncio
    async def test_cancel_prevents_later_chunks(
        self, make_service, add_order, order_api, presenter, storage
    ) -> None:
        """Test cancelling mid-chunk finishes the chunk and starts no other."""
        order_ids = [f"A{index}" for index in range(8)]
        for order_id in order_ids:
            add_order(order_id)
        service = make_service()
        orchestrator = service.orchestrator

        def cancel_after_first_sub_batch(progress: BatchProgress) -> None:
            if progress.processed >= 2 and orchestrator.state is BatchState.RUNNING:
                orchestrator.cancel()

        presenter.on_progress = cancel_after_first_sub_batch

        report = await orchestrator.analyze(order_ids)

        assert orchestrator.state is BatchState.CANCELLED
        assert report.processed_count == 4
        assert order_api.calls_for("summary") == order_ids[:4]
        saved = storage.get(PROGRESS_STORAGE_KEY)
        assert saved is not None
        assert saved["processed_count"] == 4

    @pytest.mark.asyncio
    async def test_pause_holds_at_chunk_boundary(
        self, make_service, add_order, order_api, presenter, recording_sleep
    ) -> None:
        """Test a paused batch starts no chunk until resumed."""
        order_ids = [f"A{index}" for index in range(8)]
        for order_id in order_ids:
            add_order(order_id)
        orchestrator = make_service().orchestrator

        def pause_after_first_chunk(progress: BatchProgress) -> None:
            if progress.processed == 4 and orchestrator.state is BatchState.RUNNING:
                orchestrator.pause()

        presenter.on_progress = pause_after_first_chunk
        task = asyncio.create_task(orchestrator.analyze(order_ids))

        await wait_until(lambda: recording_sleep.delays.count(0.1) >= 3)
        assert orchestrator.state is BatchState.PAUSED
        assert order_api.calls_for("summary") == order_ids[:4]

        presenter.on_progress = None
        orchestrator.resume()
        report = await asyncio.wait_for(task, timeout=1.0)

        assert orchestrator.state is BatchState.COMPLETED
        assert report.processed_count == 8

    @pytest.mark.asyncio
    async def test_pause_after_last_chunk_waits_for_resume(
        self, make_service, add_order, presenter, recording_sleep, storage
    ) -> None:
        """Test pausing on the final notification holds completion until resumed."""
        for order_id in ("A1", "A2"):
            add_order(order_id)
        orchestrator = make_service().orchestrator

        def pause_when_done(progress: BatchProgress) -> None:
            if progress.processed == 2 and orchestrator.state is BatchState.RUNNING:
                orchestrator.pause()

        presenter.on_progress = pause_when_done
        task = asyncio.create_task(orchestrator.analyze(["A1", "A2"]))

        await wait_until(lambda: recording_sleep.delays.count(0.1) >= 2)
        assert orchestrator.state is BatchState.PAUSED
        assert not task.done()

        presenter.on_progress = None
        orchestrator.resume()
        report = await asyncio.wait_for(task, timeout=1.0)

        assert orchestrator.state is BatchState.COMPLETED
        assert report.processed_count == 2
        assert storage.get(PROGRESS_STORAGE_KEY) is None

    @pytest.mark.asyncio
    async def test_cancel_while_paused_after_last_chunk(
        self, make_service, add_order, presenter, recording_sleep, storage
    ) -> None:
        """Test cancelling a run paused after its last chunk ends it as cancelled."""
        add_order("A1")
        orchestrator = make_service().orchestrator

        def pause_when_done(progress: BatchProgress) -> None:
            if progress.processed == 1 and orchestrator.state is BatchState.RUNNING:
                orchestrator.pause()

        presenter.on_progress = pause_when_done
        task = asyncio.create_task(orchestrator.analyze(["A1"]))

        await wait_until(lambda: 0.1 in recording_sleep.delays)
        orchestrator.cancel()
        await asyncio.wait_for(task, timeout=1.0)

        assert orchestrator.state is BatchState.CANCELLED
        assert storage.get(PROGRESS_STORAGE_KEY) is not None

    @pytest.mark.asyncio
    async def test_invalid_transitions_rejected(self, make_service, add_order, order_api) -> None:
        """Test control operations outside their valid states raise."""
        add_order("A1")
        orchestrator = make_service().orchestrator

        with pytest.raises(BatchStateError):
            orchestrator.pause()
        with pytest.raises(BatchStateError):
            orchestrator.resume()
        with pytest.raises(BatchStateError):
            orchestrator.cancel()

        order_api.gate = asyncio.Event()
        task = asyncio.create_task(orchestrator.analyze(["A1"]))
        await wait_until(lambda: orchestrator.state is BatchState.RUNNING)

        with pytest.raises(BatchStateError):
            await orchestrator.analyze(["A1"])
        with pytest.raises(BatchStateError):
            orchestrator.resume()

        orchestrator.cancel()
        order_api.gate.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert orchestrator.state is BatchState.CANCELLED

        # A finished run may be followed by a new one.
        order_api.gate = None
        await orchestrator.analyze(["A1"])
        assert orchestrator.state is BatchState.COMPLETED

    @pytest.mark.asyncio
    async def test_credential_failure_aborts_batch(
        self, make_service, add_order, order_api, fetcher
    ) -> None:
        """Test a failed credential renewal before a chunk aborts the run."""
        add_order("A1")
        fetcher.errors = [AuthError(msg="client disabled")]
        orchestrator = make_service().orchestrator

        with pytest.raises(AuthError):
            await orchestrator.analyze(["A1"])

        assert orchestrator.state is BatchState.CANCELLED
        assert orchestrator.current_run.abort_reason
        assert order_api.calls_for("summary") == []


@pytest.mark.integration
class TestBatchResume:
    """Test resumption from a checkpoint."""

    def _seed(self, service, order_ids: list[str]) -> None:
        snapshot = service.progress.build(
            order_ids=order_ids,
            chunk_index=0,
            processed_count=1,
            failed_count=1,
            report=[
                ReportEntry(order_id="A1", outcome=ReportOutcome.COMPLETED),
                ReportEntry(
                    order_id="A2",
                    outcome=ReportOutcome.FAILED,
                    error_category=ErrorCategory.NETWORK,
                ),
            ],
        )
        service.progress.save(snapshot, force=True)

    @pytest.mark.asyncio
    async def test_resume_skips_completed_orders(
        self, make_service, add_order, order_api, presenter
    ) -> None:
        """Test accepted resumes only process unfinished and failed orders."""
        order_ids = ["A1", "A2", "A3"]
        for order_id in order_ids:
            add_order(order_id)
        service = make_service()
        self._seed(service, order_ids)

        report = await service.orchestrator.analyze(order_ids)

        assert len(presenter.resume_offers) == 1
        assert order_api.calls_for("summary") == ["A2", "A3"]
        assert report.processed_count == 3
        assert report.failed_count == 0
        assert service.progress.load() is None

    @pytest.mark.asyncio
    async def test_declined_resume_starts_over(
        self, make_service, add_order, order_api, presenter
    ) -> None:
        """Test forcing a fresh run discards the checkpoint without asking."""
        order_ids = ["A1", "A2", "A3"]
        for order_id in order_ids:
            add_order(order_id)
        service = make_service()
        self._seed(service, order_ids)

        await service.orchestrator.analyze(order_ids, resume=False)

        assert presenter.resume_offers == []
        assert order_api.calls_for("summary") == order_ids

    @pytest.mark.asyncio
    async def test_checkpoint_for_other_batch_ignored(
        self, make_service, add_order, order_api, presenter
    ) -> None:
        """Test a checkpoint for a different id list is not offered."""
        for order_id in ("A1", "A2"):
            add_order(order_id)
        service = make_service()
        self._seed(service, ["A1", "A2", "A3"])

        await service.orchestrator.analyze(["A1", "A2"])

        assert presenter.resume_offers == []
        assert order_api.calls_for("summary") == ["A1", "A2"]


@pytest.mark.integration
class TestApprovalDrain:
    """Test approvals queued during the run and handled afterwards."""

    @pytest.mark.asyncio
    async def test_approvals_in_discovery_order(
        self, make_service, add_order, order_api, presenter
    ) -> None:
        """Test queued approvals are asked one by one after the chunks."""
        add_order("G1", shipper_id="GLOBEX")
        add_order("A1")
        add_order("G2", shipper_id="GLOBEX")
        presenter.decisions = [
            ApprovalDecision(verdict=ApprovalVerdict.YES),
            ApprovalDecision(verdict=ApprovalVerdict.NO),
        ]

        report = await make_service().orchestrator.analyze(["G1", "A1", "G2"])

        assert [r.order_id for r in presenter.approval_requests] == ["G1", "G2"]
        assert presenter.approval_requests[0].total_charge == Decimal("20.00")
        assert report.entries["G1"].outcome is ReportOutcome.APPROVED
        assert report.entries["G1"].total_charge == Decimal("20.00")
        assert report.entries["G2"].outcome is ReportOutcome.DECLINED
        assert report.entries["A1"].outcome is ReportOutcome.COMPLETED
        assert sorted(order_api.calls_for("add_pricing")) == ["A1", "G1"]

    @pytest.mark.asyncio
    async def test_charge_added_during_approval_not_duplicated(
        self, make_service, add_order, order_api, presenter
    ) -> None:
        """Test a detention line entered while the approver decides is left alone."""
        add_order("G1", shipper_id="GLOBEX")
        presenter.decisions = [ApprovalDecision(verdict=ApprovalVerdict.YES)]
        answer = presenter.request_approval

        async def answer_after_manual_charge(request):
            order = order_api.orders["G1"]
            order_api.orders["G1"] = replace(
                order,
                version=order.version + 1,
                pricing_lines=(*order.pricing_lines, PricingLine(code="DET-DO", amount=Decimal("40.00"))),
            )
            return await answer(request)

        presenter.request_approval = answer_after_manual_charge

        report = await make_service().orchestrator.analyze(["G1"])

        entry = report.entries["G1"]
        assert entry.outcome is ReportOutcome.APPROVED
        assert entry.stops[0].kind is ResultKind.CHARGE_EXISTS
        assert entry.total_charge == Decimal("0.00")
        assert order_api.calls_for("add_pricing") == []
        detention_lines = [
            line for line in order_api.orders["G1"].pricing_lines if line.code == "DET-DO"
        ]
        assert [line.amount for line in detention_lines] == [Decimal("40.00")]

    @pytest.mark.asyncio
    async def test_unanswered_approval_times_out(
        self, make_service, add_order, order_api
    ) -> None:
        """Test no answer within the window executes nothing."""
        add_order("G1", shipper_id="GLOBEX")

        report = await make_service().orchestrator.analyze(["G1"])

        entry = report.entries["G1"]
        assert entry.outcome is ReportOutcome.TIMED_OUT
        assert entry.stops[0].outcome.kind is OutcomeKind.APPROVAL_TIMEOUT
        assert order_api.calls_for("add_pricing") == []
        assert order_api.calls_for("update_pricing") == []

    @pytest.mark.asyncio
    async def test_cancel_dismisses_outstanding_approval(
        self, make_service, add_order, presenter, engine_config
    ) -> None:
        """Test cancelling during an approval skips it and stops the drain."""
        add_order("G1", shipper_id="GLOBEX")
        add_order("G2", shipper_id="GLOBEX")
        config = engine_config.model_copy(
            update={"approval": engine_config.approval.model_copy(update={"window_seconds": 30.0})}
        )
        orchestrator = make_service(config=config).orchestrator
        task = asyncio.create_task(orchestrator.analyze(["G1", "G2"]))

        await wait_until(lambda: len(presenter.approval_requests) == 1)
        orchestrator.cancel()
        report = await asyncio.wait_for(task, timeout=1.0)

        assert orchestrator.state is BatchState.CANCELLED
        assert report.entries["G1"].outcome is ReportOutcome.SKIPPED
        assert "G2" not in report.entries
        assert [r.order_id for r in presenter.approval_requests] == ["G1"]
