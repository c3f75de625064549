"""
Batch orchestration for detention remediation.

A run walks the order-id list in fixed-size chunks, and each chunk in bounded
parallel sub-batches. Items fail in isolation; transient failures are retried
with backoff. Pause and cancellation are cooperative and only observed at chunk
boundaries. Orders that need a human decision are queued and handled one at a
time after the last chunk.
"""

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Final

from loguru import logger

from detention_pyutils.errors import (
    AuthError,
    BatchStateError,
    classify_error,
    is_retryable,
    user_message,
)
from src.detention_pipeline.approval import ApprovalCoordinator
from src.detention_pipeline.constants import (
    BILLED_STATUSES,
    CANCELLED_STATUSES,
    ApprovalVerdict,
    BatchState,
    ChargeAction,
    OutcomeKind,
    ReportOutcome,
)
from src.detention_pipeline.contracts import ContractRegistry
from src.detention_pipeline.credentials import CredentialManager
from src.detention_pipeline.gateway import OrderGateway
from src.detention_pipeline.models import (
    AnalysisResult,
    BatchProgress,
    BatchReport,
    ContractConfig,
    OrderDetails,
    ReportEntry,
)
from src.detention_pipeline.ports import Presenter
from src.detention_pipeline.progress import ProgressStore
from src.detention_pipeline.remediation import RemediationExecutor
from src.detention_pipeline.resilience.retrying_client import BackoffWait
from src.detention_pipeline.rules.engine import RuleEngine
from utils.config import BatchConfig

_TRANSITIONS: Final[dict[BatchState, set[BatchState]]] = {
    BatchState.IDLE: {BatchState.RUNNING},
    BatchState.RUNNING: {BatchState.PAUSED, BatchState.CANCELLED, BatchState.COMPLETED},
    BatchState.PAUSED: {BatchState.RUNNING, BatchState.CANCELLED},
    BatchState.CANCELLED: set(),
    BatchState.COMPLETED: set(),
}

_APPROVAL_OUTCOMES: Final[dict[ApprovalVerdict, ReportOutcome]] = {
    ApprovalVerdict.YES: ReportOutcome.APPROVED,
    ApprovalVerdict.NO: ReportOutcome.DECLINED,
    ApprovalVerdict.SKIP: ReportOutcome.SKIPPED,
    ApprovalVerdict.TIMEOUT: ReportOutcome.TIMED_OUT,
}

_CHARGED_OUTCOMES: Final[set[OutcomeKind]] = {OutcomeKind.CHARGE_ADDED, OutcomeKind.CHARGE_UPDATED}


@dataclass
class PendingApproval:
    """Order deferred until a human decides on its charges."""

    order: OrderDetails
    contract: ContractConfig
    results: list[AnalysisResult]


@dataclass
class BatchRun:
    """Mutable state of one run, owned by the orchestrator."""

    batch_id: str
    order_ids: list[str]
    report: BatchReport = field(default_factory=BatchReport)
    chunk_index: int = 0
    chunk_count: int = 0
    approvals: list[PendingApproval] = field(default_factory=list)
    abort_reason: str | None = None

    @property
    def total(self) -> int:
        return len(self.order_ids)


class BatchOrchestrator:
    """Drives detention analysis and remediation across a batch of orders.

    Args:
        config: Chunking, parallelism and pacing
        gateway: Order API access
        contracts: Published contract configurations
        credentials: Credential manager for the order APIs
        progress: Checkpoint store for resumable runs
        approvals: Human approval coordinator
        presenter: Sink for progress notifications and resume offers
        retry_wait: Backoff used between item attempts
        sleep: Coroutine used for pacing, cooldowns and pause polling
    """

    def __init__(
        self,
        *,
        config: BatchConfig,
        gateway: OrderGateway,
        contracts: ContractRegistry,
        credentials: CredentialManager,
        progress: ProgressStore,
        approvals: ApprovalCoordinator,
        presenter: Presenter,
        retry_wait: BackoffWait | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._contracts = contracts
        self._credentials = credentials
        self._progress = progress
        self._approvals = approvals
        self._presenter = presenter
        self._retry_wait = retry_wait or BackoffWait()
        self._sleep = sleep
        self._executor = RemediationExecutor(gateway=gateway)
        self._state = BatchState.IDLE
        self._run: BatchRun | None = None

    @property
    def state(self) -> BatchState:
        return self._state

    @property
    def current_run(self) -> BatchRun | None:
        return self._run

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def analyze(self, order_ids: list[str], *, resume: bool | None = None) -> BatchReport:
        """Analyze and remediate a batch of orders.

        Args:
            order_ids: Orders to process, in order
            resume: Force the resume choice; None asks the presenter when a
                matching checkpoint exists

        Returns:
            The batch report, including entries carried over from a resumed run

        Raises:
            BatchStateError: If a run is already active
            AuthError: If the credential could not be renewed before a chunk
        """
        if self._state in (BatchState.RUNNING, BatchState.PAUSED):
            raise BatchStateError(operation="analyze", state=self._state.value)

        order_ids = list(dict.fromkeys(order_ids))
        run = BatchRun(batch_id=uuid.uuid4().hex[:12], order_ids=order_ids)
        remaining = await self._restore(run=run, resume=resume)

        self._run = run
        self._state = BatchState.IDLE
        self._transition(BatchState.RUNNING)

        size = self._config.chunk_size
        chunks = [remaining[i : i + size] for i in range(0, len(remaining), size)]
        run.chunk_count = len(chunks)
        self._credentials.start_monitor(batch_size=len(remaining))

        with logger.contextualize(batch_id=run.batch_id):
            logger.info(
                f"Batch started: {run.total} orders, {len(remaining)} to process in "
                f"{len(chunks)} chunks"
            )
            self._publish(run)
            try:
                await self._run_chunks(run=run, chunks=chunks)
                if self._state is not BatchState.CANCELLED:
                    await self._drain_approvals(run=run)
                # A pause requested during the last chunk or approval holds here.
                await self._stop_requested()
            except AuthError as e:
                run.abort_reason = str(e)
                logger.error(f"Batch aborted: {e}")
                self._state = BatchState.CANCELLED
                self._checkpoint(run=run, force=True)
                self._publish(run)
                raise
            finally:
                await self._credentials.stop_monitor()

            if self._state is BatchState.CANCELLED:
                self._checkpoint(run=run, force=True)
                logger.info(
                    f"Batch cancelled: {run.report.processed_count} processed, "
                    f"{run.report.failed_count} failed"
                )
            else:
                self._transition(BatchState.COMPLETED)
                self._progress.clear()
                logger.info(
                    f"Batch completed: {run.report.processed_count} processed, "
                    f"{run.report.failed_count} failed"
                )
            self._publish(run)
        return run.report

    def pause(self) -> None:
        if self._state is not BatchState.RUNNING:
            raise BatchStateError(operation="pause", state=self._state.value)
        self._transition(BatchState.PAUSED)
        logger.info("Batch paused")

    def resume(self) -> None:
        if self._state is not BatchState.PAUSED:
            raise BatchStateError(operation="resume", state=self._state.value)
        self._transition(BatchState.RUNNING)
        logger.info("Batch resumed")

    def cancel(self) -> None:
        """Stop the batch at the next chunk boundary; in-flight items finish."""
        if self._state not in (BatchState.RUNNING, BatchState.PAUSED):
            raise BatchStateError(operation="cancel", state=self._state.value)
        self._transition(BatchState.CANCELLED)
        self._approvals.dismiss()
        logger.info("Batch cancellation requested")

    def reset_circuit_breakers(self) -> None:
        self._gateway.client.breaker.reset_all()

    def progress(self) -> BatchProgress | None:
        return self._snapshot_progress(self._run) if self._run is not None else None

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _transition(self, target: BatchState) -> None:
        if target not in _TRANSITIONS[self._state]:
            raise BatchStateError(operation=f"move to {target.value}", state=self._state.value)
        self._state = target

    async def _restore(self, *, run: BatchRun, resume: bool | None) -> list[str]:
        snapshot = self._progress.load_matching(run.order_ids)
        if snapshot is None:
            return list(run.order_ids)
        accept = resume if resume is not None else await self._presenter.offer_resume(snapshot)
        if not accept:
            self._progress.clear()
            return list(run.order_ids)
        for entry in snapshot.report:
            run.report.record(entry)
        done = snapshot.completed_ids
        remaining = [oid for oid in run.order_ids if oid not in done]
        logger.info(f"Resuming batch: {len(done)} already processed, {len(remaining)} remaining")
        return remaining

    async def _stop_requested(self) -> bool:
        """Cancellation check with pause polling; True when the run must stop."""
        while self._state is BatchState.PAUSED:
            await self._sleep(self._config.pause_poll_interval)
        return self._state is BatchState.CANCELLED

    async def _ensure_credential_fresh(self) -> None:
        remaining = self._credentials.remaining_validity()
        if remaining < self._credentials.warning_threshold:
            logger.info(f"Credential valid for {remaining:.0f}s, renewing before chunk")
            await self._credentials.renew()

    async def _run_chunks(self, *, run: BatchRun, chunks: list[list[str]]) -> None:
        parallelism = self._config.parallelism
        for index, chunk in enumerate(chunks):
            if await self._stop_requested():
                logger.info(f"Stopping before chunk {index + 1}/{len(chunks)}")
                return
            run.chunk_index = index
            await self._ensure_credential_fresh()
            logger.info(f"Chunk {index + 1}/{len(chunks)}: {len(chunk)} orders")

            sub_batches = [chunk[i : i + parallelism] for i in range(0, len(chunk), parallelism)]
            for sub_index, sub_batch in enumerate(sub_batches):
                outcomes = await asyncio.gather(
                    *(self._process_item(order_id) for order_id in sub_batch),
                    return_exceptions=True,
                )
                for order_id, outcome in zip(sub_batch, outcomes):
                    self._reconcile(run=run, order_id=order_id, outcome=outcome)
                self._checkpoint(run=run)
                self._publish(run)
                if sub_index < len(sub_batches) - 1:
                    await self._sleep(self._config.sub_batch_delay)

            if index < len(chunks) - 1:
                await self._sleep(self._config.chunk_cooldown)

    def _reconcile(
        self,
        *,
        run: BatchRun,
        order_id: str,
        outcome: ReportEntry | PendingApproval | BaseException,
    ) -> None:
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, PendingApproval):
            run.approvals.append(outcome)
            logger.info(f"Order {order_id} queued for approval")
            return
        if isinstance(outcome, BaseException):
            category = classify_error(outcome)
            logger.error(f"Order {order_id} failed unexpectedly: {type(outcome).__name__}")
            outcome = ReportEntry(
                order_id=order_id,
                outcome=ReportOutcome.FAILED,
                error_category=category,
                message=user_message(category),
            )
        run.report.record(outcome)

    async def _process_item(self, order_id: str) -> ReportEntry | PendingApproval:
        """Process one order with bounded retries on transient errors."""
        with logger.contextualize(order_id=order_id):
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await self._analyze_order(order_id)
                except Exception as e:
                    self._gateway.invalidate(order_id)
                    if is_retryable(e) and attempt < self._config.item_max_attempts:
                        delay = self._retry_wait.delay_for(attempt=attempt, error=e)
                        logger.warning(
                            f"Order {order_id} attempt {attempt}/{self._config.item_max_attempts} "
                            f"failed ({type(e).__name__}), retrying in {delay:.1f}s"
                        )
                        await self._sleep(delay)
                        continue
                    category = classify_error(e)
                    logger.error(f"Order {order_id} failed ({category.value}): {e}")
                    return ReportEntry(
                        order_id=order_id,
                        outcome=ReportOutcome.FAILED,
                        error_category=category,
                        message=user_message(category),
                    )

    async def _analyze_order(self, order_id: str) -> ReportEntry | PendingApproval:
        summary = await self._gateway.fetch_summary(order_id)
        contract = self._contracts.require(summary.shipper_id)
        order = await self._gateway.fetch_order(order_id)

        timestamps = None
        status = order.status.strip().upper()
        if status not in CANCELLED_STATUSES and status not in BILLED_STATUSES:
            leg = await self._gateway.fetch_execution_leg(order_id)
            if leg.tour_id:
                timestamps = await self._gateway.fetch_timestamps(order_id, leg.tour_id)

        results = RuleEngine.analyze_order(order=order, contract=contract, timestamps=timestamps)
        if any(r.action is ChargeAction.PENDING_APPROVAL for r in results):
            return PendingApproval(order=order, contract=contract, results=results)

        executed = await self._executor.execute(order=order, results=results)
        self._gateway.invalidate(order_id)
        return self._entry(order=order, results=executed, outcome=ReportOutcome.COMPLETED)

    async def _drain_approvals(self, *, run: BatchRun) -> None:
        """Handle queued approvals one at a time, in discovery order."""
        while run.approvals:
            if await self._stop_requested():
                logger.info(f"Stopping with {len(run.approvals)} approvals outstanding")
                return
            pending = run.approvals[0]
            order_id = pending.order.order_id
            with logger.contextualize(order_id=order_id):
                try:
                    entry = await self._resolve_approval(pending)
                except Exception as e:
                    category = classify_error(e)
                    logger.error(f"Approved changes for order {order_id} failed: {e}")
                    entry = ReportEntry(
                        order_id=order_id,
                        shipper_id=pending.order.shipper_id,
                        outcome=ReportOutcome.FAILED,
                        stops=pending.results,
                        error_category=category,
                        message=user_message(category),
                    )
                finally:
                    self._gateway.invalidate(order_id)
            run.approvals.pop(0)
            run.report.record(entry)
            self._checkpoint(run=run)
            self._publish(run)

    async def _resolve_approval(self, pending: PendingApproval) -> ReportEntry:
        order = pending.order
        decision = await self._approvals.request(
            order_id=order.order_id,
            shipper_id=order.shipper_id,
            results=pending.results,
            requires_auth=pending.contract.requires_auth,
        )
        if decision.verdict is ApprovalVerdict.YES:
            self._gateway.invalidate(order.order_id)
            order = await self._gateway.fetch_order(order.order_id)
        executed = await self._executor.execute(
            order=order, results=pending.results, approval=decision
        )
        return self._entry(order=order, results=executed, outcome=_APPROVAL_OUTCOMES[decision.verdict])

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @staticmethod
    def _entry(
        *, order: OrderDetails, results: list[AnalysisResult], outcome: ReportOutcome
    ) -> ReportEntry:
        total = sum(
            (
                r.outcome.amount
                for r in results
                if r.outcome is not None
                and r.outcome.kind in _CHARGED_OUTCOMES
                and r.outcome.amount is not None
            ),
            Decimal("0.00"),
        )
        return ReportEntry(
            order_id=order.order_id,
            shipper_id=order.shipper_id,
            outcome=outcome,
            stops=results,
            total_charge=total,
        )

    def _checkpoint(self, *, run: BatchRun, force: bool = False) -> None:
        snapshot = self._progress.build(
            order_ids=run.order_ids,
            chunk_index=run.chunk_index,
            processed_count=run.report.processed_count,
            failed_count=run.report.failed_count,
            report=run.report.ordered(run.order_ids),
        )
        self._progress.save(snapshot, force=force)

    def _snapshot_progress(self, run: BatchRun) -> BatchProgress:
        return BatchProgress(
            batch_id=run.batch_id,
            state=self._state,
            total=run.total,
            processed=run.report.processed_count,
            failed=run.report.failed_count,
            pending_approvals=len(run.approvals),
            chunk_index=run.chunk_index,
            chunk_count=run.chunk_count,
        )

    def _publish(self, run: BatchRun) -> None:
        self._presenter.report_batch_progress(self._snapshot_progress(run))
