from dataclasses import dataclass
from typing import Any

from src.detention_pipeline.approval import ApprovalCoordinator
from src.detention_pipeline.cache import RateLimitedCache
from src.detention_pipeline.contracts import ContractRegistry
from src.detention_pipeline.credentials import CredentialManager
from src.detention_pipeline.gateway import OrderGateway
from src.detention_pipeline.orchestrator import BatchOrchestrator
from src.detention_pipeline.ports import (
    ContractConfigProvider,
    CredentialFetcher,
    CredentialSource,
    KeyValueStorage,
    OrderDataProvider,
    Presenter,
    PricingMutator,
)
from src.detention_pipeline.progress import ProgressStore
from src.detention_pipeline.resilience import BackoffWait, CircuitBreaker, RetryingClient
from utils.config import EngineConfig


@dataclass
class DetentionService:
    """Wired components of one detention engine instance."""

    orchestrator: BatchOrchestrator
    contracts: ContractRegistry
    credentials: CredentialManager
    gateway: OrderGateway
    cache: RateLimitedCache[Any]
    progress: ProgressStore
    approvals: ApprovalCoordinator


def build_service(
    *,
    config: EngineConfig,
    provider: OrderDataProvider,
    mutator: PricingMutator,
    fetcher: CredentialFetcher,
    presenter: Presenter,
    storage: KeyValueStorage,
    contract_provider: ContractConfigProvider | None = None,
    source: CredentialSource | None = None,
    **overrides: Any,
) -> DetentionService:
    """Assemble the engine from configuration and its collaborators.

    ``overrides`` may supply ``sleep`` or ``clock`` for deterministic runs.
    """
    sleep = overrides.get("sleep")
    timing: dict[str, Any] = {"sleep": sleep} if sleep is not None else {}

    wait = BackoffWait(
        base_delay=config.retry.base_delay,
        max_delay=config.retry.max_delay,
        jitter=config.retry.jitter,
        rate_limit_multiplier=config.retry.rate_limit_multiplier,
    )
    breaker = CircuitBreaker(
        failure_threshold=config.circuit.failure_threshold,
        success_threshold=config.circuit.success_threshold,
        reset_timeout=config.circuit.reset_timeout,
    )
    client = RetryingClient(
        breaker=breaker,
        timeout=config.retry.timeout,
        max_attempts=config.retry.max_attempts,
        wait=wait,
        **timing,
    )
    credentials = CredentialManager(
        fetcher=fetcher,
        client=client,
        source=source,
        storage=storage,
        max_age_seconds=config.credential.max_age,
        warning_threshold_seconds=config.credential.warning_threshold,
        monitor_interval=config.credential.monitor_interval,
        large_batch_threshold=config.credential.large_batch_threshold,
        **timing,
    )
    cache: RateLimitedCache[Any] = RateLimitedCache(
        maxsize=config.cache.maxsize,
        default_ttl=config.cache.ttl,
        sweep_interval=config.cache.sweep_interval,
    )
    gateway = OrderGateway(
        provider=provider,
        mutator=mutator,
        client=client,
        credentials=credentials,
        cache=cache,
    )
    progress_kwargs: dict[str, Any] = {}
    if "clock" in overrides:
        progress_kwargs["clock"] = overrides["clock"]
    progress = ProgressStore(
        storage=storage,
        throttle_seconds=config.progress.throttle,
        max_age_seconds=config.progress.max_age,
        format_version=config.progress.format_version,
        **progress_kwargs,
    )
    contracts = ContractRegistry(provider=contract_provider)
    approvals = ApprovalCoordinator(presenter=presenter, window_seconds=config.approval.window_seconds)
    orchestrator = BatchOrchestrator(
        config=config.batch,
        gateway=gateway,
        contracts=contracts,
        credentials=credentials,
        progress=progress,
        approvals=approvals,
        presenter=presenter,
        retry_wait=wait,
        **timing,
    )
    return DetentionService(
        orchestrator=orchestrator,
        contracts=contracts,
        credentials=credentials,
        gateway=gateway,
        cache=cache,
        progress=progress,
        approvals=approvals,
    )
