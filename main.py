"""Detention Remediation Runner."""

import asyncio
import os
import traceback
from pathlib import Path

import orjson as json
import typer
from loguru import logger

from detention_pyutils.errors import AuthError, DetentionError
from infra.contract_source import YamlContractConfigProvider
from infra.order_api import (
    EnvironmentCredentialSource,
    HttpCredentialFetcher,
    OrderApiClient,
    OrderApiConfig,
)
from infra.storage import JsonFileStorage
from src.detention_pipeline.constants import ApprovalVerdict, BatchState, ContractStatus
from src.detention_pipeline.contracts import validate_contract_rows
from src.detention_pipeline.factory import build_service
from src.detention_pipeline.models import (
    ApprovalDecision,
    ApprovalRequest,
    BatchProgress,
    BatchReport,
    ProgressSnapshot,
)
from utils.config import EngineConfig, load_config
from utils.logging import setup_logging

app: typer.Typer = typer.Typer(
    help="Analyze and remediate driver detention charges", no_args_is_help=True
)

_VERDICTS = {"y": ApprovalVerdict.YES, "n": ApprovalVerdict.NO, "s": ApprovalVerdict.SKIP}


class ConsolePresenter:
    """Terminal presentation: progress lines, approval and resume prompts."""

    def report_batch_progress(self, progress: BatchProgress) -> None:
        typer.echo(
            f"[{progress.state.value}] chunk {progress.chunk_index + 1}/{max(progress.chunk_count, 1)} "
            f"processed {progress.processed}/{progress.total}, failed {progress.failed}, "
            f"awaiting approval {progress.pending_approvals}"
        )

    async def request_approval(self, request: ApprovalRequest) -> ApprovalDecision:
        return await asyncio.to_thread(self._prompt_approval, request)

    async def offer_resume(self, snapshot: ProgressSnapshot) -> bool:
        done = len(snapshot.completed_ids)
        return await asyncio.to_thread(
            typer.confirm,
            f"Found an interrupted run with {done}/{len(snapshot.order_ids)} orders done. Resume?",
            default=True,
        )

    @staticmethod
    def _prompt_approval(request: ApprovalRequest) -> ApprovalDecision:
        typer.echo(
            f"\nOrder {request.order_id} (shipper {request.shipper_id}): "
            f"detention ${request.total_charge} - answer within {request.expires_in:.0f}s"
        )
        for stop in request.breakdown:
            capped = " (max charge)" if stop.hit_max else ""
            typer.echo(
                f"  stop {stop.stop_sequence} {stop.stop_type.value}: "
                f"{stop.chargeable_minutes} min, ${stop.charge}{capped}"
            )
        answer = typer.prompt("Apply charges? [y]es/[n]o/[s]kip", default="s").strip().lower()
        verdict = _VERDICTS.get(answer[:1], ApprovalVerdict.SKIP)
        token = None
        if verdict is ApprovalVerdict.YES and request.requires_auth:
            token = typer.prompt("Authorization code").strip()
        return ApprovalDecision(verdict=verdict, auth_token=token)


def _read_order_ids(*, order_ids: list[str], orders_file: Path | None) -> list[str]:
    ids = [oid.strip() for oid in order_ids if oid.strip()]
    if orders_file is not None:
        ids.extend(line.strip() for line in orders_file.read_text().splitlines() if line.strip())
    return ids


def _print_summary(report: BatchReport, order_ids: list[str]) -> None:
    typer.echo(f"\nProcessed {report.processed_count}, failed {report.failed_count}")
    for entry in report.ordered(order_ids):
        detail = f" ${entry.total_charge}" if entry.total_charge else ""
        note = f" - {entry.message}" if entry.message else ""
        typer.echo(f"  {entry.order_id}: {entry.outcome.value}{detail}{note}")


async def run_batch_core(
    *, config: EngineConfig, order_ids: list[str], resume: bool | None, report_path: Path | None
) -> bool:
    """Wire the engine against the HTTP APIs and run one batch.

    Returns:
        True if the batch ran to completion, False otherwise.
    """
    presenter = ConsolePresenter()
    storage = JsonFileStorage(directory=config.storage.directory)
    async with OrderApiClient(config=OrderApiConfig(base_url=config.api.base_url)) as api:
        service = build_service(
            config=config,
            provider=api,
            mutator=api,
            fetcher=HttpCredentialFetcher(
                api=api, client_id=config.api.client_id, client_secret=config.api.client_secret
            ),
            presenter=presenter,
            storage=storage,
            contract_provider=YamlContractConfigProvider(path=config.contracts_file),
            source=EnvironmentCredentialSource(env_var=config.credential.env_token_var),
        )
        try:
            await service.contracts.refresh()
            report = await service.orchestrator.analyze(order_ids, resume=resume)
        except AuthError as e:
            typer.echo(f"Batch aborted: {e}", err=True)
            return False
        finally:
            service.cache.clear()

    _print_summary(report, list(dict.fromkeys(order_ids)))
    if report_path is not None:
        entries = [e.model_dump(mode="json") for e in report.ordered(list(dict.fromkeys(order_ids)))]
        report_path.write_bytes(json.dumps(entries, option=json.OPT_INDENT_2))
        typer.echo(f"Report written to {report_path}")
    return service.orchestrator.state is BatchState.COMPLETED


@app.command()
def analyze(
    order_ids: list[str] = typer.Argument(None, help="Order ids to process", show_default=False),
    orders_file: Path = typer.Option(
        None, "--orders-file", help="File with one order id per line", show_default=False
    ),
    config_path: str = typer.Option(
        default=None,
        help="Path to configuration YAML file",
        show_default=False,
    ),
    resume: bool = typer.Option(
        None,
        "--resume/--no-resume",
        help="Resume or discard an interrupted run without asking",
        show_default=False,
    ),
    report_path: Path = typer.Option(
        None, "--report", help="Write the batch report as JSON", show_default=False
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output logs in JSON format instead of human-readable format",
    ),
) -> None:
    """Analyze orders for detention and apply the resulting pricing changes."""
    if json_logs:
        os.environ["LOG_JSON"] = "true"

    setup_logging(service="detention")
    success = False
    try:
        config_obj = load_config(config_path=config_path)
        ids = _read_order_ids(order_ids=order_ids or [], orders_file=orders_file)
        if not ids:
            typer.echo("No order ids given", err=True)
        else:
            success = asyncio.run(
                run_batch_core(
                    config=config_obj, order_ids=ids, resume=resume, report_path=report_path
                )
            )
    except KeyboardInterrupt:
        logger.info("Batch interrupted by user")
    except DetentionError as e:
        typer.echo(f"Error: {e}", err=True)
        logger.error(f"Batch failed: {e}")
    except Exception as e:
        typer.echo(f"An unexpected error occurred: {e}", err=True)
        logger.error(f"Batch execution failed: {e}")
        logger.error(traceback.format_exc())
    finally:
        if not success:
            raise typer.Exit(1)


@app.command("validate-contracts")
def validate_contracts(
    config_path: str = typer.Option(
        default=None,
        help="Path to configuration YAML file",
        show_default=False,
    ),
) -> None:
    """Run the contract validation pass and list every row's status."""
    setup_logging(service="detention")
    try:
        config_obj = load_config(config_path=config_path)
        rows = asyncio.run(YamlContractConfigProvider(path=config_obj.contracts_file).fetch_rows())
    except DetentionError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e

    config_set = validate_contract_rows(rows)
    for entry in config_set.all_entries:
        typer.echo(f"{entry.shipper_id}: {entry.status.value}")
        for error in entry.field_errors:
            typer.echo(f"    {error}")
    if any(e.status is ContractStatus.VALIDATION_ERROR for e in config_set.all_entries):
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
