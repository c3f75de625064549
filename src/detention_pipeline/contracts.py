"""
Contract configuration validation and lookup.

Raw rows arrive in spreadsheet shape: one row per shipper, scalar terms plus
``<stop>_<load>_eligible`` / ``<stop>_<load>_free_time`` column pairs. Each row
becomes either a complete ContractConfig or an itemized list of field errors.
"""

from dataclasses import dataclass, field
from typing import Any, Final

import pydantic
from loguru import logger
from pydantic import BaseModel

from detention_pyutils.errors import ContractConfigError
from src.detention_pipeline.constants import ContractStatus, LoadType, StopType
from src.detention_pipeline.models import ContractConfig, StopRule
from src.detention_pipeline.ports import ContractConfigProvider

_MONEY_FIELDS: Final[tuple[str, ...]] = ("rate", "max_charge")
_INACTIVE_MARKERS: Final[set[str]] = {"inactive", "disabled", "no", "false", "0"}


class ContractEntry(BaseModel):
    """Status of one row from the contract source."""

    shipper_id: str
    status: ContractStatus
    field_errors: list[str] = []


@dataclass(frozen=True)
class ContractConfigSet:
    valid_configs: dict[str, ContractConfig] = field(default_factory=dict)
    all_entries: list[ContractEntry] = field(default_factory=list)


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _normalize_money(value: Any) -> Any:
    if isinstance(value, str):
        return value.replace("$", "").replace(",", "").strip()
    return value


def _stop_rules(row: dict[str, Any]) -> tuple[list[dict[str, Any]], list[str]]:
    rules: list[dict[str, Any]] = []
    errors: list[str] = []
    for stop_type in StopType:
        for load_type in LoadType:
            prefix = f"{stop_type.value}_{load_type.value}"
            eligible = row.get(f"{prefix}_eligible")
            free_time = row.get(f"{prefix}_free_time")
            if _blank(eligible) and _blank(free_time):
                continue
            if _blank(eligible) or _blank(free_time):
                errors.append(f"{prefix}: eligibility and free time must both be set")
                continue
            rules.append(
                {
                    "stop_type": stop_type,
                    "load_type": load_type,
                    "eligible": eligible,
                    "free_time_minutes": free_time,
                }
            )
    if not rules and not errors:
        errors.append("stop_rules: at least one stop/load rule is required")
    return rules, errors


def parse_contract_row(row: dict[str, Any]) -> ContractConfig | list[str]:
    """Validate one raw row.

    Args:
        row: Raw column -> value mapping

    Returns:
        A complete ContractConfig, or the list of field errors found
    """
    rules, errors = _stop_rules(row)
    payload: dict[str, Any] = {
        key: value
        for key, value in row.items()
        if key in ContractConfig.model_fields and key != "stop_rules" and not _blank(value)
    }
    for money in _MONEY_FIELDS:
        if money in payload:
            payload[money] = _normalize_money(payload[money])
    payload["stop_rules"] = rules
    try:
        config = ContractConfig.model_validate(payload)
    except pydantic.ValidationError as e:
        errors.extend(
            f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        return errors
    return errors if errors else config


def validate_contract_rows(rows: list[dict[str, Any]]) -> ContractConfigSet:
    """Run the validation pass over every row from the contract source."""
    valid: dict[str, ContractConfig] = {}
    entries: list[ContractEntry] = []
    for index, row in enumerate(rows):
        shipper_id = str(row.get("shipper_id") or "").strip() or f"<row {index + 1}>"
        if str(row.get("status", "active")).strip().lower() in _INACTIVE_MARKERS:
            entries.append(ContractEntry(shipper_id=shipper_id, status=ContractStatus.INACTIVE))
            continue
        parsed = parse_contract_row(row)
        if isinstance(parsed, ContractConfig):
            valid[parsed.shipper_id] = parsed
            entries.append(ContractEntry(shipper_id=shipper_id, status=ContractStatus.ACTIVE))
        else:
            entries.append(
                ContractEntry(
                    shipper_id=shipper_id,
                    status=ContractStatus.VALIDATION_ERROR,
                    field_errors=parsed,
                )
            )
    invalid = sum(1 for e in entries if e.status is ContractStatus.VALIDATION_ERROR)
    logger.info(f"Contract configs loaded: {len(valid)} active, {invalid} with errors")
    return ContractConfigSet(valid_configs=valid, all_entries=entries)


class ContractRegistry:
    """Holds the published contract set; refresh replaces it wholesale.

    Args:
        provider: Source of raw contract rows
    """

    def __init__(self, *, provider: ContractConfigProvider | None = None) -> None:
        self._provider = provider
        self._current: ContractConfigSet | None = None

    @property
    def loaded(self) -> bool:
        return self._current is not None

    def publish(self, config_set: ContractConfigSet) -> None:
        self._current = config_set

    async def refresh(self) -> ContractConfigSet:
        if self._provider is None:
            raise ContractConfigError(shipper_id="*", reason="no contract source configured")
        config_set = validate_contract_rows(await self._provider.fetch_rows())
        self.publish(config_set)
        return config_set

    def require(self, shipper_id: str) -> ContractConfig:
        """Active, complete contract for a shipper.

        Raises:
            ContractConfigError: If contracts are not loaded, or the shipper's
                contract is missing, inactive or invalid.
        """
        current = self._current
        if current is None:
            raise ContractConfigError(shipper_id=shipper_id, reason="contracts not loaded")
        config = current.valid_configs.get(shipper_id)
        if config is not None:
            return config
        for entry in current.all_entries:
            if entry.shipper_id != shipper_id:
                continue
            if entry.status is ContractStatus.INACTIVE:
                raise ContractConfigError(shipper_id=shipper_id, reason="contract is inactive")
            raise ContractConfigError(
                shipper_id=shipper_id,
                reason="contract has errors: " + "; ".join(entry.field_errors),
            )
        raise ContractConfigError(shipper_id=shipper_id, reason="no contract on file")
