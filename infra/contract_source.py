from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from detention_pyutils.errors import ContractConfigError


class YamlContractConfigProvider:
    """Reads contract rows from a YAML file.

    The file holds either a list of rows or a mapping with a ``contracts`` list.
    Rows keep the spreadsheet column names and are validated downstream.
    """

    def __init__(self, *, path: Path) -> None:
        self._path = path

    async def fetch_rows(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            raise ContractConfigError(shipper_id="*", reason=f"contract file not found: {self._path}")
        try:
            with self._path.open("r") as file:
                data = yaml.safe_load(file) or []
        except yaml.YAMLError as e:
            raise ContractConfigError(shipper_id="*", reason=f"unreadable contract file: {e}") from e

        rows = data.get("contracts", []) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise ContractConfigError(shipper_id="*", reason="contract file must hold a list of rows")
        logger.debug(f"Read {len(rows)} contract rows from {self._path}")
        return [row for row in rows if isinstance(row, dict)]
