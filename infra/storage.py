"""Key/value storage backends for checkpoints and shared credentials."""

import re
from pathlib import Path
from typing import Any

import orjson as json
from loguru import logger

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class JsonFileStorage:
    """One JSON document per key under a state directory.

    Writes go to a temporary sibling and are renamed into place, so a reader
    never observes a half-written document.

    Args:
        directory: Directory holding the documents; created on first write
    """

    def __init__(self, *, directory: Path) -> None:
        self._directory = directory

    def _path(self, key: str) -> Path:
        return self._directory / f"{_UNSAFE_KEY_CHARS.sub('_', key)}.json"

    def get(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            value = json.loads(path.read_bytes())
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable state file {path.name}: {e}")
            return None
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_bytes(json.dumps(value, option=json.OPT_INDENT_2))
        tmp.replace(path)

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class InMemoryStorage:
    """Process-local storage, used when nothing should survive the process."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._data
