import time
from collections.abc import Callable

import pydantic
from loguru import logger

from src.detention_pipeline.constants import PROGRESS_FORMAT_VERSION, PROGRESS_STORAGE_KEY
from src.detention_pipeline.models import ProgressSnapshot, ReportEntry
from src.detention_pipeline.ports import KeyValueStorage


class ProgressStore:
    """Best-effort persistence of resumable batch checkpoints.

    Writes inside the throttle window after the previous write are skipped but
    still report success. Snapshots that are too old or carry another format
    version load as None.

    Args:
        storage: Key/value storage collaborator
        throttle_seconds: Minimum spacing between durable writes
        max_age_seconds: Age beyond which a snapshot is stale
        format_version: Version tag written into and required from snapshots
        clock: Wall-clock time source (epoch seconds)
    """

    def __init__(
        self,
        *,
        storage: KeyValueStorage,
        throttle_seconds: float = 2.0,
        max_age_seconds: float = 24 * 3600,
        format_version: int = PROGRESS_FORMAT_VERSION,
        key: str = PROGRESS_STORAGE_KEY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage
        self._throttle = throttle_seconds
        self._max_age = max_age_seconds
        self._format_version = format_version
        self._key = key
        self._clock = clock
        self._last_write: float | None = None

    def build(
        self,
        *,
        order_ids: list[str],
        chunk_index: int,
        processed_count: int,
        failed_count: int,
        report: list[ReportEntry],
    ) -> ProgressSnapshot:
        return ProgressSnapshot(
            order_ids=order_ids,
            chunk_index=chunk_index,
            processed_count=processed_count,
            failed_count=failed_count,
            report=report,
            saved_at=self._clock(),
            format_version=self._format_version,
        )

    def save(self, snapshot: ProgressSnapshot, *, force: bool = False) -> bool:
        """Persist a snapshot unless throttled.

        Returns:
            True when the snapshot was written or deliberately skipped; False only
            when the storage write failed.
        """
        now = self._clock()
        if not force and self._last_write is not None and now - self._last_write < self._throttle:
            return True
        try:
            self._storage.set(self._key, snapshot.model_dump(mode="json"))
        except OSError as e:
            logger.warning(f"Failed to persist batch progress: {e}")
            return False
        self._last_write = now
        return True

    def load(self) -> ProgressSnapshot | None:
        raw = self._storage.get(self._key)
        if raw is None:
            return None
        if raw.get("format_version") != self._format_version:
            logger.info(
                f"Ignoring progress snapshot with format version {raw.get('format_version')}"
            )
            return None
        try:
            snapshot = ProgressSnapshot.model_validate(raw)
        except pydantic.ValidationError as e:
            logger.warning(f"Ignoring unreadable progress snapshot: {e.error_count()} errors")
            return None
        if self._clock() - snapshot.saved_at > self._max_age:
            logger.info("Ignoring stale progress snapshot")
            return None
        return snapshot

    def load_matching(self, order_ids: list[str]) -> ProgressSnapshot | None:
        """Snapshot for exactly this order-id list (same ids, same order)."""
        snapshot = self.load()
        if snapshot is None or snapshot.order_ids != order_ids:
            return None
        return snapshot

    def clear(self) -> None:
        self._storage.delete(self._key)
        self._last_write = None
