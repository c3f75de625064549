import asyncio
import contextlib
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from loguru import logger

V = TypeVar("V")


@dataclass
class CacheEntry(Generic[V]):
    value: V
    inserted_at: float
    last_access: float
    ttl: float

    def expired(self, now: float) -> bool:
        return now - self.inserted_at > self.ttl


class RateLimitedCache(Generic[V]):
    """TTL + LRU cache for fetched upstream entities.

    Entries older than their TTL read as misses and are dropped. At capacity the
    least recently *accessed* entry is evicted. A background sweep removes expired
    entries; it starts on the first insertion made inside a running event loop and
    stops on ``clear``.

    Args:
        maxsize: Maximum number of entries
        default_ttl: TTL in seconds for entries added without an override
        sweep_interval: Seconds between background sweeps
        clock: Monotonic time source
    """

    def __init__(
        self,
        *,
        maxsize: int = 500,
        default_ttl: float = 300.0,
        sweep_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.maxsize = maxsize
        self.default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry[V]] = OrderedDict()
        self._sweeper: asyncio.Task[None] | None = None
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        now = self._clock()
        if entry.expired(now):
            del self._entries[key]
            self.misses += 1
            return None
        entry.last_access = now
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    def add(self, key: str, value: V, *, ttl: float | None = None) -> None:
        """Insert or replace an entry, evicting the LRU entry when full."""
        now = self._clock()
        if key in self._entries:
            del self._entries[key]
        elif len(self._entries) >= self.maxsize:
            evicted_key, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cache entry: {evicted_key}")
        self._entries[key] = CacheEntry(
            value=value,
            inserted_at=now,
            last_access=now,
            ttl=self.default_ttl if ttl is None else ttl,
        )
        self._ensure_sweeper()

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[str], bool]) -> int:
        """Drop every entry whose key matches; returns how many were dropped."""
        doomed = [key for key in self._entries if predicate(key)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def sweep(self) -> int:
        """Remove TTL-expired entries."""
        now = self._clock()
        removed = self.invalidate_where(lambda key: self._entries[key].expired(now))
        if removed:
            logger.debug(f"Cache sweep removed {removed} expired entries")
        return removed

    def size(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def clear(self) -> None:
        """Drop all entries and stop the background sweep."""
        self._entries.clear()
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    def _ensure_sweeper(self) -> None:
        if self.sweeping:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweeper = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        with contextlib.suppress(asyncio.CancelledError):
            while True:
                await asyncio.sleep(self._sweep_interval)
                self.sweep()
