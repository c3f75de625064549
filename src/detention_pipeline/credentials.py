import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from detention_pyutils.errors import AuthError, DetentionError, is_retryable
from src.detention_pipeline.constants import CREDENTIAL_STORAGE_KEY, UPSTREAM_AUTH
from src.detention_pipeline.ports import CredentialFetcher, CredentialSource, KeyValueStorage
from src.detention_pipeline.resilience.retrying_client import RetryingClient


@dataclass(frozen=True)
class Credential:
    token: str
    issued_at: float

    def remaining(self, *, now: float, max_age: float) -> float:
        return max(0.0, self.issued_at + max_age - now)


class CredentialManager:
    """Keeps one short-lived API credential valid.

    ``ensure`` prefers a credential observed in the surrounding session, then an
    unexpired cached one, then a network fetch. Concurrent callers share a single
    in-flight fetch. An optional monitor renews the credential in the background
    once its remaining validity drops below the warning threshold.

    Args:
        fetcher: Network credential fetch
        client: Retrying client used for the fetch
        source: Observer of a credential already held by the session
        storage: Shared store so other processes can reuse the credential
        max_age_seconds: Fixed credential lifetime
        warning_threshold_seconds: Remaining validity that triggers renewal
        monitor_interval: Seconds between background checks
        large_batch_threshold: Minimum batch size that runs the monitor
        clock: Wall-clock time source (epoch seconds)
        sleep: Coroutine used between monitor checks
    """

    def __init__(
        self,
        *,
        fetcher: CredentialFetcher,
        client: RetryingClient,
        source: CredentialSource | None = None,
        storage: KeyValueStorage | None = None,
        max_age_seconds: float = 1800.0,
        warning_threshold_seconds: float = 300.0,
        monitor_interval: float = 30.0,
        large_batch_threshold: int = 200,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetcher = fetcher
        self._client = client
        self._source = source
        self._storage = storage
        self._max_age = max_age_seconds
        self._warning = warning_threshold_seconds
        self._monitor_interval = monitor_interval
        self._large_batch_threshold = large_batch_threshold
        self._clock = clock
        self._sleep = sleep
        self._credential: Credential | None = None
        self._inflight: asyncio.Future[str] | None = None
        self._monitor: asyncio.Task[None] | None = None
        self._force_fetch = False
        self.fetch_count = 0

    @property
    def warning_threshold(self) -> float:
        return self._warning

    def remaining_validity(self) -> float:
        """Seconds the current credential stays valid; 0 without one."""
        credential = self._credential or self._load_stored()
        if credential is None:
            return 0.0
        return credential.remaining(now=self._clock(), max_age=self._max_age)

    async def ensure(self) -> str:
        """Return a valid token, fetching one only when nothing usable is held."""
        if not self._force_fetch:
            observed = self._observe()
            if observed is not None:
                return observed.token
            cached = self._credential or self._load_stored()
            if cached is not None and cached.remaining(now=self._clock(), max_age=self._max_age) > 0:
                self._credential = cached
                return cached.token
        return await self._fetch_single_flight()

    async def renew(self) -> str:
        """Replace the credential ahead of expiry.

        Raises:
            AuthError: If no fresh credential could be obtained.
        """
        if not self._force_fetch:
            observed = self._observe()
            if observed is not None and self._remaining(observed) > self._warning:
                return observed.token
        return await self._fetch_single_flight()

    def invalidate(self) -> None:
        """Drop the cached credential after an authentication failure."""
        logger.info("Credential invalidated, next use will fetch a new one")
        self._credential = None
        self._force_fetch = True
        if self._storage is not None:
            self._storage.delete(CREDENTIAL_STORAGE_KEY)

    def start_monitor(self, *, batch_size: int) -> bool:
        """Start background renewal when the batch is large enough."""
        if batch_size < self._large_batch_threshold or self._monitor is not None:
            return False
        self._monitor = asyncio.get_running_loop().create_task(self._monitor_loop())
        logger.debug(f"Credential monitor started for batch of {batch_size}")
        return True

    async def stop_monitor(self) -> None:
        if self._monitor is None:
            return
        self._monitor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._monitor
        self._monitor = None

    async def _monitor_loop(self) -> None:
        while True:
            await self._sleep(self._monitor_interval)
            remaining = self.remaining_validity()
            if remaining >= self._warning:
                continue
            logger.info(f"Credential expires in {remaining:.0f}s, renewing")
            try:
                await self.renew()
            except AuthError as e:
                logger.warning(f"Background credential renewal failed: {e}")

    def _remaining(self, credential: Credential) -> float:
        return credential.remaining(now=self._clock(), max_age=self._max_age)

    def _observe(self) -> Credential | None:
        if self._source is None:
            return None
        observed = self._source.observe()
        if observed is None:
            return None
        token, age = observed
        if not token or age >= self._max_age:
            return None
        credential = Credential(token=token, issued_at=self._clock() - age)
        self._credential = credential
        return credential

    def _load_stored(self) -> Credential | None:
        if self._storage is None:
            return None
        raw = self._storage.get(CREDENTIAL_STORAGE_KEY)
        if not raw or not raw.get("token"):
            return None
        return Credential(token=str(raw["token"]), issued_at=float(raw.get("issued_at", 0.0)))

    async def _fetch_single_flight(self) -> str:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._fetch())
        return await asyncio.shield(self._inflight)

    async def _fetch(self) -> str:
        self.fetch_count += 1
        try:
            token = await self._client.call(
                UPSTREAM_AUTH, self._fetcher.fetch_token, retry_if=is_retryable
            )
        except AuthError:
            raise
        except DetentionError as e:
            raise AuthError(msg=f"Could not obtain credential: {e}") from e
        credential = Credential(token=token, issued_at=self._clock())
        self._credential = credential
        self._force_fetch = False
        if self._storage is not None:
            self._storage.set(
                CREDENTIAL_STORAGE_KEY, {"token": token, "issued_at": credential.issued_at}
            )
        logger.info("Fetched new API credential")
        return token
