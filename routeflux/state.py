import asyncio
import concurrent.futures
import datetime
import functools
import logging
import os
import random
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiohttp

from .config import (
    BLOCKING_POOL_SIZE,
    CACHE_DIR,
    DEFAULT_XZ_THREADS,
    GEOIP_DATABASE_PATH,
    MAX_COUNTRY_FETCH_CONCURRENCY,
    MAX_RETRIES,
    OUTPUT_DIR,
    RETRY_BASE_DELAY,
    RETRY_JITTER,
    USER_AGENT,
)
from .geo import GeoResolver
from .locks import KeyedLockManager
from .models import BandwidthEntry, CountrySnapshot
from .retry import with_retry

log = logging.getLogger("RouteFlux.State")


# Run-wide counters, reported in the final summary
@dataclass
class RunStatus:
    written: int = 0
    skipped: int = 0
    failed: int = 0
    total_relays: int = 0
    total_geolocated: int = 0
    failed_dates: List[str] = field(default_factory=list)


@dataclass
class StepTiming:
    step: str
    duration: float  # seconds


@dataclass
class DateTiming:
    """Per-step wall time for one processed date."""
    date: str
    steps: List[StepTiming] = field(default_factory=list)
    total: float = 0.0

    @contextmanager
    def step(self, name: str):
        started = time.monotonic()
        try:
            yield
        finally:
            self.steps.append(StepTiming(name, time.monotonic() - started))

    def record(self, name: str, duration: float):
        self.steps.append(StepTiming(name, duration))


class PipelineContext:
    """
    Long-lived state for one ingestion run.

    Holds the HTTP session, the geolocation resolver, the keyed lock manager
    and the per-month caches (extracted consensus directories, descriptor
    bandwidth indexes, country months). Construct one per run, or per test,
    and close it when done; usable as an async context manager.
    """

    def __init__(
        self,
        cache_dir: str = CACHE_DIR,
        output_dir: str = OUTPUT_DIR,
        geoip_path: str = GEOIP_DATABASE_PATH,
        xz_threads: int = DEFAULT_XZ_THREADS,
        session: Optional[aiohttp.ClientSession] = None,
        rng: Optional[random.Random] = None,
        now: Optional[Callable[[], datetime.datetime]] = None,
        retry_base_delay: float = RETRY_BASE_DELAY,
        retry_jitter: float = RETRY_JITTER,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        executor_workers: int = BLOCKING_POOL_SIZE,
    ):
        self.cache_dir = cache_dir
        self.output_dir = output_dir
        self.xz_threads = xz_threads
        self.rng = rng or random.Random()
        self._now = now or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self.retry_base_delay = retry_base_delay
        self.retry_jitter = retry_jitter
        self.sleep = sleep

        self.session = session
        self._owns_session = session is None
        self.geo = GeoResolver(geoip_path, rng=self.rng)
        self.locks = KeyedLockManager()
        self.executor = concurrent.futures.ThreadPoolExecutor(max_workers=executor_workers)

        # Process-lifetime caches, keyed by YYYY-MM
        self.extracted_consensus: Dict[str, str] = {}
        self.bandwidth_index: Dict[str, Dict[str, List[BandwidthEntry]]] = {}
        self.country_months: Dict[str, Dict[str, CountrySnapshot]] = {}

        self.index_lock = asyncio.Lock()
        self.country_semaphore = asyncio.Semaphore(MAX_COUNTRY_FETCH_CONCURRENCY)

        self.status = RunStatus()
        self.timings: List[DateTiming] = []

    async def start(self):
        """Create directories, load the GeoIP database and open the HTTP session.

        Raises OSError when the cache or output directory cannot be created.
        """
        for path in (self.cache_dir, self.output_dir):
            os.makedirs(path, exist_ok=True)
        self.geo.load()
        if self.session is None:
            self.session = aiohttp.ClientSession(headers={'User-Agent': USER_AGENT})
            self._owns_session = True
        log.debug(f"Pipeline context ready (cache={self.cache_dir}, output={self.output_dir})")

    async def close(self):
        await self.locks.close()
        self.geo.close()
        if self._owns_session and self.session is not None:
            await self.session.close()
            self.session = None
        self.executor.shutdown(wait=True)

    async def __aenter__(self) -> 'PipelineContext':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def now(self) -> datetime.datetime:
        return self._now()

    def today(self) -> datetime.date:
        return self._now().date()

    async def retry(self, operation: Callable[[], Awaitable[Any]], operation_name: str,
                    max_attempts: int = MAX_RETRIES) -> Any:
        return await with_retry(
            operation,
            operation_name,
            max_attempts=max_attempts,
            base_delay=self.retry_base_delay,
            jitter=self.retry_jitter,
            rng=self.rng,
            sleep=self.sleep,
        )

    async def run_blocking(self, func: Callable, *args) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))
