"""
Date Orchestration

Turns a date expression into a list of days, processes the days with bounded
concurrency and keeps `index.json` current after every successful day.
"""

import asyncio
import datetime
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import storage
from .archive import CONSENSUS, DESCRIPTORS, cleanup_extracted_consensus, ensure_archive, ensure_extracted_consensus
from .config import (
    BATCH_COUNTRY_MIN_DATES,
    COUNTRY_STATS_DELAY_DAYS,
    COUNTRY_STATS_FIRST_DATE,
    DEFAULT_PARALLEL_DAY,
    DEFAULT_PARALLEL_MONTH,
    DEFAULT_PARALLEL_YEAR,
)
from .countries import CountryFetcher, CountryFetchError
from .descriptors import load_descriptor_bandwidth
from .models import CountrySnapshot
from .sources import fetch_relay_snapshot
from .state import DateTiming, PipelineContext

log = logging.getLogger("RouteFlux.Orchestrator")

MODE_DAY = 'day'
MODE_MONTH = 'month'
MODE_RANGE = 'range'
MODE_YEAR = 'year'

RANGE_RE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{2})-(\d{1,2})/(\d{1,2})/(\d{2})$')
DAY_RE = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{2})$')
MONTH_RE = re.compile(r'^(\d{1,2})/(\d{2})$')
YEAR_RE = re.compile(r'^(\d{2})$')


@dataclass
class DateRange:
    start: datetime.date
    end: datetime.date
    mode: str
    description: str


def _date(year: int, month: int, day: int, text: str) -> datetime.date:
    try:
        return datetime.date(year, month, day)
    except ValueError:
        raise ValueError(f"Invalid date: {text}") from None


def parse_date_range(text: str, today: datetime.date) -> DateRange:
    """
    Parse `mm/dd/yy`, `mm/yy`, `yy`, `mm/dd/yy-mm/dd/yy`, `YYYY-MM-DD` or `--date=YYYY-MM-DD`.

    Two-digit years belong to the current century.
    """
    text = text.strip()
    century = today.year // 100 * 100

    if text.startswith('--date='):
        value = text[len('--date='):]
        try:
            day = datetime.date.fromisoformat(value)
        except ValueError:
            raise ValueError(f"Invalid date: {value}") from None
        return DateRange(day, day, MODE_DAY, value)

    m = RANGE_RE.match(text)
    if m:
        sm, sd, sy, em, ed, ey = (int(g) for g in m.groups())
        start = _date(century + sy, sm, sd, text)
        end = _date(century + ey, em, ed, text)
        return DateRange(start, end, MODE_RANGE, f"{start.isoformat()} to {end.isoformat()}")

    m = DAY_RE.match(text)
    if m:
        month, day, year = (int(g) for g in m.groups())
        date = _date(century + year, month, day, text)
        return DateRange(date, date, MODE_DAY, date.isoformat())

    m = MONTH_RE.match(text)
    if m:
        month, year = int(m.group(1)), century + int(m.group(2))
        start = _date(year, month, 1, text)
        next_month = _date(year + month // 12, month % 12 + 1, 1, text)
        end = next_month - datetime.timedelta(days=1)
        return DateRange(start, end, MODE_MONTH,
                         f"{year}-{month:02d} ({start.isoformat()} to {end.isoformat()})")

    m = YEAR_RE.match(text)
    if m:
        year = century + int(m.group(1))
        start, end = datetime.date(year, 1, 1), datetime.date(year, 12, 31)
        return DateRange(start, end, MODE_YEAR, f"{year} ({start.isoformat()} to {end.isoformat()})")

    try:
        day = datetime.date.fromisoformat(text)
    except ValueError:
        raise ValueError(
            f"Unrecognized date format: {text}. Use mm/dd/yy, mm/yy, yy, or mm/dd/yy-mm/dd/yy"
        ) from None
    return DateRange(day, day, MODE_DAY, day.isoformat())


def generate_dates(date_range: DateRange, today: datetime.date) -> List[str]:
    """Every day of the range as YYYY-MM-DD, inclusive, never past today."""
    end = min(date_range.end, today)
    dates = []
    current = date_range.start
    while current <= end:
        dates.append(current.isoformat())
        current += datetime.timedelta(days=1)
    return dates


def default_parallel(mode: str) -> int:
    if mode == MODE_YEAR:
        return DEFAULT_PARALLEL_YEAR
    if mode in (MODE_MONTH, MODE_RANGE):
        return DEFAULT_PARALLEL_MONTH
    return DEFAULT_PARALLEL_DAY


async def run_parallel(factories: List[Callable[[], Awaitable[Any]]], concurrency: int) -> List[Any]:
    """
    Run the coroutine factories with at most `concurrency` in flight.

    Results keep the input order; a failed task contributes its exception
    instead of aborting the others.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def bounded(factory):
        async with semaphore:
            return await factory()

    return await asyncio.gather(*(bounded(f) for f in factories), return_exceptions=True)


async def refresh_index(ctx: PipelineContext):
    async with ctx.index_lock:
        await ctx.run_blocking(storage.update_index, ctx.output_dir)


def _load_previous_country(ctx: PipelineContext, date_str: str) -> Optional[CountrySnapshot]:
    previous = (datetime.date.fromisoformat(date_str) - datetime.timedelta(days=1)).isoformat()
    path = storage.country_snapshot_path(ctx.output_dir, previous)
    try:
        snapshot = CountrySnapshot.from_dict(storage.read_json(path))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, AttributeError) as e:
        log.debug(f"Ignoring unreadable {path}: {e}")
        return None
    if snapshot.is_empty:
        return None
    log.warning(f"[{date_str}] No country data, using {previous}")
    return snapshot.relabeled(date_str)


async def process_date(ctx: PipelineContext, date_str: str, fetcher: CountryFetcher) -> bool:
    """
    Produce both snapshot files for one day. Returns True when a relay snapshot was written.

    Days whose files already exist are skipped without any network I/O.
    """
    relay_path = storage.relay_snapshot_path(ctx.output_dir, date_str)
    country_path = storage.country_snapshot_path(ctx.output_dir, date_str)

    if storage.snapshots_exist(ctx.output_dir, date_str):
        log.info(f"[{date_str}] Already exists, skipping")
        ctx.status.skipped += 1
        return False

    log.info(f"[{date_str}] Processing...")
    started = time.monotonic()
    timing = DateTiming(date_str)

    snapshot = await fetch_relay_snapshot(ctx, date_str, timing)
    if snapshot is not None:
        with timing.step('relay-write'):
            await ctx.run_blocking(storage.write_json_atomic, relay_path, snapshot.to_dict())
        log.info(f"[{date_str}] Relay data saved ({len(snapshot.nodes)} locations, "
                 f"{snapshot.relay_count} relays, {snapshot.geolocated_count} geolocated)")
        ctx.status.written += 1
    else:
        log.error(f"[{date_str}] No relay data")
        ctx.status.failed += 1
        ctx.status.failed_dates.append(date_str)

    country_started = time.monotonic()
    try:
        countries = await fetcher.fetch(date_str)
        timing.record('country-fetch', time.monotonic() - country_started)
        if not countries.countries:
            countries = await ctx.run_blocking(_load_previous_country, ctx, date_str) or countries
        with timing.step('country-write'):
            await ctx.run_blocking(storage.write_json_atomic, country_path, countries.to_dict())
        log.info(f"[{date_str}] Country data saved ({len(countries.countries)} countries, "
                 f"{countries.total_users:,} users)")
    except CountryFetchError as e:
        timing.record('country-fetch-failed', time.monotonic() - country_started)
        log.warning(f"[{date_str}] Country data not available: {e}")

    timing.total = time.monotonic() - started
    ctx.timings.append(timing)
    summary = ' '.join(f"{s.step}:{s.duration:.1f}s" for s in timing.steps)
    log.info(f"[{date_str}] Total: {timing.total:.1f}s [{summary}]")

    if snapshot is not None:
        await refresh_index(ctx)
    return snapshot is not None


async def prefetch_months(ctx: PipelineContext, months: List[str], fetcher: CountryFetcher):
    """Warm every per-month cache, one month at a time."""
    for month_key in months:
        year, month = int(month_key[:4]), int(month_key[5:7])
        log.info(f"Pre-fetching {month_key}...")
        await asyncio.gather(
            ensure_archive(ctx, CONSENSUS, year, month),
            ensure_archive(ctx, DESCRIPTORS, year, month),
        )
        await ensure_extracted_consensus(ctx, year, month)
        await load_descriptor_bandwidth(ctx, year, month)
        if fetcher.use_batch:
            await fetcher.load_month(year, month)
        log.info(f"{month_key} ready")


def step_averages(ctx: PipelineContext) -> Dict[str, float]:
    totals: Dict[str, List[float]] = {}
    for timing in ctx.timings:
        for step in timing.steps:
            totals.setdefault(step.step, []).append(step.duration)
    return {name: sum(values) / len(values) for name, values in totals.items()}


def log_summary(ctx: PipelineContext, elapsed: float):
    status = ctx.status
    log.info("=" * 60)
    log.info(f"Completed in {elapsed:.1f}s")
    log.info(f"Files written: {status.written}, skipped: {status.skipped}, failed: {status.failed}")
    if status.total_relays:
        pct = status.total_geolocated / status.total_relays * 100
        log.info(f"Relays: {status.total_relays:,} ({status.total_geolocated:,} geolocated, {pct:.1f}%)")
    if status.failed_dates:
        log.info(f"Failed dates: {', '.join(sorted(status.failed_dates))}")

    processed = [t.total for t in ctx.timings]
    if processed:
        log.info(f"Per date: avg {sum(processed) / len(processed):.1f}s, "
                 f"min {min(processed):.1f}s, max {max(processed):.1f}s")
        for name, avg in sorted(step_averages(ctx).items(), key=lambda kv: -kv[1]):
            log.info(f"  {name:<24} {avg:.2f}s avg")
    log.info("=" * 60)


async def run(ctx: PipelineContext, dates: List[str], parallel: int):
    """Process `dates` end to end: pre-fetch, per-day work, cleanup, final index."""
    started = time.monotonic()
    pending = [d for d in dates if not storage.snapshots_exist(ctx.output_dir, d)]
    if len(pending) < len(dates):
        log.info(f"Skipping {len(dates) - len(pending)} date(s) with existing snapshots")
        ctx.status.skipped += len(dates) - len(pending)
    if not pending:
        log.info("Nothing to fetch")
        log_summary(ctx, time.monotonic() - started)
        return

    fetcher = CountryFetcher(ctx, use_batch=len(pending) >= BATCH_COUNTRY_MIN_DATES)
    log.info(f"Dates to fetch: {len(pending)}, parallel: {parallel}, "
             f"country fetch: {'batch (monthly)' if fetcher.use_batch else 'daily'}")

    months = sorted({d[:7] for d in pending})
    if len(months) > 1:
        await prefetch_months(ctx, months, fetcher)

    results = await run_parallel([lambda d=d: process_date(ctx, d, fetcher) for d in pending], parallel)
    for date_str, result in zip(pending, results):
        if isinstance(result, Exception):
            log.error(f"[{date_str}] Failed: {result}", exc_info=result)
            ctx.status.failed += 1
            ctx.status.failed_dates.append(date_str)

    await ctx.run_blocking(cleanup_extracted_consensus, ctx)
    await refresh_index(ctx)
    log_summary(ctx, time.monotonic() - started)


async def run_country_backfill(ctx: PipelineContext) -> Dict[str, int]:
    """Re-fetch country files written before Tor Metrics had data for their date."""
    last_date = (ctx.today() - datetime.timedelta(days=COUNTRY_STATS_DELAY_DAYS)).isoformat()
    dates = await ctx.run_blocking(
        storage.scan_empty_country_files, ctx.output_dir, COUNTRY_STATS_FIRST_DATE, last_date
    )
    if not dates:
        log.info(f"No empty country files eligible for backfill "
                 f"(dated {COUNTRY_STATS_FIRST_DATE} to {last_date}).")
        return {'success': 0, 'failed': 0}

    log.info(f"Found {len(dates)} empty country file(s) to backfill")
    fetcher = CountryFetcher(ctx)
    success = failed = 0
    for date_str in dates:
        try:
            snapshot = await fetcher.fetch_daily(date_str)
        except CountryFetchError as e:
            log.error(f"[{date_str}] Failed to backfill: {e}")
            failed += 1
            continue
        if snapshot.is_empty:
            log.warning(f"[{date_str}] Still no data available")
            failed += 1
            continue
        await ctx.run_blocking(
            storage.write_json_atomic, storage.country_snapshot_path(ctx.output_dir, date_str), snapshot.to_dict()
        )
        log.info(f"[{date_str}] Backfilled ({len(snapshot.countries)} countries, {snapshot.total_users:,} users)")
        success += 1

    log.info(f"Backfill complete: {success} succeeded, {failed} failed")
    return {'success': success, 'failed': failed}
