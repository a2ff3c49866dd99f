"""
Country Client Counts

Fetches per-country user estimates from the Tor Metrics
`userstats-relay-country.csv` endpoint, either one day at a time or one
month per request for multi-day runs.
"""

import asyncio
import calendar
import datetime
import logging
from typing import Dict, Optional

import aiohttp

from .config import (
    COUNTRY_BATCH_RETRIES,
    COUNTRY_BATCH_TIMEOUT,
    COUNTRY_DAILY_RETRIES,
    COUNTRY_DAILY_TIMEOUT,
    COUNTRY_FALLBACK_SEARCH_DAYS,
    COUNTRY_FALLBACK_WINDOW_DAYS,
    METRICS_COUNTRY_URL,
)
from .locks import COUNTRY_FETCH
from .models import CountrySnapshot
from .storage import is_valid_date_str

log = logging.getLogger("RouteFlux.Countries")

UNKNOWN_COUNTRY = '??'


class CountryFetchError(Exception):
    """Raised when Tor Metrics answers with an error or can't be reached."""


def empty_snapshot(date_str: str) -> CountrySnapshot:
    return CountrySnapshot(date=date_str)


def _int_or_zero(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_country_csv(text: str) -> Dict[str, CountrySnapshot]:
    """
    Group the CSV rows by date.

    Columns are positional: date, country, users, lower, upper. The row with
    an empty country is the day's total; without one the total is the sum of
    the per-country rows. The `??` (unknown) country is dropped.
    """
    totals: Dict[str, Optional[int]] = {}
    sums: Dict[str, int] = {}
    countries: Dict[str, Dict[str, Dict[str, int]]] = {}

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#') or line.startswith('date,'):
            continue
        parts = line.split(',')
        if len(parts) < 3:
            continue
        date_str, country = parts[0].strip(), parts[1].strip().upper()
        try:
            users = int(parts[2])
        except ValueError:
            continue
        if not date_str:
            continue

        totals.setdefault(date_str, None)
        sums.setdefault(date_str, 0)
        countries.setdefault(date_str, {})

        if country == '':
            totals[date_str] = users
            continue
        if country == UNKNOWN_COUNTRY:
            continue

        countries[date_str][country] = {
            'count': users,
            'lower': _int_or_zero(parts[3]) if len(parts) > 3 else 0,
            'upper': _int_or_zero(parts[4]) if len(parts) > 4 else 0,
        }
        sums[date_str] += users

    return {
        date_str: CountrySnapshot(
            date=date_str,
            total_users=totals[date_str] if totals[date_str] is not None else sums[date_str],
            countries=countries[date_str],
        )
        for date_str in countries
    }


def month_bounds(year: int, month: int):
    last_day = calendar.monthrange(year, month)[1]
    return f"{year:04d}-{month:02d}-01", f"{year:04d}-{month:02d}-{last_day:02d}"


class CountryFetcher:
    """
    Resolves the country snapshot for a date.

    In batch mode whole months are requested once and cached on the context;
    dates missing from a month fall back to a single-day request. Recent dates
    with no data yet reuse the closest earlier day, relabeled.
    """

    def __init__(self, ctx, use_batch: bool = False):
        self.ctx = ctx
        self.use_batch = use_batch

    async def _fetch_csv(self, start: str, end: str, timeout: float) -> str:
        url = f"{METRICS_COUNTRY_URL}?start={start}&end={end}"
        async with self.ctx.country_semaphore:
            try:
                async with self.ctx.session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                    if resp.status != 200:
                        raise CountryFetchError(f"HTTP {resp.status} for {url}")
                    return await resp.text()
            except asyncio.TimeoutError:
                raise CountryFetchError(f"Request timeout ({timeout}s) for {url}") from None
            except aiohttp.ClientError as e:
                raise CountryFetchError(f"Request failed for {url}: {e}") from e

    async def fetch_daily(self, date_str: str) -> CountrySnapshot:
        async def attempt():
            text = await self._fetch_csv(date_str, date_str, COUNTRY_DAILY_TIMEOUT)
            return parse_country_csv(text).get(date_str) or empty_snapshot(date_str)

        return await self.ctx.retry(attempt, f"Country data {date_str}", COUNTRY_DAILY_RETRIES)

    async def load_month(self, year: int, month: int) -> Dict[str, CountrySnapshot]:
        """All days of a month, or an empty map when the batch request keeps failing."""
        month_key = f"{year:04d}-{month:02d}"
        if month_key in self.ctx.country_months:
            return self.ctx.country_months[month_key]

        async def operation():
            if month_key in self.ctx.country_months:
                return self.ctx.country_months[month_key]
            start, end = month_bounds(year, month)
            data: Dict[str, CountrySnapshot] = {}
            try:
                text = await self.ctx.retry(
                    lambda: self._fetch_csv(start, end, COUNTRY_BATCH_TIMEOUT),
                    f"Monthly country data {month_key}",
                    COUNTRY_BATCH_RETRIES,
                )
                data = parse_country_csv(text)
                log.info(f"Loaded country data for {month_key} ({len(data)} days, batch)")
            except CountryFetchError as e:
                log.warning(f"Batch country fetch failed for {month_key}: {e}. Falling back to daily requests")
            self.ctx.country_months[month_key] = data
            return data

        return await self.ctx.locks.run(COUNTRY_FETCH, month_key, operation)

    async def _fetch_resolved(self, date_str: str) -> CountrySnapshot:
        if self.use_batch:
            monthly = await self.load_month(int(date_str[:4]), int(date_str[5:7]))
            if date_str in monthly:
                return monthly[date_str]
        return await self.fetch_daily(date_str)

    async def _search_backward(self, date_str: str) -> Optional[CountrySnapshot]:
        target = datetime.date.fromisoformat(date_str)
        for days_back in range(1, COUNTRY_FALLBACK_SEARCH_DAYS + 1):
            previous = (target - datetime.timedelta(days=days_back)).isoformat()
            try:
                candidate = await self._fetch_resolved(previous)
            except CountryFetchError:
                continue
            if not candidate.is_empty:
                log.info(f"Using fallback country data from {previous} for {date_str}")
                return candidate.relabeled(date_str)
        return None

    async def fetch(self, date_str: str) -> CountrySnapshot:
        """
        Country snapshot for `date_str`.

        Raises:
            CountryFetchError: the date and every fallback day failed to fetch
        """
        if not is_valid_date_str(date_str):
            log.warning(f"Invalid date for country data: {date_str!r}")
            return empty_snapshot(str(date_str))

        try:
            snapshot = await self._fetch_resolved(date_str)
        except CountryFetchError:
            log.warning(f"Failed to fetch country data for {date_str}, trying last "
                        f"{COUNTRY_FALLBACK_SEARCH_DAYS} days...")
            fallback = await self._search_backward(date_str)
            if fallback is not None:
                return fallback
            raise

        if snapshot.is_empty:
            age = (self.ctx.today() - datetime.date.fromisoformat(date_str)).days
            if age <= COUNTRY_FALLBACK_WINDOW_DAYS:
                log.info(f"No country data for {date_str} yet, searching backwards...")
                fallback = await self._search_backward(date_str)
                if fallback is not None:
                    return fallback
        return snapshot
