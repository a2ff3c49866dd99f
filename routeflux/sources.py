"""
Relay Source Selection

Recent dates come from Onionoo, which only knows the live network; older
dates are rebuilt from CollecTor consensus and descriptor archives.
"""

import datetime
import logging
import time
from typing import Optional

from .archive import ensure_extracted_consensus
from .config import RECENT_DAYS
from .consensus import aggregate_consensus, apply_descriptor_bandwidth
from .descriptors import load_descriptor_bandwidth
from .models import DailyRelaySnapshot
from .nodes import build_relay_snapshot
from .onionoo_client import OnionooClient, relays_from_onionoo
from .state import DateTiming

log = logging.getLogger("RouteFlux.Sources")

SOURCE_ONIONOO = 'onionoo'
SOURCE_COLLECTOR = 'collector'


def is_recent(date_str: str, now: datetime.datetime) -> bool:
    """True for dates Onionoo can still answer for (today and yesterday)."""
    day = datetime.datetime.strptime(date_str, '%Y-%m-%d').replace(tzinfo=datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    return (now - day) < datetime.timedelta(days=RECENT_DAYS)


def _record_totals(ctx, snapshot: DailyRelaySnapshot):
    ctx.status.total_relays += snapshot.relay_count
    ctx.status.total_geolocated += snapshot.geolocated_count


async def fetch_onionoo_snapshot(ctx, timing: DateTiming) -> Optional[DailyRelaySnapshot]:
    with timing.step('onionoo-fetch'):
        payload = await OnionooClient(ctx.session).fetch_details()
    if payload is None:
        return None
    with timing.step('onionoo-process'):
        relays = relays_from_onionoo(payload)
        snapshot = build_relay_snapshot(relays, ctx.geo, payload.get('relays_published', ''), SOURCE_ONIONOO)
    _record_totals(ctx, snapshot)
    return snapshot


async def fetch_collector_snapshot(ctx, date_str: str, timing: DateTiming) -> Optional[DailyRelaySnapshot]:
    """Rebuild one day from the monthly CollecTor archives. None when the day can't be built."""
    year, month = int(date_str[:4]), int(date_str[5:7])

    with timing.step('consensus-extract-all'):
        extracted = await ensure_extracted_consensus(ctx, year, month)
    if extracted is None:
        return None

    with timing.step('descriptor-load'):
        index = await load_descriptor_bandwidth(ctx, year, month)

    with timing.step('consensus-process-all'):
        relays = await ctx.run_blocking(aggregate_consensus, extracted, date_str)
    if not relays:
        return None

    started = time.monotonic()
    matched = apply_descriptor_bandwidth(relays, index, date_str)
    for relay in relays:
        relay.nickname = relay.nickname.replace(',', '')
    # Consensus entries carry no country, so unplaced relays use the default centroid
    snapshot = build_relay_snapshot(relays, ctx.geo, date_str, SOURCE_COLLECTOR)
    timing.record('geolocate', time.monotonic() - started)

    log.info(f"[{date_str}] Matched {matched}/{len(relays)} relays with descriptor bandwidth")
    _record_totals(ctx, snapshot)
    return snapshot


async def fetch_relay_snapshot(ctx, date_str: str, timing: DateTiming) -> Optional[DailyRelaySnapshot]:
    if is_recent(date_str, ctx.now()):
        started = time.monotonic()
        snapshot = await fetch_onionoo_snapshot(ctx, timing)
        if snapshot is not None:
            return snapshot
        timing.record('onionoo-fetch-failed', time.monotonic() - started)
        log.warning(f"[{date_str}] Onionoo failed, trying CollecTor...")
    return await fetch_collector_snapshot(ctx, date_str, timing)
