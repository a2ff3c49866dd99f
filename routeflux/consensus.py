"""
Consensus Aggregation

Reads the hourly network-status consensuses of one day from an extracted
archive and merges them into a single relay list with an hourly uptime bitmap.
"""

import logging
import os
import re
from typing import Dict, List, Optional

from .descriptors import BandwidthIndex, bandwidth_for_date
from .models import RelayObservation
from .nodes import base64_to_hex, map_flags

log = logging.getLogger("RouteFlux.Consensus")

BANDWIDTH_WEIGHT = re.compile(r'Bandwidth=(\d+)')


def parse_consensus(text: str) -> List[RelayObservation]:
    """Relay entries (`r`, `s`, `w` lines) of one consensus document."""
    relays = []
    current: Optional[RelayObservation] = None

    for line in text.split('\n'):
        if line.startswith('r '):
            if current:
                relays.append(current)
            current = None
            p = line.split(' ')
            if len(p) >= 9:
                current = RelayObservation(
                    fingerprint=base64_to_hex(p[2]),
                    nickname=p[1],
                    ip=p[6],
                    port=p[7],
                )
        elif line.startswith('s ') and current:
            current.flags = map_flags(line[2:].split(' '))
        elif line.startswith('w ') and current:
            m = BANDWIDTH_WEIGHT.search(line)
            if m:
                current.bandwidth = int(m.group(1))

    if current:
        relays.append(current)
    return relays


def find_consensus_files(extracted_dir: str, date: str) -> List[str]:
    """Every file under `extracted_dir` whose name starts with `YYYY-MM-DD-`."""
    prefix = f"{date}-"
    found = []
    for root, _, files in os.walk(extracted_dir):
        found.extend(os.path.join(root, name) for name in files if name.startswith(prefix))
    return sorted(found)


def hour_from_filename(filename: str, date: str) -> int:
    m = re.search(rf'{re.escape(date)}-(\d{{2}})', filename)
    return int(m.group(1)) if m else 0


def aggregate_consensus(extracted_dir: str, date: str) -> Optional[List[RelayObservation]]:
    """
    Merge the day's hourly consensuses per fingerprint.

    Sets bit `hour` of each relay's uptime for every consensus it appears in
    and keeps the highest bandwidth weight seen during the day. Returns None
    when no consensus exists for the date. Blocking; run it in an executor.
    """
    files = find_consensus_files(extracted_dir, date)
    if not files:
        log.warning(f"No consensus found for {date}")
        return None

    merged: Dict[str, RelayObservation] = {}
    for path in files:
        hour = hour_from_filename(os.path.basename(path), date)
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            relays = parse_consensus(f.read())
        for relay in relays:
            existing = merged.get(relay.fingerprint)
            if existing is None:
                relay.uptime = 0
                existing = merged[relay.fingerprint] = relay
            existing.uptime |= 1 << hour
            if relay.bandwidth > existing.bandwidth:
                existing.bandwidth = relay.bandwidth

    log.debug(f"Merged {len(files)} consensuses for {date} into {len(merged)} relays")
    return list(merged.values())


def apply_descriptor_bandwidth(relays: List[RelayObservation], index: BandwidthIndex, date: str) -> int:
    """Replace consensus weights with descriptor bandwidth where known. Returns the match count."""
    matched = 0
    for relay in relays:
        bandwidth = bandwidth_for_date(index, relay.fingerprint, date)
        if bandwidth is not None:
            relay.bandwidth = bandwidth
            matched += 1
    return matched
