"""
Snapshot Storage

Atomic JSON writes for the published snapshot files and the `index.json`
manifest that lists every available date.
"""

import datetime
import glob
import json
import logging
import os
import re
import tempfile
from typing import Any, List, Optional

from .config import EMPTY_COUNTRY_FILE_THRESHOLD
from .models import DateManifest, utc_timestamp

log = logging.getLogger("RouteFlux.Storage")

DATE_RE = re.compile(r'^\d{4}-\d{2}-\d{2}$')
RELAYS_FILE_RE = re.compile(r'^relays-(\d{4}-\d{2}-\d{2})\.json$')
COUNTRIES_FILE_RE = re.compile(r'^countries-(\d{4}-\d{2}-\d{2})\.json$')
INDEX_FILENAME = 'index.json'
FILE_MODE = 0o644  # rw-r--r--, as a plain open() would create


def is_valid_date_str(date_str: str) -> bool:
    if not isinstance(date_str, str) or not DATE_RE.match(date_str):
        return False
    try:
        datetime.date.fromisoformat(date_str)
    except ValueError:
        return False
    return True


def _validated(date: str) -> str:
    if not is_valid_date_str(date):
        raise ValueError(f"Invalid date for snapshot filename: {date!r}")
    return date


def relay_snapshot_path(output_dir: str, date: str) -> str:
    return os.path.join(output_dir, f"relays-{_validated(date)}.json")


def country_snapshot_path(output_dir: str, date: str) -> str:
    return os.path.join(output_dir, f"countries-{_validated(date)}.json")


def snapshots_exist(output_dir: str, date: str) -> bool:
    return os.path.exists(relay_snapshot_path(output_dir, date)) and \
        os.path.exists(country_snapshot_path(output_dir, date))


def write_json_atomic(path: str, payload: Any, indent: Optional[int] = 2):
    """
    Write JSON to a unique temp file in the target directory, then rename.

    Readers see either the previous file or the complete new one, never a
    truncated write. The temp file is removed if anything fails.
    """
    directory = os.path.dirname(path) or '.'
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix='.tmp', dir=directory)
    try:
        os.fchmod(fd, FILE_MODE)
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=indent)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


def read_json(path: str) -> Any:
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def build_manifest(output_dir: str) -> DateManifest:
    """Collect date and total bandwidth from every relay snapshot in `output_dir`."""
    entries = []
    for name in os.listdir(output_dir):
        match = RELAYS_FILE_RE.match(name)
        if not match:
            continue
        try:
            data = read_json(os.path.join(output_dir, name))
            entries.append((match.group(1), data.get('bandwidth', 0) or 0))
        except (OSError, ValueError, AttributeError) as e:
            log.warning(f"Skipping unreadable snapshot {name}: {e}")

    entries.sort()
    return DateManifest(
        dates=[d for d, _ in entries],
        bandwidths=[bw for _, bw in entries],
        last_updated=utc_timestamp(),
    )


def update_index(output_dir: str) -> DateManifest:
    manifest = build_manifest(output_dir)
    write_json_atomic(os.path.join(output_dir, INDEX_FILENAME), manifest.to_dict())
    log.debug(f"Index updated ({len(manifest.dates)} dates)")
    return manifest


def scan_empty_country_files(output_dir: str, first_date: str, last_date: str) -> List[str]:
    """
    Dates in [first_date, last_date] whose country snapshot holds no data.

    Files larger than the threshold always hold data and are not opened.
    """
    dates = []
    for path in glob.glob(os.path.join(output_dir, 'countries-*.json')):
        match = COUNTRIES_FILE_RE.match(os.path.basename(path))
        if not match:
            continue
        date = match.group(1)
        if not first_date <= date <= last_date:
            continue
        if os.path.getsize(path) > EMPTY_COUNTRY_FILE_THRESHOLD:
            continue
        try:
            data = read_json(path)
        except (OSError, ValueError) as e:
            log.warning(f"Skipping unreadable country file {path}: {e}")
            continue
        if not data.get('totalUsers') or not data.get('countries'):
            dates.append(date)
    return sorted(dates)
