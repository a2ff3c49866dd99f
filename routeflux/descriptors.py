"""
Descriptor Bandwidth Index

Builds, per month, a map of relay fingerprint -> dated observed bandwidths
from the CollecTor server-descriptor archive. Consensus weights are only
relative; descriptors carry the bandwidth each relay actually observed.

Resolution order: in-memory cache, JSON side-cache on disk, full streaming
parse of the archive (hundreds of MB, decompressed by an external xz).
"""

import asyncio
import bisect
import enum
import logging
import os
import shutil
import time
from typing import AsyncIterator, Dict, List, Optional

from .archive import DESCRIPTORS, archive_path, ensure_archive, is_safe_path, month_str
from .config import BOGUS_BANDWIDTH, SUBPROCESS_LINE_LIMIT
from .locks import DESCRIPTOR_PARSE
from .models import BandwidthEntry
from .nodes import normalize_fingerprint
from .storage import read_json, write_json_atomic

log = logging.getLogger("RouteFlux.Descriptors")

BandwidthIndex = Dict[str, List[BandwidthEntry]]


class DescriptorStreamError(Exception):
    """Raised when the decompression pipeline exits with an error."""


class ParserState(enum.Enum):
    AWAITING_RECORD = 'awaiting-record'
    IN_RECORD = 'in-record'


class DescriptorParser:
    """
    Line-oriented state machine over concatenated server descriptors.

    A `@type ` annotation or a `router ` line starts a new record and flushes
    the previous one. A record contributes a BandwidthEntry only when its
    fingerprint, publication date and a usable observed bandwidth were all seen.
    """

    def __init__(self):
        self.state = ParserState.AWAITING_RECORD
        self.index: BandwidthIndex = {}
        self.records = 0
        self.discarded = 0
        self._reset()

    def _reset(self):
        self._fingerprint: Optional[str] = None
        self._published: Optional[str] = None
        self._bandwidth: Optional[int] = None

    def _flush(self):
        if self.state is ParserState.IN_RECORD and self._fingerprint and self._published \
                and self._bandwidth is not None:
            self.index.setdefault(self._fingerprint, []).append(
                BandwidthEntry(self._published, self._bandwidth)
            )
            self.records += 1
        self._reset()

    def feed(self, line: str):
        if line.startswith('@type ') or line.startswith('router '):
            self._flush()
            self.state = ParserState.IN_RECORD
            return
        if self.state is ParserState.AWAITING_RECORD:
            return

        if line.startswith('fingerprint '):
            self._fingerprint = normalize_fingerprint(line[len('fingerprint '):])
        elif line.startswith('published '):
            parts = line.split()
            if len(parts) >= 2:
                self._published = parts[1][:10]
        elif line.startswith('bandwidth '):
            parts = line.split()
            if len(parts) >= 4 and parts[3].isdigit():
                observed = int(parts[3])
                if observed >= BOGUS_BANDWIDTH:
                    self.discarded += 1
                else:
                    self._bandwidth = observed

    def finish(self) -> BandwidthIndex:
        """Flush the last record and sort every entry list by date."""
        self._flush()
        self.state = ParserState.AWAITING_RECORD
        for entries in self.index.values():
            entries.sort(key=lambda e: e.date)
        return self.index


def bandwidth_for_date(index: BandwidthIndex, fingerprint: str, date: str) -> Optional[int]:
    """
    Bandwidth from the latest descriptor published on or before `date`.

    Relays that only started publishing later in the month get their earliest
    entry. Unknown fingerprints give None.
    """
    entries = index.get(fingerprint)
    if not entries:
        return None
    pos = bisect.bisect_right([e.date for e in entries], date)
    return entries[pos - 1].bandwidth if pos else entries[0].bandwidth


async def iter_archive_lines(path: str, xz_threads: int) -> AsyncIterator[str]:
    """
    Yield the lines of every file in a `.tar.xz`, decompressed by `xz | tar`.

    Falls back to `tar -xf <archive> -O` when xz is not installed.

    Raises:
        DescriptorStreamError: a pipeline stage exited non-zero
    """
    if not is_safe_path(path):
        raise DescriptorStreamError(f"Unsafe archive path: {path!r}")

    if shutil.which('xz'):
        read_fd, write_fd = os.pipe()
        try:
            xz = await asyncio.create_subprocess_exec(
                'xz', f'-T{xz_threads}', '-dc', path,
                stdout=write_fd, stderr=asyncio.subprocess.DEVNULL,
            )
        finally:
            os.close(write_fd)
        try:
            tar = await asyncio.create_subprocess_exec(
                'tar', '-xf', '-', '-O',
                stdin=read_fd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.DEVNULL,
                limit=SUBPROCESS_LINE_LIMIT,
            )
        finally:
            os.close(read_fd)
        procs = [('xz', xz), ('tar', tar)]
    else:
        log.debug("xz not available, letting tar decompress")
        tar = await asyncio.create_subprocess_exec(
            'tar', '-xf', path, '-O',
            stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.DEVNULL,
            limit=SUBPROCESS_LINE_LIMIT,
        )
        procs = [('tar', tar)]

    completed = False
    try:
        async for raw in tar.stdout:
            yield raw.decode('utf-8', errors='replace').rstrip('\r\n')
        completed = True
    finally:
        if not completed:
            for _, proc in procs:
                if proc.returncode is None:
                    proc.kill()
        codes = [(name, await proc.wait()) for name, proc in procs]

    failed = [f"{name} exited with {code}" for name, code in codes if code != 0]
    if failed:
        raise DescriptorStreamError(', '.join(failed))


def side_cache_path(cache_dir: str, month: str) -> str:
    return os.path.join(cache_dir, f"bandwidth-cache-v2-{month}.json")


def _load_side_cache(cache_path: str, source_archive: str) -> Optional[BandwidthIndex]:
    if not os.path.exists(cache_path):
        return None
    if os.path.exists(source_archive) and os.path.getmtime(cache_path) <= os.path.getmtime(source_archive):
        log.debug(f"Side-cache {cache_path} is older than its archive, ignoring")
        return None
    data = read_json(cache_path)
    if not isinstance(data, dict):
        log.warning(f"Invalid bandwidth cache {cache_path}, will re-parse")
        return None
    return {
        fp: [BandwidthEntry(e['date'], int(e['bandwidth'])) for e in entries]
        for fp, entries in data.items()
    }


def _save_side_cache(cache_path: str, index: BandwidthIndex):
    payload = {fp: [e._asdict() for e in entries] for fp, entries in index.items()}
    write_json_atomic(cache_path, payload, indent=None)


async def parse_descriptor_archive(path: str, xz_threads: int) -> BandwidthIndex:
    parser = DescriptorParser()
    async for line in iter_archive_lines(path, xz_threads):
        parser.feed(line)
    index = parser.finish()
    if parser.discarded:
        log.debug(f"Discarded {parser.discarded} bogus bandwidth values in {os.path.basename(path)}")
    log.info(f"Parsed {parser.records} descriptors for {len(index)} relays")
    return index


async def load_descriptor_bandwidth(ctx, year: int, month: int) -> BandwidthIndex:
    """
    Bandwidth index for a month. Never raises: a month whose archive can't be
    obtained or parsed maps to an empty index (consensus weights are used).
    """
    month_key = month_str(year, month)
    if month_key in ctx.bandwidth_index:
        return ctx.bandwidth_index[month_key]

    async def operation():
        cache_path = side_cache_path(ctx.cache_dir, month_key)
        source = archive_path(ctx.cache_dir, DESCRIPTORS, month_key)

        started = time.monotonic()
        try:
            index = await ctx.run_blocking(_load_side_cache, cache_path, source)
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning(f"Invalid bandwidth cache for {month_key}, will re-parse: {e}")
            index = None
        if index is not None:
            log.info(f"Loaded bandwidth cache for {month_key} ({len(index)} relays, "
                     f"{time.monotonic() - started:.1f}s)")
            ctx.bandwidth_index[month_key] = index
            return index

        archive = await ensure_archive(ctx, DESCRIPTORS, year, month)
        if archive is None:
            log.warning(f"No descriptor archive for {month_key}, using consensus bandwidth")
            ctx.bandwidth_index[month_key] = {}
            return {}

        log.info(f"Parsing server descriptors for {month_key}...")
        try:
            index = await parse_descriptor_archive(archive, ctx.xz_threads)
        except (DescriptorStreamError, OSError) as e:
            log.error(f"Descriptor parse failed for {month_key}: {e}")
            ctx.bandwidth_index[month_key] = {}
            return {}

        try:
            await ctx.run_blocking(_save_side_cache, cache_path, index)
        except OSError as e:
            log.warning(f"Failed to save bandwidth cache for {month_key}: {e}")

        ctx.bandwidth_index[month_key] = index
        return index

    return await ctx.locks.run(DESCRIPTOR_PARSE, month_key, operation)
