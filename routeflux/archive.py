"""
CollecTor Archive Cache

Downloads, verifies and extracts the monthly `.tar.xz` archives of relay
consensuses and server descriptors. Archives are shared across every date of
a month, so each download and extraction runs under the keyed lock manager.
"""

import asyncio
import glob
import logging
import os
import re
import shutil
from typing import Optional, Tuple

import aiohttp

from .config import (
    ARCHIVE_VERIFY_TIMEOUT,
    COLLECTOR_ARCHIVE_URL,
    DOWNLOAD_CONNECT_TIMEOUT,
    DOWNLOAD_STALL_TIMEOUT,
    MAX_RETRIES,
    MAX_SAFE_PATH_LENGTH,
    MIN_ARCHIVE_SIZE,
)
from .locks import DOWNLOAD, EXTRACTION

log = logging.getLogger("RouteFlux.Archive")

CONSENSUS = 'consensus'
DESCRIPTORS = 'descriptors'

# kind -> (CollecTor directory, archive file prefix)
ARCHIVE_KINDS = {
    CONSENSUS: ('consensuses', 'consensuses'),
    DESCRIPTORS: ('server-descriptors', 'server-descriptors'),
}

UNSAFE_PATH_CHARS = re.compile(r'[;&|<>$\n\r]')


class DownloadError(Exception):
    """Raised when an archive transfer fails or stalls."""


class ArchiveError(Exception):
    """Raised when an archive cannot be verified or extracted."""


def is_safe_path(path: str) -> bool:
    """Reject paths that could smuggle shell syntax or escape the cache directory."""
    if not path or len(path) >= MAX_SAFE_PATH_LENGTH:
        return False
    if '..' in path:
        return False
    return not UNSAFE_PATH_CHARS.search(path)


def month_str(year: int, month: int) -> str:
    return f"{year:04d}-{month:02d}"


def archive_filename(kind: str, month: str) -> str:
    _, prefix = ARCHIVE_KINDS[kind]
    return f"{prefix}-{month}.tar.xz"


def archive_path(cache_dir: str, kind: str, month: str) -> str:
    return os.path.join(cache_dir, archive_filename(kind, month))


def archive_url(kind: str, month: str) -> str:
    directory, _ = ARCHIVE_KINDS[kind]
    return f"{COLLECTOR_ARCHIVE_URL}/{directory}/{archive_filename(kind, month)}"


def extraction_root(cache_dir: str, month: str) -> str:
    return os.path.join(cache_dir, f"extracted-consensuses-{month}")


async def run_command(*args: str, timeout: Optional[float] = None) -> Tuple[int, str]:
    """Run a command to completion, returning (exit code, stderr).

    Raises FileNotFoundError when the program is not installed.
    """
    proc = await asyncio.create_subprocess_exec(
        *args, stdout=asyncio.subprocess.DEVNULL, stderr=asyncio.subprocess.PIPE
    )
    try:
        _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ArchiveError(f"{args[0]} timed out after {timeout}s") from None
    return proc.returncode, stderr.decode(errors='replace').strip()


async def verify_archive(path: str, timeout: float = ARCHIVE_VERIFY_TIMEOUT) -> bool:
    """Integrity check with `xz -t`, or `tar -tf` where xz is not installed."""
    if not is_safe_path(path):
        log.error(f"Refusing to verify unsafe path: {path!r}")
        return False
    try:
        try:
            code, err = await run_command('xz', '-t', path, timeout=timeout)
        except FileNotFoundError:
            log.debug("xz not available, verifying with tar")
            code, err = await run_command('tar', '-tf', path, timeout=timeout)
    except (ArchiveError, FileNotFoundError) as e:
        log.warning(f"Could not verify {path}: {e}")
        return False
    if code != 0:
        log.warning(f"Archive {path} failed verification (exit {code}): {err}")
        return False
    return True


async def download_file(
    session: aiohttp.ClientSession,
    url: str,
    dest: str,
    connect_timeout: float = DOWNLOAD_CONNECT_TIMEOUT,
    stall_timeout: float = DOWNLOAD_STALL_TIMEOUT,
) -> int:
    """
    Stream `url` into `dest` through a `.downloading` temp file.

    There is no overall time limit: archives are hundreds of MB. Instead the
    connection phase is bounded by `connect_timeout` and the transfer is
    aborted when no bytes arrive for `stall_timeout` seconds.

    Returns:
        Number of bytes written

    Raises:
        DownloadError: non-200 status or stalled transfer
        aiohttp.ClientError: connection failures
    """
    tmp_path = dest + '.downloading'
    timeout = aiohttp.ClientTimeout(total=None, connect=connect_timeout, sock_connect=connect_timeout)
    written = 0
    try:
        async with session.get(url, timeout=timeout) as resp:
            if resp.status != 200:
                raise DownloadError(f"HTTP {resp.status} for {url}")
            with open(tmp_path, 'wb') as f:
                while True:
                    try:
                        chunk = await asyncio.wait_for(resp.content.readany(), timeout=stall_timeout)
                    except asyncio.TimeoutError:
                        raise DownloadError(f"Download stalled: no data for {stall_timeout}s ({url})") from None
                    if not chunk:
                        break
                    f.write(chunk)
                    written += len(chunk)
        os.replace(tmp_path, dest)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
    log.info(f"Downloaded {os.path.basename(dest)} ({written / 1024 / 1024:.1f}MB)")
    return written


async def _cached_archive_ok(path: str) -> bool:
    if not os.path.exists(path):
        return False
    if os.path.getsize(path) > MIN_ARCHIVE_SIZE and await verify_archive(path):
        log.debug(f"Using cached archive {path}")
        return True
    log.warning(f"Cached archive {path} is corrupt or truncated, re-downloading")
    os.remove(path)
    return False


async def ensure_archive(ctx, kind: str, year: int, month: int) -> Optional[str]:
    """Path to a verified local copy of the monthly archive, or None if it can't be had."""
    month_key = month_str(year, month)
    path = archive_path(ctx.cache_dir, kind, month_key)

    async def operation():
        if await _cached_archive_ok(path):
            return path

        url = archive_url(kind, month_key)

        async def attempt():
            log.info(f"Downloading {url}")
            await download_file(ctx.session, url, path)
            if not await verify_archive(path):
                os.remove(path)
                raise ArchiveError(f"Downloaded archive failed verification: {path}")
            return path

        try:
            return await ctx.retry(attempt, f"Download {kind} {month_key}", MAX_RETRIES)
        except Exception as e:
            log.error(f"Giving up on {kind} archive for {month_key}: {e}")
            return None

    return await ctx.locks.run(DOWNLOAD, f"{kind}-{month_key}", operation)


async def _extract(archive: str, extract_root: str):
    code, err = await run_command('tar', '-xf', archive, '-C', extract_root)
    if code == 0:
        return
    log.warning(f"tar failed on {archive} (exit {code}), retrying with explicit --xz")
    code, err = await run_command('tar', '-xf', archive, '--xz', '-C', extract_root)
    if code != 0:
        raise ArchiveError(f"tar exited with {code}: {err}")


async def ensure_extracted_consensus(ctx, year: int, month: int) -> Optional[str]:
    """
    Extract the whole consensus archive for a month, once per process.

    Returns the directory holding the hourly consensus files, or None when the
    archive is unavailable or extraction fails.
    """
    month_key = month_str(year, month)
    cached = ctx.extracted_consensus.get(month_key)
    if cached:
        return cached

    async def operation():
        root = extraction_root(ctx.cache_dir, month_key)
        target = os.path.join(root, f"consensuses-{month_key}")

        if os.path.isdir(target) and os.listdir(target):
            log.info(f"Reusing extracted consensuses for {month_key}")
            ctx.extracted_consensus[month_key] = target
            return target

        archive = await ensure_archive(ctx, CONSENSUS, year, month)
        if archive is None:
            return None
        if not (is_safe_path(archive) and is_safe_path(root)):
            log.error(f"Refusing to extract unsafe path: {archive!r} -> {root!r}")
            return None

        async def attempt():
            os.makedirs(root, exist_ok=True)
            await _extract(archive, root)

        log.info(f"Extracting consensuses for {month_key}...")
        try:
            await ctx.retry(attempt, f"Extract consensus {month_key}", MAX_RETRIES)
            if not os.path.isdir(target):
                raise ArchiveError(f"Expected directory missing after extraction: {target}")
        except Exception as e:
            log.error(f"Extraction failed for {month_key}: {e}")
            shutil.rmtree(root, ignore_errors=True)
            return None

        ctx.extracted_consensus[month_key] = target
        return target

    return await ctx.locks.run(EXTRACTION, month_key, operation)


def cleanup_extracted_consensus(ctx) -> int:
    """Remove every extracted consensus tree in the cache directory."""
    removed = 0
    for root in glob.glob(os.path.join(ctx.cache_dir, 'extracted-consensuses-*')):
        if os.path.isdir(root):
            shutil.rmtree(root, ignore_errors=True)
            removed += 1
    ctx.extracted_consensus.clear()
    if removed:
        log.info(f"Removed {removed} extracted consensus director{'y' if removed == 1 else 'ies'}")
    return removed
