"""
Shared fixtures for RouteFlux ingest tests.
"""

import datetime
import random
from unittest.mock import AsyncMock, MagicMock

import pytest

from routeflux.state import PipelineContext

# Identity digests as they appear in consensus `r` lines (unpadded base64)
IDENTITY_A = "AQIDBAUGBwgJCgsMDQ4PEBESExQ"
IDENTITY_B = "//////////////////////////8"
FINGERPRINT_A = "0102030405060708090A0B0C0D0E0F1011121314"
FINGERPRINT_B = "F" * 40

FIXED_NOW = datetime.datetime(2024, 3, 20, 12, 0, 0, tzinfo=datetime.timezone.utc)


def consensus_text(entries):
    """Build a minimal consensus document from (nickname, identity, ip, flags, bandwidth) tuples."""
    lines = ["network-status-version 3", "vote-status consensus"]
    for nickname, identity, ip, flags, bandwidth in entries:
        lines.append(f"r {nickname} {identity} digestdigestdigestdigestdig 2024-03-15 02:00:00 {ip} 9001 0")
        lines.append(f"s {' '.join(flags)}")
        lines.append(f"w Bandwidth={bandwidth}")
    lines.append("directory-footer")
    return "\n".join(lines) + "\n"


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def mock_response():
    """Factory for an `async with session.get(...)` response context manager."""

    def factory(status=200, text="", json_data=None, chunks=None):
        resp = MagicMock()
        resp.status = status
        resp.text = AsyncMock(return_value=text)
        resp.json = AsyncMock(return_value=json_data)
        resp.content.readany = AsyncMock(side_effect=list(chunks or []) + [b""])
        return MagicMock(__aenter__=AsyncMock(return_value=resp), __aexit__=AsyncMock(return_value=False))

    return factory


@pytest.fixture
async def ctx(tmp_path):
    """Isolated pipeline context: temp dirs, no GeoIP database, mocked HTTP session, no retry delays."""
    context = PipelineContext(
        cache_dir=str(tmp_path / "cache"),
        output_dir=str(tmp_path / "public"),
        geoip_path=str(tmp_path / "missing.mmdb"),
        session=MagicMock(),
        rng=random.Random(42),
        now=lambda: FIXED_NOW,
        retry_base_delay=0,
        retry_jitter=0,
        sleep=AsyncMock(),
    )
    await context.start()
    yield context
    await context.close()
