"""
Unit tests for relay sources: the Onionoo client and source selection.
"""

import asyncio
import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp

from conftest import FINGERPRINT_A

from routeflux import sources
from routeflux.config import LIVE_UPTIME_BITMAP
from routeflux.onionoo_client import OnionooClient, relays_from_onionoo
from routeflux.sources import fetch_relay_snapshot, is_recent
from routeflux.state import DateTiming

NOW = datetime.datetime(2024, 3, 20, 12, 0, 0, tzinfo=datetime.timezone.utc)

ONIONOO_PAYLOAD = {
    "relays_published": "2024-03-20 11:00:00",
    "relays": [
        {
            "nickname": "alpha",
            "fingerprint": FINGERPRINT_A,
            "or_addresses": ["[2001:db8::1]:443", "192.0.2.1:9001"],
            "flags": ["Running", "Guard", "Exit"],
            "observed_bandwidth": 4000,
            "country": "de",
        },
        {
            "fingerprint": "b" * 40,
            "or_addresses": ["192.0.2.2:443"],
            "observed_bandwidth": 1000,
        },
    ],
}


class TestIsRecent:
    """Test suite for is_recent."""

    def test_today_and_yesterday(self):
        assert is_recent("2024-03-20", NOW)
        assert is_recent("2024-03-19", NOW)

    def test_older(self):
        assert not is_recent("2024-03-18", NOW)
        assert not is_recent("2023-03-20", NOW)

    def test_naive_now(self):
        assert is_recent("2024-03-20", NOW.replace(tzinfo=None))


class TestOnionooClient:
    """Test suite for OnionooClient."""

    async def test_fetch_details(self, mock_response):
        session = MagicMock()
        session.get = MagicMock(return_value=mock_response(json_data=ONIONOO_PAYLOAD))

        data = await OnionooClient(session, url="https://onionoo.example/details").fetch_details()

        assert data == ONIONOO_PAYLOAD
        assert session.get.call_args.args[0] == "https://onionoo.example/details"

    async def test_http_error(self, mock_response):
        session = MagicMock()
        session.get = MagicMock(return_value=mock_response(status=502))
        assert await OnionooClient(session).fetch_details() is None

    async def test_timeout(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=asyncio.TimeoutError())
        assert await OnionooClient(session).fetch_details() is None

    async def test_client_error(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        assert await OnionooClient(session).fetch_details() is None

    async def test_invalid_json(self, mock_response):
        cm = mock_response()
        resp = await cm.__aenter__()
        resp.json = AsyncMock(side_effect=ValueError("Expecting value"))
        session = MagicMock()
        session.get = MagicMock(return_value=cm)
        assert await OnionooClient(session).fetch_details() is None

    async def test_missing_relay_list(self, mock_response):
        session = MagicMock()
        session.get = MagicMock(return_value=mock_response(json_data={"version": "8.0"}))
        assert await OnionooClient(session).fetch_details() is None


class TestRelaysFromOnionoo:
    """Test suite for relays_from_onionoo."""

    def test_maps_fields(self):
        first, second = relays_from_onionoo(ONIONOO_PAYLOAD)

        assert first.fingerprint == FINGERPRINT_A
        assert (first.ip, first.port) == ("192.0.2.1", "9001")
        assert first.flags == "MGE"
        assert first.bandwidth == 4000
        assert first.uptime == LIVE_UPTIME_BITMAP
        assert first.country == "de"

    def test_defaults(self):
        second = relays_from_onionoo(ONIONOO_PAYLOAD)[1]
        assert second.nickname == "Unnamed"
        assert second.fingerprint == "B" * 40
        assert second.flags == "M"
        assert second.country is None


class TestFetchRelaySnapshot:
    """Test suite for source selection."""

    async def test_recent_day_uses_onionoo(self, ctx, mock_response):
        ctx.session.get = MagicMock(return_value=mock_response(json_data=ONIONOO_PAYLOAD))
        timing = DateTiming("2024-03-20")

        with patch.object(sources, "fetch_collector_snapshot", AsyncMock()) as collector:
            snapshot = await fetch_relay_snapshot(ctx, "2024-03-20", timing)

        collector.assert_not_awaited()
        assert snapshot.source == "onionoo"
        assert snapshot.published == "2024-03-20 11:00:00"
        assert snapshot.relay_count == 2
        assert ctx.status.total_relays == 2
        assert [s.step for s in timing.steps] == ["onionoo-fetch", "onionoo-process"]

    async def test_onionoo_failure_falls_back_to_collector(self, ctx, mock_response):
        ctx.session.get = MagicMock(return_value=mock_response(status=500))
        fallback = MagicMock(source="collector")
        timing = DateTiming("2024-03-19")

        with patch.object(sources, "fetch_collector_snapshot", AsyncMock(return_value=fallback)) as collector:
            snapshot = await fetch_relay_snapshot(ctx, "2024-03-19", timing)

        assert snapshot is fallback
        collector.assert_awaited_once()
        assert collector.await_args.args[1] == "2024-03-19"
        assert [s.step for s in timing.steps] == ["onionoo-fetch", "onionoo-fetch-failed"]

    async def test_historical_day_skips_onionoo(self, ctx):
        with patch.object(sources, "fetch_collector_snapshot", AsyncMock(return_value=None)) as collector:
            assert await fetch_relay_snapshot(ctx, "2024-01-15", DateTiming("2024-01-15")) is None

        collector.assert_awaited_once()
        ctx.session.get.assert_not_called()

    async def test_collector_day_without_consensus(self, ctx):
        """Test a month with no extractable consensus yields no snapshot."""
        with patch.object(sources, "ensure_extracted_consensus", AsyncMock(return_value=None)), \
                patch.object(sources, "load_descriptor_bandwidth", AsyncMock()) as load:
            assert await sources.fetch_collector_snapshot(ctx, "2024-01-15", DateTiming("2024-01-15")) is None

        load.assert_not_awaited()
