"""
Unit tests for the keyed lock manager.
"""

import asyncio

import pytest

from routeflux.locks import DESCRIPTOR_PARSE, DOWNLOAD, EXTRACTION, KeyedLockManager


class TestKeyedLockManager:
    """Test suite for KeyedLockManager."""

    async def test_concurrent_callers_share_one_execution(self):
        """Test N concurrent callers for one key run the operation once."""
        locks = KeyedLockManager()
        calls = {"count": 0}
        release = asyncio.Event()

        async def operation():
            calls["count"] += 1
            await release.wait()
            return "archive.tar.xz"

        tasks = [asyncio.ensure_future(locks.run(DOWNLOAD, "consensus-2024-03", operation)) for _ in range(5)]
        await asyncio.sleep(0)
        assert locks.waiter_count(DOWNLOAD, "consensus-2024-03") == 5
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls["count"] == 1
        assert results == ["archive.tar.xz"] * 5
        assert locks.in_flight(DOWNLOAD) == []
        assert locks.waiter_count(DOWNLOAD, "consensus-2024-03") == 0

    async def test_distinct_keys_run_independently(self):
        """Test different keys do not share work."""
        locks = KeyedLockManager()
        calls = []

        async def operation(key):
            calls.append(key)
            return key

        results = await asyncio.gather(
            locks.run(DOWNLOAD, "a", lambda: operation("a")),
            locks.run(DOWNLOAD, "b", lambda: operation("b")),
        )

        assert sorted(calls) == ["a", "b"]
        assert results == ["a", "b"]

    async def test_domains_are_independent(self):
        """Test the same key in two domains runs twice."""
        locks = KeyedLockManager()
        calls = []

        async def operation(domain):
            calls.append(domain)
            await asyncio.sleep(0)
            return domain

        await asyncio.gather(
            locks.run(EXTRACTION, "2024-03", lambda: operation(EXTRACTION)),
            locks.run(DESCRIPTOR_PARSE, "2024-03", lambda: operation(DESCRIPTOR_PARSE)),
        )

        assert sorted(calls) == sorted([EXTRACTION, DESCRIPTOR_PARSE])

    async def test_failure_propagates_and_deregisters(self):
        """Test every waiter sees the error and a later call runs again."""
        locks = KeyedLockManager()
        calls = {"count": 0}

        async def failing():
            calls["count"] += 1
            await asyncio.sleep(0)
            raise OSError("network down")

        results = await asyncio.gather(
            locks.run(DOWNLOAD, "k", failing),
            locks.run(DOWNLOAD, "k", failing),
            return_exceptions=True,
        )
        assert calls["count"] == 1
        assert all(isinstance(r, OSError) for r in results)
        assert locks.in_flight(DOWNLOAD) == []

        async def succeeding():
            calls["count"] += 1
            return "ok"

        assert await locks.run(DOWNLOAD, "k", succeeding) == "ok"
        assert calls["count"] == 2

    async def test_cancelled_waiter_does_not_cancel_shared_work(self):
        """Test cancelling one caller leaves the operation running for the rest."""
        locks = KeyedLockManager()
        release = asyncio.Event()

        async def operation():
            await release.wait()
            return "done"

        first = asyncio.ensure_future(locks.run(EXTRACTION, "2024-01", operation))
        second = asyncio.ensure_future(locks.run(EXTRACTION, "2024-01", operation))
        await asyncio.sleep(0)

        first.cancel()
        await asyncio.sleep(0)
        release.set()

        assert await second == "done"
        assert first.cancelled()

    async def test_unknown_domain(self):
        """Test unknown domains are rejected."""
        locks = KeyedLockManager()

        async def operation():
            return None

        with pytest.raises(ValueError, match="Unknown lock domain"):
            await locks.run("uploads", "k", operation)

    async def test_close_cancels_in_flight(self):
        """Test close cancels operations nobody finished."""
        locks = KeyedLockManager()
        started = asyncio.Event()

        async def operation():
            started.set()
            await asyncio.sleep(3600)

        waiter = asyncio.ensure_future(locks.run(DOWNLOAD, "slow", operation))
        await started.wait()
        await locks.close()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert locks.in_flight(DOWNLOAD) == []
