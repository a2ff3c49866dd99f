"""
Keyed Lock Manager

Collapses concurrent requests for the same expensive artefact (an archive
download, a month extraction, a descriptor parse, a country batch) into a
single in-flight task that every caller awaits.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List

log = logging.getLogger("RouteFlux.Locks")

DOWNLOAD = 'download'
EXTRACTION = 'extraction'
DESCRIPTOR_PARSE = 'descriptor-parse'
COUNTRY_FETCH = 'country-fetch'
LOCK_DOMAINS = (DOWNLOAD, EXTRACTION, DESCRIPTOR_PARSE, COUNTRY_FETCH)


class KeyedLockManager:
    """
    At most one in-flight operation per (domain, key).

    Domains are independent: extracting a month and parsing that month's
    descriptors never wait on each other, while two requests for the same key
    in the same domain share one task. Waiters go through asyncio.shield, so a
    cancelled caller does not cancel the work the others are waiting for.
    Only covers a single process.
    """

    def __init__(self, domains: Iterable[str] = LOCK_DOMAINS):
        self._in_flight: Dict[str, Dict[str, asyncio.Task]] = {d: {} for d in domains}
        self._waiters: Dict[str, Dict[str, int]] = {d: {} for d in domains}

    def _domain(self, domain: str) -> Dict[str, asyncio.Task]:
        try:
            return self._in_flight[domain]
        except KeyError:
            raise ValueError(f"Unknown lock domain: {domain}") from None

    async def run(self, domain: str, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        pending = self._domain(domain)
        task = pending.get(key)
        if task is None:
            task = asyncio.ensure_future(operation())
            pending[key] = task
            task.add_done_callback(lambda t, d=domain, k=key: self._release(d, k, t))
        else:
            log.debug(f"[{domain}] Joining in-flight operation for '{key}'")

        waiters = self._waiters[domain]
        waiters[key] = waiters.get(key, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            waiters[key] -= 1
            if waiters[key] <= 0:
                del waiters[key]

    def _release(self, domain: str, key: str, task: asyncio.Task):
        if self._in_flight[domain].get(key) is task:
            del self._in_flight[domain][key]
        # Mark the exception as retrieved when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    def in_flight(self, domain: str) -> List[str]:
        return sorted(self._domain(domain))

    def waiter_count(self, domain: str, key: str) -> int:
        self._domain(domain)
        return self._waiters[domain].get(key, 0)

    async def close(self):
        """Cancel anything still running. Normally a no-op at the end of a run."""
        tasks = [t for pending in self._in_flight.values() for t in pending.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            log.info(f"Cancelled {len(tasks)} in-flight operation(s)")
