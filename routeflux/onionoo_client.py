"""
Onionoo API Client

Fetches the live relay list from the Tor Project's Onionoo service.
Only running relays are requested; Onionoo keeps no history, so this
source is only useful for today and yesterday.

Default endpoint: https://onionoo.torproject.org/details
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import LIVE_UPTIME_BITMAP, ONIONOO_DETAILS_URL, ONIONOO_TIMEOUT
from .models import RelayObservation
from .nodes import map_flags, normalize_fingerprint, parse_address

log = logging.getLogger("RouteFlux.Onionoo")


class OnionooClient:
    def __init__(self, session: aiohttp.ClientSession, url: str = ONIONOO_DETAILS_URL,
                 timeout: int = ONIONOO_TIMEOUT):
        self.session = session
        self.url = url
        self.timeout = timeout

    async def fetch_details(self) -> Optional[Dict[str, Any]]:
        """Return the parsed `details` document, or None on any failure."""
        log.info("Fetching from Onionoo API...")
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            async with self.session.get(self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status != 200:
                    log.warning(f"Onionoo returned HTTP {resp.status}")
                    return None
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError:
            log.warning(f"Onionoo request timed out after {self.timeout}s")
            return None
        except aiohttp.ClientError as e:
            log.warning(f"Onionoo request failed: {e}")
            return None
        except ValueError as e:
            log.warning(f"Onionoo returned invalid JSON: {e}")
            return None

        if not isinstance(data, dict) or not isinstance(data.get('relays'), list):
            log.warning("Onionoo response has no relay list")
            return None
        log.info(f"Onionoo response: {len(data['relays'])} relays ({loop.time() - started:.1f}s)")
        return data


def relays_from_onionoo(payload: Dict[str, Any]) -> List[RelayObservation]:
    """Live relays are assumed present for every hour of the day."""
    relays = []
    for item in payload.get('relays') or []:
        ip, port = parse_address(item.get('or_addresses'))
        relays.append(RelayObservation(
            fingerprint=normalize_fingerprint(item.get('fingerprint')),
            nickname=item.get('nickname') or 'Unnamed',
            ip=ip,
            port=port,
            flags=map_flags(item.get('flags')),
            bandwidth=item.get('observed_bandwidth') or 0,
            uptime=LIVE_UPTIME_BITMAP,
            country=item.get('country'),
        ))
    return relays
