"""
Node Aggregation

Groups geolocated relays into map nodes, computes selection weights and
projects node coordinates onto the unit Web Mercator square.
"""

import base64
import binascii
import logging
import math
import re
from typing import Dict, Iterable, List, Optional, Tuple

from .config import MERCATOR_MAX_LATITUDE
from .models import AggregatedNode, DailyRelaySnapshot, RelayObservation, utc_timestamp

log = logging.getLogger("RouteFlux.Nodes")

FINGERPRINT_SEPARATORS = re.compile(r'[$:\s-]')
HEX_FINGERPRINT = re.compile(r'^[0-9a-fA-F]{40}$')
BASE64_FINGERPRINT = re.compile(r'^[a-zA-Z0-9+/]{27,28}=*$')
BRACKETED_ADDRESS = re.compile(r'\[([^\]]+)\]:(\d+)')

FLAG_CODES = (('Running', 'M'), ('Guard', 'G'), ('Exit', 'E'), ('HSDir', 'H'))
UNKNOWN_ADDRESS = ('0.0.0.0', '0')


def base64_to_hex(value: str) -> str:
    """Decode an unpadded base64 identity digest to uppercase hex."""
    padded = value + '=' * ((4 - len(value) % 4) % 4)
    try:
        return base64.b64decode(padded, validate=True).hex().upper()
    except (binascii.Error, ValueError):
        return value


def normalize_fingerprint(fingerprint: Optional[str]) -> str:
    """Canonical uppercase 40-hex form of a hex or base64 relay identity."""
    if not fingerprint:
        return ''
    clean = FINGERPRINT_SEPARATORS.sub('', fingerprint.strip())
    if HEX_FINGERPRINT.match(clean):
        return clean.upper()
    if BASE64_FINGERPRINT.match(clean):
        decoded = base64_to_hex(clean.rstrip('='))
        if HEX_FINGERPRINT.match(decoded):
            return decoded
    return clean.upper()


def map_flags(flags: Optional[Iterable[str]]) -> str:
    if not flags:
        return 'M'
    present = set(flags)
    return ''.join(code for name, code in FLAG_CODES if name in present) or 'M'


def parse_address(or_addresses: Optional[List[str]]) -> Tuple[str, str]:
    """(ip, port) from Onionoo `or_addresses`, preferring the IPv4 entry."""
    if not or_addresses:
        return UNKNOWN_ADDRESS
    addr = next((a for a in or_addresses if '[' not in a), or_addresses[0])
    if '[' in addr:
        match = BRACKETED_ADDRESS.search(addr)
        if match:
            return match.group(1), match.group(2)
    else:
        parts = addr.split(':')
        if len(parts) == 2:
            return parts[0], parts[1]
    return UNKNOWN_ADDRESS


def normalized_position(lat: float, lng: float) -> Tuple[float, float]:
    """Web Mercator projection into [0, 1] x [0, 1]."""
    lat = max(-MERCATOR_MAX_LATITUDE, min(MERCATOR_MAX_LATITUDE, lat))
    x = (lng + 180) / 360
    lat_rad = math.radians(lat)
    y = 0.5 + math.log(math.tan(math.pi / 4 + lat_rad / 2)) / (2 * math.pi)
    return x, min(1.0, max(0.0, y))


def _location_key(lat: float, lng: float) -> str:
    return f"{lat:.2f},{lng:.2f}"


class NodeAggregator:
    """Buckets relays by rounded coordinates and builds the node list."""

    def __init__(self):
        self._buckets: Dict[str, Tuple[float, float, List[RelayObservation]]] = {}

    def __len__(self):
        return len(self._buckets)

    def add(self, relay: RelayObservation, lat: float, lng: float):
        key = _location_key(lat, lng)
        if key not in self._buckets:
            self._buckets[key] = (lat, lng, [])
        self._buckets[key][2].append(relay)

    def build(self) -> Tuple[List[AggregatedNode], float]:
        """Returns (nodes sorted by bandwidth descending, total bandwidth)."""
        total = sum(r.bandwidth for _, _, relays in self._buckets.values() for r in relays)
        nodes = []
        for lat, lng, relays in self._buckets.values():
            relays.sort(key=lambda r: r.bandwidth, reverse=True)
            bandwidth = sum(r.bandwidth for r in relays)
            x, y = normalized_position(lat, lng)
            label = relays[0].nickname if len(relays) == 1 else f"{len(relays)} relays at location"
            nodes.append(AggregatedNode(
                lat=lat,
                lng=lng,
                x=x,
                y=y,
                bandwidth=bandwidth,
                selection_weight=bandwidth / total if total > 0 else 0,
                label=label,
                relays=relays,
                is_hsdir=any('H' in r.flags for r in relays),
            ))
        nodes.sort(key=lambda n: n.bandwidth, reverse=True)
        return nodes, total


def build_relay_snapshot(relays: List[RelayObservation], geo, published: str, source: str,
                         default_country: Optional[str] = None) -> DailyRelaySnapshot:
    """
    Normalize, geolocate and aggregate one day of relays.

    Each relay's bandwidth is divided by the day's largest relay bandwidth, so
    the busiest relay has 1.0. Relays the GeoIP database can't place fall back
    to their own country's centroid, or `default_country` when they carry none.
    """
    max_bandwidth = max([r.bandwidth or 0 for r in relays] + [1])
    aggregator = NodeAggregator()
    geolocated = 0

    for relay in relays:
        relay.bandwidth = (relay.bandwidth or 0) / max_bandwidth
        lat, lng, located = geo.locate(relay.ip, relay.country or default_country)
        if located:
            geolocated += 1
        aggregator.add(relay, lat, lng)

    nodes, total = aggregator.build()
    bandwidths = [n.bandwidth for n in nodes]
    min_max = {'min': min(bandwidths), 'max': max(bandwidths)} if bandwidths else {'min': 0, 'max': 0}

    log.debug(f"Aggregated {len(relays)} relays into {len(nodes)} nodes ({geolocated} geolocated)")
    return DailyRelaySnapshot(
        generated_at=utc_timestamp(),
        source=source,
        geoip=dict(geo.metadata),
        published=published,
        nodes=nodes,
        bandwidth=total,
        relay_count=len(relays),
        geolocated_count=geolocated,
        min_max=min_max,
    )
