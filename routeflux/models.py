import datetime
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, NamedTuple, Optional

from .config import VERSION


def utc_timestamp() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace('+00:00', 'Z')


class BandwidthEntry(NamedTuple):
    date: str  # YYYY-MM-DD
    bandwidth: int


# Relay observation for one fingerprint on one day
@dataclass
class RelayObservation:
    fingerprint: str  # Canonical uppercase 40-hex
    nickname: str
    ip: str
    port: str
    flags: str = 'M'  # M=Running, G=Guard, E=Exit, H=HSDir
    bandwidth: float = 0
    uptime: Optional[int] = None  # 24-bit hourly presence bitmap
    country: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            'nickname': self.nickname,
            'fingerprint': self.fingerprint,
            'bandwidth': self.bandwidth,
            'flags': self.flags,
            'ip': self.ip,
            'port': self.port,
        }
        if self.uptime is not None:
            payload['uptime'] = self.uptime
        return payload


@dataclass
class AggregatedNode:
    """Relays sharing a location bucket (coordinates rounded to 2 decimals)."""
    lat: float
    lng: float
    x: float
    y: float
    bandwidth: float
    selection_weight: float
    label: str
    relays: List[RelayObservation] = field(default_factory=list)
    is_hsdir: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lat': self.lat,
            'lng': self.lng,
            'x': self.x,
            'y': self.y,
            'bandwidth': self.bandwidth,
            'selectionWeight': self.selection_weight,
            'label': self.label,
            'relays': [r.to_dict() for r in self.relays],
            'isHSDir': self.is_hsdir,
        }


@dataclass
class DailyRelaySnapshot:
    generated_at: str
    source: str  # 'onionoo' or 'collector'
    geoip: Dict[str, Any]
    published: str
    nodes: List[AggregatedNode] = field(default_factory=list)
    bandwidth: float = 0
    relay_count: int = 0
    geolocated_count: int = 0
    min_max: Dict[str, float] = field(default_factory=lambda: {'min': 0, 'max': 0})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': VERSION,
            'generatedAt': self.generated_at,
            'source': self.source,
            'geoip': self.geoip,
            'published': self.published,
            'nodes': [n.to_dict() for n in self.nodes],
            'bandwidth': self.bandwidth,
            'relayCount': self.relay_count,
            'geolocatedCount': self.geolocated_count,
            'minMax': self.min_max,
        }


@dataclass
class CountrySnapshot:
    date: str
    total_users: int = 0
    countries: Dict[str, Dict[str, int]] = field(default_factory=dict)  # CC -> {count, lower, upper}
    generated_at: str = field(default_factory=utc_timestamp)

    @property
    def is_empty(self) -> bool:
        return self.total_users == 0 or not self.countries

    def relabeled(self, date: str) -> 'CountrySnapshot':
        countries = {cc: dict(v) for cc, v in self.countries.items()}
        return replace(self, date=date, generated_at=utc_timestamp(), countries=countries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': VERSION,
            'generatedAt': self.generated_at,
            'date': self.date,
            'totalUsers': self.total_users,
            'countries': self.countries,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CountrySnapshot':
        return cls(
            date=data.get('date', ''),
            generated_at=data.get('generatedAt') or utc_timestamp(),
            total_users=int(data.get('totalUsers') or 0),
            countries=dict(data.get('countries') or {}),
        )


@dataclass
class DateManifest:
    dates: List[str] = field(default_factory=list)
    bandwidths: List[float] = field(default_factory=list)
    last_updated: str = ''

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': VERSION,
            'lastUpdated': self.last_updated,
            'dates': self.dates,
            'bandwidths': self.bandwidths,
        }
