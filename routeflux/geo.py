"""
Geolocation Resolver

Maps relay addresses to coordinates through a MaxMind GeoLite2 City
database when one is available, and to jittered country centroids otherwise.
"""

import datetime
import logging
import random
from typing import Dict, Optional, Tuple

import geoip2.database
import geoip2.errors

from .config import (
    CENTROID_JITTER_DEGREES,
    COUNTRY_CENTROIDS,
    DEFAULT_COUNTRY,
    GEOIP_DATABASE_PATH,
    MAX_GEOIP_CACHE_SIZE,
)

log = logging.getLogger("RouteFlux.Geo")

PROVIDER_MAXMIND = 'maxmind'
PROVIDER_CENTROID = 'country-centroid'


class GeoResolver:
    def __init__(self, database_path: str = GEOIP_DATABASE_PATH, rng: Optional[random.Random] = None,
                 cache_size: int = MAX_GEOIP_CACHE_SIZE):
        self.database_path = database_path
        self.rng = rng or random.Random()
        self.cache_size = cache_size
        self.reader: Optional[geoip2.database.Reader] = None
        self.metadata: Dict[str, str] = {'provider': PROVIDER_CENTROID}
        self._cache: Dict[str, Optional[Tuple[float, float]]] = {}

    @property
    def available(self) -> bool:
        return self.reader is not None

    def load(self) -> bool:
        """Open the database. Stays in country-centroid mode when it is missing or unreadable."""
        try:
            self.reader = geoip2.database.Reader(self.database_path)
        except FileNotFoundError:
            log.warning(f"GeoIP database not found at '{self.database_path}'. Using country centroids.")
            return False
        except Exception as e:
            log.warning(f"Failed to load GeoIP database '{self.database_path}': {e}. Using country centroids.")
            return False

        meta = self.reader.metadata()
        build_date = datetime.datetime.fromtimestamp(meta.build_epoch, tz=datetime.timezone.utc)
        self.metadata = {
            'provider': PROVIDER_MAXMIND,
            'version': meta.database_type,
            'buildDate': build_date.strftime('%Y-%m-%d'),
        }
        log.info(f"GeoIP database loaded ({meta.database_type}, built {self.metadata['buildDate']}).")
        return True

    def resolve(self, ip: str) -> Optional[Tuple[float, float]]:
        """Return (lat, lng) for `ip`, or None when the database cannot place it."""
        if self.reader is None or not ip:
            return None
        if ip in self._cache:
            return self._cache[ip]

        location = None
        try:
            response = self.reader.city(ip)
            lat, lng = response.location.latitude, response.location.longitude
            if lat is not None and lng is not None:
                location = (lat, lng)
        except geoip2.errors.AddressNotFoundError:
            pass
        except ValueError:
            log.debug(f"Malformed IP address: {ip!r}")

        if len(self._cache) >= self.cache_size:
            self._cache.pop(next(iter(self._cache)))
        self._cache[ip] = location
        return location

    def country_centroid(self, country: Optional[str] = None) -> Tuple[float, float]:
        """Centroid (lat, lng) of `country` with a small random offset so relays don't stack."""
        code = (country or DEFAULT_COUNTRY).upper()
        lng, lat = COUNTRY_CENTROIDS.get(code, COUNTRY_CENTROIDS[DEFAULT_COUNTRY])
        return (
            lat + self.rng.uniform(-CENTROID_JITTER_DEGREES, CENTROID_JITTER_DEGREES),
            lng + self.rng.uniform(-CENTROID_JITTER_DEGREES, CENTROID_JITTER_DEGREES),
        )

    def locate(self, ip: str, country: Optional[str] = None) -> Tuple[float, float, bool]:
        """Returns (lat, lng, geolocated) where geolocated is False for centroid fallbacks."""
        location = self.resolve(ip)
        if location is not None:
            return location[0], location[1], True
        lat, lng = self.country_centroid(country)
        return lat, lng, False

    def close(self):
        if self.reader is not None:
            self.reader.close()
            self.reader = None
            log.info("GeoIP database reader closed.")
