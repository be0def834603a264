"""
Zone Resolver — origin/destination pincode → shipping zone.

Zones follow the usual Indian domestic courier convention:
  A  same city (first three pincode digits match)
  B  same state / postal circle (first two digits match)
  C  metro to metro
  D  rest of India
  E  special regions (North-East, J&K, Andaman & Nicobar, Lakshadweep)

Lookups are cached in-process with a TTL; the least recently used pairs
are evicted once the cache is full.
"""

from __future__ import annotations

import time
from collections import OrderedDict

import structlog

from core.config import get_settings
from core.exceptions import InvalidMeasurement

logger = structlog.get_logger()

ZONES = ("A", "B", "C", "D", "E")

METRO_PREFIXES = {
    "110",  # Delhi
    "400",  # Mumbai
    "560",  # Bengaluru
    "600",  # Chennai
    "700",  # Kolkata
    "500",  # Hyderabad
    "411",  # Pune
    "380",  # Ahmedabad
}

SPECIAL_CIRCLE_PREFIXES = ("18", "19", "78", "79")  # J&K, Ladakh, NE circle
SPECIAL_DISTRICT_PREFIXES = ("744", "682555")  # Andaman, Lakshadweep


def _normalize_pincode(pincode: str) -> str:
    value = str(pincode or "").strip()
    if len(value) != 6 or not value.isdigit():
        raise InvalidMeasurement(f"Invalid pincode '{pincode}'")
    return value


def _is_special(pincode: str) -> bool:
    return pincode.startswith(SPECIAL_CIRCLE_PREFIXES) or pincode.startswith(SPECIAL_DISTRICT_PREFIXES)


def derive_zone(origin: str, destination: str) -> str:
    origin = _normalize_pincode(origin)
    destination = _normalize_pincode(destination)

    if origin[:3] == destination[:3]:
        return "A"
    if _is_special(origin) or _is_special(destination):
        return "E"
    if origin[:2] == destination[:2]:
        return "B"
    if origin[:3] in METRO_PREFIXES and destination[:3] in METRO_PREFIXES:
        return "C"
    return "D"


class ZoneResolver:
    """Cached pincode-pair → zone lookup."""

    def __init__(self, ttl_seconds: int | None = None, max_entries: int | None = None):
        settings = get_settings()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.zone_cache_ttl_seconds
        self.max_entries = max_entries if max_entries is not None else settings.zone_cache_max_entries
        self._cache: OrderedDict[tuple[str, str], tuple[float, str]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def resolve(self, origin: str, destination: str) -> str:
        key = (str(origin).strip(), str(destination).strip())
        now = time.time()
        cached = self._cache.get(key)
        if cached and cached[0] > now:
            self.hits += 1
            self._cache.move_to_end(key)
            return cached[1]

        self.misses += 1
        zone = derive_zone(*key)
        self._cache[key] = (now + self.ttl_seconds, zone)
        self._cache.move_to_end(key)
        while len(self._cache) > self.max_entries:
            self._cache.popitem(last=False)
        logger.debug("zones.resolved", origin=key[0], destination=key[1], zone=zone)
        return zone

    @property
    def size(self) -> int:
        return len(self._cache)

    def clear(self) -> None:
        self._cache.clear()


_default_resolver: ZoneResolver | None = None


def get_zone_resolver() -> ZoneResolver:
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = ZoneResolver()
    return _default_resolver
