"""Geolocation lookup with provider fallback and a per-IP TTL cache.

``GeolocationService.lookup`` never raises: a provider that errors, times
out or has no answer hands over to the next one, and when all of them
fail the location is simply unknown (``None``).
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import math
import time
from collections.abc import Callable, Sequence
from datetime import datetime

import httpx

from kestrel_fingerprint.geo.providers import (
    GeolocationProvider,
    GeoResult,
    IpapiCoProvider,
    IpApiComProvider,
    IpinfoIoProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 2.0
DEFAULT_CACHE_TTL = 3600.0
DEFAULT_CACHE_SIZE = 10_000

EARTH_RADIUS_KM = 6371.0
MAX_TRAVEL_SPEED_KMH = 1000.0

_DATACENTER_NAMES: tuple[str, ...] = (
    "amazon",
    "aws",
    "google",
    "microsoft",
    "azure",
    "digitalocean",
    "linode",
    "vultr",
    "ovh",
    "hetzner",
    "cloudflare",
    "akamai",
    "fastly",
)

_RESIDENTIAL_NAMES: tuple[str, ...] = (
    "comcast",
    "verizon",
    "at&t",
    "spectrum",
    "cox",
    "charter",
    "optimum",
    "frontier",
    "centurylink",
    "windstream",
    "bt group",
    "virgin media",
    "sky broadband",
    "vodafone",
    "orange",
    "telefonica",
    "deutsche telekom",
    "swisscom",
    "kpn",
    "telstra",
    "optus",
    "rogers",
    "bell canada",
    "telus",
)


class GeolocationService:
    """Tries each provider in order, each under its own timeout.

    Parameters
    ----------
    providers:
        Fallback chain. Defaults to ip-api.com, ipapi.co, ipinfo.io.
    timeout:
        Seconds allowed per provider attempt.
    cache_ttl:
        Seconds a successful lookup is served from cache.
    clock:
        Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        providers: Sequence[GeolocationProvider] | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        cache_ttl: float = DEFAULT_CACHE_TTL,
        cache_size: int = DEFAULT_CACHE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._providers = list(providers) if providers is not None else [
            IpApiComProvider(),
            IpapiCoProvider(),
            IpinfoIoProvider(),
        ]
        self._timeout = timeout
        self._cache_ttl = cache_ttl
        self._cache_size = cache_size
        self._clock = clock
        self._cache: dict[str, tuple[float, GeoResult]] = {}

    @property
    def providers(self) -> list[GeolocationProvider]:
        return list(self._providers)

    def _cached(self, ip: str) -> GeoResult | None:
        entry = self._cache.get(ip)
        if entry is None:
            return None
        expires_at, result = entry
        if self._clock() >= expires_at:
            del self._cache[ip]
            return None
        return result

    def _store(self, ip: str, result: GeoResult) -> None:
        if len(self._cache) >= self._cache_size:
            now = self._clock()
            self._cache = {k: v for k, v in self._cache.items() if v[0] > now}
            if len(self._cache) >= self._cache_size:
                # Evict the entry closest to expiry
                oldest = min(self._cache, key=lambda k: self._cache[k][0])
                del self._cache[oldest]
        self._cache[ip] = (self._clock() + self._cache_ttl, result)

    async def lookup(self, ip: str) -> GeoResult | None:
        """Geolocate *ip*, or return ``None`` if no provider can."""
        if not is_public_ip(ip):
            return None

        cached = self._cached(ip)
        if cached is not None:
            return cached

        for provider in self._providers:
            try:
                async with asyncio.timeout(self._timeout):
                    result = await provider.lookup(ip)
            except TimeoutError:
                logger.debug("Geolocation provider %s timed out for %s", provider.name, ip)
                continue
            except (httpx.HTTPError, ValueError, KeyError, TypeError):
                logger.debug("Geolocation provider %s failed for %s", provider.name, ip, exc_info=True)
                continue
            if result is not None:
                self._store(ip, result)
                return result

        return None

    async def lookup_batch(self, ips: Sequence[str]) -> dict[str, GeoResult | None]:
        unique = list(dict.fromkeys(ips))
        results = await asyncio.gather(*(self.lookup(ip) for ip in unique))
        return dict(zip(unique, results))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def is_public_ip(ip: str) -> bool:
    """True for a syntactically valid, globally routable address."""
    try:
        return ipaddress.ip_address(ip.strip()).is_global
    except ValueError:
        return False


def is_datacenter_asn(name: str | None) -> bool:
    """True if the AS organization name belongs to a known hosting provider."""
    if not name:
        return False
    lowered = name.lower()
    return any(provider in lowered for provider in _DATACENTER_NAMES)


def is_residential_asn(name: str | None) -> bool:
    if not name:
        return False
    lowered = name.lower()
    return any(isp in lowered for isp in _RESIDENTIAL_NAMES)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def is_impossible_travel(
    previous: GeoResult,
    previous_at: datetime,
    current: GeoResult,
    current_at: datetime,
    *,
    max_speed_kmh: float = MAX_TRAVEL_SPEED_KMH,
) -> bool:
    """True if moving between the two locations needs more than *max_speed_kmh*.

    Unknown coordinates never count as impossible.
    """
    coords = (previous.latitude, previous.longitude, current.latitude, current.longitude)
    if any(c is None for c in coords):
        return False
    distance = haversine_km(*coords)  # type: ignore[arg-type]
    hours = abs((current_at - previous_at).total_seconds()) / 3600.0
    if hours == 0:
        return distance > 0
    return distance / hours > max_speed_kmh
