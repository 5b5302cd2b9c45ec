"""IP geolocation provider adapters.

Each provider maps one public lookup API onto ``GeoResult``. A provider
returns ``None`` when the API answers but has nothing usable (non-200,
error status); transport failures propagate as ``httpx.HTTPError`` and are
handled by ``GeolocationService``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

_TIMEOUT = 5.0  # seconds


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GeoResult:
    """Normalized geolocation of one IP address."""

    ip: str
    provider: str
    country_code: str | None = None
    country_name: str | None = None
    region: str | None = None
    city: str | None = None
    postal_code: str | None = None
    timezone: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    accuracy_radius_km: int | None = None
    asn: str | None = None
    asn_name: str | None = None
    hosting: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "ip": self.ip,
            "provider": self.provider,
            "country_code": self.country_code,
            "country_name": self.country_name,
            "region": self.region,
            "city": self.city,
            "postal_code": self.postal_code,
            "timezone": self.timezone,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy_radius_km": self.accuracy_radius_km,
            "asn": self.asn,
            "asn_name": self.asn_name,
            "hosting": self.hosting,
        }


class GeolocationProvider(Protocol):
    name: str

    async def lookup(self, ip: str) -> GeoResult | None: ...


# ---------------------------------------------------------------------------
# Parse helpers
# ---------------------------------------------------------------------------


def _str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _asn_number(text: str | None) -> str | None:
    """``"AS15169 Google LLC"`` -> ``"15169"``."""
    if not text:
        return None
    head = text.split(" ", 1)[0]
    if head.upper().startswith("AS"):
        head = head[2:]
    return head or None


def parse_ip_api_com(ip: str, data: dict[str, Any]) -> GeoResult | None:
    if data.get("status") != "success":
        return None
    return GeoResult(
        ip=ip,
        provider=IpApiComProvider.name,
        country_code=_str(data.get("countryCode")),
        country_name=_str(data.get("country")),
        region=_str(data.get("regionName")),
        city=_str(data.get("city")),
        postal_code=_str(data.get("zip")),
        timezone=_str(data.get("timezone")),
        latitude=_float(data.get("lat")),
        longitude=_float(data.get("lon")),
        accuracy_radius_km=100,
        asn=_asn_number(_str(data.get("as"))),
        asn_name=_str(data.get("asname")) or _str(data.get("org")),
        hosting=bool(data.get("hosting", False)),
    )


def parse_ipapi_co(ip: str, data: dict[str, Any]) -> GeoResult | None:
    if data.get("error"):
        return None
    return GeoResult(
        ip=ip,
        provider=IpapiCoProvider.name,
        country_code=_str(data.get("country_code")),
        country_name=_str(data.get("country_name")),
        region=_str(data.get("region")),
        city=_str(data.get("city")),
        postal_code=_str(data.get("postal")),
        timezone=_str(data.get("timezone")),
        latitude=_float(data.get("latitude")),
        longitude=_float(data.get("longitude")),
        accuracy_radius_km=50,
        asn=_asn_number(_str(data.get("asn"))),
        asn_name=_str(data.get("org")),
    )


def parse_ipinfo_io(ip: str, data: dict[str, Any]) -> GeoResult | None:
    if data.get("bogon") or data.get("error"):
        return None
    lat = lon = None
    loc = _str(data.get("loc"))
    if loc and "," in loc:
        lat_text, lon_text = loc.split(",", 1)
        lat, lon = _float(lat_text), _float(lon_text)
    org = _str(data.get("org"))
    return GeoResult(
        ip=ip,
        provider=IpinfoIoProvider.name,
        country_code=_str(data.get("country")),
        region=_str(data.get("region")),
        city=_str(data.get("city")),
        postal_code=_str(data.get("postal")),
        timezone=_str(data.get("timezone")),
        latitude=lat,
        longitude=lon,
        accuracy_radius_km=100,
        asn=_asn_number(org),
        asn_name=org,
    )


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


class _HttpProvider:
    """Shared GET-and-parse plumbing for JSON lookup APIs."""

    name = ""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = _TIMEOUT,
    ) -> None:
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    def url(self, ip: str) -> str:
        raise NotImplementedError

    def parse(self, ip: str, data: dict[str, Any]) -> GeoResult | None:
        raise NotImplementedError

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=self._timeout)
        async with httpx.AsyncClient() as client:
            return await client.get(url, timeout=self._timeout)

    async def lookup(self, ip: str) -> GeoResult | None:
        resp = await self._get(self.url(ip))
        if resp.status_code != 200:
            logger.debug("%s returned HTTP %d for %s", self.name, resp.status_code, ip)
            return None
        data = resp.json()
        if not isinstance(data, dict):
            return None
        return self.parse(ip, data)


class IpApiComProvider(_HttpProvider):
    """ip-api.com free endpoint (HTTP only, 45 req/min)."""

    name = "ip-api.com"
    _FIELDS = (
        "status,message,country,countryCode,region,regionName,city,zip,lat,lon,"
        "timezone,isp,org,as,asname,mobile,proxy,hosting"
    )

    def url(self, ip: str) -> str:
        return f"http://ip-api.com/json/{ip}?fields={self._FIELDS}"

    def parse(self, ip: str, data: dict[str, Any]) -> GeoResult | None:
        return parse_ip_api_com(ip, data)


class IpapiCoProvider(_HttpProvider):
    """ipapi.co, optionally keyed."""

    name = "ipapi.co"

    def url(self, ip: str) -> str:
        if self._api_key:
            return f"https://ipapi.co/{ip}/json/?key={self._api_key}"
        return f"https://ipapi.co/{ip}/json/"

    def parse(self, ip: str, data: dict[str, Any]) -> GeoResult | None:
        return parse_ipapi_co(ip, data)


class IpinfoIoProvider(_HttpProvider):
    """ipinfo.io, optionally with an access token."""

    name = "ipinfo.io"

    def url(self, ip: str) -> str:
        if self._api_key:
            return f"https://ipinfo.io/{ip}/json?token={self._api_key}"
        return f"https://ipinfo.io/{ip}/json"

    def parse(self, ip: str, data: dict[str, Any]) -> GeoResult | None:
        return parse_ipinfo_io(ip, data)


PROVIDER_TYPES: dict[str, type[_HttpProvider]] = {
    IpApiComProvider.name: IpApiComProvider,
    IpapiCoProvider.name: IpapiCoProvider,
    IpinfoIoProvider.name: IpinfoIoProvider,
}


def build_providers(
    names: list[str],
    *,
    api_keys: dict[str, str] | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = _TIMEOUT,
) -> list[_HttpProvider]:
    """Instantiate providers by name, in the given fallback order.

    Raises ``KeyError`` for an unknown provider name.
    """
    api_keys = api_keys or {}
    providers: list[_HttpProvider] = []
    for name in names:
        cls = PROVIDER_TYPES[name]
        providers.append(cls(api_keys.get(name), client=client, timeout=timeout))
    return providers
