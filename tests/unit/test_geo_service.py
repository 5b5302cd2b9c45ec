"""Tests for the geolocation service: fallback, timeouts, cache and helpers."""

import asyncio
import re
from datetime import timedelta

import httpx
import pytest

from kestrel_fingerprint.geo.providers import GeoResult, IpapiCoProvider, IpApiComProvider
from kestrel_fingerprint.geo.service import (
    GeolocationService,
    haversine_km,
    is_datacenter_asn,
    is_impossible_travel,
    is_public_ip,
    is_residential_asn,
)

IP = "8.8.8.8"


class FakeProvider:
    """Scripted provider: returns, raises or sleeps."""

    def __init__(self, name, result=None, exc=None, delay=0.0):
        self.name = name
        self._result = result
        self._exc = exc
        self._delay = delay
        self.calls = 0

    async def lookup(self, ip):
        self.calls += 1
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._exc is not None:
            raise self._exc
        return self._result


def _geo(provider="fake", **kwargs) -> GeoResult:
    return GeoResult(ip=IP, provider=provider, **kwargs)


class TestFallback:
    async def test_first_answer_wins(self) -> None:
        first = FakeProvider("a", result=_geo("a", country_code="US"))
        second = FakeProvider("b", result=_geo("b"))
        result = await GeolocationService([first, second]).lookup(IP)
        assert result.provider == "a"
        assert second.calls == 0

    async def test_error_falls_through(self) -> None:
        failing = FakeProvider("a", exc=httpx.ConnectError("down"))
        empty = FakeProvider("b", result=None)
        good = FakeProvider("c", result=_geo("c"))
        result = await GeolocationService([failing, empty, good]).lookup(IP)
        assert result.provider == "c"

    async def test_timeout_falls_through(self) -> None:
        slow = FakeProvider("slow", result=_geo("slow"), delay=1.0)
        fast = FakeProvider("fast", result=_geo("fast"))
        service = GeolocationService([slow, fast], timeout=0.05)
        result = await service.lookup(IP)
        assert result.provider == "fast"

    async def test_all_fail_is_unknown(self) -> None:
        providers = [FakeProvider("a", exc=ValueError("bad json")), FakeProvider("b")]
        assert await GeolocationService(providers).lookup(IP) is None

    async def test_private_ip_is_never_looked_up(self) -> None:
        provider = FakeProvider("a", result=_geo())
        service = GeolocationService([provider])
        assert await service.lookup("192.168.1.10") is None
        assert await service.lookup("not-an-ip") is None
        assert provider.calls == 0

    async def test_http_providers_fall_back(self, httpx_mock) -> None:
        httpx_mock.add_response(url=re.compile(r"http://ip-api\.com/json/.*"), status_code=503)
        httpx_mock.add_response(url="https://ipapi.co/8.8.8.8/json/", json={"country_code": "NL"})
        service = GeolocationService([IpApiComProvider(), IpapiCoProvider()])
        result = await service.lookup(IP)
        assert result.provider == "ipapi.co"
        assert result.country_code == "NL"


class TestCache:
    async def test_hit_within_ttl(self) -> None:
        now = [0.0]
        provider = FakeProvider("a", result=_geo())
        service = GeolocationService([provider], cache_ttl=60, clock=lambda: now[0])
        await service.lookup(IP)
        now[0] = 59.0
        await service.lookup(IP)
        assert provider.calls == 1

    async def test_miss_after_ttl(self) -> None:
        now = [0.0]
        provider = FakeProvider("a", result=_geo())
        service = GeolocationService([provider], cache_ttl=60, clock=lambda: now[0])
        await service.lookup(IP)
        now[0] = 61.0
        await service.lookup(IP)
        assert provider.calls == 2

    async def test_failures_are_not_cached(self) -> None:
        provider = FakeProvider("a", result=None)
        service = GeolocationService([provider])
        await service.lookup(IP)
        await service.lookup(IP)
        assert provider.calls == 2

    async def test_cache_size_is_bounded(self) -> None:
        provider = FakeProvider("a", result=_geo())
        service = GeolocationService([provider], cache_size=2)
        for ip in ("8.8.8.8", "1.1.1.1", "9.9.9.9"):
            await service.lookup(ip)
        assert len(service._cache) == 2

    async def test_batch_dedupes(self) -> None:
        provider = FakeProvider("a", result=_geo())
        results = await GeolocationService([provider]).lookup_batch([IP, IP, "10.0.0.1"])
        assert set(results) == {IP, "10.0.0.1"}
        assert results["10.0.0.1"] is None


class TestHelpers:
    def test_is_public_ip(self) -> None:
        assert is_public_ip("8.8.8.8")
        assert is_public_ip("2001:4860:4860::8888")
        assert not is_public_ip("127.0.0.1")
        assert not is_public_ip("10.1.2.3")
        assert not is_public_ip("")

    def test_asn_classification(self) -> None:
        assert is_datacenter_asn("Amazon.com, Inc.")
        assert is_datacenter_asn("DIGITALOCEAN-ASN")
        assert not is_datacenter_asn(None)
        assert is_residential_asn("Comcast Cable Communications")
        assert is_residential_asn("AT&T Services, Inc.")
        assert not is_residential_asn("Hetzner Online GmbH")

    def test_haversine(self) -> None:
        # Berlin to Paris is roughly 878 km
        assert haversine_km(52.52, 13.405, 48.8566, 2.3522) == pytest.approx(878, rel=0.01)
        assert haversine_km(10.0, 10.0, 10.0, 10.0) == 0.0

    def test_impossible_travel(self, t0) -> None:
        berlin = _geo(latitude=52.52, longitude=13.405)
        new_york = _geo(latitude=40.71, longitude=-74.0)
        assert is_impossible_travel(berlin, t0, new_york, t0 + timedelta(hours=1))
        assert not is_impossible_travel(berlin, t0, new_york, t0 + timedelta(hours=9))

    def test_unknown_coordinates_are_possible(self, t0) -> None:
        assert not is_impossible_travel(_geo(), t0, _geo(latitude=1.0, longitude=1.0), t0)
