"""Tests for GeoResolver: totality, caching, fallbacks."""
from __future__ import annotations

import httpx
import pytest

from riskradar.geo import NEUTRAL_POINT, GeoCoordinate, GeoResolver, fallback_coordinate


def resolver_with(handler) -> tuple[GeoResolver, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return GeoResolver(base_url="https://geo.test/search", min_interval=0, client=client), seen


def ok(lat: str, lon: str):
    return lambda request: httpx.Response(200, json=[{"lat": lat, "lon": lon}])


class TestResolve:
    @pytest.mark.asyncio
    async def test_uses_first_result(self):
        geo, seen = resolver_with(ok("13.08", "80.27"))
        coord = await geo.resolve("Chennai, India")
        assert coord == GeoCoordinate(13.08, 80.27)
        assert seen[0].url.params["q"] == "Chennai, India"
        assert seen[0].url.params["format"] == "json"
        assert "User-Agent" in seen[0].headers

    @pytest.mark.asyncio
    @pytest.mark.parametrize("location", ["", "Global", "GLOBAL", "  global  "])
    async def test_global_is_neutral_without_request(self, location):
        geo, seen = resolver_with(ok("1", "1"))
        assert await geo.resolve(location) == GeoCoordinate(20.0, 0.0)
        assert seen == []

    @pytest.mark.asyncio
    async def test_second_call_is_cached(self):
        geo, seen = resolver_with(ok("51.92", "4.47"))
        first = await geo.resolve("Rotterdam, Netherlands")
        second = await geo.resolve("Rotterdam, Netherlands")
        assert first == second
        assert len(seen) == 1
        assert geo.lookups == 1

    @pytest.mark.asyncio
    async def test_cache_is_case_sensitive(self):
        geo, seen = resolver_with(ok("51.92", "4.47"))
        await geo.resolve("Rotterdam")
        await geo.resolve("rotterdam")
        assert len(seen) == 2


class TestFallback:
    @pytest.mark.asyncio
    async def test_http_error_uses_static_table(self):
        geo, _ = resolver_with(lambda r: httpx.Response(503))
        coord = await geo.resolve("Shenzhen, China")
        assert coord == GeoCoordinate(22.5431, 114.0579)

    @pytest.mark.asyncio
    async def test_empty_result_uses_city_alias(self):
        geo, _ = resolver_with(lambda r: httpx.Response(200, json=[]))
        assert await geo.resolve("Chennai") == fallback_coordinate("chennai, india")

    @pytest.mark.asyncio
    async def test_exception_unknown_place_is_neutral(self):
        def boom(request):
            raise httpx.ConnectError("unreachable")

        geo, _ = resolver_with(boom)
        assert await geo.resolve("Atlantis") == NEUTRAL_POINT

    @pytest.mark.asyncio
    async def test_malformed_result_falls_back(self):
        geo, _ = resolver_with(lambda r: httpx.Response(200, json=[{"lat": "north"}]))
        assert await geo.resolve("Tokyo, Japan") == GeoCoordinate(35.6895, 139.6917)

    @pytest.mark.asyncio
    async def test_fallbacks_are_cached(self):
        geo, seen = resolver_with(lambda r: httpx.Response(500))
        await geo.resolve("Hamburg, Germany")
        await geo.resolve("Hamburg, Germany")
        assert len(seen) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("location", ["???", "12345", "Ünïcödé, Place", "a" * 500])
    async def test_never_raises(self, location):
        geo, _ = resolver_with(lambda r: httpx.Response(200, content=b"not json"))
        coord = await geo.resolve(location)
        assert isinstance(coord.lat, float)
        assert isinstance(coord.lng, float)

    def test_static_table_case_insensitive(self):
        assert fallback_coordinate("SINGAPORE") == GeoCoordinate(1.3521, 103.8198)
        assert fallback_coordinate("Mumbai, India").lat == 19.076
        assert fallback_coordinate("nowhere") == NEUTRAL_POINT
