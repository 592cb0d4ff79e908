from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass

import httpx

from riskradar.utils import city_token

log = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
_USER_AGENT = "SupplyChainRiskRadar/1.0 (+https://riskradar.local)"
_TIMEOUT = 10.0


class GeoError(Exception):
    """Geocoding lookup failed. Never leaves :class:`GeoResolver`."""


@dataclass(frozen=True)
class GeoCoordinate:
    lat: float
    lng: float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


NEUTRAL_POINT = GeoCoordinate(20.0, 0.0)

# Used when the geocoding service is down or has no answer.
FALLBACK_COORDS: dict[str, GeoCoordinate] = {
    "singapore": GeoCoordinate(1.3521, 103.8198),
    "rotterdam, netherlands": GeoCoordinate(51.9225, 4.47917),
    "toronto, canada": GeoCoordinate(43.6532, -79.3832),
    "paris, france": GeoCoordinate(48.8566, 2.3522),
    "são paulo, brazil": GeoCoordinate(-23.5505, -46.6333),
    "sao paulo, brazil": GeoCoordinate(-23.5505, -46.6333),
    "shenzhen, china": GeoCoordinate(22.5431, 114.0579),
    "mexico city, mexico": GeoCoordinate(19.4326, -99.1332),
    "berlin, germany": GeoCoordinate(52.52, 13.405),
    "london, uk": GeoCoordinate(51.5074, -0.1278),
    "new york, usa": GeoCoordinate(40.7128, -74.006),
    "tokyo, japan": GeoCoordinate(35.6895, 139.6917),
    "chennai, india": GeoCoordinate(13.0827, 80.2707),
    "mumbai, india": GeoCoordinate(19.076, 72.8777),
    "shanghai, china": GeoCoordinate(31.2304, 121.4737),
    "dubai, uae": GeoCoordinate(25.2048, 55.2708),
    "los angeles, usa": GeoCoordinate(34.0522, -118.2437),
    "hamburg, germany": GeoCoordinate(53.5511, 9.9937),
    "busan, south korea": GeoCoordinate(35.1796, 129.0756),
    "suez, egypt": GeoCoordinate(29.9668, 32.5498),
}

# Single-word forms ("chennai") resolve through the city part of each key.
_CITY_FALLBACKS: dict[str, GeoCoordinate] = {
    city_token(key): coord for key, coord in FALLBACK_COORDS.items()
}


def fallback_coordinate(location: str) -> GeoCoordinate:
    """Static-table lookup by ``"city, country"`` or city name; neutral point otherwise."""
    key = (location or "").strip().lower()
    if key in FALLBACK_COORDS:
        return FALLBACK_COORDS[key]
    city = city_token(key)
    if city in _CITY_FALLBACKS:
        return _CITY_FALLBACKS[city]
    return NEUTRAL_POINT


class GeoResolver:
    """Resolve free-text locations to coordinates. :meth:`resolve` never raises.

    Network lookups are serialised with a minimum spacing to respect the
    geocoding service's usage policy; results (fallbacks included) are
    cached by the exact location string.
    """

    def __init__(
        self,
        base_url: str = NOMINATIM_URL,
        user_agent: str = _USER_AGENT,
        min_interval: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url
        self.user_agent = user_agent
        self.min_interval = min_interval
        self._client = client
        self._cache: dict[str, GeoCoordinate] = {}
        self._lock = asyncio.Lock()
        self._last_call: float = 0.0
        self.lookups = 0

    def cached(self, location: str) -> GeoCoordinate | None:
        return self._cache.get(location)

    async def resolve(self, location: str) -> GeoCoordinate:
        if not location or location.strip().lower() == "global":
            return NEUTRAL_POINT
        hit = self._cache.get(location)
        if hit is not None:
            return hit

        async with self._lock:
            # Another task may have resolved it while we waited.
            hit = self._cache.get(location)
            if hit is not None:
                return hit
            try:
                coord = await self._lookup(location)
            except Exception as exc:
                log.warning("Geocoding failed for %r: %s", location, exc)
                coord = fallback_coordinate(location)
                if coord is not NEUTRAL_POINT:
                    log.info("Using fallback coordinates for %r", location)
            self._cache[location] = coord
            return coord

    async def _lookup(self, location: str) -> GeoCoordinate:
        wait = self.min_interval - (time.monotonic() - self._last_call)
        if self._last_call and wait > 0:
            await asyncio.sleep(wait)
        self._last_call = time.monotonic()
        self.lookups += 1

        params = {"format": "json", "q": location, "limit": 1}
        headers = {"User-Agent": self.user_agent}
        if self._client is not None:
            resp = await self._client.get(self.base_url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=httpx.Timeout(_TIMEOUT)) as client:
                resp = await client.get(self.base_url, params=params, headers=headers)

        if resp.status_code >= 400:
            raise GeoError(f"geocoder returned HTTP {resp.status_code}")
        data = resp.json()
        if not isinstance(data, list) or not data:
            raise GeoError("no geocoding results")
        first = data[0]
        try:
            return GeoCoordinate(float(first["lat"]), float(first["lon"]))
        except (KeyError, TypeError, ValueError) as exc:
            raise GeoError(f"malformed geocoding result: {first!r}") from exc
