"""Event sources: NewsAPI, RSS feeds and the in-memory simulated-event store.

Every source's :meth:`fetch_events` is total.  Upstream failures are logged
and replaced by a single placeholder event, which the enricher then filters
out because its location is ``"Global"``.
"""
from __future__ import annotations

import asyncio
import logging
import re
import uuid
from collections import deque
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Iterable, Protocol

import httpx
from lxml import etree, html as lxml_html

from riskradar.schemas import Event

log = logging.getLogger(__name__)

_TIMEOUT = 15.0
_USER_AGENT = "SupplyChainRiskRadar/1.0 (+https://riskradar.local)"
_ATOM = "{http://www.w3.org/2005/Atom}"


class UpstreamSourceError(Exception):
    """An event or supplier source is unavailable. Degrades to placeholder data."""


class EventSource(Protocol):
    async def fetch_events(self) -> list[Event]: ...


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------

GEO_KEYWORDS = {
    "india": "Chennai, India",
    "netherlands": "Rotterdam, Netherlands",
    "china": "Shenzhen, China",
    "germany": "Berlin, Germany",
    "usa": "New York, USA",
    "canada": "Toronto, Canada",
    "japan": "Tokyo, Japan",
    "france": "Paris, France",
    "uk": "London, UK",
    "mexico": "Mexico City, Mexico",
    "brazil": "São Paulo, Brazil",
    "singapore": "Singapore",
}

RELEVANCE_KEYWORDS = (
    # shipping and trade
    "shipping", "maritime", "cargo", "freight", "container", "vessel",
    "tanker", "barge", "ship", "fleet", "port", "dock", "harbor",
    "shipyard", "seaport",
    # logistics
    "supply chain", "logistics", "warehousing", "distribution", "fulfillment",
    "forwarding", "customs", "clearance", "transit", "trucking",
    "rail freight", "air freight", "sea freight",
    # disruptions
    "congestion", "delay", "backlog", "reroute", "rerouting", "strike",
    "protest", "shortage", "disruption", "suspension", "shutdown",
    "closure", "blockade", "accident", "collision", "grounding",
    "spill", "piracy", "hijack", "sanctions", "embargo",
    "tariff", "trade war", "storm", "cyclone", "hurricane", "typhoon",
    # chokepoints
    "suez canal", "panama canal", "strait of hormuz", "south china sea",
    "red sea", "bab el-mandeb", "malacca strait", "persian gulf",
    "indian ocean route", "trans-pacific", "trans-atlantic",
)

IRRELEVANT_KEYWORDS = ("bitcoin", "crypto", "stock", "etf")

JUNK_KEYWORDS = (
    "market size", "forecast to", "cagr", "market report", "research report",
    "market analysis", "industry outlook", "projected to grow", "market share",
)
CRYPTO_KEYWORDS = ("bitcoin", "crypto", "cryptocurrency", "ethereum", "nft")

_WORD_CACHE: dict[str, re.Pattern] = {}
_CITY_COUNTRY_RE = re.compile(r"\b([A-Z][a-z]+(?: [A-Z][a-z]+)?, [A-Z][a-zA-Z]+)\b")


def _has_word(text: str, word: str) -> bool:
    pattern = _WORD_CACHE.get(word)
    if pattern is None:
        pattern = _WORD_CACHE[word] = re.compile(rf"\b{re.escape(word)}\b")
    return bool(pattern.search(text))


def extract_location(title: str, description: str | None = None) -> str:
    """Best-guess ``"City, Country"`` for an article, ``"Global"`` when unknown."""
    raw = f"{title or ''} {description or ''}"
    text = raw.lower()
    for keyword, location in GEO_KEYWORDS.items():
        if _has_word(text, keyword):
            return location
    match = _CITY_COUNTRY_RE.search(raw)
    if match:
        return match.group(1)
    return "Global"


def classify_severity(text: str) -> str:
    lower = (text or "").lower()
    if any(k in lower for k in ("flood", "strike", "shutdown", "earthquake")):
        return "high"
    if any(k in lower for k in ("tariff", "shortage", "delay")):
        return "medium"
    return "low"


def relevance_score(text: str) -> float:
    """0.2 per supply-chain keyword present, capped at 1.0."""
    lower = (text or "").lower()
    hits = sum(1 for kw in RELEVANCE_KEYWORDS if kw in lower)
    return round(min(hits * 0.2, 1.0), 2)


def is_newsworthy(event: Event) -> bool:
    """False for market-research reports and finance news unrelated to logistics."""
    lower = (event.headline or "").lower()
    if any(kw in lower for kw in JUNK_KEYWORDS):
        return False
    if any(kw in lower for kw in CRYPTO_KEYWORDS):
        return any(kw in lower for kw in ("supply chain", "logistics", "shipping"))
    return True


def _now() -> str:
    return datetime.now(UTC).isoformat()


def placeholder_event(reason: str = "News source failed. Showing placeholder event.") -> Event:
    return Event(
        id=str(uuid.uuid4()),
        headline="No news available",
        location="Global",
        date=_now(),
        description=reason,
        source="System",
        url="",
        severity="low",
        relevance_score=0.0,
        category="system",
        lang="en",
    )


def sample_event() -> Event:
    """Known disruption used when a live feed returns nothing usable."""
    return Event(
        id=str(uuid.uuid4()),
        headline="Chennai floods halt textile production",
        location="Chennai, India",
        date=_now(),
        description="Heavy monsoon rains have forced multiple factories to suspend operations.",
        source="Dinamalar (Tamil)",
        url="https://example.com/chennai-floods",
        severity="high",
        relevance_score=0.9,
        category="weather_impact",
        lang="ta",
    )


def article_event(
    title: str | None,
    description: str | None,
    *,
    published: str | None = None,
    source: str | None = None,
    url: str | None = None,
    lang: str = "en",
) -> Event | None:
    """Classify one article into an ``Event``; ``None`` for finance noise or no title."""
    title = (title or "").strip()
    if not title:
        return None
    description = (description or "").strip()
    text = f"{title} {description}"
    if any(word in text.lower() for word in IRRELEVANT_KEYWORDS):
        return None
    return Event(
        id=str(uuid.uuid4()),
        headline=title,
        location=extract_location(title, description),
        date=published or _now(),
        description=description or "No description available",
        source=source or "Unknown",
        url=url or "",
        severity=classify_severity(text),
        relevance_score=relevance_score(text),
        category="news",
        lang=lang,
    )


def curate(events: list[Event], min_relevance: float = 0.2) -> list[Event]:
    """Relevant events, else the top two, else the sample disruption."""
    relevant = [e for e in events if (e.relevance_score or 0) >= min_relevance]
    if relevant:
        return relevant
    if events:
        log.warning("No relevant news, falling back to top %d articles", min(2, len(events)))
        return events[:2]
    log.warning("News feed empty, injecting sample event")
    return [sample_event()]


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------


class NewsApiSource:
    """NewsAPI ``/v2/everything`` search."""

    def __init__(
        self,
        api_key: str,
        url: str = "https://newsapi.org/v2/everything",
        query: str = "supply chain",
        page_size: int = 5,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.url = url
        self.query = query
        self.page_size = page_size
        self._client = client

    async def _get(self, params: dict) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(self.url, params=params)
        async with httpx.AsyncClient(timeout=httpx.Timeout(_TIMEOUT)) as client:
            return await client.get(self.url, params=params)

    async def _fetch(self) -> list[Event]:
        if not self.api_key:
            raise UpstreamSourceError("NEWS_API_KEY is not set")
        resp = await self._get({
            "q": self.query,
            "language": "en",
            "sortBy": "publishedAt",
            "pageSize": self.page_size,
            "apiKey": self.api_key,
        })
        if resp.status_code >= 400:
            raise UpstreamSourceError(f"NewsAPI returned HTTP {resp.status_code}")
        articles = resp.json().get("articles") or []
        events = []
        for article in articles:
            event = article_event(
                article.get("title"),
                article.get("description"),
                published=article.get("publishedAt"),
                source=(article.get("source") or {}).get("name"),
                url=article.get("url"),
            )
            if event is not None:
                events.append(event)
        return curate(events)

    async def fetch_events(self) -> list[Event]:
        try:
            events = await self._fetch()
        except (UpstreamSourceError, httpx.HTTPError, ValueError, AttributeError) as exc:
            log.warning("NewsAPI unavailable: %s", exc)
            return [placeholder_event()]
        log.info("NewsAPI returned %d events", len(events))
        return events


def _strip_html(fragment: str) -> str:
    if not fragment or "<" not in fragment:
        return (fragment or "").strip()
    try:
        return lxml_html.fromstring(fragment).text_content().strip()
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return fragment.strip()


def _rss_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value).isoformat()
    except (TypeError, ValueError):
        return value


def parse_feed(content: bytes, source: str = "RSS") -> list[Event]:
    """Events from an RSS 2.0 or Atom document."""
    parser = etree.XMLParser(recover=True, resolve_entities=False, no_network=True)
    root = etree.fromstring(content, parser=parser)
    if root is None:
        raise UpstreamSourceError("empty or unparseable feed")
    channel_title = root.findtext("channel/title") or root.findtext(f"{_ATOM}title") or source

    events: list[Event] = []
    for item in root.iter("item"):
        event = article_event(
            item.findtext("title"),
            _strip_html(item.findtext("description") or ""),
            published=_rss_date(item.findtext("pubDate")),
            source=channel_title.strip(),
            url=(item.findtext("link") or "").strip(),
        )
        if event is not None:
            events.append(event)
    for entry in root.iter(f"{_ATOM}entry"):
        link = entry.find(f"{_ATOM}link")
        event = article_event(
            entry.findtext(f"{_ATOM}title"),
            _strip_html(entry.findtext(f"{_ATOM}summary") or ""),
            published=entry.findtext(f"{_ATOM}updated"),
            source=channel_title.strip(),
            url=link.get("href") if link is not None else "",
        )
        if event is not None:
            events.append(event)
    return events


class RssSource:
    """Supply-chain RSS/Atom feeds. A failing feed is skipped, not fatal."""

    def __init__(
        self,
        feeds: Iterable[str],
        limit_per_feed: int = 10,
        min_relevance: float = 0.2,
        client: httpx.AsyncClient | None = None,
    ):
        self.feeds = list(feeds)
        self.limit_per_feed = limit_per_feed
        self.min_relevance = min_relevance
        self._client = client

    async def _fetch_feed(self, client: httpx.AsyncClient, url: str) -> list[Event]:
        resp = await client.get(url, headers={"User-Agent": _USER_AGENT})
        if resp.status_code >= 400:
            raise UpstreamSourceError(f"feed {url} returned HTTP {resp.status_code}")
        events = parse_feed(resp.content, source=url)
        relevant = [e for e in events if (e.relevance_score or 0) >= self.min_relevance]
        return relevant[:self.limit_per_feed]

    async def _fetch_all(self, client: httpx.AsyncClient) -> list[Event]:
        results = await asyncio.gather(
            *(self._fetch_feed(client, url) for url in self.feeds), return_exceptions=True,
        )
        events: list[Event] = []
        for url, result in zip(self.feeds, results):
            if isinstance(result, BaseException):
                log.warning("RSS feed %s failed: %s", url, result)
                continue
            events.extend(result)
        return events

    async def fetch_events(self) -> list[Event]:
        if not self.feeds:
            return []
        if self._client is not None:
            events = await self._fetch_all(self._client)
        else:
            async with httpx.AsyncClient(
                follow_redirects=True, timeout=httpx.Timeout(_TIMEOUT),
            ) as client:
                events = await self._fetch_all(client)
        log.info("RSS feeds returned %d relevant events", len(events))
        return events


class SimulatedEventStore:
    """In-memory store of user-injected events; only the newest ``maxlen`` are kept."""

    def __init__(self, maxlen: int = 20) -> None:
        self._events: deque[Event] = deque(maxlen=max(1, maxlen))

    def make_event(
        self, headline: str, location: str, severity: str = "medium", category: str = "simulated",
    ) -> Event:
        return Event(
            id=str(uuid.uuid4()),
            headline=headline,
            location=location,
            date=_now(),
            description=headline,
            source="Simulated",
            url="",
            severity=severity,
            relevance_score=1.0,
            category=category,
            lang="en",
        )

    def add(self, event: Event) -> Event:
        self._events.append(event)
        return event

    def events(self) -> list[Event]:
        return list(self._events)

    async def fetch_events(self) -> list[Event]:
        return self.events()


class CompositeSource:
    """Concatenate several sources; placeholders only survive if nothing else did."""

    def __init__(self, sources: Iterable[EventSource]):
        self.sources = list(sources)

    async def fetch_events(self) -> list[Event]:
        results = await asyncio.gather(
            *(s.fetch_events() for s in self.sources), return_exceptions=True,
        )
        events: list[Event] = []
        for source, result in zip(self.sources, results):
            if isinstance(result, BaseException):
                log.warning("Event source %s failed: %s", type(source).__name__, result)
                continue
            events.extend(result)
        real = [e for e in events if e.category != "system"]
        if real:
            return real
        return events[:1] or [placeholder_event("No event sources returned data.")]
