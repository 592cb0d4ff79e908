"""Risk enrichment pipeline: raw events in, scored and geo-linked ``Risk`` records out.

Pipeline
--------
1. **Select**: dedupe on (headline, location), drop events without a
   headline or location, ``"Global"`` events and low-relevance noise.
2. **Translate**: headlines go through the :class:`Translator` so every
   prompt is English.
3. **Batch**: fixed-size batches, a bounded number in flight at once with a
   cooldown between groups.  The gateway's limiter still caps the real
   number of concurrent model calls.
4. **Prompt / parse**: one JSON-array prompt per batch; the raw answer is
   recovered by :mod:`riskradar.parser` and coerced per event.
5. **Enrich**: geocode, match suppliers, estimate routes, delay and cost,
   then drop anything scoring below the actionable threshold.

A batch whose model call fails yields "manual review" risks instead of
aborting the run, so :meth:`RiskEnricher.analyze` never raises.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import UTC, datetime
from typing import Iterable, Sequence

from riskradar.gateway import ModelError, ModelGateway
from riskradar.geo import GeoResolver
from riskradar.parser import (
    RiskAssessment,
    band_level,
    coerce_assessment,
    default_assessment,
    parse_assessments,
)
from riskradar.schemas import Event, Risk, SupplierProfile
from riskradar.translator import Translator
from riskradar.utils import city_token, supplier_slug_id

log = logging.getLogger(__name__)

ROUTE_DESTINATIONS = ("Singapore", "Dubai", "Los Angeles", "Hamburg")

UNAVAILABLE_SUMMARY = "AI analysis unavailable. Event flagged for manual review."
UNAVAILABLE_MITIGATION = "Monitor developments and contact affected suppliers."


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def event_key(event: Event) -> tuple[str, str]:
    return (event.headline or "").strip().casefold(), (event.location or "").strip().casefold()


def is_eligible(event: Event, relevance_threshold: float = 0.1) -> bool:
    headline = (event.headline or "").strip()
    location = (event.location or "").strip()
    if not headline or not location or location.lower() == "global":
        return False
    if event.relevance_score is not None and event.relevance_score < relevance_threshold:
        return False
    return True


def select_events(events: Iterable[Event], relevance_threshold: float = 0.1) -> list[Event]:
    """Eligible events in input order, first occurrence wins on duplicates."""
    seen: set[tuple[str, str]] = set()
    selected: list[Event] = []
    for event in events:
        if not is_eligible(event, relevance_threshold):
            continue
        key = event_key(event)
        if key in seen:
            continue
        seen.add(key)
        selected.append(event)
    return selected


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_SCORING_BANDS = """\
Scoring bands for risk_score (0.0 to 1.0):
- 0.7 to 1.0: HIGH (production stoppage, port closure, major disaster)
- 0.4 to 0.69: MEDIUM (delays, shortages, tariffs, labour action)
- 0.2 to 0.39: LOW (minor or localised disruption)
- below 0.2: negligible supply chain impact"""


def build_batch_prompt(events: Sequence[Event], headlines: Sequence[str] | None = None) -> str:
    """One prompt asking for exactly ``len(events)`` assessments, in order."""
    headlines = list(headlines) if headlines is not None else [e.headline for e in events]
    lines = [
        f"Analyze the following {len(events)} supply chain events and assess the "
        "disruption risk of each one.",
        "",
        "Events:",
    ]
    for i, (event, headline) in enumerate(zip(events, headlines), start=1):
        lines.append(f"{i}. Headline: {headline}")
        lines.append(f"   Location: {event.location}")
        lines.append(f"   Date: {event.date}")
        lines.append(f"   Severity: {event.severity or 'unknown'}")
    lines += [
        "",
        _SCORING_BANDS,
        "",
        f"Return ONLY a JSON array with exactly {len(events)} objects, one per event, "
        "in the same order as listed. No prose, no Markdown.",
        'Each object: {"risk_score": <0.0-1.0>, "risk_level": "LOW"|"MEDIUM"|"HIGH", '
        '"confidence": <0.0-1.0>, "summary": "<one sentence>", '
        '"mitigation": "<one actionable recommendation>"}',
    ]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


def match_suppliers(location: str, suppliers: Iterable[SupplierProfile]) -> list[SupplierProfile]:
    """Suppliers whose location contains the event's (or vice versa), by full string or city."""
    loc = (location or "").strip().lower()
    city = city_token(loc)
    matched: list[SupplierProfile] = []
    if not loc:
        return matched
    for supplier in suppliers:
        sup_loc = (supplier.location or "").strip().lower()
        if not sup_loc:
            continue
        sup_city = city_token(sup_loc)
        if loc in sup_loc or sup_loc in loc:
            matched.append(supplier)
        elif city and sup_city and (city in sup_city or sup_city in city):
            matched.append(supplier)
    return matched


def estimate_delay(score: float, headline: str) -> str:
    text = (headline or "").lower()
    if any(k in text for k in ("shutdown", "shuts down", "closed")) or score >= 0.8:
        return "7-14 days"
    if any(k in text for k in ("flood", "strike")) or score >= 0.6:
        return "3-7 days"
    if any(k in text for k in ("delay", "shortage")) or score >= 0.4:
        return "1-3 days"
    return "< 1 day"


def estimate_financial_impact(score: float, matched_count: int, base: float = 200_000) -> str:
    value = score * base
    multiplier = max(1, matched_count)
    low = round(value * 0.5 * multiplier)
    high = round(value * 1.5 * multiplier)
    return f"${low / 1000:.0f}K - ${high / 1000:.0f}K"


def affected_routes(location: str, matched: Sequence[SupplierProfile]) -> list[str]:
    """Shipping lanes out of *location*; a stable subset derived from the location text."""
    if not matched:
        return []
    origin = (location or "").split(",")[0].strip() or location
    digest = hashlib.sha256((location or "").strip().lower().encode("utf-8")).digest()
    count = 1 + digest[0] % 3
    start = digest[1] % len(ROUTE_DESTINATIONS)
    candidates = [d for d in ROUTE_DESTINATIONS if d.lower() != origin.lower()]
    routes = [
        candidates[(start + i) % len(candidates)]
        for i in range(min(count, len(candidates)))
    ]
    return [f"{origin} → {dest}" for dest in routes]


def risk_id(event: Event) -> str:
    digest = hashlib.sha1("|".join(event_key(event)).encode("utf-8")).hexdigest()
    return f"risk_{digest[:12]}"


def unavailable_assessment(source: str | None = None) -> RiskAssessment:
    return RiskAssessment(
        kind="default",
        risk_score=0.5,
        risk_level="MEDIUM",
        confidence=0.5,
        summary=UNAVAILABLE_SUMMARY,
        mitigation=UNAVAILABLE_MITIGATION,
        source=source,
    )


# ---------------------------------------------------------------------------
# Enricher
# ---------------------------------------------------------------------------


class RiskEnricher:
    """Turns raw events into ``Risk`` records. :meth:`analyze` never raises on upstream failure."""

    def __init__(
        self,
        gateway: ModelGateway,
        geo: GeoResolver,
        translator: Translator | None = None,
        *,
        batch_size: int = 5,
        parallelism: int = 2,
        cooldown: float = 1.0,
        relevance_threshold: float = 0.1,
        min_score: int = 20,
        impact_base: float = 200_000,
    ):
        self.gateway = gateway
        self.geo = geo
        self.translator = translator or Translator(None)
        self.batch_size = max(1, batch_size)
        # Never schedule more batches than the gateway will let through.
        self.parallelism = max(1, min(parallelism, gateway.limiter.capacity))
        self.cooldown = cooldown
        self.relevance_threshold = relevance_threshold
        self.min_score = min_score
        self.impact_base = impact_base

    async def analyze(
        self, events: Iterable[Event], suppliers: Sequence[SupplierProfile] = (),
    ) -> list[Risk]:
        selected = select_events(events, self.relevance_threshold)
        if not selected:
            log.info("No eligible events to analyze")
            return []

        headlines = await asyncio.gather(
            *(self.translator.translate(e.headline, e.lang) for e in selected)
        )
        pairs = list(zip(selected, headlines))
        batches = [pairs[i:i + self.batch_size] for i in range(0, len(pairs), self.batch_size)]
        log.info("Analyzing %d events in %d batch(es)", len(selected), len(batches))

        risks: list[Risk] = []
        for g in range(0, len(batches), self.parallelism):
            group = batches[g:g + self.parallelism]
            results = await asyncio.gather(*(self._run_batch(b, suppliers) for b in group))
            for batch_risks in results:
                risks.extend(batch_risks)
            if g + self.parallelism < len(batches) and self.cooldown > 0:
                await asyncio.sleep(self.cooldown)

        log.info("Produced %d risks from %d events", len(risks), len(selected))
        return risks

    async def _run_batch(
        self, batch: list[tuple[Event, str]], suppliers: Sequence[SupplierProfile],
    ) -> list[Risk]:
        events = [e for e, _ in batch]
        prompt = build_batch_prompt(events, [h for _, h in batch])
        try:
            raw = await self.gateway.complete(prompt)
        except ModelError as exc:
            log.warning("Batch of %d events fell back to manual review: %s", len(batch), exc)
            assessments = [(unavailable_assessment(), "unavailable")] * len(batch)
        else:
            parsed = parse_assessments(raw)
            if len(parsed) != len(batch):
                log.warning("Model returned %d assessments for %d events", len(parsed), len(batch))
            assessments = []
            for i, (event, _) in enumerate(batch):
                a = coerce_assessment(parsed[i], event.source) if i < len(parsed) \
                    else default_assessment(event.source)
                assessments.append((a, a.kind))

        built = await asyncio.gather(*(
            self._build_risk(event, headline, assessment, kind, suppliers)
            for (event, headline), (assessment, kind) in zip(batch, assessments)
        ))
        return [r for r in built if r is not None]

    async def _build_risk(
        self,
        event: Event,
        headline: str,
        assessment: RiskAssessment,
        kind: str,
        suppliers: Sequence[SupplierProfile],
    ) -> Risk | None:
        score = assessment.percent
        if score < self.min_score:
            log.debug("Dropping %r, score %d below threshold", headline[:60], score)
            return None

        coord = await self.geo.resolve(event.location)
        matched = match_suppliers(event.location, suppliers)
        return Risk(
            id=risk_id(event),
            headline=headline,
            location=event.location,
            date=event.date,
            risk_score=score,
            # Banded from the stored percent so rounding can never cross a band edge.
            risk_level=band_level(score / 100),
            confidence=assessment.confidence,
            summary=assessment.summary,
            mitigation=assessment.mitigation,
            lat=coord.lat,
            lng=coord.lng,
            affected_suppliers=[s.supplier_name for s in matched],
            linked_supplier_ids=[s.id or supplier_slug_id(s.supplier_name) for s in matched],
            affected_routes=affected_routes(event.location, matched),
            estimated_delay=estimate_delay(assessment.risk_score, headline),
            financial_impact=estimate_financial_impact(
                assessment.risk_score, len(matched), self.impact_base,
            ),
            source=assessment.source or event.source or "AI Risk Analysis",
            created_at=datetime.now(UTC).isoformat(),
            category=event.category or "supply_chain",
            severity=event.severity or "medium",
            assessment_kind=kind,
        )
