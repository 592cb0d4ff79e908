"""Shared business logic for the Risk Radar API and MCP server."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from riskradar.benchmark import BenchmarkHarness, GatewayBackend, SimulatedBackend, select_sample
from riskradar.config import Settings, get_settings
from riskradar.enricher import RiskEnricher
from riskradar.gateway import LLMClient, ModelGateway
from riskradar.geo import GeoResolver
from riskradar.merger import fallback_overlay, merge
from riskradar.models import Supplier
from riskradar.schemas import (
    ComparisonReport,
    Event,
    Risk,
    SimulateEventResponse,
    SupplierOut,
    SupplierProfile,
)
from riskradar.sources import (
    CompositeSource,
    NewsApiSource,
    RssSource,
    SimulatedEventStore,
    UpstreamSourceError,
    is_newsworthy,
)
from riskradar.translator import Translator
from riskradar.utils import json_parse

log = logging.getLogger(__name__)

OverlayStatus = Literal["live", "fallback", "unavailable"]

OPENAI_URL = "https://api.openai.com/v1"


# ---------------------------------------------------------------------------
# Pipeline wiring
# ---------------------------------------------------------------------------


@dataclass
class Pipeline:
    """Long-lived collaborators, built once per process."""
    settings: Settings
    gateway: ModelGateway
    geo: GeoResolver
    enricher: RiskEnricher
    simulated: SimulatedEventStore
    events: CompositeSource
    benchmark: BenchmarkHarness
    latest_risks: list[Risk] = field(default_factory=list)


def build_gateway(settings: Settings) -> ModelGateway:
    client = LLMClient(
        provider=settings.llm_provider,
        model=settings.llm_model,
        api_key=settings.llm_api_key or None,
        base_url=settings.llm_base_url or None,
        timeout=settings.request_timeout_seconds,
    )
    return ModelGateway(
        client,
        concurrency=settings.model_concurrency,
        requests_per_minute=settings.requests_per_minute,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base_seconds,
        backoff_cap=settings.backoff_cap_seconds,
        timeout=settings.request_timeout_seconds,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        cache_enabled=settings.cache_enabled,
    )


def build_benchmark(settings: Settings, gateway: ModelGateway) -> BenchmarkHarness:
    primary = GatewayBackend(gateway, provider=settings.llm_provider)
    if settings.use_real_benchmark and settings.benchmark_api_key:
        client = LLMClient(
            provider="openai",
            model=settings.benchmark_model,
            api_key=settings.benchmark_api_key,
            base_url=OPENAI_URL,
            timeout=settings.request_timeout_seconds,
        )
        alternative = GatewayBackend(gateway.sibling(client), provider="OpenAI")
    else:
        alternative = SimulatedBackend(model=settings.benchmark_model)
    return BenchmarkHarness(
        primary,
        alternative,
        primary_price=settings.primary_price_per_event,
        alternative_price=settings.alternative_price_per_event,
    )


def build_pipeline(settings: Settings | None = None) -> Pipeline:
    settings = settings or get_settings()
    gateway = build_gateway(settings)
    geo = GeoResolver(
        base_url=settings.geocoder_url,
        user_agent=settings.user_agent,
        min_interval=settings.geocode_interval_seconds,
    )
    enricher = RiskEnricher(
        gateway,
        geo,
        Translator(gateway),
        batch_size=settings.batch_size,
        parallelism=settings.batch_parallelism,
        cooldown=settings.batch_cooldown_seconds,
        relevance_threshold=settings.relevance_threshold,
        min_score=settings.min_risk_score,
        impact_base=settings.impact_base_usd,
    )
    simulated = SimulatedEventStore(maxlen=settings.simulated_event_limit)
    events = CompositeSource([
        NewsApiSource(settings.news_api_key, url=settings.news_api_url, query=settings.news_query),
        RssSource(settings.rss_feeds),
        simulated,
    ])
    log.info("Pipeline ready: %s via %s", gateway.model, settings.llm_provider)
    return Pipeline(
        settings=settings,
        gateway=gateway,
        geo=geo,
        enricher=enricher,
        simulated=simulated,
        events=events,
        benchmark=build_benchmark(settings, gateway),
    )


# ---------------------------------------------------------------------------
# Suppliers
# ---------------------------------------------------------------------------


def supplier_profile(row: Supplier) -> SupplierProfile:
    return SupplierProfile(
        id=row.id,
        supplier_name=row.supplier_name,
        location=row.location or "",
        lat=row.lat,
        lng=row.lng,
        product=row.product or "General Goods",
        category=row.category or "manufacturing",
        lead_time_days=row.lead_time_days or 7,
        monthly_volume=row.monthly_volume or "N/A",
        annual_contract_value=row.annual_contract_value or "N/A",
        criticality=row.criticality or None,
        backup_suppliers=json_parse(row.backup_suppliers_json, []),
    )


def load_suppliers(session: Session) -> list[SupplierProfile]:
    """Roster in name order. Raises :class:`UpstreamSourceError` if the store is unreadable."""
    try:
        rows = session.execute(select(Supplier).order_by(Supplier.supplier_name)).scalars().all()
    except SQLAlchemyError as exc:
        raise UpstreamSourceError(f"supplier store unavailable: {exc}") from exc
    return [supplier_profile(r) for r in rows]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def current_events(pipeline: Pipeline) -> list[Event]:
    """Snapshot from all event sources, minus market-report and finance noise."""
    events = await pipeline.events.fetch_events()
    kept = [e for e in events if is_newsworthy(e)]
    if len(kept) < len(events):
        log.info("Dropped %d noise events", len(events) - len(kept))
    return kept


async def analyze_current(
    pipeline: Pipeline, suppliers: list[SupplierProfile] | None = None,
) -> list[Risk]:
    events = await current_events(pipeline)
    risks = await pipeline.enricher.analyze(events, suppliers or [])
    pipeline.latest_risks = risks
    return risks


async def suppliers_with_risk(
    pipeline: Pipeline, session: Session,
) -> tuple[list[SupplierOut], OverlayStatus]:
    """Roster with the live risk overlay, degrading explicitly when a stage fails."""
    try:
        suppliers = load_suppliers(session)
    except UpstreamSourceError as exc:
        log.error("Cannot load suppliers: %s", exc)
        return [], "unavailable"
    try:
        risks = await analyze_current(pipeline, suppliers)
    except Exception as exc:
        log.exception("Risk overlay failed, serving base roster: %s", exc)
        return fallback_overlay(suppliers), "fallback"
    return merge(suppliers, risks), "live"


async def simulate_event(
    pipeline: Pipeline,
    headline: str,
    location: str,
    severity: str = "medium",
    category: str = "simulated",
    suppliers: list[SupplierProfile] | None = None,
) -> SimulateEventResponse:
    event = pipeline.simulated.add(
        pipeline.simulated.make_event(headline, location, severity=severity, category=category)
    )
    log.info("Simulated event %r at %s", headline, location)
    risks = await pipeline.enricher.analyze([event], suppliers or [])
    return SimulateEventResponse(
        success=True,
        message="Simulated event injected and analyzed",
        event=event,
        risks=risks,
    )


async def run_benchmark(
    pipeline: Pipeline, sample_size: int = 3, task_type: str = "risk_analysis",
) -> ComparisonReport | None:
    """``None`` when no event is suitable for benchmarking."""
    sample = select_sample(await current_events(pipeline), sample_size)
    if not sample:
        return None
    return await pipeline.benchmark.compare(sample, task_type=task_type)
