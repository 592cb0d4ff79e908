from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from riskradar import services
from riskradar.db import init_db, session_scope
from riskradar.sources import UpstreamSourceError

log = logging.getLogger(__name__)

_pipeline: services.Pipeline | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def riskradar_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _pipeline
    init_db()
    _pipeline = services.build_pipeline()
    yield


mcp = FastMCP(
    "Risk Radar",
    instructions=(
        "Risk Radar scores supply-chain disruption events with an LLM and overlays "
        "them on a supplier roster. Start with list_suppliers() to see exposure, "
        "analyze_risks() for the current event snapshot, and simulate_event() to "
        "test a what-if scenario."
    ),
    lifespan=riskradar_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    with session_scope() as session:
        yield session


def _get_pipeline() -> services.Pipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = services.build_pipeline()
    return _pipeline


def _roster(session) -> list:
    try:
        return services.load_suppliers(session)
    except UpstreamSourceError as exc:
        log.warning("Supplier roster unavailable: %s", exc)
        return []


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("riskradar://overview")
def riskradar_overview() -> str:
    """Overview of Risk Radar: data model, workflow and risk levels."""
    return json.dumps({
        "system": "Risk Radar: supply-chain disruption monitoring",
        "description": (
            "News, RSS and simulated events are scored by an LLM into risk records "
            "with coordinates, affected suppliers, shipping routes, delay and cost "
            "estimates, then merged onto the supplier roster."
        ),
        "data_model": {
            "event": "Raw news item or simulated incident with headline, location and date.",
            "risk": "Scored event: risk_score 20-100, risk_level, summary, mitigation, affected suppliers.",
            "supplier": "Roster entry with location, product and criticality plus live risk overlay.",
        },
        "workflow": [
            "1. list_suppliers() to see each supplier's current risk level.",
            "2. analyze_risks() for the full list of active risks.",
            "3. simulate_event(headline, location) to test a what-if scenario.",
            "4. gateway_metrics() to inspect model latency, cache hits and failures.",
        ],
        "risk_levels": {
            "HIGH": "score >= 70: stoppage, closure or major disaster.",
            "MEDIUM": "score 40-69: delays, shortages, tariffs.",
            "LOW": "score 20-39: minor or localised disruption.",
            "UNKNOWN": "overlay unavailable because risk analysis failed.",
        },
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def analyze_risks() -> list[dict]:
    """Score the current event snapshot and return active risks, highest first."""
    pipeline = _get_pipeline()
    with _session() as session:
        suppliers = _roster(session)
    risks = await services.analyze_current(pipeline, suppliers)
    ordered = sorted(risks, key=lambda r: r.risk_score, reverse=True)
    return [r.model_dump() for r in ordered]


@mcp.tool()
async def list_suppliers(min_score: int = 0) -> dict:
    """Suppliers with their live risk overlay. Filter with min_score (0-100)."""
    pipeline = _get_pipeline()
    with _session() as session:
        suppliers, status = await services.suppliers_with_risk(pipeline, session)
    return {
        "overlay_status": status,
        "suppliers": [s.model_dump() for s in suppliers if s.risk_score >= min_score],
    }


@mcp.tool()
async def simulate_event(
    headline: str, location: str, severity: str = "medium", category: str = "simulated",
) -> dict:
    """Inject a hypothetical event (e.g. "Port strike in Rotterdam", "Rotterdam, Netherlands") and analyze it."""
    if not headline.strip() or not location.strip():
        return {"error": "headline and location are required"}
    pipeline = _get_pipeline()
    with _session() as session:
        suppliers = _roster(session)
    result = await services.simulate_event(
        pipeline, headline.strip(), location.strip(),
        severity=severity, category=category, suppliers=suppliers,
    )
    return result.model_dump()


@mcp.tool()
def gateway_metrics() -> dict:
    """Model gateway counters: calls, failures, cache hits, latency and token usage."""
    return _get_pipeline().gateway.metrics()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Risk Radar MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
