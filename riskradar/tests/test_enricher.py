"""Tests for the risk enrichment pipeline and its pure heuristics."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from riskradar.enricher import (
    UNAVAILABLE_SUMMARY,
    RiskEnricher,
    affected_routes,
    build_batch_prompt,
    estimate_delay,
    estimate_financial_impact,
    is_eligible,
    match_suppliers,
    select_events,
)
from riskradar.gateway import Completion, ModelGateway
from riskradar.geo import GeoCoordinate
from riskradar.parser import band_level
from riskradar.schemas import Event, SupplierProfile
from riskradar.translator import Translator


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


class StatusError(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class ScriptedClient:
    """LLM client whose reply is computed from the prompt text."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, responder):
        self.responder = responder
        self.prompts: list[str] = []

    async def complete(self, system, user, *, model=None, temperature=0.2, max_tokens=512):
        self.prompts.append(user)
        reply = self.responder(user)
        if isinstance(reply, BaseException):
            raise reply
        return Completion(text=reply)


def assessments(*scores: float) -> str:
    return json.dumps([
        {"risk_score": s, "risk_level": "HIGH", "confidence": 0.9,
         "summary": f"summary {s}", "mitigation": "Reroute via backup supplier"}
        for s in scores
    ])


def event(headline: str, location: str = "Chennai, India", **kwargs) -> Event:
    kwargs.setdefault("date", "2026-10-01T00:00:00Z")
    kwargs.setdefault("id", headline[:20])
    return Event(headline=headline, location=location, **kwargs)


def make_enricher(responder, translator=None, **kwargs) -> tuple[RiskEnricher, ScriptedClient]:
    client = ScriptedClient(responder)
    gateway = ModelGateway(client, max_attempts=2, backoff_base=0, jitter=0)
    geo = MagicMock()
    geo.resolve = AsyncMock(return_value=GeoCoordinate(13.08, 80.27))
    kwargs.setdefault("cooldown", 0)
    return RiskEnricher(gateway, geo, translator, **kwargs), client


@pytest.fixture()
def suppliers() -> list[SupplierProfile]:
    return [
        SupplierProfile(id="supplier_acme_textiles", supplier_name="Acme Textiles", location="Chennai, India"),
        SupplierProfile(supplier_name="Rotterdam Chemicals BV", location="Rotterdam, Netherlands"),
    ]


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_port_shutdown_scores_high(self, suppliers):
        enricher, _ = make_enricher(lambda p: assessments(0.85))
        risks = await enricher.analyze(
            [event("Port of Chennai shuts down due to cyclone", severity="high")], suppliers,
        )
        assert len(risks) == 1
        risk = risks[0]
        assert risk.risk_score == 85
        assert risk.risk_level == "HIGH"
        assert risk.estimated_delay == "7-14 days"
        assert risk.assessment_kind == "valid"
        assert risk.affected_suppliers == ["Acme Textiles"]
        assert risk.linked_supplier_ids == ["supplier_acme_textiles"]
        assert risk.financial_impact == "$85K - $255K"
        assert risk.affected_routes
        assert (risk.lat, risk.lng) == (13.08, 80.27)
        assert risk.severity == "high"

    @pytest.mark.asyncio
    async def test_global_events_never_reach_model(self):
        enricher, client = make_enricher(lambda p: assessments(0.9))
        risks = await enricher.analyze([
            event("Markets wobble", location="Global"),
            event("Trade outlook", location="global"),
        ])
        assert risks == []
        assert client.prompts == []
        assert enricher.gateway.state.total_calls == 0

    @pytest.mark.asyncio
    async def test_low_scores_dropped(self):
        enricher, _ = make_enricher(lambda p: assessments(0.1, 0.19, 0.85, 5, 0.2))
        risks = await enricher.analyze([event(f"Event {i}") for i in range(5)])
        assert [r.risk_score for r in risks] == [85, 20]
        assert all(r.risk_score >= 20 for r in risks)
        assert all(r.risk_level == band_level(r.risk_score / 100) for r in risks)

    @pytest.mark.asyncio
    async def test_missing_assessment_defaults(self):
        enricher, _ = make_enricher(lambda p: assessments(0.7))
        risks = await enricher.analyze([event("Strike at port"), event("Flood in plant")])
        assert len(risks) == 2
        assert risks[1].assessment_kind == "default"
        assert risks[1].risk_score == 50
        assert risks[1].risk_level == "MEDIUM"

    @pytest.mark.asyncio
    async def test_unparseable_output_defaults_every_event(self):
        enricher, _ = make_enricher(lambda p: "Sorry, I cannot do that.")
        risks = await enricher.analyze([event("Strike at port")])
        assert [r.assessment_kind for r in risks] == ["default"]

    @pytest.mark.asyncio
    async def test_failed_batch_flags_manual_review(self):
        enricher, _ = make_enricher(lambda p: StatusError(400))
        risks = await enricher.analyze([event("Strike at port"), event("Flood in plant")])
        assert len(risks) == 2
        for risk in risks:
            assert risk.assessment_kind == "unavailable"
            assert risk.risk_score == 50
            assert risk.risk_level == "MEDIUM"
            assert risk.summary == UNAVAILABLE_SUMMARY

    @pytest.mark.asyncio
    async def test_one_failed_batch_does_not_blank_others(self):
        def responder(prompt):
            return StatusError(400) if "Strike" in prompt else assessments(0.6)

        enricher, client = make_enricher(responder, batch_size=1, parallelism=2)
        risks = await enricher.analyze([event("Strike at port"), event("Flood in plant")])
        kinds = {r.headline: r.assessment_kind for r in risks}
        assert kinds == {"Strike at port": "unavailable", "Flood in plant": "valid"}
        assert len(client.prompts) == 2

    @pytest.mark.asyncio
    async def test_batches_respect_size(self):
        enricher, client = make_enricher(lambda p: assessments(0.5, 0.5), batch_size=2)
        risks = await enricher.analyze([event(f"Shortage {i}") for i in range(5)])
        assert len(client.prompts) == 3
        assert len(risks) == 5

    @pytest.mark.asyncio
    async def test_duplicates_and_low_relevance_filtered(self):
        enricher, client = make_enricher(lambda p: assessments(0.5))
        risks = await enricher.analyze([
            event("Port strike"),
            event("PORT STRIKE", location="chennai, india"),
            event("Minor note", relevance_score=0.05),
        ])
        assert len(risks) == 1
        assert "exactly 1 objects" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_headlines_translated_before_prompting(self):
        translator = Translator(None)
        translator.translate = AsyncMock(return_value="Chennai floods halt textile production")
        enricher, client = make_enricher(lambda p: assessments(0.8), translator=translator)
        risks = await enricher.analyze([event("சென்னை வெள்ளம்", lang="ta")])
        translator.translate.assert_awaited_once_with("சென்னை வெள்ளம்", "ta")
        assert "Chennai floods halt textile production" in client.prompts[0]
        assert risks[0].headline == "Chennai floods halt textile production"

    def test_parallelism_capped_by_gateway(self):
        gateway = ModelGateway(ScriptedClient(lambda p: "[]"), concurrency=1)
        enricher = RiskEnricher(gateway, MagicMock(), parallelism=3)
        assert enricher.parallelism == 1


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------


class TestSelection:
    def test_eligibility(self):
        assert is_eligible(event("Port strike"))
        assert not is_eligible(event("", location="Chennai"))
        assert not is_eligible(event("Port strike", location=""))
        assert not is_eligible(event("Port strike", location="Global"))
        assert not is_eligible(event("Port strike", relevance_score=0.09))
        assert is_eligible(event("Port strike", relevance_score=0.1))

    def test_first_duplicate_wins(self):
        a = event("Port strike", id="a")
        b = event("port strike ", id="b")
        assert select_events([a, b]) == [a]


class TestPrompt:
    def test_lists_events_and_contract(self):
        prompt = build_batch_prompt([
            event("Port strike", severity="high"),
            event("Tariff hike", location="Shenzhen, China"),
        ])
        assert "1. Headline: Port strike" in prompt
        assert "Location: Shenzhen, China" in prompt
        assert "Severity: high" in prompt
        assert "Severity: unknown" in prompt
        assert "exactly 2 objects" in prompt
        assert "ONLY a JSON array" in prompt
        assert "0.7 to 1.0: HIGH" in prompt


class TestMatchSuppliers:
    def test_full_location(self, suppliers):
        assert [s.supplier_name for s in match_suppliers("Chennai, India", suppliers)] == ["Acme Textiles"]

    def test_city_only(self, suppliers):
        assert [s.supplier_name for s in match_suppliers("Rotterdam", suppliers)] == ["Rotterdam Chemicals BV"]

    def test_city_token_containment(self, suppliers):
        matched = match_suppliers("Port of Rotterdam, Netherlands", suppliers)
        assert [s.supplier_name for s in matched] == ["Rotterdam Chemicals BV"]

    def test_no_match(self, suppliers):
        assert match_suppliers("Tokyo, Japan", suppliers) == []

    def test_blank_supplier_location_never_matches(self):
        blank = SupplierProfile(supplier_name="Nowhere Ltd", location="")
        assert match_suppliers("Tokyo, Japan", [blank]) == []


class TestEstimates:
    @pytest.mark.parametrize("score,headline,expected", [
        (0.1, "Factory shutdown announced", "7-14 days"),
        (0.1, "Plant closed indefinitely", "7-14 days"),
        (0.8, "Quiet news", "7-14 days"),
        (0.1, "Flood warning", "3-7 days"),
        (0.6, "Quiet news", "3-7 days"),
        (0.1, "Chip shortage continues", "1-3 days"),
        (0.4, "Quiet news", "1-3 days"),
        (0.39, "Quiet news", "< 1 day"),
    ])
    def test_delay(self, score, headline, expected):
        assert estimate_delay(score, headline) == expected

    def test_financial_impact_single_supplier(self):
        assert estimate_financial_impact(0.5, 0) == "$50K - $150K"

    def test_financial_impact_scales_with_suppliers(self):
        assert estimate_financial_impact(0.5, 3) == "$150K - $450K"

    def test_financial_impact_custom_base(self):
        assert estimate_financial_impact(1.0, 1, base=500_000) == "$250K - $750K"


class TestRoutes:
    def test_deterministic(self, suppliers):
        assert affected_routes("Chennai, India", suppliers) == affected_routes("Chennai, India", suppliers)

    def test_format_and_origin(self, suppliers):
        routes = affected_routes("Chennai, India", suppliers)
        assert 1 <= len(routes) <= 3
        for route in routes:
            origin, dest = route.split(" → ")
            assert origin == "Chennai"
            assert dest in {"Singapore", "Dubai", "Los Angeles", "Hamburg"}

    def test_never_routes_to_itself(self, suppliers):
        for _ in range(3):
            routes = affected_routes("Singapore", suppliers)
            assert routes
            assert "Singapore → Singapore" not in routes

    def test_empty_without_suppliers(self):
        assert affected_routes("Chennai, India", []) == []
