"""Tests for the two-backend benchmark harness."""
from __future__ import annotations

import random
from unittest.mock import AsyncMock

import pytest

from riskradar.benchmark import BenchmarkHarness, GatewayBackend, SimulatedBackend, select_sample
from riskradar.gateway import Completion, ModelError, ModelGateway
from riskradar.parser import RiskAssessment
from riskradar.schemas import Event


def ev(headline: str, location: str = "Chennai, India", relevance: float | None = 0.9) -> Event:
    return Event(id=headline, headline=headline, location=location,
                 date="2026-10-01", relevance_score=relevance)


class StubBackend:
    def __init__(self, provider="Primary", model="fast-model", summaries=None, error=None):
        self.provider = provider
        self.model = model
        self.summaries = summaries or []
        self.error = error
        self.prompts: list[str] = []

    async def run(self, prompt, events):
        self.prompts.append(prompt)
        if self.error:
            raise self.error
        return [
            RiskAssessment(kind="valid", risk_score=0.5, risk_level="MEDIUM",
                           confidence=0.8, summary=s, mitigation="m")
            for s in self.summaries
        ]


class TestSelectSample:
    def test_takes_first_n_then_filters(self):
        events = [ev("a"), ev("b", relevance=0.2), ev("c", location=""), ev("d")]
        assert [e.headline for e in select_sample(events, 3)] == ["a"]

    def test_empty_when_nothing_relevant(self):
        assert select_sample([ev("a", relevance=None), ev("b", relevance=0.4)]) == []


class TestSimulatedBackend:
    def test_latency_model(self):
        backend = SimulatedBackend()
        assert backend.latency_ms(3) == pytest.approx(800 + 3 * 100 / 40 * 1000)

    @pytest.mark.asyncio
    async def test_seeded_scores(self):
        events = [ev("a"), ev("b")]
        first = await SimulatedBackend(time_scale=0, rng=random.Random(7)).run("p", events)
        second = await SimulatedBackend(time_scale=0, rng=random.Random(7)).run("p", events)
        assert first == second
        assert all(0.3 <= a.risk_score <= 0.8 for a in first)
        assert first[0].summary == "Supply chain risk detected for Chennai, India"


class TestGatewayBackend:
    @pytest.mark.asyncio
    async def test_parses_output(self):
        gateway = AsyncMock()
        gateway.provider, gateway.model = "openai_compatible", "llama"
        gateway.complete = AsyncMock(return_value='```json\n[{"risk_score": 0.9, "summary": "x"}]\n```')
        results = await GatewayBackend(gateway).run("prompt", [ev("a")])
        assert len(results) == 1
        assert results[0].summary == "x"
        assert results[0].percent == 90
        assert gateway.complete.await_args.kwargs["use_cache"] is False

    @pytest.mark.asyncio
    async def test_repeated_runs_reach_backend(self):
        class CountingClient:
            provider, model = "fake", "fake-model"
            calls = 0

            async def complete(self, system, user, **kwargs):
                CountingClient.calls += 1
                return Completion(text='[{"risk_score": 0.6}]')

        gateway = ModelGateway(CountingClient(), backoff_base=0, jitter=0)
        backend = GatewayBackend(gateway)
        await backend.run("same prompt", [ev("a")])
        await backend.run("same prompt", [ev("a")])
        assert CountingClient.calls == 2
        assert gateway.state.cache_hits == 0


class TestCompare:
    @pytest.mark.asyncio
    async def test_report(self):
        primary = StubBackend(summaries=["p1", "p2"])
        alternative = SimulatedBackend(time_scale=0)
        harness = BenchmarkHarness(primary, alternative)
        report = await harness.compare([ev("Port strike"), ev("Flood")])

        assert report.events_tested == 2
        assert report.task_type == "risk_analysis"
        assert report.primary.results_count == 2
        assert report.alternative.results_count == 2
        assert report.primary.total_cost == pytest.approx(0.004)
        assert report.alternative.total_cost == pytest.approx(0.03)
        assert report.cost.savings_per_event == pytest.approx(0.013)
        assert report.cost.cost_saved_total == pytest.approx(0.026)
        assert report.cost.cost_ratio == pytest.approx(7.5)
        assert [s.primary_output for s in report.sample_outputs] == ["p1", "p2"]
        assert "Port strike" in primary.prompts[0]

    @pytest.mark.asyncio
    async def test_speed_fields_consistent(self):
        harness = BenchmarkHarness(StubBackend(summaries=["a"]), SimulatedBackend(time_scale=0.01))
        report = await harness.compare([ev("a")])
        saved = report.alternative.total_time_ms - report.primary.total_time_ms
        assert report.speed.time_saved_ms == pytest.approx(saved, abs=0.2)
        assert report.speed.percentage_faster is not None
        assert report.speed.time_saved_per_event_ms == pytest.approx(saved, abs=0.2)

    @pytest.mark.asyncio
    async def test_failing_backend_still_reports(self):
        primary = StubBackend(error=ModelError("backend down"))
        alternative = StubBackend(provider="Alt", model="slow", summaries=["alt"])
        report = await BenchmarkHarness(primary, alternative).compare([ev("a")], task_type="triage")
        assert report.task_type == "triage"
        assert report.primary.error == "backend down"
        assert report.primary.results_count == 0
        assert report.sample_outputs[0].primary_output == "N/A"
        assert report.sample_outputs[0].alternative_output == "alt"
