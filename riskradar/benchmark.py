"""Side-by-side timing and cost comparison of two inference backends."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import UTC, datetime
from typing import Protocol, Sequence

from riskradar.enricher import build_batch_prompt
from riskradar.gateway import ModelGateway
from riskradar.parser import RiskAssessment, band_level, coerce_assessment, parse_assessments
from riskradar.schemas import (
    BackendResult,
    ComparisonReport,
    CostComparison,
    Event,
    SampleOutput,
    SpeedComparison,
)

log = logging.getLogger(__name__)

SAMPLE_MIN_RELEVANCE = 0.5


class BenchmarkBackend(Protocol):
    provider: str
    model: str

    async def run(self, prompt: str, events: Sequence[Event]) -> list[RiskAssessment]: ...


def select_sample(events: Sequence[Event], sample_size: int = 3) -> list[Event]:
    """First *sample_size* events, keeping those with a location and decent relevance."""
    return [
        e for e in list(events)[:sample_size]
        if e.location and (e.relevance_score or 0) >= SAMPLE_MIN_RELEVANCE
    ]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class GatewayBackend:
    """A real model behind a :class:`ModelGateway`."""

    def __init__(self, gateway: ModelGateway, provider: str | None = None):
        self.gateway = gateway
        self.provider = provider or gateway.provider or "unknown"
        self.model = gateway.model

    async def run(self, prompt: str, events: Sequence[Event]) -> list[RiskAssessment]:
        # A cached answer would time the cache, not the backend.
        raw = await self.gateway.complete(prompt, use_cache=False)
        parsed = parse_assessments(raw)
        return [coerce_assessment(item) for item in parsed[:len(events)]]


class SimulatedBackend:
    """Stand-in for a conventional hosted model with typical latency characteristics.

    Latency is ``ttft + tokens / tokens_per_second`` with ``tokens_per_event``
    output tokens per event; ``time_scale`` shrinks the wait (tests use 0).
    """

    provider = "Simulated"

    def __init__(
        self,
        model: str = "gpt-3.5-turbo",
        *,
        ttft_ms: float = 800.0,
        tokens_per_second: float = 40.0,
        tokens_per_event: int = 100,
        time_scale: float = 1.0,
        rng: random.Random | None = None,
    ):
        self.model = model
        self.ttft_ms = ttft_ms
        self.tokens_per_second = tokens_per_second
        self.tokens_per_event = tokens_per_event
        self.time_scale = time_scale
        self.rng = rng or random.Random(42)

    def latency_ms(self, n_events: int) -> float:
        generation = n_events * self.tokens_per_event / self.tokens_per_second * 1000
        return self.ttft_ms + generation

    async def run(self, prompt: str, events: Sequence[Event]) -> list[RiskAssessment]:
        wait = self.latency_ms(len(events)) / 1000 * self.time_scale
        log.debug("Simulating %.0fms of standard inference", wait * 1000)
        if wait > 0:
            await asyncio.sleep(wait)
        results = []
        for event in events:
            score = round(self.rng.uniform(0.3, 0.8), 3)
            results.append(RiskAssessment(
                kind="valid",
                risk_score=score,
                risk_level=band_level(score),
                confidence=0.75,
                summary=f"Supply chain risk detected for {event.location}",
                mitigation="Monitor and prepare contingency plans",
            ))
        return results


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


class BenchmarkHarness:
    def __init__(
        self,
        primary: BenchmarkBackend,
        alternative: BenchmarkBackend,
        *,
        primary_price: float = 0.002,
        alternative_price: float = 0.015,
    ):
        self.primary = primary
        self.alternative = alternative
        self.primary_price = primary_price
        self.alternative_price = alternative_price

    async def _timed(
        self, backend: BenchmarkBackend, prompt: str, events: Sequence[Event], price: float,
    ) -> tuple[BackendResult, list[RiskAssessment]]:
        error = None
        start = time.perf_counter()
        try:
            results = await backend.run(prompt, events)
        except Exception as exc:
            log.warning("Benchmark backend %s failed: %s", backend.provider, exc)
            results, error = [], str(exc) or exc.__class__.__name__
        elapsed_ms = (time.perf_counter() - start) * 1000
        n = max(1, len(events))
        return BackendResult(
            provider=backend.provider,
            model=backend.model,
            total_time_ms=round(elapsed_ms, 1),
            avg_time_per_event_ms=round(elapsed_ms / n, 1),
            cost_per_event=price,
            total_cost=round(price * len(events), 4),
            results_count=len(results),
            error=error,
        ), results

    async def compare(self, events: Sequence[Event], task_type: str = "risk_analysis") -> ComparisonReport:
        events = list(events)
        n = len(events)
        prompt = build_batch_prompt(events)
        log.info("Benchmarking %d events: %s vs %s", n, self.primary.model, self.alternative.model)

        primary, primary_out = await self._timed(self.primary, prompt, events, self.primary_price)
        alternative, alt_out = await self._timed(
            self.alternative, prompt, events, self.alternative_price,
        )

        p_ms, a_ms = primary.total_time_ms, alternative.total_time_ms
        saved = a_ms - p_ms
        speed = SpeedComparison(
            speed_ratio=round(a_ms / p_ms, 2) if p_ms > 0 else None,
            time_saved_ms=round(saved, 1),
            percentage_faster=round(saved / a_ms * 100, 1) if a_ms > 0 else None,
            time_saved_per_event_ms=round(saved / max(1, n), 1),
        )
        per_event = self.alternative_price - self.primary_price
        cost = CostComparison(
            savings_per_event=round(per_event, 4),
            cost_saved_total=round(per_event * n, 4),
            cost_ratio=round(self.alternative_price / self.primary_price, 2)
            if self.primary_price > 0 else None,
        )
        samples = [
            SampleOutput(
                event=event.headline,
                primary_output=primary_out[i].summary if i < len(primary_out) else "N/A",
                alternative_output=alt_out[i].summary if i < len(alt_out) else "N/A",
            )
            for i, event in enumerate(events)
        ]
        log.info("Benchmark done: %.0fms vs %.0fms", p_ms, a_ms)
        return ComparisonReport(
            task_type=task_type,
            events_tested=n,
            primary=primary,
            alternative=alternative,
            speed=speed,
            cost=cost,
            sample_outputs=samples,
            timestamp=datetime.now(UTC).isoformat(),
        )
