"""Tests for overlaying risks onto the supplier roster."""
from __future__ import annotations

import pytest

from riskradar.merger import fallback_overlay, merge, normalize_percent
from riskradar.schemas import Risk, SupplierProfile


def risk(rid: str, location: str, score: int, level: str, **kwargs) -> Risk:
    base = dict(
        id=rid, headline=f"headline {rid}", location=location, date="2026-10-01",
        risk_score=score, risk_level=level, confidence=0.8,
        summary="s", mitigation="m", lat=0.0, lng=0.0,
        estimated_delay="1-3 days", financial_impact="$10K - $30K",
        source="test", created_at="2026-10-01T00:00:00Z",
        category="supply_chain", severity="medium",
    )
    base.update(kwargs)
    return Risk(**base)


@pytest.fixture()
def roster() -> list[SupplierProfile]:
    return [
        SupplierProfile(supplier_name="Acme Textiles", location="Chennai, India"),
        SupplierProfile(id="sup-2", supplier_name="Rotterdam Chemicals BV",
                        location="Rotterdam, Netherlands", criticality="low"),
        SupplierProfile(supplier_name="Tokyo Optics", location="Tokyo, Japan"),
    ]


class TestMerge:
    def test_matching_city_sets_overlay(self, roster):
        merged = merge(roster, [risk("r1", "Chennai, India", 80, "HIGH")])
        acme = merged[0]
        assert acme.current_risk_level == "HIGH"
        assert acme.risk_score == 80
        assert acme.active_risk_ids == ["r1"]
        assert acme.overlay_status == "live"

    def test_unmatched_supplier_defaults(self, roster):
        tokyo = merge(roster, [risk("r1", "Chennai, India", 80, "HIGH")])[2]
        assert tokyo.current_risk_level == "LOW"
        assert tokyo.risk_score == 0
        assert tokyo.active_risk_ids == []
        assert tokyo.criticality == "medium"

    def test_top_risk_is_highest_score(self, roster):
        merged = merge(roster, [
            risk("r1", "Chennai, India", 45, "MEDIUM"),
            risk("r2", "chennai", 90, "HIGH"),
            risk("r3", "Chennai, Tamil Nadu", 30, "LOW"),
        ])
        acme = merged[0]
        assert acme.risk_score == 90
        assert acme.current_risk_level == "HIGH"
        assert acme.active_risk_ids == ["r1", "r2", "r3"]
        assert [a.id for a in acme.active_risks] == ["r1", "r2", "r3"]

    def test_tie_keeps_first_encountered(self, roster):
        merged = merge(roster, [
            risk("first", "Chennai, India", 70, "HIGH", summary="first"),
            risk("second", "Chennai, India", 70, "HIGH", summary="second"),
        ])
        assert merged[0].active_risks[0].summary == "first"
        assert merged[0].risk_score == 70

    def test_match_by_affected_supplier_name(self, roster):
        merged = merge(roster, [
            risk("r9", "Suez, Egypt", 60, "MEDIUM", affected_suppliers=["Tokyo Optics"]),
        ])
        assert merged[2].active_risk_ids == ["r9"]
        assert merged[0].active_risk_ids == []

    def test_city_match_is_exact_token(self, roster):
        merged = merge(roster, [risk("r1", "New Chennai Port, India", 60, "MEDIUM")])
        assert merged[0].active_risk_ids == []

    def test_ids_and_criticality(self, roster):
        merged = merge(roster, [risk("r1", "Rotterdam, Netherlands", 50, "MEDIUM"),
                                risk("r2", "Chennai, India", 50, "MEDIUM")])
        assert merged[0].id == "supplier_acme_textiles"
        assert merged[0].criticality == "high"
        assert merged[1].id == "sup-2"
        assert merged[1].criticality == "low"

    def test_deterministic(self, roster):
        risks = [
            risk("r1", "Chennai, India", 80, "HIGH"),
            risk("r2", "Rotterdam, Netherlands", 35, "LOW"),
        ]
        assert merge(roster, risks) == merge(roster, risks)

    def test_does_not_mutate_inputs(self, roster):
        before = [s.model_copy() for s in roster]
        merge(roster, [risk("r1", "Chennai, India", 80, "HIGH")])
        assert roster == before


class TestFallback:
    def test_marks_unknown(self, roster):
        out = fallback_overlay(roster)
        assert len(out) == 3
        for supplier in out:
            assert supplier.current_risk_level == "UNKNOWN"
            assert supplier.risk_score == 0
            assert supplier.active_risks == []
            assert supplier.overlay_status == "unavailable"


class TestNormalizePercent:
    @pytest.mark.parametrize("raw,expected", [
        (80, 80), (0.85, 85), (1.0, 100), (1, 1), (120, 100), (-5, 0), ("n/a", 0), (None, 0),
    ])
    def test_values(self, raw, expected):
        assert normalize_percent(raw) == expected
