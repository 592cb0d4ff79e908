"""Overlay the current ``Risk`` batch onto the supplier roster."""
from __future__ import annotations

import logging
from typing import Any, Iterable, Sequence

from riskradar.schemas import ActiveRisk, Risk, SupplierOut, SupplierProfile
from riskradar.utils import city_token, supplier_slug_id

log = logging.getLogger(__name__)


def supplier_profile_id(supplier: SupplierProfile) -> str:
    return supplier.id or supplier_slug_id(supplier.supplier_name)


def normalize_percent(value: Any) -> int:
    """Coerce a stored score to an int in [0, 100]; fractional scores are scaled up."""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0
    if isinstance(value, float) and 0 < num <= 1:
        num *= 100
    return max(0, min(100, int(round(num))))


def _candidates(supplier: SupplierProfile, risks: Sequence[Risk]) -> list[Risk]:
    city = city_token(supplier.location)
    name = supplier.supplier_name
    return [
        r for r in risks
        if (city and city_token(r.location) == city) or name in r.affected_suppliers
    ]


def _base_fields(supplier: SupplierProfile) -> dict[str, Any]:
    data = supplier.model_dump()
    data["id"] = supplier_profile_id(supplier)
    return data


def merge(suppliers: Iterable[SupplierProfile], risks: Sequence[Risk]) -> list[SupplierOut]:
    """Each supplier with its highest-scoring matching risk. Pure: no I/O, no randomness."""
    merged: list[SupplierOut] = []
    for supplier in suppliers:
        matched = _candidates(supplier, risks)
        top: Risk | None = None
        for risk in matched:
            # Strict ">" keeps the first-encountered risk on ties.
            if top is None or risk.risk_score > top.risk_score:
                top = risk

        data = _base_fields(supplier)
        data.update(
            criticality=supplier.criticality or ("high" if top else "medium"),
            current_risk_level=top.risk_level if top else "LOW",
            risk_score=normalize_percent(top.risk_score) if top else 0,
            active_risk_ids=[r.id for r in matched],
            active_risks=[
                ActiveRisk(
                    id=r.id,
                    headline=r.headline,
                    risk_level=r.risk_level,
                    risk_score=normalize_percent(r.risk_score),
                    summary=r.summary,
                    mitigation=r.mitigation,
                    estimated_delay=r.estimated_delay,
                    financial_impact=r.financial_impact,
                )
                for r in matched
            ],
            overlay_status="live",
        )
        merged.append(SupplierOut(**data))
    return merged


def fallback_overlay(suppliers: Iterable[SupplierProfile]) -> list[SupplierOut]:
    """Roster with no live overlay, flagged as such, for when risk analysis failed."""
    out: list[SupplierOut] = []
    for supplier in suppliers:
        data = _base_fields(supplier)
        data.update(
            criticality=supplier.criticality or "medium",
            current_risk_level="UNKNOWN",
            risk_score=0,
            active_risk_ids=[],
            active_risks=[],
            overlay_status="unavailable",
        )
        out.append(SupplierOut(**data))
    log.info("Serving %d suppliers without a risk overlay", len(out))
    return out
