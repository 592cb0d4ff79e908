"""Pydantic request/response schemas for the Risk Radar API."""
from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RiskLevel = Literal["LOW", "MEDIUM", "HIGH", "VERY LOW"]


class Event(BaseModel):
    """A raw observed occurrence that may indicate supply-chain disruption."""
    model_config = ConfigDict(frozen=True)

    id: str
    headline: str
    location: str
    date: str
    description: str | None = None
    source: str | None = None
    url: str | None = None
    severity: str | None = None
    relevance_score: float | None = None
    category: str | None = None
    lang: str | None = None


class Risk(BaseModel):
    id: str
    headline: str
    location: str
    date: str
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    confidence: float
    summary: str
    mitigation: str
    lat: float
    lng: float
    affected_suppliers: list[str] = []
    linked_supplier_ids: list[str] = []
    affected_routes: list[str] = []
    estimated_delay: str
    financial_impact: str
    source: str
    created_at: str
    category: str
    severity: str
    # "valid" = model output, "default" = model omitted this event,
    # "unavailable" = model call failed for the whole batch
    assessment_kind: Literal["valid", "default", "unavailable"] = "valid"


class SupplierProfile(BaseModel):
    """Reference supplier record as loaded from the roster."""
    id: str | None = None
    supplier_name: str
    location: str = ""
    lat: float | None = None
    lng: float | None = None
    product: str = "General Goods"
    category: str = "manufacturing"
    lead_time_days: int = 7
    monthly_volume: str = "N/A"
    annual_contract_value: str = "N/A"
    criticality: str | None = None
    backup_suppliers: list[str] = []


class ActiveRisk(BaseModel):
    id: str
    headline: str
    risk_level: str
    risk_score: int
    summary: str
    mitigation: str
    estimated_delay: str
    financial_impact: str


class SupplierOut(SupplierProfile):
    id: str
    criticality: str
    current_risk_level: str = "LOW"
    risk_score: int = 0
    active_risk_ids: list[str] = []
    active_risks: list[ActiveRisk] = []
    overlay_status: Literal["live", "unavailable"] = "live"


class SimulateEventRequest(BaseModel):
    headline: str = Field(min_length=1)
    location: str = Field(min_length=1)
    severity: str = "medium"
    category: str = "simulated"


class SimulateEventResponse(BaseModel):
    success: bool
    message: str
    event: Event
    risks: list[Risk]


class BenchmarkRequest(BaseModel):
    sample_size: int = Field(default=3, ge=1, le=25)
    task_type: str = "risk_analysis"


class BackendResult(BaseModel):
    provider: str
    model: str
    total_time_ms: float
    avg_time_per_event_ms: float
    cost_per_event: float
    total_cost: float
    results_count: int
    error: str | None = None


class SpeedComparison(BaseModel):
    speed_ratio: float | None
    time_saved_ms: float
    percentage_faster: float | None
    time_saved_per_event_ms: float


class CostComparison(BaseModel):
    savings_per_event: float
    cost_saved_total: float
    cost_ratio: float | None


class SampleOutput(BaseModel):
    event: str
    primary_output: str
    alternative_output: str


class ComparisonReport(BaseModel):
    task_type: str
    events_tested: int
    primary: BackendResult
    alternative: BackendResult
    speed: SpeedComparison
    cost: CostComparison
    sample_outputs: list[SampleOutput]
    timestamp: str


class ImportResult(BaseModel):
    total_imported: int
    created: int
    updated: int
    skipped: int
