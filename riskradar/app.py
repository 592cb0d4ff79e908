from __future__ import annotations

import logging
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Generator

from fastapi import Depends, FastAPI, File, HTTPException, Request, Response, UploadFile
from sqlalchemy.orm import Session

from riskradar import services
from riskradar.db import get_session, init_db
from riskradar.importer import import_suppliers_xlsx
from riskradar.schemas import (
    BenchmarkRequest,
    ComparisonReport,
    Event,
    ImportResult,
    Risk,
    SimulateEventRequest,
    SimulateEventResponse,
    SupplierOut,
)
from riskradar.services import Pipeline
from riskradar.sources import UpstreamSourceError

log = logging.getLogger(__name__)

OVERLAY_HEADER = "X-Risk-Overlay"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.pipeline = services.build_pipeline()
    yield


app = FastAPI(
    title="Risk Radar",
    version="0.1.0",
    description=(
        "Supply-chain risk radar. Ingests news, RSS and simulated events, scores "
        "them with an LLM and overlays the resulting risks on the supplier roster. "
        "All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Risk", "description": "LLM-enriched risk records for the current event snapshot."},
        {"name": "Suppliers", "description": "Supplier roster with live risk overlay, and XLSX import."},
        {"name": "Simulation", "description": "Inject a hypothetical event and analyze it."},
        {"name": "Benchmark", "description": "Compare the primary model against an alternative backend."},
        {"name": "Metrics", "description": "Model gateway counters and latency."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_pipeline(request: Request) -> Pipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        raise HTTPException(503, "Risk pipeline is not initialised")
    return pipeline


def _suppliers_or_empty(session: Session) -> list:
    try:
        return services.load_suppliers(session)
    except UpstreamSourceError as exc:
        log.warning("Analyzing without supplier roster: %s", exc)
        return []


# ---------------------------------------------------------------------------
# Routes: Root
# ---------------------------------------------------------------------------


@app.get("/", include_in_schema=False)
async def root() -> dict[str, Any]:
    return {
        "name": "Risk Radar",
        "endpoints": [
            "/api/risk", "/api/suppliers", "/api/simulate-event",
            "/api/benchmark", "/api/metrics", "/api/news",
        ],
    }


# ---------------------------------------------------------------------------
# Routes: Risk
# ---------------------------------------------------------------------------


@app.get("/api/risk", response_model=list[Risk],
         tags=["Risk"], summary="Analyze the current event snapshot")
async def get_risk(
    session: Session = Depends(db_session), pipeline: Pipeline = Depends(get_pipeline),
):
    return await services.analyze_current(pipeline, _suppliers_or_empty(session))


@app.get("/api/news", response_model=list[Event],
         tags=["Risk"], summary="Raw events from all sources")
async def get_news(pipeline: Pipeline = Depends(get_pipeline)):
    return await services.current_events(pipeline)


# ---------------------------------------------------------------------------
# Routes: Suppliers
# ---------------------------------------------------------------------------


@app.get("/api/suppliers", response_model=list[SupplierOut],
         tags=["Suppliers"], summary="Suppliers with live risk overlay")
async def get_suppliers(
    response: Response,
    session: Session = Depends(db_session),
    pipeline: Pipeline = Depends(get_pipeline),
):
    suppliers, status = await services.suppliers_with_risk(pipeline, session)
    if status != "live":
        response.headers[OVERLAY_HEADER] = status
    return suppliers


@app.post("/api/suppliers/import", response_model=ImportResult,
          tags=["Suppliers"], summary="Import suppliers from XLSX spreadsheet")
async def import_suppliers(file: UploadFile = File(...), session: Session = Depends(db_session)):
    if not file.filename or not file.filename.endswith(".xlsx"):
        raise HTTPException(400, "Only .xlsx files are supported")
    content = await file.read()
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=".xlsx", delete=False) as f:
            tmp_path = Path(f.name)
            f.write(content)
        result = import_suppliers_xlsx(tmp_path, session)
        session.commit()
        return result
    finally:
        if tmp_path:
            tmp_path.unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Routes: Simulation
# ---------------------------------------------------------------------------


@app.post("/api/simulate-event", response_model=SimulateEventResponse,
          tags=["Simulation"], summary="Inject and analyze a hypothetical event")
async def simulate_event(
    body: SimulateEventRequest,
    session: Session = Depends(db_session),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return await services.simulate_event(
        pipeline,
        body.headline.strip(),
        body.location.strip(),
        severity=body.severity,
        category=body.category,
        suppliers=_suppliers_or_empty(session),
    )


# ---------------------------------------------------------------------------
# Routes: Benchmark & Metrics
# ---------------------------------------------------------------------------


@app.post("/api/benchmark", response_model=ComparisonReport,
          tags=["Benchmark"], summary="Time the primary model against an alternative")
async def run_benchmark(
    body: BenchmarkRequest | None = None, pipeline: Pipeline = Depends(get_pipeline),
):
    body = body or BenchmarkRequest()
    report = await services.run_benchmark(pipeline, body.sample_size, body.task_type)
    if report is None:
        raise HTTPException(400, "No suitable events available for benchmark")
    return report


@app.get("/api/metrics", tags=["Metrics"], summary="Model gateway metrics snapshot")
async def get_metrics(pipeline: Pipeline = Depends(get_pipeline)) -> dict[str, Any]:
    return pipeline.gateway.metrics()


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("riskradar.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
