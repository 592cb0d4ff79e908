from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import openpyxl
from sqlalchemy import select
from sqlalchemy.orm import Session

from riskradar.models import Supplier
from riskradar.schemas import ImportResult
from riskradar.utils import supplier_slug_id

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _i(value: object, default: int = 0) -> int:
    """Safely coerce cell value to int."""
    if value is None or value == "":
        return default
    try:
        return int(float(value))  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return default


def _f(value: object) -> float | None:
    """Safely coerce cell value to float, None if missing."""
    if value is None or value == "":
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (ValueError, TypeError):
        return None


def _list(value: object) -> list[str]:
    """Accept a JSON list or a comma/semicolon separated cell."""
    if isinstance(value, list):
        return [_s(v) for v in value if _s(v)]
    text = _s(value)
    if not text:
        return []
    if text.startswith("["):
        try:
            return [_s(v) for v in json.loads(text) if _s(v)]
        except json.JSONDecodeError:
            pass
    return [p.strip() for p in text.replace(";", ",").split(",") if p.strip()]


def _normalize_row(raw: dict[str, Any]) -> dict[str, Any] | None:
    name = _s(raw.get("supplier_name"))
    if not name:
        return None
    return {
        "id": _s(raw.get("id")) or supplier_slug_id(name),
        "supplier_name": name,
        "location": _s(raw.get("location")),
        "lat": _f(raw.get("lat")),
        "lng": _f(raw.get("lng")),
        "product": _s(raw.get("product")) or "General Goods",
        "category": _s(raw.get("category")) or "manufacturing",
        "lead_time_days": _i(raw.get("lead_time_days"), 7),
        "monthly_volume": _s(raw.get("monthly_volume")) or "N/A",
        "annual_contract_value": _s(raw.get("annual_contract_value")) or "N/A",
        "criticality": _s(raw.get("criticality")).lower(),
        "backup_suppliers_json": json.dumps(_list(raw.get("backup_suppliers"))),
    }


def upsert_suppliers(rows: list[dict[str, Any]], session: Session) -> ImportResult:
    """Insert or update suppliers keyed by ``supplier_name``, then by id (caller must commit).

    Rows added earlier in the same import are tracked here because the
    session does not autoflush, so a repeated name or slug updates the
    pending row instead of inserting a duplicate.
    """
    stored = session.execute(select(Supplier)).scalars().all()
    by_name: dict[str, Supplier] = {s.supplier_name: s for s in stored}
    by_id: dict[str, Supplier] = {s.id: s for s in stored}

    created = updated = skipped = 0
    for raw in rows:
        row = _normalize_row(raw) if isinstance(raw, dict) else None
        if row is None:
            skipped += 1
            continue
        existing = by_name.get(row["supplier_name"]) or by_id.get(row["id"])
        if existing is None:
            supplier = Supplier(**row)
            session.add(supplier)
            by_name[supplier.supplier_name] = supplier
            by_id[supplier.id] = supplier
            created += 1
            continue
        if existing.supplier_name != row["supplier_name"]:
            by_name.pop(existing.supplier_name, None)
            by_name[row["supplier_name"]] = existing
        for key, val in row.items():
            if key != "id":
                setattr(existing, key, val)
        updated += 1
    session.flush()
    return ImportResult(
        total_imported=created + updated, created=created, updated=updated, skipped=skipped,
    )


def import_suppliers_json(path: str | Path, session: Session) -> ImportResult:
    """Import a JSON array of supplier objects."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("Supplier fixture must be a JSON array")
    return upsert_suppliers(data, session)


def import_suppliers_xlsx(path: str | Path, session: Session) -> ImportResult:
    """Import suppliers from the first sheet; row 1 holds the field names."""
    wb = openpyxl.load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.worksheets[0]
        rows = list(ws.iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return ImportResult(total_imported=0, created=0, updated=0, skipped=0)

    header = [_s(h).lower().replace(" ", "_") for h in rows[0]]
    records = [
        {key: value for key, value in zip(header, row) if key}
        for row in rows[1:]
        if row and any(cell is not None for cell in row)
    ]
    result = upsert_suppliers(records, session)
    log.info("Imported %d suppliers from %s", result.total_imported, Path(path).name)
    return result
