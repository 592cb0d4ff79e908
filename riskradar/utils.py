"""Shared utility functions used across Risk Radar modules."""
from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def city_token(location: str | None) -> str:
    """Lowercased text before the first comma: ``"Chennai, India"`` -> ``"chennai"``."""
    return (location or "").split(",")[0].strip().lower()


def slugify(name: str) -> str:
    return re.sub(r"\s", "_", (name or "").strip().lower())


def supplier_slug_id(name: str) -> str:
    return f"supplier_{slugify(name)}"
