"""Recover risk assessments from raw model output and normalise them.

Model output is untrusted: it may be wrapped in Markdown fences, carry
trailing commas or currency symbols, be truncated mid-array, or use a 0-100
scale instead of 0-1.  :func:`parse` tries progressively looser recovery
strategies and never raises; :func:`coerce_assessment` turns whatever
survived into a strict :class:`RiskAssessment`.
"""
from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Iterator, Literal

log = logging.getLogger(__name__)

VALID_LEVELS = {"LOW", "MEDIUM", "HIGH"}

_FENCE_RE = re.compile(r"```(?:json|JSON)?")
_CURRENCY_RE = re.compile(r"[$€£¥₹]")
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")
_ARRAY_RE = re.compile(r"\[[\s\S]*\]")


class ParseError(ValueError):
    """Model output could not be recovered. Handled inside this module."""


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ParseError(str(exc)) from exc


def _clean(raw: str) -> str:
    text = _FENCE_RE.sub("", raw)
    text = _CURRENCY_RE.sub("", text)
    text = _TRAILING_COMMA_RE.sub(r"\1", text)
    return text.strip()


def _iter_objects(text: str) -> Iterator[str]:
    """Yield each outermost ``{...}`` span, ignoring braces inside strings."""
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for i, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start:i + 1]


def _recover_objects(text: str) -> list[dict]:
    recovered: list[dict] = []
    for chunk in _iter_objects(text):
        try:
            obj = _loads(_TRAILING_COMMA_RE.sub(r"\1", chunk))
        except ParseError:
            log.debug("Skipping unparseable object: %s", chunk[:80])
            continue
        if isinstance(obj, dict):
            recovered.append(obj)
    return recovered


def parse(raw: str | None) -> dict | list | None:
    """Recover structured JSON from model output; ``None`` when nothing survives."""
    if not raw or not raw.strip():
        return None
    try:
        return _loads(raw)
    except ParseError:
        pass

    cleaned = _clean(raw)
    try:
        return _loads(cleaned)
    except ParseError:
        pass

    match = _ARRAY_RE.search(cleaned)
    if match:
        try:
            return _loads(match.group(0))
        except ParseError:
            pass

    objects = _recover_objects(cleaned)
    if objects:
        log.info("Recovered %d object(s) from malformed model output", len(objects))
        return objects

    log.warning("Unrecoverable model output: %s", raw[:200])
    return None


def parse_assessments(raw: str | None) -> list[Any]:
    """:func:`parse`, coerced to a list (single value -> one element, ``None`` -> empty)."""
    parsed = parse(raw)
    if parsed is None:
        return []
    if isinstance(parsed, list):
        return parsed
    return [parsed]


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def normalize_score(raw: float) -> float:
    """Scores above 1 are taken as a 0-100 scale. Result is clamped to [0, 1]."""
    score = raw / 100 if raw > 1 else raw
    return max(0.0, min(1.0, score))


def band_level(score: float) -> str:
    """Risk level for a normalised 0-1 score."""
    if score >= 0.7:
        return "HIGH"
    if score >= 0.4:
        return "MEDIUM"
    if score >= 0.2:
        return "LOW"
    return "VERY LOW"


def to_percent(score: float) -> int:
    """Half-up ``round(score * 100)`` as an int in [0, 100]."""
    return max(0, min(100, int(math.floor(score * 100 + 0.5))))


@dataclass(frozen=True)
class RiskAssessment:
    """A validated model assessment, or the default used in its place."""
    kind: Literal["valid", "default"]
    risk_score: float
    risk_level: str
    confidence: float
    summary: str
    mitigation: str
    source: str | None = None

    @property
    def percent(self) -> int:
        return to_percent(self.risk_score)


DEFAULT_SUMMARY = "Event detected but AI analysis incomplete."
DEFAULT_MITIGATION = "Manual review recommended."


def default_assessment(source: str | None = None) -> RiskAssessment:
    return RiskAssessment(
        kind="default",
        risk_score=0.5,
        risk_level="MEDIUM",
        confidence=0.5,
        summary=DEFAULT_SUMMARY,
        mitigation=DEFAULT_MITIGATION,
        source=source,
    )


def _text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def coerce_assessment(raw: Any, fallback_source: str | None = None) -> RiskAssessment:
    """Validate one untrusted assessment object. Never raises."""
    if not isinstance(raw, dict):
        return default_assessment(fallback_source)
    num = _number(raw.get("risk_score"))
    if num is None:
        return default_assessment(fallback_source)

    score = normalize_score(num)
    # Level is derived from the score so the two can never disagree.
    level = band_level(score)
    claimed = str(raw.get("risk_level") or "").strip().upper()
    if claimed in VALID_LEVELS and claimed != level:
        log.debug("Model level %s disagrees with score %.2f, using %s", claimed, score, level)

    confidence = _number(raw.get("confidence"))
    if confidence is None or confidence <= 0:
        confidence = 0.7
    else:
        confidence = normalize_score(confidence)

    return RiskAssessment(
        kind="valid",
        risk_score=score,
        risk_level=level,
        confidence=round(confidence, 3),
        summary=_text(raw.get("summary"), "Supply chain event detected."),
        mitigation=_text(raw.get("mitigation"), "Monitor situation and prepare contingency plans."),
        source=_text(raw.get("source"), "") or fallback_source,
    )
