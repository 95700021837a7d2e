"""Scorecard normalizer: the single point that guarantees downstream invariants.

Generative backends return syntactically valid but semantically sloppy output,
so the policy is lenient but bounded:

- the six top-level scores are required; absent -> ``missing_field``,
  unparseable -> ``malformed_entry``;
- numbers are rounded and clamped to [0, 100] instead of rejected;
- malformed improvement areas are dropped, never fatal;
- ``comparisonData``, ``summary`` and ``confidence`` fall back to defaults.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from planner.errors import MALFORMED_ENTRY, MISSING_FIELD, ScorecardValidationError
from planner.schemas import PRIORITIES, SCORE_FIELDS, Scorecard
from planner.utils import clamp, json_parse, strip_code_fence, to_int

log = logging.getLogger(__name__)

DEFAULT_INDUSTRY_AVERAGE = 70
DEFAULT_TOP_PERFORMERS = 90
DEFAULT_CONFIDENCE = 50

_NOT_JSON = object()


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _lookup(raw: Mapping[str, Any], name: str) -> Any:
    """Read a key by its camelCase or snake_case spelling."""
    camel = _camel(name)
    if camel in raw:
        return raw[camel]
    return raw.get(name)


def priority_for(score: int) -> str:
    if score < 60:
        return "high"
    if score < 80:
        return "medium"
    return "low"


def _coerce_mapping(raw: Any) -> Mapping[str, Any]:
    if isinstance(raw, (str, bytes)):
        text = raw.decode("utf-8", "replace") if isinstance(raw, bytes) else raw
        raw = json_parse(strip_code_fence(text.strip()), _NOT_JSON)
        if raw is _NOT_JSON:
            raise ScorecardValidationError(MALFORMED_ENTRY, "<root>", "payload is not JSON")
    if not isinstance(raw, Mapping):
        raise ScorecardValidationError(
            MALFORMED_ENTRY, "<root>", f"expected an object, got {type(raw).__name__}",
        )
    return raw


def _required_score(raw: Mapping[str, Any], name: str) -> int:
    value = _lookup(raw, name)
    if value is None:
        raise ScorecardValidationError(MISSING_FIELD, _camel(name))
    parsed = to_int(value)
    if parsed is None:
        raise ScorecardValidationError(MALFORMED_ENTRY, _camel(name), f"not a number: {value!r}")
    return clamp(parsed)


def _improvement_areas(raw: Mapping[str, Any]) -> list[dict[str, Any]]:
    entries = _lookup(raw, "improvement_areas")
    if entries is None:
        return []
    if not isinstance(entries, list):
        raise ScorecardValidationError(MALFORMED_ENTRY, "improvementAreas", "expected a list")

    areas: list[dict[str, Any]] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            log.debug("Dropping improvement area %d: not an object", idx)
            continue
        area = str(entry.get("area") or "").strip()
        score = to_int(entry.get("score"))
        if not area or score is None:
            log.debug("Dropping improvement area %d: area=%r score=%r", idx, area, entry.get("score"))
            continue
        score = clamp(score)
        priority = str(entry.get("priority") or "").strip().lower()
        if priority not in PRIORITIES:
            priority = priority_for(score)
        areas.append({
            "area": area,
            "score": score,
            "suggestion": str(entry.get("suggestion") or ""),
            "priority": priority,
        })
    return areas


def _comparison_data(raw: Mapping[str, Any]) -> dict[str, int]:
    data = _lookup(raw, "comparison_data")
    if not isinstance(data, Mapping):
        data = {}
    industry = to_int(_lookup(data, "industry_average"))
    top = to_int(_lookup(data, "top_performers"))
    return {
        "industry_average": clamp(DEFAULT_INDUSTRY_AVERAGE if industry is None else industry),
        "top_performers": clamp(DEFAULT_TOP_PERFORMERS if top is None else top),
    }


def validate_scorecard(raw: Any) -> Scorecard:
    """Turn a provider's raw output into a bounded :class:`Scorecard`.

    Raises:
        ScorecardValidationError: a required score is absent (``missing_field``)
            or unparseable, or the payload or its improvement list has the
            wrong shape (``malformed_entry``).
    """
    data = _coerce_mapping(raw)
    scores = {name: _required_score(data, name) for name in SCORE_FIELDS}

    confidence = to_int(_lookup(data, "confidence"))
    summary = _lookup(data, "summary")

    return Scorecard(
        **scores,
        improvement_areas=_improvement_areas(data),
        comparison_data=_comparison_data(data),
        summary="" if summary is None else str(summary),
        confidence=clamp(DEFAULT_CONFIDENCE if confidence is None else confidence),
    )
