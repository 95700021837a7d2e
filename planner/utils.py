"""Shared utility functions used across planner modules."""
from __future__ import annotations

import json
import math
import re
from typing import Any

_MISSING = object()

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def strip_code_fence(text: str) -> str:
    """Return the JSON object inside a ```json fence, or the text unchanged."""
    m = _FENCED_JSON_RE.search(text)
    return m.group(1) if m else text


def to_int(value: Any) -> int | None:
    """Parse ints, floats and numeric strings; ``None`` for anything else."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) or math.isinf(value) else round(value)
    if isinstance(value, str):
        try:
            parsed = float(value.strip().rstrip("%"))
        except ValueError:
            return None
        return None if math.isnan(parsed) or math.isinf(parsed) else round(parsed)
    return None


def clamp(value: int, low: int = 0, high: int = 100) -> int:
    return max(low, min(high, value))
