"""Pull JSON payloads out of free-form LLM responses."""

from __future__ import annotations

import json
import re
from typing import Any

from training_camp.errors import GenerativeOutputError

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


def _extract(response: str, pattern: re.Pattern[str], expected: type) -> Any:
    match = pattern.search(response or "")
    if match is None:
        raise GenerativeOutputError(f"No JSON {expected.__name__} in response")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        raise GenerativeOutputError(f"Invalid JSON in response: {exc}") from exc
    if not isinstance(data, expected):
        raise GenerativeOutputError(f"Expected JSON {expected.__name__}, got {type(data).__name__}")
    return data


def extract_json_array(response: str) -> list[Any]:
    """Return the outermost JSON array embedded in *response*."""
    return _extract(response, _ARRAY_RE, list)


def extract_json_object(response: str) -> dict[str, Any]:
    """Return the outermost JSON object embedded in *response*."""
    return _extract(response, _OBJECT_RE, dict)


def clamp(value: Any, low: float, high: float, default: float) -> float:
    """Coerce *value* to a float in [low, high], using *default* when it is not numeric."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(low, min(high, number))
