# =============================================================================
# Model Output Parsing
# =============================================================================
#
# Every prompt in the engine asks for "ONLY valid JSON". Models comply
# most of the time, but wrap the payload in ```json fences or add a
# sentence before it often enough that a bare json.loads is not enough.
# =============================================================================

from __future__ import annotations

import json
import math
import re
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json(text: str) -> Any:
    """
    Parse the JSON payload of a model reply.

    Tries, in order: the whole reply, the first fenced block, and the
    outermost {...} span.

    Raises:
        ValueError: nothing in the reply parses as JSON.
    """
    candidates = [text.strip()]

    fenced = _FENCE_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1).strip())

    start, end = text.find("{"), text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise ValueError("No JSON object found in model reply")


def extract_json_object(text: str) -> dict[str, Any]:
    """Like extract_json, but the payload must be an object."""
    payload = extract_json(text)
    if not isinstance(payload, dict):
        raise ValueError(
            f"Expected a JSON object, got {type(payload).__name__}"
        )
    return payload


def coerce_confidence(value: Any) -> float | None:
    """Read a self-reported confidence in [0,1] (or 0-100), else None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number > 1.0 and number <= 100.0:
        number /= 100.0
    if math.isnan(number):
        return None
    return max(0.0, min(1.0, number))
