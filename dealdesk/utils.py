"""Shared utility functions used across DealDesk modules."""
from __future__ import annotations

import json
import math
import random
import re
import string
import time
from datetime import UTC, datetime
from typing import Any

_MISSING = object()
_ID_ALPHABET = string.ascii_lowercase + string.digits


def json_parse(value: str | bytes | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError, UnicodeDecodeError):
        return {} if default is _MISSING else default


def now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """``{prefix}_{epoch_ms}_{7 random base36 chars}``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=7))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def normalize_text(value: Any, max_length: int | None = None) -> str:
    """Collapse whitespace and trim; non-strings become ``""``."""
    if not isinstance(value, str):
        return ""
    text = re.sub(r"\s+", " ", value).strip()
    if max_length is not None:
        text = text[:max_length].strip()
    return text


def dedupe_list(values: Any, limit: int, max_length: int = 280) -> list[str]:
    """Normalized, case-insensitively unique strings, capped at *limit*."""
    if not isinstance(values, list):
        return []
    seen: set[str] = set()
    out: list[str] = []
    for item in values:
        text = normalize_text(item, max_length)
        key = text.lower()
        if not text or key in seen:
            continue
        seen.add(key)
        out.append(text)
        if len(out) >= limit:
            break
    return out


def clamp_score(value: Any, fallback: int = 50) -> int:
    """Round to an int in 0..100, *fallback* when not numeric."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if number != number or number in (float("inf"), float("-inf")):
        return fallback
    return max(0, min(100, round_half_up(number)))


def round_half_up(value: float, digits: int = 0) -> float | int:
    """Round halves upward (``2.5 -> 3``) instead of Python's banker's rounding."""
    factor = 10 ** digits
    rounded = math.floor(value * factor + 0.5) / factor
    return int(rounded) if digits == 0 else rounded


def first_non_empty(*values: Any) -> str:
    """First value that is a non-blank string (after trimming), else ``""``."""
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return ""
