"""Identifier normalization with deterministic positional fallbacks."""

import math
from typing import Any, Optional


def normalize_id(value: Any) -> Optional[str]:
    """Return a trimmed, non-empty string id or None.

    Strings are trimmed; finite numbers are stringified (integral floats
    without the trailing ``.0``). Everything else, booleans included, is None.
    """
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None

    if isinstance(value, bool):
        return None

    if isinstance(value, int):
        return str(value)

    if isinstance(value, float) and math.isfinite(value):
        if value.is_integer():
            return str(int(value))
        return repr(value)

    return None


def ensure_id(value: Any, fallback: str) -> str:
    normalized = normalize_id(value)
    return normalized if normalized is not None else fallback


def fallback_id(parent_id: str, kind: str, index: int) -> str:
    return f"{parent_id}-{kind}-{index}"
