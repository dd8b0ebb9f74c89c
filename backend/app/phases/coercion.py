"""Lenient coercion of raw model output into typed phase results.

The model's tool input is arbitrary JSON no matter what the schema says:
numbers arrive as "$4.50", lists as strings, required fields go missing.
These helpers never raise; bad values fall back to defaults.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from typing import Any

import structlog

log = structlog.get_logger("coercion")

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
_FALSE_STRINGS = frozenset({"false", "no", "0", ""})


def as_str(value: Any, default: str = "") -> str:
    """Falsy values become `default`; everything else is stringified."""
    if not value:
        return default
    return str(value)


def as_optional_str(value: Any) -> str | None:
    return str(value) if value else None


def as_float(value: Any, default: float = 0.0) -> float:
    """Parse numbers leniently ("$1,200.50" -> 1200.5). NaN, inf and junk give `default`."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        match = _NUMBER_RE.search(str(value).replace(",", ""))
        if match is None:
            return default
        number = float(match.group())
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def as_int(value: Any, default: int = 0) -> int:
    return int(as_float(value, float(default)))


def as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    return bool(value)


def as_required(value: Any) -> bool:
    """True unless explicitly False."""
    return value is not False


def as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None]


def as_dict_list(value: Any, *, field: str) -> list[Mapping[str, Any]]:
    """Keep the dict entries of a list; anything else yields []."""
    if not isinstance(value, list):
        return []
    entries = []
    for entry in value:
        if isinstance(entry, Mapping):
            entries.append(entry)
        else:
            log.warning("coercion_entry_dropped", field=field, entry_type=type(entry).__name__)
    return entries


def choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = str(value).strip().lower() if value else ""
    return text if text in allowed else default


def parse_quantity(quantity: str | float | int | None) -> float:
    """First number in a quantity string ("12 sheets" -> 12), else 1."""
    if isinstance(quantity, (int, float)) and not isinstance(quantity, bool):
        return float(quantity) if quantity > 0 else 1.0
    match = re.search(r"[\d.]+", str(quantity or ""))
    if match is None:
        return 1.0
    try:
        number = float(match.group())
    except ValueError:
        return 1.0
    return number if number > 0 else 1.0
