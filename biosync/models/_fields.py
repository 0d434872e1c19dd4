from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

_MISSING = object()


def pick(raw: Any, *names: str, default: Any = None) -> Any:
    """Return the first non-empty field from a mapping or SDK object."""
    for name in names:
        if isinstance(raw, Mapping):
            value = raw.get(name, _MISSING)
        else:
            value = getattr(raw, name, _MISSING)
        if value is not _MISSING and value is not None and value != "":
            return value
    return default


def as_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    return int(value)


def parse_record_time(value: Any) -> datetime:
    """Accept SDK datetimes and ISO-8601 strings (``Z`` suffix included)."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)
    raise ValueError(f"unsupported record time: {value!r}")
