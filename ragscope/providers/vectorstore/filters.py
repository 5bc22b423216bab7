from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _matches_range(actual: Any, bounds: dict[str, Any]) -> bool:
    actual_dt = _as_datetime(actual)
    if actual_dt is None:
        # Records without a parseable timestamp fall outside any time window.
        return False
    lower = _as_datetime(bounds.get("gte"))
    upper = _as_datetime(bounds.get("lte"))
    if lower is not None and actual_dt < lower:
        return False
    if upper is not None and actual_dt > upper:
        return False
    return True


def matches_filter(metadata: dict[str, Any], filter_clauses: dict[str, Any]) -> bool:
    # Every clause must hold; a missing field never matches an equality clause.
    for field, expected in filter_clauses.items():
        if field not in metadata:
            return False
        actual = metadata[field]
        if isinstance(expected, dict):
            if not _matches_range(actual, expected):
                return False
        elif str(actual) != str(expected):
            return False
    return True
