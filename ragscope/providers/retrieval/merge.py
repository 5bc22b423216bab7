from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Hashable, Iterable

from ragscope.domain.entities import RetrievedItem


_RECENCY_FIELDS = ("updated_at", "created_at")


def _as_timestamp(value: Any) -> float | None:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, str) and value:
        try:
            moment = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    elif isinstance(value, (int, float)):
        return float(value)
    else:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def recency_of(item: RetrievedItem) -> float | None:
    for name in _RECENCY_FIELDS:
        stamp = _as_timestamp(item.metadata.get(name))
        if stamp is not None:
            return stamp
    return None


def merge_results(
    batches: Iterable[list[RetrievedItem]],
    limit: int,
    *,
    key: Callable[[RetrievedItem], Hashable] | None = None,
) -> list[RetrievedItem]:
    """Dedupe, rank and truncate search hits from several searches.

    Duplicates (same ``key``, by default collection and external id) keep the
    higher score. Ties on score go to the newer record, then to whichever
    arrived first, so the order is deterministic for identical inputs.
    """
    key = key or (lambda item: item.key)
    best: dict[Hashable, tuple[RetrievedItem, int]] = {}
    arrival = 0
    for batch in batches:
        for item in batch:
            identity = key(item)
            current = best.get(identity)
            if current is None:
                best[identity] = (item, arrival)
            elif item.score > current[0].score:
                best[identity] = (item, current[1])
            arrival += 1

    def _rank(entry: tuple[RetrievedItem, int]) -> tuple[float, float, int]:
        item, order = entry
        stamp = recency_of(item)
        return (-item.score, -(stamp if stamp is not None else float("-inf")), order)

    ranked = sorted(best.values(), key=_rank)
    return [item for item, _order in ranked[: max(0, limit)]]
