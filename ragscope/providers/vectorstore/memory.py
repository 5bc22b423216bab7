from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from ragscope.providers.vectorstore.filters import matches_filter


@dataclass
class _Record:
    external_id: str
    content: str
    vector: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorStore:
    """Process-local store for development and tests.

    Filtering happens before scoring, matching a server-side filtered search.
    """

    exact_counts = True

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, _Record]] = {}

    def upsert(
        self,
        collection: str,
        external_id: str,
        content: str,
        vector: list[float],
        metadata: dict[str, Any] | None = None,
    ) -> None:
        records = self._collections.setdefault(collection, {})
        records[str(external_id)] = _Record(
            external_id=str(external_id),
            content=content,
            vector=list(vector),
            metadata=dict(metadata or {}),
        )

    def delete(self, collection: str, external_id: str) -> bool:
        return self._collections.get(collection, {}).pop(str(external_id), None) is not None

    def collections(self) -> list[str]:
        return sorted(self._collections)

    async def search(
        self,
        collection: str,
        query_vector: list[float],
        filter: dict[str, Any],
        limit: int,
        min_score: float,
    ) -> list[dict]:
        records = self._collections.get(collection, {})
        scored: list[tuple[float, int, _Record]] = []
        for position, record in enumerate(records.values()):
            if not matches_filter(record.metadata, filter):
                continue
            score = max(0.0, min(1.0, _cosine(query_vector, record.vector)))
            if score < min_score:
                continue
            scored.append((score, position, record))
        # Secondary ordering keeps tie-breaking deterministic.
        scored.sort(key=lambda row: (-row[0], row[1]))
        return [
            {
                "external_id": record.external_id,
                "score": score,
                "content": record.content,
                "metadata": dict(record.metadata),
            }
            for score, _position, record in scored[: max(0, limit)]
        ]

    async def count(self, collection: str, filter: dict[str, Any]) -> int:
        records = self._collections.get(collection, {})
        return sum(1 for record in records.values() if matches_filter(record.metadata, filter))
