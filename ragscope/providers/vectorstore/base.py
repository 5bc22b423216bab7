from __future__ import annotations

from typing import Any, Protocol


class VectorStore(Protocol):
    # True when count() is authoritative rather than an index estimate.
    exact_counts: bool

    async def search(
        self,
        collection: str,
        query_vector: list[float],
        filter: dict[str, Any],
        limit: int,
        min_score: float,
    ) -> list[dict]:
        """Return hits ranked by score: ``external_id``, ``score``, ``content``, ``metadata``.

        ``filter`` maps field names to an equality value or to a range object
        (``{"gte": iso8601}``) and must be applied by the store itself.
        """
        ...

    async def count(self, collection: str, filter: dict[str, Any]) -> int:
        ...
