from __future__ import annotations

import time
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.elements import ColumnElement

from ragscope.core.config import EMBED_DIM
from ragscope.core.errors import VectorStoreError
from ragscope.domain.models import VectorRecord
from ragscope.services.telemetry import record_external_call


def _bound(value: Any) -> Any:
    return datetime.fromisoformat(value) if isinstance(value, str) else value


def build_predicates(collection: str, filter_clauses: dict[str, Any]) -> list[ColumnElement[bool]]:
    # Translate scope clauses into SQL so filtering happens inside the store, never after.
    predicates: list[ColumnElement[bool]] = [VectorRecord.collection == collection]
    for field, expected in filter_clauses.items():
        if isinstance(expected, dict):
            if field in {"created_at", "updated_at"}:
                column = getattr(VectorRecord, field)
                if "gte" in expected:
                    predicates.append(column >= _bound(expected["gte"]))
                if "lte" in expected:
                    predicates.append(column <= _bound(expected["lte"]))
            else:
                # ISO-8601 strings in metadata compare correctly as text.
                text_value = VectorRecord.metadata_json[field].astext
                if "gte" in expected:
                    predicates.append(text_value >= str(expected["gte"]))
                if "lte" in expected:
                    predicates.append(text_value <= str(expected["lte"]))
        else:
            predicates.append(VectorRecord.metadata_json[field].astext == str(expected))
    return predicates


class PgVectorStore:
    """Postgres + pgvector store over the ``vector_records`` table.

    Index counts can lag the system of record, so ``exact_counts`` defaults to
    False and aggregate queries prefer a configured relational counter.
    """

    def __init__(self, session_factory: Callable[[], Any], *, exact_counts: bool = False) -> None:
        self._session_factory = session_factory
        self.exact_counts = exact_counts

    async def search(
        self,
        collection: str,
        query_vector: list[float],
        filter: dict[str, Any],
        limit: int,
        min_score: float,
    ) -> list[dict]:
        if len(query_vector) != EMBED_DIM:
            # Retrieval must fail fast if the embedding dimension doesn't match the schema.
            raise VectorStoreError("query embedding dimension mismatch")
        # Use cosine distance from pgvector; lower is more similar.
        distance_expr = VectorRecord.embedding.cosine_distance(query_vector)
        max_distance = 1.0 - min_score
        stmt = (
            select(VectorRecord, distance_expr.label("distance"))
            .where(*build_predicates(collection, filter))
            .where(distance_expr <= max_distance)
            # Secondary ordering keeps tie-breaking deterministic.
            .order_by(distance_expr.asc(), VectorRecord.id.asc())
            .limit(max(1, int(limit)))
        )
        start = time.monotonic()
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            record_external_call(
                integration="vectorstore.pgvector",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise VectorStoreError(f"pgvector search failed for {collection}") from exc
        record_external_call(
            integration="vectorstore.pgvector",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )

        hits: list[dict] = []
        for record, distance in rows:
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            metadata = dict(record.metadata_json or {})
            metadata.setdefault("created_at", record.created_at.isoformat() if record.created_at else None)
            metadata.setdefault("updated_at", record.updated_at.isoformat() if record.updated_at else None)
            hits.append(
                {
                    "external_id": record.external_id,
                    "score": score,
                    "content": record.content,
                    "metadata": metadata,
                }
            )
        return hits

    async def count(self, collection: str, filter: dict[str, Any]) -> int:
        stmt = select(func.count(VectorRecord.id)).where(*build_predicates(collection, filter))
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
        except SQLAlchemyError as exc:
            raise VectorStoreError(f"pgvector count failed for {collection}") from exc
        return int(result.scalar_one())
