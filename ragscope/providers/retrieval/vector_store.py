from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable

from ragscope.core.config import ConfigurationSource
from ragscope.core.errors import TotalRetrievalFailure
from ragscope.domain.entities import (
    CollectionPlan,
    QueryAnalysis,
    RetrievalPlan,
    RetrievalResult,
    RetrievedItem,
)
from ragscope.providers.embeddings.base import Embedder
from ragscope.providers.retrieval.merge import merge_results
from ragscope.providers.vectorstore.base import VectorStore
from ragscope.services.telemetry import increment_counter, record_stage_timing


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_search_filter(plan: CollectionPlan, timestamp_field: str, now: datetime) -> dict[str, Any]:
    # Scope clauses plus the narrowest time window, both applied by the store.
    clauses = dict(plan.scope.filter_clauses)
    window = plan.effective_time_window
    if window is not None:
        clauses[timestamp_field] = {"gte": window.cutoff(now).isoformat()}
    return clauses


def to_item(collection: str, hit: dict[str, Any]) -> RetrievedItem:
    return RetrievedItem(
        source_collection=collection,
        external_id=str(hit["external_id"]),
        score=float(hit.get("score", 0.0)),
        content=str(hit.get("content") or ""),
        metadata=dict(hit.get("metadata") or {}),
    )


class VectorStoreRetriever:
    def __init__(
        self,
        store: VectorStore,
        embedder: Embedder,
        config: ConfigurationSource,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._config = config
        self._clock = clock or _utcnow

    async def retrieve(self, analysis: QueryAnalysis, plan: RetrievalPlan) -> RetrievalResult:
        settings = self._config.settings
        started = time.monotonic()
        targets = [
            plan.for_collection(name)
            for name in analysis.target_collections
            if plan.for_collection(name) is not None
        ]
        queries = list(dict.fromkeys(q for q in analysis.search_queries if q.strip()))
        if not targets or not queries:
            return RetrievalResult(items=[], attempted_pairs=0)

        vectors = await self._embed_all(queries)
        now = self._clock()
        semaphore = asyncio.Semaphore(settings.search_max_concurrency)
        timeout_s = settings.search_timeout_ms / 1000.0

        async def _search(query: str, cp: CollectionPlan) -> list[RetrievedItem]:
            vector = vectors[query]
            if isinstance(vector, Exception):
                raise vector
            async with semaphore:
                hits = await asyncio.wait_for(
                    self._store.search(
                        cp.collection,
                        vector,
                        build_search_filter(cp, settings.timestamp_field, now),
                        cp.budget.max_results,
                        cp.min_score,
                    ),
                    timeout=timeout_s,
                )
            return [to_item(cp.collection, hit) for hit in hits]

        pairs = [(query, cp) for query in queries for cp in targets]
        outcomes = await asyncio.gather(*(self._guard(query, cp, _search) for query, cp in pairs))

        batches: list[list[RetrievedItem]] = []
        failed: list[tuple[str, str]] = []
        for (query, cp), outcome in zip(pairs, outcomes):
            if outcome is None:
                failed.append((query, cp.collection))
            else:
                batches.append(outcome)

        record_stage_timing("retrieve", (time.monotonic() - started) * 1000.0)
        if len(failed) == len(pairs):
            increment_counter("retrieval_total_failures_total")
            raise TotalRetrievalFailure(f"all {len(pairs)} searches failed", tuple(failed))
        if failed:
            increment_counter("retrieval_partial_failures_total")
        items = merge_results(batches, plan.budget.max_results)
        logger.debug(
            "retrieval_completed pairs=%s failed=%s items=%s",
            len(pairs),
            len(failed),
            len(items),
        )
        return RetrievalResult(items=items, failed_pairs=tuple(failed), attempted_pairs=len(pairs))

    async def _embed_all(self, queries: list[str]) -> dict[str, list[float] | Exception]:
        # One embedding per distinct query; a failed embedding fails only its pairs.
        async def _embed(query: str) -> list[float] | Exception:
            try:
                return await self._embedder.embed(query)
            except Exception as exc:  # noqa: BLE001 - surfaced as failed pairs
                logger.warning("retrieval_embedding_failed query_len=%s", len(query), exc_info=exc)
                return exc

        embedded = await asyncio.gather(*(_embed(query) for query in queries))
        return dict(zip(queries, embedded))

    async def _guard(
        self,
        query: str,
        cp: CollectionPlan,
        search: Callable[[str, CollectionPlan], Any],
    ) -> list[RetrievedItem] | None:
        try:
            return await search(query, cp)
        except asyncio.TimeoutError:
            increment_counter(f"retrieval_pair_failures_total.{cp.collection}")
            logger.warning("retrieval_pair_timeout collection=%s", cp.collection)
            return None
        except Exception as exc:  # noqa: BLE001 - one failing pair must not sink the request
            increment_counter(f"retrieval_pair_failures_total.{cp.collection}")
            logger.warning("retrieval_pair_failed collection=%s", cp.collection, exc_info=exc)
            return None
