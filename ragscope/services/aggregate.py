from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from ragscope.core.config import ConfigurationSource
from ragscope.core.errors import AggregateError
from ragscope.domain.entities import AggregateResult, CollectionPlan, QueryAnalysis, RetrievalPlan, RetrievedItem
from ragscope.providers.retrieval.vector_store import build_search_filter
from ragscope.providers.vectorstore.base import VectorStore
from ragscope.services.telemetry import increment_counter, record_stage_timing


logger = logging.getLogger(__name__)


class SystemOfRecordCounter(Protocol):
    def supports(self, collection: str) -> bool:
        ...

    async def count(self, collection: str, filter_clauses: dict[str, Any]) -> int:
        ...


class AggregateFallback:
    """Answer counting questions with scoped counts instead of similarity search.

    Counts use the filter retrieval would use, so a principal never learns the
    size of data outside its scope.
    """

    def __init__(
        self,
        store: VectorStore,
        config: ConfigurationSource,
        sor_counter: SystemOfRecordCounter | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._sor = sor_counter
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def count(self, analysis: QueryAnalysis, plan: RetrievalPlan) -> AggregateResult:
        settings = self._config.settings
        started = time.monotonic()
        targets = [
            plan.for_collection(name)
            for name in dict.fromkeys(analysis.target_collections)
            if plan.for_collection(name) is not None
        ]
        if not targets:
            return AggregateResult(per_collection_counts={})

        now = self._clock()
        semaphore = asyncio.Semaphore(settings.search_max_concurrency)

        async def _one(cp: CollectionPlan) -> tuple[int, bool] | None:
            async with semaphore:
                try:
                    return await asyncio.wait_for(
                        self._count_collection(cp, build_search_filter(cp, settings.timestamp_field, now)),
                        timeout=settings.search_timeout_ms / 1000.0,
                    )
                except Exception as exc:  # noqa: BLE001 - one failing count must not sink the rest
                    increment_counter(f"aggregate_count_failures_total.{cp.collection}")
                    logger.warning("aggregate_count_failed collection=%s", cp.collection, exc_info=exc)
                    return None

        outcomes = await asyncio.gather(*(_one(cp) for cp in targets))
        counts: dict[str, int] = {}
        approximate: set[str] = set()
        failed: list[str] = []
        for cp, outcome in zip(targets, outcomes):
            if outcome is None:
                failed.append(cp.collection)
                continue
            total, exact = outcome
            counts[cp.collection] = total
            if not exact:
                approximate.add(cp.collection)

        record_stage_timing("count", (time.monotonic() - started) * 1000.0)
        if not counts:
            raise AggregateError(f"no collection could be counted: {', '.join(failed)}")
        return AggregateResult(
            per_collection_counts=counts,
            approximate=frozenset(approximate),
            failed_collections=tuple(failed),
        )

    async def _count_collection(self, cp: CollectionPlan, filter_clauses: dict[str, Any]) -> tuple[int, bool]:
        # Authoritative source first: exact store, then system of record, then the estimate.
        if self._store.exact_counts:
            return int(await self._store.count(cp.collection, filter_clauses)), True
        if self._sor is not None and self._sor.supports(cp.collection):
            try:
                return int(await self._sor.count(cp.collection, filter_clauses)), True
            except Exception as exc:  # noqa: BLE001 - degrade to the index estimate
                increment_counter("aggregate_sor_failures_total")
                logger.warning("aggregate_sor_count_failed collection=%s", cp.collection, exc_info=exc)
        return int(await self._store.count(cp.collection, filter_clauses)), False


def aggregate_items(result: AggregateResult) -> list[RetrievedItem]:
    # Counts become ordinary context items so the answer can cite them.
    items: list[RetrievedItem] = []
    for collection, total in result.per_collection_counts.items():
        approximate = collection in result.approximate
        qualifier = "approximately " if approximate else ""
        items.append(
            RetrievedItem(
                source_collection=collection,
                external_id=f"count:{collection}",
                score=1.0,
                content=f"You have {qualifier}{total} record(s) in {collection}.",
                metadata={
                    "title": f"{collection} count",
                    "count": total,
                    "approximate": approximate,
                    "synthetic": True,
                },
            )
        )
    return items
