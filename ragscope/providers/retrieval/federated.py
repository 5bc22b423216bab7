from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from ragscope.core.config import ConfigurationSource, parse_federated_nodes
from ragscope.core.errors import FederatedNodeError, TotalRetrievalFailure
from ragscope.domain.entities import (
    CollectionPlan,
    QueryAnalysis,
    RetrievalPlan,
    RetrievalResult,
    RetrievedItem,
)
from ragscope.providers.retrieval.base import Retriever
from ragscope.providers.retrieval.merge import merge_results
from ragscope.providers.retrieval.vector_store import build_search_filter, to_item
from ragscope.services.resilience import CircuitBreaker, RetryPolicy, get_resilience_redis, is_transient, retry_async
from ragscope.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FederatedNode:
    node_id: str
    base_url: str
    # None means the node serves every collection.
    collections: tuple[str, ...] | None = None
    api_key: str | None = None

    def serves(self, collection: str) -> bool:
        return self.collections is None or collection in self.collections

    def label(self, collection: str) -> str:
        return f"{collection}@{self.node_id}"


def nodes_from_settings(config: ConfigurationSource) -> list[FederatedNode]:
    return [
        FederatedNode(
            node_id=node["node_id"],
            base_url=node["base_url"],
            collections=tuple(node["collections"]) if node["collections"] is not None else None,
            api_key=node["api_key"],
        )
        for node in parse_federated_nodes(config.settings.federated_nodes_json)
    ]


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)) or is_transient(exc)


def federated_key(item: RetrievedItem) -> tuple[str, str | None, str]:
    # Nodes own independent corpora; equal ids on different nodes are different records.
    return (item.source_collection, item.metadata.get("node_id"), item.external_id)


def _trips_breaker(exc: Exception) -> bool:
    # 4xx responses mean a bad request, not an unhealthy node.
    status = getattr(exc, "status_code", None)
    return not (isinstance(status, int) and 400 <= status < 500)


class _NodeHTTPError(FederatedNodeError):
    def __init__(self, node_id: str, status_code: int) -> None:
        super().__init__(f"node {node_id} responded with status {status_code}")
        self.status_code = status_code


class FederatedRetriever:
    """Local retrieval plus remote nodes, merged under one ranking.

    Each remote node receives the same scope filter and must apply it itself.
    A node that fails is reported as failed pairs labelled ``collection@node``,
    exactly like a failing local collection.
    """

    def __init__(
        self,
        local: Retriever,
        nodes: list[FederatedNode],
        config: ConfigurationSource,
        *,
        client: httpx.AsyncClient | None = None,
        breakers: dict[str, CircuitBreaker] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._local = local
        self._nodes = list(nodes)
        self._config = config
        self._client = client
        self._owns_client = client is None
        self._breakers: dict[str, CircuitBreaker] = dict(breakers or {})
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def nodes(self) -> list[FederatedNode]:
        return list(self._nodes)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._config.settings.federated_timeout_ms / 1000.0)
        return self._client

    async def _breaker(self, node: FederatedNode) -> CircuitBreaker:
        breaker = self._breakers.get(node.node_id)
        if breaker is None:
            redis = await get_resilience_redis(self._config.settings)
            breaker = CircuitBreaker(f"federated.{node.node_id}", redis=redis)
            self._breakers[node.node_id] = breaker
        return breaker

    def _headers(self, node: FederatedNode) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if node.api_key:
            headers["Authorization"] = f"Bearer {node.api_key}"
        return headers

    async def health(self, node: FederatedNode) -> bool:
        settings = self._config.settings
        start = time.monotonic()
        try:
            response = await self._http().get(
                f"{node.base_url}{settings.federated_health_path}",
                headers=self._headers(node),
                timeout=settings.federated_timeout_ms / 1000.0,
            )
            healthy = response.status_code < 400
        except httpx.HTTPError as exc:
            logger.warning("federated_health_failed node=%s", node.node_id, exc_info=exc)
            healthy = False
        record_external_call(
            integration=f"federated.{node.node_id}.health",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=healthy,
        )
        return healthy

    async def check_health(self) -> dict[str, bool]:
        results = await asyncio.gather(*(self.health(node) for node in self._nodes))
        return {node.node_id: healthy for node, healthy in zip(self._nodes, results)}

    async def retrieve(self, analysis: QueryAnalysis, plan: RetrievalPlan) -> RetrievalResult:
        settings = self._config.settings
        queries = list(dict.fromkeys(q for q in analysis.search_queries if q.strip()))
        targets = [
            plan.for_collection(name)
            for name in analysis.target_collections
            if plan.for_collection(name) is not None
        ]
        remote_pairs = [
            (node, query, cp)
            for node in self._nodes
            for query in queries
            for cp in targets
            if node.serves(cp.collection)
        ]
        now = self._clock()
        semaphore = asyncio.Semaphore(settings.search_max_concurrency)

        async def _local() -> RetrievalResult:
            try:
                return await self._local.retrieve(analysis, plan)
            except TotalRetrievalFailure as exc:
                return RetrievalResult(items=[], failed_pairs=exc.failed_pairs, attempted_pairs=len(exc.failed_pairs))

        async def _remote(node: FederatedNode, query: str, cp: CollectionPlan) -> list[RetrievedItem] | None:
            async with semaphore:
                try:
                    return await self._search_node(node, query, cp, now)
                except Exception as exc:  # noqa: BLE001 - node failures are isolated per pair
                    increment_counter(f"federated_pair_failures_total.{node.node_id}")
                    logger.warning(
                        "federated_pair_failed node=%s collection=%s",
                        node.node_id,
                        cp.collection,
                        exc_info=exc,
                    )
                    return None

        local_result, *remote_outcomes = await asyncio.gather(
            _local(),
            *(_remote(node, query, cp) for node, query, cp in remote_pairs),
        )

        batches: list[list[RetrievedItem]] = [local_result.items]
        failed = list(local_result.failed_pairs)
        for (node, query, cp), outcome in zip(remote_pairs, remote_outcomes):
            if outcome is None:
                failed.append((query, node.label(cp.collection)))
            else:
                batches.append(outcome)

        attempted = local_result.attempted_pairs + len(remote_pairs)
        if attempted and len(failed) == attempted:
            increment_counter("retrieval_total_failures_total")
            raise TotalRetrievalFailure(f"all {attempted} federated searches failed", tuple(failed))
        if failed:
            increment_counter("retrieval_partial_failures_total")
        items = merge_results(batches, plan.budget.max_results, key=federated_key)
        return RetrievalResult(items=items, failed_pairs=tuple(failed), attempted_pairs=attempted)

    async def _search_node(
        self,
        node: FederatedNode,
        query: str,
        cp: CollectionPlan,
        now: datetime,
    ) -> list[RetrievedItem]:
        settings = self._config.settings
        breaker = await self._breaker(node)
        payload = {
            "query": query,
            "collection": cp.collection,
            "filter": build_search_filter(cp, settings.timestamp_field, now),
            "limit": cp.budget.max_results,
            "min_score": cp.min_score,
        }
        url = f"{node.base_url}{settings.federated_search_path}"
        policy = RetryPolicy.for_federation(settings)

        async def _attempt() -> httpx.Response:
            response = await self._http().post(url, json=payload, headers=self._headers(node))
            if response.status_code >= 500 or response.status_code == 429:
                raise _NodeHTTPError(node.node_id, response.status_code)
            return response

        async def _exchange() -> list[RetrievedItem]:
            start = time.monotonic()
            success = False
            try:
                response = await retry_async(
                    _attempt,
                    policy=policy,
                    retryable=_retryable,
                    label=f"federated.{node.node_id}",
                )
                if response.status_code >= 400:
                    raise _NodeHTTPError(node.node_id, response.status_code)
                body = response.json()
                results = body.get("results") if isinstance(body, dict) else None
                if not isinstance(results, list):
                    raise FederatedNodeError(f"node {node.node_id} returned a malformed payload")
                items = [self._to_item(node, cp.collection, hit) for hit in results]
                success = True
                return items
            finally:
                record_external_call(
                    integration=f"federated.{node.node_id}",
                    latency_ms=(time.monotonic() - start) * 1000.0,
                    success=success,
                )

        return await breaker.call(_exchange, trips_on=_trips_breaker)

    def _to_item(self, node: FederatedNode, collection: str, hit: Any) -> RetrievedItem:
        if not isinstance(hit, dict) or "external_id" not in hit:
            raise FederatedNodeError(f"node {node.node_id} returned a malformed hit")
        item = to_item(collection, hit)
        item.metadata["node_id"] = node.node_id
        return item
