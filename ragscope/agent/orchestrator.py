from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Callable

from ragscope.agent.graph import build_graph
from ragscope.core.config import ConfigurationSource, EMBED_DIM
from ragscope.domain.entities import AssembledContext, Principal, RAGResponse
from ragscope.domain.state import RagState
from ragscope.persistence.db import get_session_factory
from ragscope.persistence.repos.records import SqlRecordCounter
from ragscope.providers.embeddings.base import Embedder
from ragscope.providers.embeddings.hashing import HashingEmbedder
from ragscope.providers.llm.base import LanguageModel
from ragscope.providers.llm.factory import get_language_model
from ragscope.providers.retrieval.base import Retriever
from ragscope.providers.retrieval.federated import FederatedRetriever, nodes_from_settings
from ragscope.providers.retrieval.vector_store import VectorStoreRetriever
from ragscope.providers.vectorstore.base import VectorStore
from ragscope.providers.vectorstore.memory import InMemoryVectorStore
from ragscope.providers.vectorstore.pgvector import PgVectorStore
from ragscope.services.aggregate import AggregateFallback, SystemOfRecordCounter
from ragscope.services.assembly import ContextAssembler
from ragscope.services.authz.scope import AccessScopeResolver
from ragscope.services.budget import ContextBudgetPlanner
from ragscope.services.corpus_stats import CorpusStatisticsProbe
from ragscope.services.invalidation import InvalidationBus
from ragscope.services.query_analysis import QueryAnalyzer
from ragscope.services.telemetry import record_stage_timing


logger = logging.getLogger(__name__)


class RAGOrchestrator:
    """Per-request pipeline: analyze, then retrieve or count and assemble (or skip), answer.

    Shared components (scope and stats caches) live for the orchestrator's
    lifetime and are invalidated through ``bus``.
    """

    def __init__(
        self,
        config: ConfigurationSource,
        *,
        store: VectorStore,
        llm: LanguageModel,
        embedder: Embedder | None = None,
        retriever: Retriever | None = None,
        sor_counter: SystemOfRecordCounter | None = None,
        bus: InvalidationBus | None = None,
        time_source: Callable[[], float] | None = None,
        system_prompt: str | None = None,
    ) -> None:
        self.config = config
        self.bus = bus or InvalidationBus()
        self.resolver = AccessScopeResolver(config, time_source=time_source)
        self.probe = CorpusStatisticsProbe(store, config, time_source=time_source)
        self.planner = ContextBudgetPlanner(config, self.resolver, self.probe)
        self.analyzer = QueryAnalyzer(llm, config)
        self.retriever = retriever or VectorStoreRetriever(store, embedder or HashingEmbedder(EMBED_DIM), config)
        self.aggregate = AggregateFallback(store, config, sor_counter)
        self.assembler = ContextAssembler(config)
        self.llm = llm
        self.bus.subscribe(self.resolver.handle_event)
        self.bus.subscribe(self.probe.handle_event)
        self._graph = build_graph(
            config=config,
            analyzer=self.analyzer,
            planner=self.planner,
            retriever=self.retriever,
            aggregate=self.aggregate,
            assembler=self.assembler,
            llm=llm,
            system_prompt=system_prompt,
        )

    async def run(
        self,
        principal: Principal,
        message: str,
        history: list[dict[str, Any]] | None = None,
        candidate_collections: list[str] | None = None,
        *,
        request_id: str | None = None,
    ) -> RAGResponse:
        started = time.monotonic()
        request_id = request_id or str(uuid.uuid4())
        state: RagState = {
            "request_id": request_id,
            "principal": principal,
            "user_message": message,
            "history": list(history or []),
            "candidate_collections": list(candidate_collections or []),
            "partial_results": False,
            "failed_collections": [],
            "stage_error": None,
            "plan": None,
            "aggregate": None,
            "trace": ["start"],
            "timings_ms": {},
        }
        final = await self._graph.ainvoke(state)
        total_ms = (time.monotonic() - started) * 1000.0
        record_stage_timing("total", total_ms)
        timings = dict(final.get("timings_ms") or {})
        timings["total"] = total_ms
        logger.info(
            "rag_request_completed request_id=%s principal=%s trace=%s partial=%s total_ms=%.1f",
            request_id,
            principal.id,
            ">".join(final.get("trace") or []),
            final.get("partial_results", False),
            total_ms,
        )
        return RAGResponse(
            answer=final.get("answer") or "",
            context=final.get("context") or AssembledContext(),
            sources=final.get("sources") or [],
            numbered_options=final.get("numbered_options") or [],
            outcome=final["outcome"],
            aggregate=final.get("aggregate"),
            partial_results=bool(final.get("partial_results")),
            failed_collections=list(final.get("failed_collections") or []),
            trace=list(final.get("trace") or []),
            timings_ms=timings,
        )


def build_orchestrator(config: ConfigurationSource | None = None, *, request_id: str | None = None) -> RAGOrchestrator:
    # Wire collaborators from settings; tests construct RAGOrchestrator directly.
    config = config or ConfigurationSource()
    settings = config.settings
    store: VectorStore
    if settings.vector_store == "pgvector":
        store = PgVectorStore(get_session_factory())
    else:
        store = InMemoryVectorStore()

    sor_counter = None
    if settings.system_of_record_tables:
        sor_counter = SqlRecordCounter(
            settings.system_of_record_tables,
            get_session_factory(),
            timestamp_field=settings.timestamp_field,
        )

    embedder = HashingEmbedder(EMBED_DIM)
    retriever: Retriever = VectorStoreRetriever(store, embedder, config)
    nodes = nodes_from_settings(config)
    if nodes:
        retriever = FederatedRetriever(retriever, nodes, config)

    return RAGOrchestrator(
        config,
        store=store,
        llm=get_language_model(request_id),
        embedder=embedder,
        retriever=retriever,
        sor_counter=sor_counter,
    )
