from __future__ import annotations

import asyncio
import logging

import pytest

from ragscope.agent.orchestrator import RAGOrchestrator
from ragscope.core.config import ConfigurationSource, Settings
from ragscope.core.errors import LanguageModelError
from ragscope.domain.entities import Principal
from ragscope.domain.events import CollectionMutated
from ragscope.providers.llm.fake import FakeLanguageModel
from ragscope.providers.vectorstore.memory import InMemoryVectorStore


MEMBER = Principal(id="u1", tenant_id="t1")
ADMIN = Principal(id="root", tenant_id="t1", roles=("admin",))


def _llm(analysis: dict | None = None, answer: str = "Here is your answer.") -> FakeLanguageModel:
    def handler(system_prompt: str, messages: list[dict], schema: dict | None):
        if schema is not None:
            return analysis if analysis is not None else "not json"
        return answer

    return FakeLanguageModel(handler=handler)


def _analysis(*collections: str, queries: tuple[str, ...] = ("quarterly report",)) -> dict:
    return {
        "needs_context": True,
        "search_queries": list(queries),
        "collections": list(collections),
        "query_type": "factual",
    }


class FlakyStore(InMemoryVectorStore):
    def __init__(self, slow: set[str] | None = None, broken: set[str] | None = None) -> None:
        super().__init__()
        self.slow = slow or set()
        self.broken = broken or set()

    async def search(self, collection, query_vector, filter, limit, min_score) -> list[dict]:
        if collection in self.broken:
            raise RuntimeError("index offline")
        if collection in self.slow:
            await asyncio.sleep(1.0)
        return await super().search(collection, query_vector, filter, limit, min_score)


@pytest.mark.asyncio
async def test_hello_skips_retrieval(config: ConfigurationSource, store, seed) -> None:
    seed(store, "docs", "d1", "quarterly report", tenant_id="t1")
    llm = _llm(answer="Hi! How can I help?")
    orchestrator = RAGOrchestrator(config, store=store, llm=llm)

    response = await orchestrator.run(MEMBER, "hello", [], ["docs"])

    assert response.answer == "Hi! How can I help?"
    assert response.trace == ["start", "analyzing", "skipped", "invoking", "done"]
    assert "assemble" not in response.timings_ms
    assert response.context.is_empty
    assert response.sources == []
    assert len(llm.calls) == 1
    assert llm.calls[0]["schema"] is None
    assert "RELEVANT CONTEXT" not in llm.calls[0]["system_prompt"]


@pytest.mark.asyncio
async def test_loose_history_entries_reach_the_answer_model(config: ConfigurationSource, store) -> None:
    llm = _llm(answer="Hi again.")
    orchestrator = RAGOrchestrator(config, store=store, llm=llm)
    history = [{"content": "earlier question"}, {"role": "assistant"}, {"role": "user", "content": 42}]

    response = await orchestrator.run(MEMBER, "hello", history, ["docs"])

    assert response.answer == "Hi again."
    assert llm.calls[-1]["messages"] == [
        {"role": "user", "content": "earlier question"},
        {"role": "assistant", "content": ""},
        {"role": "user", "content": "42"},
        {"role": "user", "content": "hello"},
    ]


@pytest.mark.asyncio
async def test_factual_question_is_answered_with_cited_context(config: ConfigurationSource, store, seed) -> None:
    seed(store, "docs", "d1", "quarterly report shows growth", tenant_id="t1", title="Q3 report")
    seed(store, "docs", "d2", "quarterly report for another tenant", tenant_id="t2", title="Other")
    llm = _llm(_analysis("docs"), answer="Growth was strong.\n1. Q3 report: growth [0]")
    orchestrator = RAGOrchestrator(config, store=store, llm=llm)

    history = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "reply"}]
    response = await orchestrator.run(MEMBER, "what does the quarterly report say about growth", history, ["docs"])

    assert response.trace == ["start", "analyzing", "retrieving", "assembling", "invoking", "done"]
    assert [source["id"] for source in response.sources] == ["d1"]
    assert response.numbered_options[0]["citation_index"] == 0
    answer_call = llm.calls[-1]
    assert "[Source 0: Q3 report]" in answer_call["system_prompt"]
    assert answer_call["messages"][:2] == history
    assert set(response.timings_ms) >= {"analyze", "retrieve", "assemble", "invoke", "total"}


@pytest.mark.asyncio
async def test_aggregate_question_routes_to_counting(config: ConfigurationSource, store, seed) -> None:
    for i in range(3):
        seed(store, "invoices", f"mine-{i}", "invoice", user_id="u1")
    seed(store, "invoices", "theirs", "invoice", user_id="u2")
    llm = _llm(answer="You have 3 invoices [0].")
    orchestrator = RAGOrchestrator(config, store=store, llm=llm)
    owner_only = Principal(id="u1")

    response = await orchestrator.run(owner_only, "How many invoices do I have?", [], ["invoices", "emails"])

    assert "counting" in response.trace
    assert "retrieving" not in response.trace
    assert response.aggregate is not None
    assert response.aggregate.per_collection_counts == {"invoices": 3}
    assert "You have 3 record(s) in invoices." in llm.calls[-1]["system_prompt"]
    assert response.sources[0]["id"] == "count:invoices"
    # Only the final answer call reached the model.
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_one_collection_timing_out_yields_partial_results(settings: Settings, seed) -> None:
    settings.search_timeout_ms = 20
    config = ConfigurationSource(settings)
    store = FlakyStore(slow={"notes"})
    seed(store, "docs", "d1", "quarterly report", tenant_id="t1")
    seed(store, "notes", "n1", "quarterly report", tenant_id="t1")
    orchestrator = RAGOrchestrator(config, store=store, llm=_llm(_analysis("docs", "notes")))

    response = await orchestrator.run(MEMBER, "summarize the quarterly report findings", [], ["docs", "notes"])

    assert response.partial_results is True
    assert response.failed_collections == ["notes"]
    assert [source["id"] for source in response.sources] == ["d1"]


@pytest.mark.asyncio
async def test_total_retrieval_failure_answers_without_context(config: ConfigurationSource, seed, caplog) -> None:
    store = FlakyStore(broken={"docs"})
    seed(store, "docs", "d1", "quarterly report", tenant_id="t1")
    llm = _llm(_analysis("docs"), answer="I could not find anything.")
    orchestrator = RAGOrchestrator(config, store=store, llm=llm)

    with caplog.at_level(logging.ERROR):
        response = await orchestrator.run(MEMBER, "summarize the quarterly report findings", [], ["docs"])

    assert response.answer == "I could not find anything."
    assert response.context.is_empty
    assert response.partial_results is True
    assert response.trace == ["start", "analyzing", "retrieving", "invoking", "done"]
    assert "no matching content" in llm.calls[-1]["system_prompt"]
    assert any(record.levelno == logging.ERROR for record in caplog.records)


@pytest.mark.asyncio
async def test_self_collection_admin_versus_member(config: ConfigurationSource, store, seed) -> None:
    seed(store, "users", "u1", "profile of user one", id="u1", tenant_id="t1")
    seed(store, "users", "u2", "profile of user two", id="u2", tenant_id="t1")
    analysis = _analysis("users", queries=("user profile",))

    member = await RAGOrchestrator(config, store=store, llm=_llm(analysis)).run(
        MEMBER, "show the user profile details please", [], ["users"]
    )
    admin = await RAGOrchestrator(config, store=store, llm=_llm(analysis)).run(
        ADMIN, "show the user profile details please", [], ["users"]
    )

    assert [source["id"] for source in member.sources] == ["u1"]
    assert sorted(source["id"] for source in admin.sources) == ["u1", "u2"]


@pytest.mark.asyncio
async def test_degraded_analysis_still_searches_all_candidates(config: ConfigurationSource, store, seed) -> None:
    seed(store, "docs", "d1", "quarterly report", tenant_id="t1")
    seed(store, "notes", "n1", "quarterly report", tenant_id="t1")
    orchestrator = RAGOrchestrator(config, store=store, llm=_llm(None))

    response = await orchestrator.run(MEMBER, "what happened with the quarterly report", [], ["docs", "notes"])

    assert response.outcome.degraded is True
    assert response.analysis.query_type == "conversational"
    assert {source["id"] for source in response.sources} == {"d1", "n1"}


@pytest.mark.asyncio
async def test_answer_model_errors_propagate(config: ConfigurationSource, store) -> None:
    def handler(system_prompt, messages, schema):
        if schema is not None:
            return _analysis("docs")
        raise LanguageModelError("quota exceeded")

    orchestrator = RAGOrchestrator(config, store=store, llm=FakeLanguageModel(handler=handler))
    with pytest.raises(LanguageModelError):
        await orchestrator.run(MEMBER, "what happened with the quarterly report", [], ["docs"])


@pytest.mark.asyncio
async def test_mutation_events_reach_stats_cache(config: ConfigurationSource, store, seed) -> None:
    seed(store, "docs", "d1", "quarterly report", tenant_id="t1")
    orchestrator = RAGOrchestrator(config, store=store, llm=_llm(_analysis("docs")))
    await orchestrator.run(MEMBER, "what happened with the quarterly report", [], ["docs"])
    assert len(orchestrator.probe.cache) == 1

    orchestrator.bus.publish(CollectionMutated(collection="docs"))

    assert len(orchestrator.probe.cache) == 0
