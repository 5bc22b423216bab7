from __future__ import annotations

import asyncio
import json
import logging
import time

from langgraph.graph import END, StateGraph

from ragscope.agent.citations import build_sources, extract_numbered_options, link_options
from ragscope.agent.prompts import build_answer_messages, build_answer_prompt
from ragscope.core.config import ConfigurationSource
from ragscope.core.errors import LanguageModelTimeoutError, TotalRetrievalFailure
from ragscope.domain.entities import AssembledContext
from ragscope.domain.state import RagState
from ragscope.providers.llm.base import LanguageModel
from ragscope.providers.retrieval.base import Retriever
from ragscope.services.aggregate import AggregateFallback, aggregate_items
from ragscope.services.assembly import ContextAssembler, render_context
from ragscope.services.budget import ContextBudgetPlanner
from ragscope.services.query_analysis import QueryAnalyzer
from ragscope.services.telemetry import increment_counter, record_stage_timing


logger = logging.getLogger(__name__)


def _timed(state: RagState, stage: str, started: float) -> dict[str, float]:
    elapsed = (time.monotonic() - started) * 1000.0
    record_stage_timing(stage, elapsed)
    timings = dict(state.get("timings_ms") or {})
    timings[stage] = elapsed
    return timings


def _traced(state: RagState, step: str) -> list[str]:
    return [*(state.get("trace") or []), step]


def _answer_text(raw: dict | str) -> str:
    if isinstance(raw, str):
        return raw
    for key in ("answer", "text", "content"):
        value = raw.get(key)
        if isinstance(value, str):
            return value
    return json.dumps(raw)


def route_after_analysis(state: RagState) -> str:
    analysis = state["outcome"].analysis
    if not analysis.needs_context or not analysis.target_collections:
        return "skip"
    if analysis.query_type == "aggregate":
        return "count"
    return "retrieve"


def route_after_search(state: RagState) -> str:
    return "invoke" if state.get("stage_error") else "assemble"


def build_graph(
    *,
    config: ConfigurationSource,
    analyzer: QueryAnalyzer,
    planner: ContextBudgetPlanner,
    retriever: Retriever,
    aggregate: AggregateFallback,
    assembler: ContextAssembler,
    llm: LanguageModel,
    system_prompt: str | None = None,
):
    graph = StateGraph(RagState)

    async def analyze(state: RagState) -> dict:
        started = time.monotonic()
        outcome = await analyzer.analyze(
            state["user_message"],
            state.get("history") or [],
            state.get("candidate_collections") or [],
        )
        if outcome.degraded:
            logger.info("analysis_outcome_degraded request_id=%s reason=%s", state.get("request_id"), outcome.reason)
        return {
            "outcome": outcome,
            "trace": _traced(state, "analyzing"),
            "timings_ms": _timed(state, "analyze", started),
        }

    async def retrieve(state: RagState) -> dict:
        started = time.monotonic()
        analysis = state["outcome"].analysis
        update: dict = {"trace": _traced(state, "retrieving")}
        try:
            plan = await planner.plan_request(state["principal"], analysis.target_collections)
            result = await retriever.retrieve(analysis, plan)
        except TotalRetrievalFailure as exc:
            increment_counter("orchestrator_total_retrieval_failures_total")
            logger.error(
                "retrieval_total_failure request_id=%s collections=%s",
                state.get("request_id"),
                ",".join(analysis.target_collections),
                exc_info=exc,
            )
            failed = sorted({collection for _query, collection in exc.failed_pairs})
            update.update(
                {
                    "retrieved": [],
                    "partial_results": True,
                    "failed_collections": failed,
                    "stage_error": "retrieval_failed",
                }
            )
        except Exception as exc:  # noqa: BLE001 - answer without context instead of failing the request
            logger.warning("retrieval_stage_failed request_id=%s", state.get("request_id"), exc_info=exc)
            update.update({"retrieved": [], "stage_error": "retrieval_error"})
        else:
            if result.partial:
                logger.warning(
                    "retrieval_partial request_id=%s failed_collections=%s",
                    state.get("request_id"),
                    ",".join(result.failed_collections),
                )
            update.update(
                {
                    "plan": plan,
                    "retrieved": result.items,
                    "partial_results": result.partial,
                    "failed_collections": result.failed_collections,
                }
            )
        update["timings_ms"] = _timed(state, "retrieve", started)
        return update

    async def count(state: RagState) -> dict:
        started = time.monotonic()
        analysis = state["outcome"].analysis
        update: dict = {"trace": _traced(state, "counting")}
        try:
            plan = await planner.plan_request(state["principal"], analysis.target_collections)
            result = await aggregate.count(analysis, plan)
        except Exception as exc:  # noqa: BLE001 - answer without context instead of failing the request
            logger.error("aggregate_stage_failed request_id=%s", state.get("request_id"), exc_info=exc)
            update.update(
                {
                    "retrieved": [],
                    "aggregate": None,
                    "partial_results": True,
                    "failed_collections": list(analysis.target_collections),
                    "stage_error": "count_failed",
                }
            )
        else:
            update.update(
                {
                    "plan": plan,
                    "aggregate": result,
                    "retrieved": aggregate_items(result),
                    "partial_results": bool(result.failed_collections),
                    "failed_collections": list(result.failed_collections),
                }
            )
        update["timings_ms"] = _timed(state, "count", started)
        return update

    async def skip(state: RagState) -> dict:
        return {"retrieved": [], "plan": None, "trace": _traced(state, "skipped")}

    async def assemble(state: RagState) -> dict:
        started = time.monotonic()
        update: dict = {"trace": _traced(state, "assembling")}
        plan = state.get("plan")
        items = state.get("retrieved") or []
        if plan is None or not items:
            update["context"] = AssembledContext()
        else:
            try:
                update["context"] = assembler.assemble(items, plan.budget)
            except Exception as exc:  # noqa: BLE001 - answer without context instead of failing the request
                logger.warning("assembly_stage_failed request_id=%s", state.get("request_id"), exc_info=exc)
                update.update({"context": AssembledContext(), "stage_error": "assembly_failed"})
        update["timings_ms"] = _timed(state, "assemble", started)
        return update

    async def invoke(state: RagState) -> dict:
        started = time.monotonic()
        settings = config.settings
        context = state.get("context") or AssembledContext()
        searched = state.get("plan") is not None or bool(state.get("stage_error"))
        prompt = build_answer_prompt(render_context(context), searched, system_prompt)
        messages = build_answer_messages(state.get("history") or [], state["user_message"])
        timeout_s = settings.llm_timeout_ms / 1000.0
        try:
            raw = await asyncio.wait_for(llm.complete(prompt, messages, timeout_s=timeout_s), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise LanguageModelTimeoutError("answer generation timed out") from exc
        return {
            "context": context,
            "answer": _answer_text(raw),
            "trace": _traced(state, "invoking"),
            "timings_ms": _timed(state, "invoke", started),
        }

    async def postprocess(state: RagState) -> dict:
        started = time.monotonic()
        context = state.get("context") or AssembledContext()
        options = extract_numbered_options(state.get("answer") or "")
        return {
            "sources": build_sources(context),
            "numbered_options": link_options(options, context),
            "trace": _traced(state, "done"),
            "timings_ms": _timed(state, "postprocess", started),
        }

    graph.add_node("analyze", analyze)
    graph.add_node("retrieve", retrieve)
    graph.add_node("count", count)
    graph.add_node("skip", skip)
    graph.add_node("assemble", assemble)
    graph.add_node("invoke", invoke)
    graph.add_node("postprocess", postprocess)

    graph.set_entry_point("analyze")
    graph.add_conditional_edges(
        "analyze",
        route_after_analysis,
        {"retrieve": "retrieve", "count": "count", "skip": "skip"},
    )
    graph.add_conditional_edges("retrieve", route_after_search, {"assemble": "assemble", "invoke": "invoke"})
    graph.add_conditional_edges("count", route_after_search, {"assemble": "assemble", "invoke": "invoke"})
    graph.add_edge("skip", "invoke")
    graph.add_edge("assemble", "invoke")
    graph.add_edge("invoke", "postprocess")
    graph.add_edge("postprocess", END)

    return graph.compile()
