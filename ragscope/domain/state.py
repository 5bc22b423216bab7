from __future__ import annotations

from typing import Any, Optional, TypedDict

from ragscope.domain.entities import (
    AggregateResult,
    AnalysisOutcome,
    AssembledContext,
    Principal,
    RetrievalPlan,
    RetrievedItem,
)


class RagState(TypedDict, total=False):
    request_id: str
    principal: Principal
    user_message: str
    history: list[dict[str, Any]]
    candidate_collections: list[str]
    outcome: AnalysisOutcome
    plan: Optional[RetrievalPlan]
    retrieved: list[RetrievedItem]
    aggregate: Optional[AggregateResult]
    partial_results: bool
    failed_collections: list[str]
    # Set when a retrieval-side stage failed; the answer is generated without context.
    stage_error: Optional[str]
    context: AssembledContext
    answer: Optional[str]
    sources: list[dict[str, Any]]
    numbered_options: list[dict[str, Any]]
    trace: list[str]
    timings_ms: dict[str, float]
