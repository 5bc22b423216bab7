from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


PrivilegeTier = Literal["admin", "premium", "basic", "guest"]
VolumeBand = Literal["low", "medium", "high", "very_high"]
QueryType = Literal["conversational", "factual", "aggregate"]
AccessLevel = Literal["admin", "tenant", "workspace", "owner", "self"]


class Principal(BaseModel):
    # Capture the already-authenticated identity; this core never authenticates.
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str | None = None
    workspace_id: str | None = None
    privilege_tier: PrivilegeTier = "basic"
    roles: tuple[str, ...] = ()
    is_admin: bool = False
    # Set by the caller when roles or attributes just changed so cached scopes are skipped.
    dirty: bool = False


@dataclass(frozen=True)
class TimeWindow:
    # Relative window; absolute bounds are computed only at search time.
    days: int

    def cutoff(self, now: datetime) -> datetime:
        return now - timedelta(days=self.days)

    def narrowest(self, other: "TimeWindow | None") -> "TimeWindow":
        if other is None or self.days <= other.days:
            return self
        return other


@dataclass(frozen=True)
class RetrievalScope:
    filter_clauses: dict[str, Any]
    is_unrestricted: bool
    access_level: AccessLevel
    time_window: TimeWindow | None = None

    @property
    def fingerprint(self) -> str:
        # Stable digest so caches can key on scope without storing raw filter values.
        payload = json.dumps(
            {"clauses": self.filter_clauses, "unrestricted": self.is_unrestricted},
            sort_keys=True,
            default=str,
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class CollectionStats:
    collection: str
    total_count: int
    volume_band: VolumeBand
    last_computed_at: float


@dataclass(frozen=True)
class ContextBudget:
    max_results: int
    max_tokens_per_item: int
    max_total_tokens: int
    time_window: TimeWindow | None = None

    @classmethod
    def combine(cls, budgets: list["ContextBudget"]) -> "ContextBudget":
        # Request envelope across collections; per-collection caps still apply at search time.
        if not budgets:
            raise ValueError("at least one budget is required")
        windows = [b.time_window for b in budgets if b.time_window is not None]
        window = max(windows, key=lambda w: w.days) if len(windows) == len(budgets) else None
        return cls(
            max_results=max(b.max_results for b in budgets),
            max_tokens_per_item=max(b.max_tokens_per_item for b in budgets),
            max_total_tokens=max(b.max_total_tokens for b in budgets),
            time_window=window,
        )


@dataclass(frozen=True)
class CollectionPlan:
    collection: str
    scope: RetrievalScope
    budget: ContextBudget
    tier: PrivilegeTier
    band: VolumeBand
    min_score: float

    @property
    def effective_time_window(self) -> TimeWindow | None:
        if self.scope.time_window is None:
            return self.budget.time_window
        return self.scope.time_window.narrowest(self.budget.time_window)


@dataclass(frozen=True)
class RetrievalPlan:
    collections: tuple[CollectionPlan, ...]
    budget: ContextBudget

    def for_collection(self, collection: str) -> CollectionPlan | None:
        for plan in self.collections:
            if plan.collection == collection:
                return plan
        return None


class QueryAnalysis(BaseModel):
    needs_context: bool
    search_queries: list[str] = Field(default_factory=list)
    target_collections: list[str] = Field(default_factory=list)
    query_type: QueryType = "conversational"
    reasoning: str = ""


@dataclass(frozen=True)
class Analyzed:
    analysis: QueryAnalysis
    source: Literal["model", "lexical"]
    repairs: tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Degraded:
    analysis: QueryAnalysis
    reason: str

    @property
    def degraded(self) -> bool:
        return True


AnalysisOutcome = Analyzed | Degraded


@dataclass(frozen=True)
class RetrievedItem:
    source_collection: str
    external_id: str
    score: float
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_collection, self.external_id)

    @property
    def title(self) -> str | None:
        for name in ("title", "subject", "name"):
            value = self.metadata.get(name)
            if value:
                return str(value)
        return None


@dataclass(frozen=True)
class RetrievalResult:
    items: list[RetrievedItem]
    failed_pairs: tuple[tuple[str, str], ...] = ()
    attempted_pairs: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failed_pairs)

    @property
    def failed_collections(self) -> list[str]:
        return sorted({collection for _query, collection in self.failed_pairs})


@dataclass(frozen=True)
class AssembledItem:
    item: RetrievedItem
    citation_index: int
    content: str
    token_estimate: int
    truncated: bool


@dataclass(frozen=True)
class AssembledContext:
    items: tuple[AssembledItem, ...] = ()
    total_tokens: int = 0
    dropped: int = 0

    @property
    def is_empty(self) -> bool:
        return not self.items


@dataclass(frozen=True)
class AggregateResult:
    per_collection_counts: dict[str, int]
    approximate: frozenset[str] = frozenset()
    failed_collections: tuple[str, ...] = ()


@dataclass
class RAGResponse:
    answer: str
    context: AssembledContext
    sources: list[dict[str, Any]]
    numbered_options: list[dict[str, Any]]
    outcome: AnalysisOutcome
    aggregate: AggregateResult | None = None
    partial_results: bool = False
    failed_collections: list[str] = field(default_factory=list)
    trace: list[str] = field(default_factory=list)
    timings_ms: dict[str, float] = field(default_factory=dict)

    @property
    def analysis(self) -> QueryAnalysis:
        return self.outcome.analysis
