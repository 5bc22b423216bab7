from __future__ import annotations

import logging
import math

from ragscope.core.config import ConfigurationSource, Settings
from ragscope.domain.entities import (
    CollectionPlan,
    ContextBudget,
    Principal,
    PrivilegeTier,
    RetrievalPlan,
    TimeWindow,
    VolumeBand,
)
from ragscope.services.authz.scope import AccessScopeResolver, effective_tier
from ragscope.services.corpus_stats import CorpusStatisticsProbe


logger = logging.getLogger(__name__)


def compute_budget(
    tier: PrivilegeTier,
    band: VolumeBand,
    settings: Settings,
    collection: str | None = None,
) -> ContextBudget:
    """Pure budget lookup: tier base, band factor, then collection overrides.

    No clock or randomness is consulted, so identical inputs always produce
    identical budgets. Time windows stay relative (days).
    """
    base = settings.tier_budgets[tier]
    factor = settings.band_result_factors[band]
    max_results = max(1, math.floor(base["max_results"] * factor))
    max_total_tokens = base["max_total_tokens"]
    max_tokens_per_item = min(base["max_tokens_per_item"], max_total_tokens)

    window_days = settings.tier_time_window_days.get(tier)

    override = settings.collection_overrides.get(collection or "", {})
    if "max_results" in override:
        max_results = max(1, int(override["max_results"]))
    if "max_total_tokens" in override:
        max_total_tokens = max(1, int(override["max_total_tokens"]))
    if "max_tokens_per_item" in override:
        max_tokens_per_item = max(1, int(override["max_tokens_per_item"]))
    if "time_window_days" in override:
        days = override["time_window_days"]
        window_days = int(days) if days else None

    return ContextBudget(
        max_results=max_results,
        max_tokens_per_item=min(max_tokens_per_item, max_total_tokens),
        max_total_tokens=max_total_tokens,
        time_window=TimeWindow(days=window_days) if window_days else None,
    )


def min_score_for(collection: str, settings: Settings) -> float:
    override = settings.collection_overrides.get(collection, {})
    return float(override.get("min_score", settings.min_relevance_score))


class ContextBudgetPlanner:
    def __init__(
        self,
        config: ConfigurationSource,
        resolver: AccessScopeResolver,
        probe: CorpusStatisticsProbe,
    ) -> None:
        self._config = config
        self._resolver = resolver
        self._probe = probe

    async def plan(self, principal: Principal, collection: str) -> ContextBudget:
        return (await self.plan_collection(principal, collection)).budget

    async def plan_collection(self, principal: Principal, collection: str) -> CollectionPlan:
        settings = self._config.settings
        tier = effective_tier(principal, settings.admin_roles)
        scope = self._resolver.resolve(principal, collection)
        band = await self._probe.band_for(collection, scope)
        budget = compute_budget(tier, band, settings, collection)
        logger.debug(
            "budget_planned principal=%s collection=%s tier=%s band=%s max_results=%s max_total_tokens=%s",
            principal.id,
            collection,
            tier,
            band,
            budget.max_results,
            budget.max_total_tokens,
        )
        return CollectionPlan(
            collection=collection,
            scope=scope,
            budget=budget,
            tier=tier,
            band=band,
            min_score=min_score_for(collection, settings),
        )

    async def plan_request(self, principal: Principal, collections: list[str]) -> RetrievalPlan:
        # Budgets are per collection; the request envelope combines them for assembly.
        plans = [await self.plan_collection(principal, collection) for collection in collections]
        if not plans:
            settings = self._config.settings
            tier = effective_tier(principal, settings.admin_roles)
            return RetrievalPlan(collections=(), budget=compute_budget(tier, "medium", settings))
        return RetrievalPlan(
            collections=tuple(plans),
            budget=ContextBudget.combine([plan.budget for plan in plans]),
        )
