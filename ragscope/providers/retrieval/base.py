from __future__ import annotations

from typing import Protocol

from ragscope.domain.entities import QueryAnalysis, RetrievalPlan, RetrievalResult


class Retriever(Protocol):
    async def retrieve(self, analysis: QueryAnalysis, plan: RetrievalPlan) -> RetrievalResult:
        """Search every (query, collection) pair within the plan's scopes.

        Failed pairs are reported on the result; implementations raise
        ``TotalRetrievalFailure`` only when nothing could be searched.
        """
        ...
