from __future__ import annotations

import argparse
import asyncio
import sys

from ragscope.agent.orchestrator import build_orchestrator
from ragscope.core.config import ConfigurationSource
from ragscope.core.errors import (
    EmbeddingError,
    FatalConfigurationError,
    IntegrationUnavailableError,
    ProviderConfigError,
    TotalRetrievalFailure,
    VectorStoreError,
)
from ragscope.domain.entities import Principal, QueryAnalysis


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Run a retrieval-only smoke test for a principal against the configured store."
    )
    parser.add_argument("--principal", required=True, help="Principal id")
    parser.add_argument("--tenant", default=None, help="Tenant id")
    parser.add_argument("--workspace", default=None, help="Workspace id")
    parser.add_argument("--tier", default="basic", choices=["admin", "premium", "basic", "guest"])
    parser.add_argument("--collection", required=True, action="append", help="Collection (repeatable)")
    parser.add_argument("--query", required=True, help="Query string")
    return parser


def _format_error(exc: Exception) -> tuple[int, str]:
    # Map known retrieval failures to stable, actionable messages.
    if isinstance(exc, FatalConfigurationError):
        return 2, f"CONFIG_INVALID: {exc}"
    if isinstance(exc, ProviderConfigError):
        return 2, f"PROVIDER_CONFIG_MISSING: {exc}"
    if isinstance(exc, IntegrationUnavailableError):
        return 3, f"INTEGRATION_UNAVAILABLE: {exc}"
    if isinstance(exc, TotalRetrievalFailure):
        return 4, f"RETRIEVAL_FAILED: {exc}"
    if isinstance(exc, (VectorStoreError, EmbeddingError)):
        return 4, f"VECTOR_STORE_ERROR: {exc}"
    return 1, f"UNKNOWN_ERROR: {exc}"


async def _run(args: argparse.Namespace) -> int:
    orchestrator = build_orchestrator(ConfigurationSource())
    principal = Principal(
        id=args.principal,
        tenant_id=args.tenant,
        workspace_id=args.workspace,
        privilege_tier=args.tier,
    )
    plan = await orchestrator.planner.plan_request(principal, args.collection)
    for collection_plan in plan.collections:
        print(
            f"# {collection_plan.collection}: access={collection_plan.scope.access_level} "
            f"band={collection_plan.band} max_results={collection_plan.budget.max_results}"
        )
    analysis = QueryAnalysis(
        needs_context=True,
        search_queries=[args.query],
        target_collections=list(args.collection),
        query_type="factual",
    )
    result = await orchestrator.retriever.retrieve(analysis, plan)

    for item in result.items:
        text = item.content.strip()
        snippet = (text[:120] + "...") if len(text) > 120 else text
        print(f"- score={item.score:.3f} collection={item.source_collection} id={item.external_id} text=\"{snippet}\"")
    if result.partial:
        print(f"partial results; failed collections: {', '.join(result.failed_collections)}", file=sys.stderr)
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_run(args))
    except Exception as exc:  # noqa: BLE001 - surface actionable errors
        code, message = _format_error(exc)
        print(message, file=sys.stderr)
        return code


if __name__ == "__main__":
    raise SystemExit(main())
