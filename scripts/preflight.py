from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from sqlalchemy import text

from ragscope.core.config import ConfigurationSource, Settings, get_settings, validate_settings
from ragscope.core.errors import RagScopeError
from ragscope.persistence.db import get_session_factory
from ragscope.providers.retrieval.federated import FederatedRetriever, nodes_from_settings


def _check_settings(settings: Settings) -> tuple[bool, str | None]:
    # Configuration errors are fatal at startup, so surface them before rollout.
    try:
        validate_settings(settings)
    except RagScopeError as exc:
        return False, str(exc)
    return True, None


def _needs_database(settings: Settings) -> bool:
    return settings.vector_store == "pgvector" or bool(settings.system_of_record_tables)


async def _check_redis(settings: Settings) -> bool:
    # Circuit breaker state is shared through Redis only when federation is configured.
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except Exception:
        return False
    finally:
        await client.aclose()


async def _check_database() -> bool:
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
    except Exception:
        return False
    return True


class _NoLocalRetriever:
    async def retrieve(self, *_args, **_kwargs):
        raise RuntimeError("health checks never retrieve")


async def _check_nodes(config: ConfigurationSource) -> dict[str, bool]:
    federated = FederatedRetriever(_NoLocalRetriever(), nodes_from_settings(config), config)
    try:
        return await federated.check_health()
    finally:
        await federated.aclose()


async def run_preflight(*, output_json: str | None) -> int:
    settings = get_settings()
    results: list[dict[str, Any]] = []

    settings_ok, settings_error = _check_settings(settings)
    results.append(
        {
            "check": "settings_valid",
            "status": "pass" if settings_ok else "fail",
            "detail": {"error": settings_error},
        }
    )

    if settings_ok:
        config = ConfigurationSource(settings)
        nodes = nodes_from_settings(config)
        if nodes:
            redis_ok = await _check_redis(settings)
            # Breakers fall back to process-local state without Redis.
            results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "warn", "detail": {}})
            health = await _check_nodes(config)
            unhealthy = sorted(node_id for node_id, healthy in health.items() if not healthy)
            results.append(
                {
                    "check": "federated_nodes_healthy",
                    "status": "pass" if not unhealthy else "warn",
                    "detail": {"unhealthy": unhealthy, "total": len(health)},
                }
            )

    if _needs_database(settings):
        db_ok = bool(settings.database_url) and await _check_database()
        results.append({"check": "database_reachable", "status": "pass" if db_ok else "fail", "detail": {}})

    failed = [row for row in results if row["status"] == "fail"]
    summary = {
        "status": "pass" if not failed else "fail",
        "checks": results,
    }
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(summary, indent=2, sort_keys=True), encoding="utf-8")
    print(json.dumps(summary, indent=2, sort_keys=True))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Validate configuration and collaborators before rollout.")
    parser.add_argument("--output-json", default=None)
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
