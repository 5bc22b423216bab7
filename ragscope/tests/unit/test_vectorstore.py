from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.dialects import postgresql

from ragscope.persistence.repos.records import _table_for, filter_predicates
from ragscope.providers.embeddings.hashing import embed_text
from ragscope.providers.vectorstore.filters import matches_filter
from ragscope.providers.vectorstore.memory import InMemoryVectorStore
from ragscope.providers.vectorstore.pgvector import build_predicates


def _sql(predicate) -> str:
    return str(predicate.compile(dialect=postgresql.dialect()))


def test_equality_and_range_clauses() -> None:
    now = datetime(2026, 3, 1, tzinfo=timezone.utc)
    metadata = {"tenant_id": "t1", "created_at": now.isoformat()}

    assert matches_filter(metadata, {"tenant_id": "t1"})
    assert not matches_filter(metadata, {"tenant_id": "t2"})
    assert not matches_filter(metadata, {"workspace_id": "w1"})
    assert matches_filter(metadata, {"created_at": {"gte": (now - timedelta(days=1)).isoformat()}})
    assert not matches_filter(metadata, {"created_at": {"gte": (now + timedelta(days=1)).isoformat()}})
    # Undated records never satisfy a time window.
    assert not matches_filter({"tenant_id": "t1"}, {"created_at": {"gte": now.isoformat()}})


@pytest.mark.asyncio
async def test_memory_store_filters_before_limit() -> None:
    store = InMemoryVectorStore()
    for i in range(5):
        store.upsert("docs", f"other-{i}", "renewal terms", embed_text("renewal terms"), {"tenant_id": "t2"})
    store.upsert("docs", "mine", "renewal terms draft", embed_text("renewal terms draft"), {"tenant_id": "t1"})

    hits = await store.search("docs", embed_text("renewal terms"), {"tenant_id": "t1"}, 2, 0.0)

    assert [hit["external_id"] for hit in hits] == ["mine"]
    assert await store.count("docs", {"tenant_id": "t2"}) == 5
    assert store.delete("docs", "mine") is True
    assert await store.count("docs", {"tenant_id": "t1"}) == 0


def test_pgvector_predicates_stay_in_sql() -> None:
    predicates = build_predicates(
        "docs",
        {"tenant_id": "t1", "created_at": {"gte": "2026-01-01T00:00:00+00:00"}},
    )
    rendered = [_sql(predicate) for predicate in predicates]

    assert len(rendered) == 3
    assert rendered[0].startswith("vector_records.collection =")
    assert predicates[0].right.value == "docs"
    assert "metadata_json ->>" in rendered[1]
    assert predicates[1].right.value == "t1"
    assert rendered[2].startswith("vector_records.created_at >=")
    assert predicates[2].right.value == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_record_counter_predicates() -> None:
    table = _table_for("invoices", ["user_id", "created_at"], "created_at")
    predicates = filter_predicates(
        table,
        {"user_id": "u1", "created_at": {"gte": "2026-01-01T00:00:00+00:00"}},
        "created_at",
    )
    rendered = [_sql(predicate) for predicate in predicates]

    assert rendered[0].startswith("invoices.user_id =")
    assert predicates[0].right.value == "u1"
    assert rendered[1].startswith("invoices.created_at >=")
    assert predicates[1].right.value == datetime(2026, 1, 1, tzinfo=timezone.utc)
