from __future__ import annotations

import pytest

from ragscope.core.config import ConfigurationSource
from ragscope.domain.entities import RetrievalScope
from ragscope.domain.events import CollectionMutated
from ragscope.services.corpus_stats import CorpusStatisticsProbe, classify_volume
from ragscope.services.telemetry import get_counter


THRESHOLDS = [100, 10_000, 1_000_000]


def _scope(tenant: str) -> RetrievalScope:
    return RetrievalScope(filter_clauses={"tenant_id": tenant}, is_unrestricted=False, access_level="tenant")


class CountingStore:
    exact_counts = True

    def __init__(self, totals: dict[str, int], fail: bool = False) -> None:
        self.totals = totals
        self.fail = fail
        self.calls: list[tuple[str, dict]] = []

    async def search(self, *_args, **_kwargs) -> list[dict]:
        return []

    async def count(self, collection: str, filter: dict) -> int:
        self.calls.append((collection, dict(filter)))
        if self.fail:
            raise RuntimeError("count unavailable")
        return self.totals[filter.get("tenant_id", "*")]


def test_classify_volume_boundaries() -> None:
    assert classify_volume(0, THRESHOLDS) == "low"
    assert classify_volume(99, THRESHOLDS) == "low"
    assert classify_volume(100, THRESHOLDS) == "medium"
    assert classify_volume(9_999, THRESHOLDS) == "medium"
    assert classify_volume(10_000, THRESHOLDS) == "high"
    assert classify_volume(1_000_000, THRESHOLDS) == "very_high"


def test_classify_volume_is_monotonic() -> None:
    order = ["low", "medium", "high", "very_high"]
    previous = 0
    for count in [0, 1, 50, 100, 5_000, 10_000, 500_000, 1_000_000, 10**9]:
        rank = order.index(classify_volume(count, THRESHOLDS))
        assert rank >= previous
        previous = rank


@pytest.mark.asyncio
async def test_probe_counts_with_scope_filter_and_caches(config: ConfigurationSource) -> None:
    store = CountingStore({"t1": 50_000})
    probe = CorpusStatisticsProbe(store, config)

    assert await probe.band_for("documents", _scope("t1")) == "high"
    assert await probe.band_for("documents", _scope("t1")) == "high"

    assert store.calls == [("documents", {"tenant_id": "t1"})]
    assert get_counter("cache_hit_total.collection_stats") == 1


@pytest.mark.asyncio
async def test_targeted_invalidation_recomputes_only_that_scope(config: ConfigurationSource) -> None:
    store = CountingStore({"t1": 10, "t2": 20})
    probe = CorpusStatisticsProbe(store, config)
    await probe.band_for("documents", _scope("t1"))
    await probe.band_for("documents", _scope("t2"))

    probe.handle_event(CollectionMutated(collection="documents", scope_fingerprint=_scope("t1").fingerprint))
    await probe.band_for("documents", _scope("t1"))
    await probe.band_for("documents", _scope("t2"))

    counted = [flt["tenant_id"] for _collection, flt in store.calls]
    assert counted == ["t1", "t2", "t1"]


@pytest.mark.asyncio
async def test_collection_wide_invalidation(config: ConfigurationSource) -> None:
    store = CountingStore({"t1": 10, "t2": 20})
    probe = CorpusStatisticsProbe(store, config)
    await probe.band_for("documents", _scope("t1"))
    await probe.band_for("documents", _scope("t2"))
    await probe.band_for("notes", _scope("t1"))

    probe.handle_event(CollectionMutated(collection="documents", kind="bulk"))

    assert len(probe.cache) == 1


@pytest.mark.asyncio
async def test_failed_count_uses_fallback_band_and_is_not_cached(config: ConfigurationSource) -> None:
    store = CountingStore({}, fail=True)
    probe = CorpusStatisticsProbe(store, config)

    assert await probe.band_for("documents", _scope("t1")) == "medium"
    assert await probe.stats_for("documents", _scope("t1")) is None
    assert len(probe.cache) == 0
    assert get_counter("collection_stats_failures_total") == 2


@pytest.mark.asyncio
async def test_expired_stats_are_recomputed(config: ConfigurationSource) -> None:
    now = {"t": 0.0}
    store = CountingStore({"t1": 10})
    probe = CorpusStatisticsProbe(store, config, time_source=lambda: now["t"])
    await probe.band_for("documents", _scope("t1"))

    now["t"] = config.settings.stats_cache_ttl_s + 1.0
    store.totals["t1"] = 20_000
    assert await probe.band_for("documents", _scope("t1")) == "high"
