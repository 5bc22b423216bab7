from __future__ import annotations

import logging
import time
from bisect import bisect_right
from typing import Callable

from ragscope.core.config import ConfigurationSource, Settings
from ragscope.domain.entities import CollectionStats, RetrievalScope, VolumeBand
from ragscope.domain.events import CollectionMutated, InvalidationEvent
from ragscope.providers.vectorstore.base import VectorStore
from ragscope.services.cache import TTLCache
from ragscope.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


_BANDS: tuple[VolumeBand, ...] = ("low", "medium", "high", "very_high")

StatsCacheKey = tuple[str, str]


def classify_volume(total_count: int, thresholds: list[int]) -> VolumeBand:
    # Step function over ascending thresholds: a bigger count never maps to a smaller band.
    return _BANDS[bisect_right(thresholds, max(0, total_count))]


class CorpusStatisticsProbe:
    """Scoped corpus size classification.

    Counts use the same filter retrieval would, so the band reflects what the
    principal can see. Entries live until their TTL or a mutation event for
    the same (collection, scope fingerprint).
    """

    def __init__(
        self,
        store: VectorStore,
        config: ConfigurationSource,
        *,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._config = config
        self._cache: TTLCache[StatsCacheKey, CollectionStats] = TTLCache(
            "collection_stats",
            config.settings.stats_cache_ttl_s,
            time_source=time_source,
        )
        config.subscribe(self._on_config_reload)

    @property
    def cache(self) -> TTLCache[StatsCacheKey, CollectionStats]:
        return self._cache

    async def band_for(self, collection: str, scope: RetrievalScope) -> VolumeBand:
        stats = await self.stats_for(collection, scope)
        if stats is None:
            return self._config.settings.stats_fallback_band  # type: ignore[return-value]
        return stats.volume_band

    async def stats_for(self, collection: str, scope: RetrievalScope) -> CollectionStats | None:
        key: StatsCacheKey = (collection, scope.fingerprint)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        settings = self._config.settings
        try:
            total = await self._store.count(collection, dict(scope.filter_clauses))
        except Exception as exc:  # noqa: BLE001 - a failed count degrades to the fallback band
            increment_counter("collection_stats_failures_total")
            logger.warning(
                "collection_stats_failed collection=%s fallback_band=%s",
                collection,
                settings.stats_fallback_band,
                exc_info=exc,
            )
            return None

        stats = CollectionStats(
            collection=collection,
            total_count=int(total),
            volume_band=classify_volume(int(total), settings.band_thresholds),
            last_computed_at=time.time(),
        )
        self._cache.set(key, stats)
        return stats

    def handle_event(self, event: InvalidationEvent) -> None:
        if not isinstance(event, CollectionMutated):
            return
        if event.scope_fingerprint is None:
            evicted = self._cache.evict_where(lambda key: key[0] == event.collection)
        else:
            evicted = int(self._cache.evict((event.collection, event.scope_fingerprint)))
        logger.debug(
            "collection_stats_evicted collection=%s fingerprint=%s entries=%s",
            event.collection,
            event.scope_fingerprint,
            evicted,
        )

    def _on_config_reload(self, settings: Settings) -> None:
        # Bands depend on thresholds; recompute everything after a reload.
        self._cache.set_ttl(settings.stats_cache_ttl_s)
        self._cache.clear()
