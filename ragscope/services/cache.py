from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

from ragscope.services.telemetry import record_cache_lookup


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    expires_at: float


class TTLCache(Generic[K, V]):
    """In-process TTL cache shared by concurrent requests.

    Entries are immutable and replaced by a single dict assignment, so readers
    see either the old entry or the new one, never a partial write. Stale reads
    are bounded by ``ttl_s``.
    """

    def __init__(
        self,
        name: str,
        ttl_s: float,
        *,
        time_source: Callable[[], float] | None = None,
        max_entries: int = 10000,
    ) -> None:
        self._name = name
        self._ttl_s = ttl_s
        self._time = time_source or time.monotonic
        self._max_entries = max(1, max_entries)
        self._entries: dict[K, _Entry[V]] = {}

    @property
    def name(self) -> str:
        return self._name

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def set_ttl(self, ttl_s: float) -> None:
        self._ttl_s = ttl_s

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            record_cache_lookup(self._name, hit=False)
            return None
        if entry.expires_at <= self._time():
            # Only drop the entry we read; a concurrent replacement must survive.
            if self._entries.get(key) is entry:
                self._entries.pop(key, None)
            record_cache_lookup(self._name, hit=False)
            return None
        record_cache_lookup(self._name, hit=True)
        return entry.value

    def set(self, key: K, value: V) -> None:
        if len(self._entries) >= self._max_entries and key not in self._entries:
            self._evict_expired()
            if len(self._entries) >= self._max_entries:
                # Drop the oldest insertion to keep memory bounded.
                oldest = next(iter(self._entries))
                self._entries.pop(oldest, None)
        self._entries[key] = _Entry(value=value, expires_at=self._time() + self._ttl_s)

    def evict(self, key: K) -> bool:
        return self._entries.pop(key, None) is not None

    def evict_where(self, predicate: Callable[[K], bool]) -> int:
        keys = [key for key in list(self._entries) if predicate(key)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: object) -> bool:
        entry = self._entries.get(key)  # type: ignore[arg-type]
        return entry is not None and entry.expires_at > self._time()

    def __len__(self) -> int:
        return len(self._entries)

    def _evict_expired(self) -> None:
        now = self._time()
        for key, entry in list(self._entries.items()):
            if entry.expires_at <= now:
                self._entries.pop(key, None)
