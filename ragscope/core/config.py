from __future__ import annotations

import json
import logging
import threading
from functools import lru_cache
from typing import Any, Callable

from pydantic_settings import BaseSettings, SettingsConfigDict

from ragscope.core.errors import FatalConfigurationError


logger = logging.getLogger(__name__)


# Keep embedding dimension centralized to prevent drift across stores and embedders.
EMBED_DIM = 768

PRIVILEGE_TIERS = ("admin", "premium", "basic", "guest")
VOLUME_BANDS = ("low", "medium", "high", "very_high")
_OVERRIDE_KEYS = {"max_results", "max_tokens_per_item", "max_total_tokens", "time_window_days", "min_score"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "ragscope"
    log_level: str = "INFO"

    # Roles that snapshot a principal as admin regardless of its declared tier.
    admin_roles: list[str] = ["super-admin", "admin", "support", "moderator"]
    # Record field names used to build scope filters.
    tenant_field: str = "tenant_id"
    workspace_field: str = "workspace_id"
    owner_field: str = "user_id"
    enable_tenant_scope: bool = True
    enable_workspace_scope: bool = True
    # Principal records collection; non-admins only ever see their own row here.
    self_collection: str = "users"
    self_id_field: str = "id"
    # Collections holding private data are owner-scoped even inside a tenant.
    owner_only_collections: list[str] = []
    # Emit access-level decisions for auditing scope behavior.
    log_access_level: bool = True
    scope_cache_ttl_s: int = 300

    # Base budgets per privilege tier.
    tier_budgets: dict[str, dict[str, int]] = {
        "admin": {"max_results": 20, "max_total_tokens": 8000, "max_tokens_per_item": 2000},
        "premium": {"max_results": 15, "max_total_tokens": 6000, "max_tokens_per_item": 1500},
        "basic": {"max_results": 10, "max_total_tokens": 4000, "max_tokens_per_item": 1000},
        "guest": {"max_results": 5, "max_total_tokens": 2000, "max_tokens_per_item": 500},
    }
    # Relative time windows for lower tiers; absent tiers are time-unrestricted.
    tier_time_window_days: dict[str, int] = {"guest": 7, "basic": 30}
    # Ascending upper bounds for low, medium and high; anything above is very_high.
    band_thresholds: list[int] = [100, 10_000, 1_000_000]
    # Multipliers applied to max_results per volume band.
    band_result_factors: dict[str, float] = {"low": 1.5, "medium": 1.0, "high": 0.8, "very_high": 0.5}
    # Band used when a scoped count cannot be computed.
    stats_fallback_band: str = "medium"
    stats_cache_ttl_s: int = 300
    # Per-collection budget overrides, e.g. {"emails": {"max_results": 3}}.
    collection_overrides: dict[str, dict[str, Any]] = {}

    # Favor recall at search time; assembly can still discard low-value items.
    min_relevance_score: float = 0.3
    # Bound concurrent similarity searches to protect the vector store.
    search_max_concurrency: int = 8
    search_timeout_ms: int = 3000
    # Field carrying record timestamps for time-window clauses and recency ties.
    timestamp_field: str = "created_at"

    # Analyzer model call budget; no retries happen inside the analyzer.
    analyzer_timeout_ms: int = 8000
    # Number of recent history messages shown to the analyzer.
    analyzer_history_messages: int = 6
    # Cap search terms per request; each term fans out across every target collection.
    analyzer_max_search_queries: int = 5
    # Patterns classified as aggregate without calling the model.
    aggregate_patterns: list[str] = ["how many", "count of", "total number of"]
    # Cues that hint at aggregation but still need the model to decide.
    aggregate_hint_patterns: list[str] = ["count", "total", "summary", "statistics", "stats", "number of", "how much"]
    greeting_phrases: list[str] = [
        "hi",
        "hello",
        "hey",
        "thanks",
        "thank you",
        "good morning",
        "good afternoon",
        "good evening",
        "bye",
        "goodbye",
    ]

    # Heuristic characters-per-token ratio for context budgeting.
    chars_per_token: float = 4.0
    # Final answer generation timeout.
    llm_timeout_ms: int = 30000
    # Select the language model provider (vertex or fake).
    llm_provider: str = "vertex"
    google_cloud_project: str | None = None
    google_cloud_location: str | None = None
    gemini_model: str = "gemini-2.0-flash-001"

    # Vector store backend (memory or pgvector).
    vector_store: str = "memory"
    database_url: str | None = None
    # Map collections to system-of-record tables for authoritative counts.
    system_of_record_tables: dict[str, str] = {}

    # JSON list of federated nodes: [{"node_id": ..., "base_url": ..., "collections": [...]}].
    federated_nodes_json: str = "[]"
    federated_search_path: str = "/api/search"
    federated_health_path: str = "/health"
    federated_timeout_ms: int = 4000

    redis_url: str = "redis://localhost:6379/0"
    # Shared external call policy for federated transport.
    ext_call_timeout_ms: int = 8000
    ext_retry_max_attempts: int = 2
    ext_retry_backoff_ms: int = 200
    # Circuit breaker thresholds for federated nodes.
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_half_open_trials: int = 2
    cb_redis_prefix: str = "ragscope:cb"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def parse_federated_nodes(raw: str) -> list[dict[str, Any]]:
    # Keep a single validation path so preflight and the retriever agree.
    try:
        nodes = json.loads(raw or "[]")
    except json.JSONDecodeError as exc:
        raise FatalConfigurationError("federated_nodes_json is not valid JSON") from exc
    if not isinstance(nodes, list):
        raise FatalConfigurationError("federated_nodes_json must be a list")
    normalized: list[dict[str, Any]] = []
    seen: set[str] = set()
    for node in nodes:
        if not isinstance(node, dict):
            raise FatalConfigurationError("federated node entries must be objects")
        node_id = node.get("node_id")
        base_url = node.get("base_url")
        if not node_id or not base_url:
            raise FatalConfigurationError("federated nodes require node_id and base_url")
        if node_id in seen:
            raise FatalConfigurationError(f"duplicate federated node {node_id}")
        seen.add(node_id)
        collections = node.get("collections")
        if collections is not None and not isinstance(collections, list):
            raise FatalConfigurationError(f"node {node_id} collections must be a list")
        normalized.append(
            {
                "node_id": str(node_id),
                "base_url": str(base_url).rstrip("/"),
                "collections": [str(c) for c in collections] if collections is not None else None,
                "api_key": node.get("api_key"),
            }
        )
    return normalized


def validate_settings(settings: Settings) -> None:
    """Reject configurations that would run unscoped or unbounded.

    Raised errors are fatal: callers must refuse to start (or refuse a reload)
    rather than fall back to defaults.
    """
    missing = [tier for tier in PRIVILEGE_TIERS if tier not in settings.tier_budgets]
    if missing:
        raise FatalConfigurationError(f"tier_budgets missing tiers: {', '.join(missing)}")
    unknown = sorted(set(settings.tier_budgets) - set(PRIVILEGE_TIERS))
    if unknown:
        raise FatalConfigurationError(f"tier_budgets has unknown tiers: {', '.join(unknown)}")
    for tier, budget in settings.tier_budgets.items():
        for key in ("max_results", "max_total_tokens", "max_tokens_per_item"):
            value = budget.get(key)
            if not isinstance(value, int) or value < 1:
                raise FatalConfigurationError(f"tier_budgets.{tier}.{key} must be a positive integer")
    for tier, days in settings.tier_time_window_days.items():
        if tier not in PRIVILEGE_TIERS:
            raise FatalConfigurationError(f"tier_time_window_days has unknown tier {tier}")
        if days < 1:
            raise FatalConfigurationError(f"tier_time_window_days.{tier} must be positive")

    thresholds = settings.band_thresholds
    if len(thresholds) != len(VOLUME_BANDS) - 1:
        raise FatalConfigurationError("band_thresholds must hold exactly three bounds")
    if any(b <= a for a, b in zip(thresholds, thresholds[1:])) or thresholds[0] <= 0:
        raise FatalConfigurationError("band_thresholds must be positive and strictly ascending")
    for band in VOLUME_BANDS:
        factor = settings.band_result_factors.get(band)
        if factor is None or factor <= 0:
            raise FatalConfigurationError(f"band_result_factors.{band} must be positive")
    if settings.stats_fallback_band not in VOLUME_BANDS:
        raise FatalConfigurationError("stats_fallback_band must be a volume band")

    for collection, override in settings.collection_overrides.items():
        unknown_keys = sorted(set(override) - _OVERRIDE_KEYS)
        if unknown_keys:
            raise FatalConfigurationError(
                f"collection_overrides.{collection} has unknown keys: {', '.join(unknown_keys)}"
            )

    if not 0.0 <= settings.min_relevance_score <= 1.0:
        raise FatalConfigurationError("min_relevance_score must be within [0, 1]")
    if settings.search_max_concurrency < 1:
        raise FatalConfigurationError("search_max_concurrency must be at least 1")
    if settings.search_timeout_ms < 1 or settings.analyzer_timeout_ms < 1 or settings.llm_timeout_ms < 1:
        raise FatalConfigurationError("timeouts must be positive")
    if settings.chars_per_token <= 0:
        raise FatalConfigurationError("chars_per_token must be positive")
    if not settings.tenant_field or not settings.owner_field or not settings.self_id_field:
        raise FatalConfigurationError("scope field names must not be empty")
    parse_federated_nodes(settings.federated_nodes_json)


class ConfigurationSource:
    """Hot-reloadable settings holder.

    Readers take ``settings`` per call. ``version`` increases on every successful
    reload so derived caches can key on it.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        initial = settings or get_settings()
        validate_settings(initial)
        self._settings = initial
        self._version = 1
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[Settings], None]] = []

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def version(self) -> int:
        return self._version

    def subscribe(self, callback: Callable[[Settings], None]) -> None:
        self._subscribers.append(callback)

    def reload(self, settings: Settings | None = None) -> Settings:
        # Validate before swapping so a bad reload keeps the previous config live.
        if settings is None:
            get_settings.cache_clear()
            settings = get_settings()
        validate_settings(settings)
        with self._lock:
            self._settings = settings
            self._version += 1
            version = self._version
        logger.info("configuration_reloaded version=%s", version)
        for callback in list(self._subscribers):
            callback(settings)
        return settings
