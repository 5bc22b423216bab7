from __future__ import annotations

import logging
from typing import Any

from ragscope.core.config import ConfigurationSource, Settings
from ragscope.core.errors import ScopeResolutionError
from ragscope.domain.entities import Principal, PrivilegeTier, RetrievalScope
from ragscope.domain.events import InvalidationEvent, PrincipalChanged
from ragscope.services.cache import TTLCache
from ragscope.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


ScopeCacheKey = tuple[str, str, int]


def effective_tier(principal: Principal, admin_roles: list[str]) -> PrivilegeTier:
    # Snapshot admin status once per request; role flag, explicit flag or declared tier.
    if principal.privilege_tier == "admin" or principal.is_admin:
        return "admin"
    admin_set = {role.lower() for role in admin_roles}
    if any(role.lower() in admin_set for role in principal.roles):
        return "admin"
    return principal.privilege_tier


def owner_scope(principal: Principal, settings: Settings) -> RetrievalScope:
    return RetrievalScope(
        filter_clauses={settings.owner_field: principal.id},
        is_unrestricted=False,
        access_level="owner",
    )


def build_scope(principal: Principal, collection: str, settings: Settings) -> RetrievalScope:
    """Derive the narrowest filter a principal needs for one collection.

    Admin is the only path to an unrestricted scope. Everything else narrows:
    the self collection to the principal's own record, owner-only collections
    to records the principal owns, and shared collections to the tenant (and
    workspace inside the tenant). Missing attributes fall back to owner-only.
    """
    tier = effective_tier(principal, settings.admin_roles)
    if tier == "admin":
        return RetrievalScope(filter_clauses={}, is_unrestricted=True, access_level="admin")

    if not principal.id:
        raise ScopeResolutionError("principal id is required for non-admin scope")

    if collection == settings.self_collection:
        return RetrievalScope(
            filter_clauses={settings.self_id_field: principal.id},
            is_unrestricted=False,
            access_level="self",
        )

    if collection in settings.owner_only_collections:
        return owner_scope(principal, settings)

    clauses: dict[str, Any] = {}
    if settings.enable_tenant_scope and principal.tenant_id:
        clauses[settings.tenant_field] = principal.tenant_id
        # Workspace ids are only meaningful inside a tenant; never filter on them alone.
        if settings.enable_workspace_scope and principal.workspace_id:
            clauses[settings.workspace_field] = principal.workspace_id
            return RetrievalScope(filter_clauses=clauses, is_unrestricted=False, access_level="workspace")
        return RetrievalScope(filter_clauses=clauses, is_unrestricted=False, access_level="tenant")

    return owner_scope(principal, settings)


class AccessScopeResolver:
    def __init__(self, config: ConfigurationSource, *, time_source=None) -> None:
        self._config = config
        self._cache: TTLCache[ScopeCacheKey, RetrievalScope] = TTLCache(
            "retrieval_scope",
            config.settings.scope_cache_ttl_s,
            time_source=time_source,
        )
        config.subscribe(self._on_config_reload)

    @property
    def cache(self) -> TTLCache[ScopeCacheKey, RetrievalScope]:
        return self._cache

    def resolve(self, principal: Principal, collection: str) -> RetrievalScope:
        settings = self._config.settings
        key: ScopeCacheKey = (principal.id, collection, self._config.version)
        if not principal.dirty:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        try:
            scope = build_scope(principal, collection, settings)
        except Exception as exc:  # noqa: BLE001 - any failure narrows to owner-only, never wider
            increment_counter("scope_resolution_failures_total")
            logger.warning(
                "scope_resolution_failed principal=%s collection=%s",
                principal.id,
                collection,
                exc_info=exc,
            )
            # Failures are not cached so a recovered resolver is used on the next request.
            return owner_scope(principal, settings)

        if settings.log_access_level:
            logger.debug(
                "scope_resolved principal=%s collection=%s access_level=%s",
                principal.id,
                collection,
                scope.access_level,
            )
        self._cache.set(key, scope)
        return scope

    def handle_event(self, event: InvalidationEvent) -> None:
        if isinstance(event, PrincipalChanged):
            evicted = self._cache.evict_where(lambda key: key[0] == event.principal_id)
            logger.debug("scope_cache_evicted principal=%s entries=%s", event.principal_id, evicted)

    def _on_config_reload(self, settings: Settings) -> None:
        # Old entries are unreachable once the version bumps; drop them to free memory.
        self._cache.set_ttl(settings.scope_cache_ttl_s)
        self._cache.clear()
