from __future__ import annotations

import itertools

import pytest

from ragscope.core.config import ConfigurationSource, Settings
from ragscope.core.errors import ScopeResolutionError
from ragscope.domain.entities import Principal
from ragscope.domain.events import CollectionMutated, PrincipalChanged
from ragscope.services.authz import scope as scope_module
from ragscope.services.authz.scope import AccessScopeResolver, build_scope, effective_tier
from ragscope.services.telemetry import get_counter


def test_non_admin_scope_is_never_unrestricted(settings: Settings) -> None:
    tiers = ["premium", "basic", "guest"]
    tenants = [None, "t1"]
    workspaces = [None, "w1"]
    roles = [(), ("editor",), ("viewer", "analyst")]
    collections = ["documents", settings.self_collection, "emails"]
    settings.owner_only_collections = ["emails"]
    for tier, tenant, workspace, role_set, collection in itertools.product(
        tiers, tenants, workspaces, roles, collections
    ):
        principal = Principal(
            id="u1",
            tenant_id=tenant,
            workspace_id=workspace,
            privilege_tier=tier,
            roles=role_set,
        )
        scope = build_scope(principal, collection, settings)
        assert scope.is_unrestricted is False
        assert scope.filter_clauses


@pytest.mark.parametrize(
    "principal",
    [
        Principal(id="a1", privilege_tier="admin"),
        Principal(id="a2", is_admin=True),
        Principal(id="a3", roles=("Super-Admin",)),
    ],
)
def test_admin_paths_are_unrestricted(settings: Settings, principal: Principal) -> None:
    assert effective_tier(principal, settings.admin_roles) == "admin"
    scope = build_scope(principal, "documents", settings)
    assert scope.is_unrestricted is True
    assert scope.access_level == "admin"
    assert scope.filter_clauses == {}


def test_self_collection_admin_sees_all_non_admin_sees_own_row(settings: Settings) -> None:
    admin = Principal(id="admin-1", roles=("admin",), tenant_id="t1")
    member = Principal(id="user-7", tenant_id="t1")

    admin_scope = build_scope(admin, "users", settings)
    member_scope = build_scope(member, "users", settings)

    assert admin_scope.is_unrestricted is True
    assert member_scope.access_level == "self"
    assert member_scope.filter_clauses == {"id": "user-7"}


def test_workspace_applies_only_inside_tenant(settings: Settings) -> None:
    in_tenant = build_scope(Principal(id="u1", tenant_id="t1", workspace_id="w1"), "documents", settings)
    no_tenant = build_scope(Principal(id="u1", workspace_id="w1"), "documents", settings)

    assert in_tenant.access_level == "workspace"
    assert in_tenant.filter_clauses == {"tenant_id": "t1", "workspace_id": "w1"}
    assert no_tenant.access_level == "owner"
    assert no_tenant.filter_clauses == {"user_id": "u1"}


def test_owner_only_collection_ignores_tenant(settings: Settings) -> None:
    settings.owner_only_collections = ["emails"]
    scope = build_scope(Principal(id="u1", tenant_id="t1"), "emails", settings)
    assert scope.access_level == "owner"
    assert scope.filter_clauses == {"user_id": "u1"}


def test_missing_principal_id_raises_for_non_admin(settings: Settings) -> None:
    with pytest.raises(ScopeResolutionError):
        build_scope(Principal(id="", tenant_id="t1"), "documents", settings)


def test_resolver_caches_and_dirty_principal_bypasses(config: ConfigurationSource) -> None:
    resolver = AccessScopeResolver(config)
    principal = Principal(id="u1", tenant_id="t1")

    first = resolver.resolve(principal, "documents")
    second = resolver.resolve(principal, "documents")
    assert first is second
    assert get_counter("cache_hit_total.retrieval_scope") == 1

    # Role change: the caller marks the principal dirty so the cached scope is skipped.
    promoted = Principal(id="u1", tenant_id="t1", roles=("admin",), dirty=True)
    assert resolver.resolve(promoted, "documents").is_unrestricted is True


def test_resolver_failure_falls_back_to_owner_scope(config: ConfigurationSource, monkeypatch) -> None:
    def _boom(*_args, **_kwargs):
        raise RuntimeError("attribute store down")

    monkeypatch.setattr(scope_module, "build_scope", _boom)
    resolver = AccessScopeResolver(config)
    scope = resolver.resolve(Principal(id="u1", tenant_id="t1"), "documents")

    assert scope.access_level == "owner"
    assert scope.filter_clauses == {"user_id": "u1"}
    assert len(resolver.cache) == 0
    assert get_counter("scope_resolution_failures_total") == 1


def test_principal_changed_evicts_only_that_principal(config: ConfigurationSource) -> None:
    resolver = AccessScopeResolver(config)
    resolver.resolve(Principal(id="u1", tenant_id="t1"), "documents")
    resolver.resolve(Principal(id="u1", tenant_id="t1"), "notes")
    resolver.resolve(Principal(id="u2", tenant_id="t1"), "documents")

    resolver.handle_event(PrincipalChanged(principal_id="u1"))
    resolver.handle_event(CollectionMutated(collection="documents"))

    assert len(resolver.cache) == 1


def test_config_reload_clears_scope_cache(config: ConfigurationSource, settings: Settings) -> None:
    resolver = AccessScopeResolver(config)
    principal = Principal(id="u1", tenant_id="t1")
    resolver.resolve(principal, "documents")
    assert len(resolver.cache) == 1

    config.reload(settings.model_copy(update={"enable_tenant_scope": False}))

    assert len(resolver.cache) == 0
    assert resolver.resolve(principal, "documents").access_level == "owner"
