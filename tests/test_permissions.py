"""Unit tests for permission decisions and the module guard."""

from types import SimpleNamespace

import pytest

from tenantcrm.api.security import all_permissions
from tenantcrm.service.errors import InsufficientPermission, ModuleDisabled, OwnershipDenied
from tenantcrm.service.permissions import (
    Decision,
    enforce,
    require_all,
    require_any,
    require_module,
    require_permission,
    require_permission_with_ownership,
)
from tenantcrm.storage.common import DEFAULT_ROLE_PERMISSIONS
from tenantcrm.storage.models import Tenant

MANAGER = DEFAULT_ROLE_PERMISSIONS["manager"]
ADMIN = DEFAULT_ROLE_PERMISSIONS["admin"]


class TestRequireChecks:
    def test_require_permission(self):
        assert require_permission(ADMIN, "users:manage").allowed
        denied = require_permission(MANAGER, "users:manage")
        assert not denied.allowed
        assert "users:manage" in denied.reason

    def test_require_any(self):
        assert require_any(MANAGER, "tasks:read:all", "tasks:read:own").allowed
        assert not require_any(MANAGER, "audit:read", "users:manage").allowed

    def test_require_all(self):
        assert require_all(ADMIN, "users:read", "users:manage").allowed
        assert not require_all(MANAGER, "tasks:create", "users:manage").allowed

    def test_all_permissions_check_needs_every_name(self):
        check = all_permissions("users:create", "users:manage")
        assert check(SimpleNamespace(principal=SimpleNamespace(permissions=ADMIN)), None).allowed
        manage_only = SimpleNamespace(permissions=frozenset({"users:manage"}))
        denied = check(SimpleNamespace(principal=manage_only), None)
        assert not denied.allowed
        assert denied.reason == "Insufficient permissions. Required: users:create, users:manage"

    def test_denial_raises_insufficient_permission(self):
        with pytest.raises(InsufficientPermission) as exc_info:
            require_permission(MANAGER, "audit:read").raise_if_denied()
        assert exc_info.value.status_code == 403


class TestOwnership:
    def test_all_scope_skips_owner_lookup(self):
        def lookup():
            raise AssertionError("owner lookup must not run for :all holders")

        decision = require_permission_with_ownership(
            ADMIN, "tasks:update:all", "tasks:update:own", user_id="u1", get_owner_id=lookup
        )
        assert decision.allowed

    def test_own_scope_allows_owner(self):
        decision = require_permission_with_ownership(
            MANAGER, "tasks:update:all", "tasks:update:own", user_id="u1", get_owner_id=lambda: "u1"
        )
        assert decision.allowed

    def test_own_scope_denies_other_owner(self):
        decision = require_permission_with_ownership(
            MANAGER, "tasks:update:all", "tasks:update:own", user_id="u1", get_owner_id=lambda: "u2"
        )
        assert not decision.allowed
        assert decision.error is OwnershipDenied

    def test_missing_resource_looks_like_foreign_resource(self):
        missing = require_permission_with_ownership(
            MANAGER, "tasks:update:all", "tasks:update:own", user_id="u1", get_owner_id=lambda: None
        )
        foreign = require_permission_with_ownership(
            MANAGER, "tasks:update:all", "tasks:update:own", user_id="u1", get_owner_id=lambda: "u2"
        )
        assert missing == foreign

    def test_no_scope_at_all(self):
        decision = require_permission_with_ownership(
            frozenset(), "tasks:update:all", "tasks:update:own", user_id="u1", get_owner_id=lambda: "u1"
        )
        assert decision.error is InsufficientPermission


class TestModuleGuard:
    def _tenant(self, settings):
        return Tenant(id="t1", name="Acme", slug="acme", settings=settings)

    def test_modules_enabled_by_default(self):
        assert require_module(self._tenant({}), "tasks").allowed

    def test_explicitly_disabled_module(self):
        decision = require_module(self._tenant({"modules": {"tasks": False}}), "tasks")
        assert not decision.allowed
        assert decision.error is ModuleDisabled


class TestEnforce:
    def test_stops_at_first_denial(self):
        calls = []

        def check(name, allowed):
            def run():
                calls.append(name)
                return Decision.allow() if allowed else Decision.deny(f"{name} denied")

            return run

        with pytest.raises(InsufficientPermission, match="second denied"):
            enforce([check("first", True), check("second", False), check("third", True)])
        assert calls == ["first", "second"]

    def test_all_allowed(self):
        enforce([lambda: Decision.allow(), lambda: Decision.allow()])
