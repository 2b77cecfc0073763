"""Unit tests for tenant resolution and the account lockout guard."""

from datetime import timedelta

import pytest

from tenantcrm.config import Settings
from tenantcrm.service.errors import (
    AccountLocked,
    InvalidCredentials,
    TenantAccessDenied,
    TenantNotFound,
    TenantNotResolved,
)
from tenantcrm.service.lockout import LockoutGuard
from tenantcrm.service.tenancy import TenantResolver, subdomain_from_host
from tenantcrm.storage.memory import MemoryStore
from tenantcrm.storage.models import utcnow


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def tenants(store):
    acme, alice = store.create_tenant_with_owner(
        name="Acme", slug="acme", email="a@acme.com", password_hash="x", first_name="Alice"
    )
    beta, bob = store.create_tenant_with_owner(
        name="Beta", slug="beta", email="b@beta.com", password_hash="x", first_name="Bob"
    )
    return {"acme": (acme, alice), "beta": (beta, bob)}


@pytest.fixture
def resolver(store):
    return TenantResolver(store, base_domain="crm.example.com")


class TestSubdomain:
    def test_with_base_domain(self):
        assert subdomain_from_host("acme.crm.example.com", "crm.example.com") == "acme"
        assert subdomain_from_host("acme.crm.example.com:8443", "crm.example.com") == "acme"

    def test_reserved_labels_are_ignored(self):
        assert subdomain_from_host("www.crm.example.com", "crm.example.com") is None
        assert subdomain_from_host("api.crm.example.com", "crm.example.com") is None

    def test_bare_host_has_no_subdomain(self):
        assert subdomain_from_host("crm.example.com", "crm.example.com") is None
        assert subdomain_from_host("localhost") is None
        assert subdomain_from_host(None) is None


class TestTenantResolver:
    def test_header_takes_precedence_over_host(self, resolver):
        headers = {"x-tenant-id": "beta", "host": "acme.crm.example.com"}
        assert resolver.extract_identifier(headers) == "beta"

    def test_host_subdomain_used_without_header(self, resolver):
        assert resolver.extract_identifier({"host": "acme.crm.example.com"}) == "acme"

    def test_user_tenant_used_without_identifier(self, resolver, tenants):
        acme, alice = tenants["acme"]
        tenant = resolver.resolve(
            user_id=alice.id, role=alice.role, user_tenant_id=acme.id, identifier=None
        )
        assert tenant.id == acme.id

    def test_matching_identifier_by_slug_or_id(self, resolver, tenants):
        acme, alice = tenants["acme"]
        for identifier in ("acme", acme.id):
            tenant = resolver.resolve(
                user_id=alice.id, role=alice.role, user_tenant_id=acme.id, identifier=identifier
            )
            assert tenant.id == acme.id

    def test_spoofed_identifier_is_rejected(self, resolver, tenants):
        acme, alice = tenants["acme"]
        beta, _ = tenants["beta"]
        with pytest.raises(TenantAccessDenied) as exc_info:
            resolver.resolve(
                user_id=alice.id, role=alice.role, user_tenant_id=acme.id, identifier=beta.id
            )
        assert exc_info.value.status_code == 403

    def test_unknown_identifier_is_not_found(self, resolver, tenants):
        acme, alice = tenants["acme"]
        with pytest.raises(TenantNotFound):
            resolver.resolve(
                user_id=alice.id, role=alice.role, user_tenant_id=acme.id, identifier="ghost"
            )

    def test_inactive_tenant_is_not_found(self, resolver, store, tenants):
        acme, alice = tenants["acme"]
        store.tenants[acme.id].is_active = False
        with pytest.raises(TenantNotFound):
            resolver.resolve(
                user_id=alice.id, role=alice.role, user_tenant_id=acme.id, identifier=None
            )

    def test_anonymous_requires_identifier(self, resolver, tenants):
        with pytest.raises(TenantNotResolved):
            resolver.resolve(user_id=None, role=None, user_tenant_id=None, identifier=None)
        tenant = resolver.resolve(user_id=None, role=None, user_tenant_id=None, identifier="beta")
        assert tenant.slug == "beta"

    def test_platform_user_selects_any_tenant(self, resolver, store, tenants):
        beta, _ = tenants["beta"]
        ops = store.create_user(
            email="ops@platform.io",
            password_hash="x",
            first_name="Ops",
            role="platform_owner",
            tenant_id=None,
        )
        tenant = resolver.resolve(
            user_id=ops.id, role=ops.role, user_tenant_id=None, identifier="beta"
        )
        assert tenant.id == beta.id
        with pytest.raises(TenantNotResolved):
            resolver.resolve(user_id=ops.id, role=ops.role, user_tenant_id=None, identifier=None)

    def test_tenant_user_without_tenant_is_denied(self, resolver):
        with pytest.raises(TenantAccessDenied):
            resolver.resolve(user_id="u1", role="manager", user_tenant_id=None, identifier=None)


class TestLockoutGuard:
    @pytest.fixture
    def guard(self, store):
        return LockoutGuard(store, Settings(jwt_secret="x" * 40))

    def test_locks_after_threshold(self, guard):
        for _ in range(4):
            assert guard.record_failure("a@acme.com", "acme") is None
        assert guard.record_failure("a@acme.com", "acme") is not None
        with pytest.raises(AccountLocked):
            guard.ensure_not_locked("a@acme.com", "acme")

    def test_lockout_is_indistinguishable_from_bad_password(self):
        locked = AccountLocked()
        assert isinstance(locked, InvalidCredentials)
        assert locked.message == InvalidCredentials().message
        assert locked.status_code == InvalidCredentials().status_code

    def test_keys_are_case_insensitive_and_per_slug(self, guard):
        for _ in range(5):
            guard.record_failure("A@Acme.com", "ACME")
        assert guard.locked_until("a@acme.com", "acme") is not None
        assert guard.locked_until("a@acme.com", "beta") is None

    def test_success_clears_lockout(self, guard):
        for _ in range(5):
            guard.record_failure("a@acme.com", "acme")
        guard.record_success("a@acme.com", "acme")
        guard.ensure_not_locked("a@acme.com", "acme")

    def test_failures_outside_window_do_not_count(self, guard, store):
        for _ in range(4):
            guard.record_failure("a@acme.com", "acme")
        for attempt in store.login_attempts:
            attempt.attempted_at = utcnow() - timedelta(minutes=16)
        assert guard.record_failure("a@acme.com", "acme") is None

    def test_expired_lock_allows_login(self, guard, store):
        for _ in range(5):
            guard.record_failure("a@acme.com", "acme")
        for lockout in store.lockouts.values():
            lockout.locked_until = utcnow() - timedelta(seconds=1)
        guard.ensure_not_locked("a@acme.com", "acme")
