"""Integration tests for the authentication flows over HTTP.

Covers registration, login, lockout, refresh rotation and reuse detection,
logout idempotency, global revocation and password changes.
"""

import statistics
import time
from datetime import timedelta

from conftest import (
    STRONG_PASSWORD,
    add_member,
    csrf_headers,
    drain_background,
    login,
    register_tenant,
    replace_cookie,
)
from tenantcrm.service.auth import hash_reset_token
from tenantcrm.storage.common import MAX_ACTIVE_REFRESH_TOKENS
from tenantcrm.storage.models import utcnow


class TestRegistration:
    def test_register_creates_tenant_and_owner(self, client, runtime):
        response = register_tenant(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["role"] == "owner"
        assert body["data"]["user"]["email"] == "a@acme.com"
        assert body["data"]["tenant"]["slug"] == "acme"
        assert "password_hash" not in body["data"]["user"]
        for cookie in ("access_token", "refresh_token", "tenant_id", "csrf_token"):
            assert client.cookies.get(cookie)
        assert client.cookies.get("tenant_id") == body["data"]["tenant"]["id"]

    def test_duplicate_slug_conflicts(self, client):
        register_tenant(client)
        response = register_tenant(client, email="other@acme.com")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_duplicate_email_conflicts_across_tenants(self, client):
        register_tenant(client)
        response = register_tenant(client, slug="acme-two")
        assert response.status_code == 409

    def test_weak_password_is_field_level_validation_error(self, client):
        response = register_tenant(client, password="short")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert any(d["field"] == "password" for d in error["details"])

    def test_invalid_slug_is_rejected(self, client):
        response = register_tenant(client, slug="-bad-")
        assert response.status_code == 400


class TestLogin:
    def test_register_then_login_scenario(self, client):
        register_tenant(client)
        client.cookies.clear()

        response = login(client, "a@acme.com")

        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "owner"
        set_cookies = response.headers.get_list("set-cookie")
        assert any(c.startswith("access_token=") and "HttpOnly" in c for c in set_cookies)
        assert any(c.startswith("refresh_token=") and "HttpOnly" in c for c in set_cookies)
        assert any(c.startswith("csrf_token=") and "HttpOnly" not in c for c in set_cookies)

    def test_email_is_case_insensitive(self, client):
        register_tenant(client)
        client.cookies.clear()
        assert login(client, "A@ACME.com").status_code == 200

    def test_failures_share_one_generic_message(self, client):
        register_tenant(client)
        client.cookies.clear()

        wrong_password = login(client, "a@acme.com", password="Wr0ngPassword")
        unknown_user = login(client, "nobody@acme.com")
        unknown_tenant = login(client, "a@acme.com", slug="ghost")

        for response in (wrong_password, unknown_user, unknown_tenant):
            assert response.status_code == 401
            assert response.json()["error"] == {
                "code": "unauthorized",
                "message": "Invalid credentials",
                "details": None,
            }

    def test_lockout_after_five_failures_scenario(self, client):
        register_tenant(client)
        client.cookies.clear()

        for _ in range(5):
            assert login(client, "a@acme.com", password="Wr0ngPassword").status_code == 401

        response = login(client, "a@acme.com")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid credentials"
        assert client.cookies.get("access_token") is None

    def test_lockout_is_scoped_to_tenant_slug(self, client, runtime):
        register_tenant(client)
        client.cookies.clear()
        for _ in range(5):
            login(client, "a@acme.com", password="Wr0ngPassword", slug="other")
        assert login(client, "a@acme.com").status_code == 200

    def test_locked_login_costs_a_password_verification(self, client, runtime, monkeypatch):
        register_tenant(client)
        client.cookies.clear()

        def timed_login():
            started = time.perf_counter()
            assert login(client, "a@acme.com", password="Wr0ngPassword").status_code == 401
            return time.perf_counter() - started

        wrong_password = [timed_login() for _ in range(5)]
        assert runtime.auth.lockout.locked_until("a@acme.com", "acme") is not None

        decoys = []
        real_decoy = runtime.hasher.verify_decoy
        monkeypatch.setattr(
            runtime.hasher, "verify_decoy", lambda pw: decoys.append(pw) or real_decoy(pw)
        )
        locked = [timed_login() for _ in range(5)]

        assert len(decoys) == 5
        assert statistics.median(locked) >= statistics.median(wrong_password) * 0.5

    def test_inactive_user_cannot_login(self, client, runtime):
        register_tenant(client)
        client.cookies.clear()
        tenant = runtime.store.get_tenant_by_slug("acme")
        member = add_member(runtime, tenant.id, "m@acme.com")
        runtime.store.deactivate_user(tenant.id, member.id)
        assert login(client, "m@acme.com").status_code == 401

    def test_login_rate_limit(self, client, runtime):
        runtime.settings.login_rate_limit_per_minute = 2
        register_tenant(client)
        client.cookies.clear()
        login(client, "a@acme.com")
        login(client, "a@acme.com")
        response = login(client, "a@acme.com")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers.get("retry-after")


class TestMe:
    def test_me_returns_live_profile(self, client):
        register_tenant(client)
        response = client.get("/api/v1/auth/me")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["email"] == "a@acme.com"
        assert data["tenant"]["slug"] == "acme"
        assert "users:manage" in data["permissions"]

    def test_me_requires_authentication(self, client):
        response = client.get("/api/v1/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"

    def test_bearer_header_is_accepted_outside_production(self, client):
        token = register_tenant(client).json()["data"]["access_token"]
        client.cookies.clear()
        response = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_garbage_token_is_generic_401(self, client):
        response = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer not.a.jwt"})
        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "Invalid or expired token",
            "details": None,
        }


class TestRefresh:
    def test_refresh_rotates_token(self, client):
        register_tenant(client)
        old_refresh = client.cookies.get("refresh_token")

        response = client.post("/api/v1/auth/refresh")

        assert response.status_code == 200
        new_refresh = client.cookies.get("refresh_token")
        assert new_refresh and new_refresh != old_refresh

    def test_refresh_works_with_expired_access_cookie(self, client, runtime):
        register_tenant(client)
        tenant = runtime.store.get_tenant_by_slug("acme")
        user = runtime.store.get_user_by_email_and_tenant("a@acme.com", tenant.id)
        runtime.settings.access_token_ttl_minutes = -5
        replace_cookie(client, "access_token", runtime.tokens.issue(user))
        runtime.settings.access_token_ttl_minutes = 15

        assert client.get("/api/v1/auth/me").status_code == 401
        assert client.post("/api/v1/auth/refresh").status_code == 200
        assert client.get("/api/v1/auth/me").status_code == 200

    def test_expired_refresh_cookie_scenario(self, client, runtime):
        register_tenant(client)
        for record in runtime.store.refresh_tokens.values():
            record.expires_at = utcnow() - timedelta(minutes=1)

        response = client.post("/api/v1/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"
        assert response.headers.get_list("set-cookie") == []

    def test_sessions_beyond_the_cap_evict_the_oldest(self, client, runtime):
        register_tenant(client)
        sessions = [client.cookies.get("refresh_token")]
        for _ in range(MAX_ACTIVE_REFRESH_TOKENS):
            assert login(client, "a@acme.com").status_code == 200
            sessions.append(client.cookies.get("refresh_token"))

        active = [r for r in runtime.store.refresh_tokens.values() if not r.is_revoked]
        assert len(active) == MAX_ACTIVE_REFRESH_TOKENS

        replace_cookie(client, "refresh_token", sessions[1])
        assert client.post("/api/v1/auth/refresh").status_code == 200

        replace_cookie(client, "refresh_token", sessions[0])
        response = client.post("/api/v1/auth/refresh")
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token has been revoked"
        drain_background(client)
        assert not any(e.action == "auth.refresh.reuse_detected" for e in runtime.store.audit_logs)
        # eviction of one session leaves the others usable
        replace_cookie(client, "refresh_token", sessions[-1])
        assert client.post("/api/v1/auth/refresh").status_code == 200

    def test_refresh_without_cookies(self, client):
        response = client.post("/api/v1/auth/refresh")
        assert response.status_code == 401
        assert response.headers.get_list("set-cookie") == []

    def test_reused_refresh_token_revokes_family(self, client, runtime):
        register_tenant(client)
        stolen = client.cookies.get("refresh_token")
        assert client.post("/api/v1/auth/refresh").status_code == 200
        current = client.cookies.get("refresh_token")

        replace_cookie(client, "refresh_token", stolen)
        reuse = client.post("/api/v1/auth/refresh")
        assert reuse.status_code == 401
        assert reuse.json()["error"]["message"] == "Token has been revoked"

        replace_cookie(client, "refresh_token", current)
        assert client.post("/api/v1/auth/refresh").status_code == 401

    def test_refresh_fails_for_deactivated_user(self, client, runtime):
        register_tenant(client)
        tenant = runtime.store.get_tenant_by_slug("acme")
        member = add_member(runtime, tenant.id, "m@acme.com")
        client.cookies.clear()
        login(client, "m@acme.com")
        runtime.store.users[member.id].is_active = False

        assert client.post("/api/v1/auth/refresh").status_code == 401


class TestLogout:
    def test_logout_is_idempotent(self, client):
        register_tenant(client)

        first = client.post("/api/v1/auth/logout", headers=csrf_headers(client))
        assert first.status_code == 200
        assert client.cookies.get("access_token") is None
        assert client.cookies.get("refresh_token") is None

        # Cookies are gone; the CSRF pair is re-issued by the health check
        client.get("/api/v1/health")
        second = client.post("/api/v1/auth/logout", headers=csrf_headers(client))
        assert second.status_code == 200
        assert second.json()["status"] == "ok"

    def test_logout_revokes_refresh_tokens(self, client, runtime):
        register_tenant(client)
        refresh = client.cookies.get("refresh_token")
        tenant_id = client.cookies.get("tenant_id")
        access = client.cookies.get("access_token")

        client.post("/api/v1/auth/logout", headers=csrf_headers(client))

        replace_cookie(client, "refresh_token", refresh)
        replace_cookie(client, "tenant_id", tenant_id)
        replace_cookie(client, "access_token", access)
        assert client.post("/api/v1/auth/refresh").status_code == 401
        assert all(r.is_revoked for r in runtime.store.refresh_tokens.values())


class TestGlobalRevoke:
    def test_revoke_all_invalidates_outstanding_access_tokens(self, client, runtime):
        token = register_tenant(client).json()["data"]["access_token"]
        headers = {"Authorization": f"Bearer {token}"}
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200

        user = next(iter(runtime.store.users.values()))
        runtime.tokens.revoke_all_for_user(user.id)

        response = client.get("/api/v1/auth/me", headers=headers)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Token has been revoked"

    def test_revoke_all_endpoint(self, client):
        token = register_tenant(client).json()["data"]["access_token"]
        response = client.post("/api/v1/auth/sessions/revoke-all", headers=csrf_headers(client))
        assert response.status_code == 200
        assert response.json()["data"]["token_version"] == 1
        stale = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert stale.status_code == 401


class TestPasswordFlows:
    def test_forgot_password_response_is_identical(self, client):
        register_tenant(client)
        known = client.post(
            "/api/v1/auth/password/forgot", json={"email": "a@acme.com", "tenantSlug": "acme"}
        )
        unknown = client.post(
            "/api/v1/auth/password/forgot", json={"email": "ghost@acme.com", "tenantSlug": "acme"}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"] == unknown.json()["data"]

    def test_forgot_password_is_padded_for_every_account(self, client, runtime):
        register_tenant(client)
        runtime.settings.password_reset_min_delay_ms = 200
        runtime.settings.password_reset_max_delay_ms = 200

        for email in ("a@acme.com", "ghost@acme.com"):
            started = time.perf_counter()
            response = client.post(
                "/api/v1/auth/password/forgot", json={"email": email, "tenantSlug": "acme"}
            )
            assert response.status_code == 200
            assert time.perf_counter() - started >= 0.2

    def test_forgot_password_stores_only_digest(self, client, runtime):
        register_tenant(client)
        client.post(
            "/api/v1/auth/password/forgot", json={"email": "a@acme.com", "tenantSlug": "acme"}
        )
        [token] = runtime.store.reset_tokens.values()
        assert len(token.token_hash) == 64
        assert token.expires_at - utcnow() <= timedelta(minutes=60)

    def test_reset_password_is_single_use(self, client, runtime):
        register_tenant(client)
        user = next(iter(runtime.store.users.values()))
        raw = "a" * 64
        runtime.store.create_password_reset_token(
            user_id=user.id, tenant_id=user.tenant_id, token_hash=hash_reset_token(raw), ttl_minutes=60
        )
        body = {"token": raw, "newPassword": "N3w-Passw0rd"}

        assert client.post("/api/v1/auth/password/reset", json=body).status_code == 200
        second = client.post("/api/v1/auth/password/reset", json=body)
        assert second.status_code == 400
        assert second.json()["error"]["details"] == {"field": "token"}

        client.cookies.clear()
        assert login(client, "a@acme.com", password="N3w-Passw0rd").status_code == 200
        assert runtime.store.get_user(user.id).token_version == 1

    def test_change_password_revokes_sessions(self, client):
        token = register_tenant(client).json()["data"]["access_token"]
        response = client.post(
            "/api/v1/auth/password/change",
            json={"currentPassword": STRONG_PASSWORD, "newPassword": "N3w-Passw0rd"},
            headers=csrf_headers(client),
        )
        assert response.status_code == 200
        assert client.cookies.get("access_token") is None
        stale = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert stale.status_code == 401
        assert login(client, "a@acme.com", password="N3w-Passw0rd").status_code == 200

    def test_change_password_wrong_current(self, client):
        register_tenant(client)
        response = client.post(
            "/api/v1/auth/password/change",
            json={"currentPassword": "Wr0ngPassword", "newPassword": "N3w-Passw0rd"},
            headers=csrf_headers(client),
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "current_password"}
