"""HTTP tests for tenant isolation, ownership scoping and user administration."""

import pytest

from conftest import add_member, csrf_headers, drain_background, login, register_tenant


@pytest.fixture
def two_tenants(client, runtime):
    """Register acme and beta; the client ends up signed in as the acme owner."""
    register_tenant(client, slug="beta", email="b@beta.com", company_name="Beta LLC")
    client.cookies.clear()
    register_tenant(client)
    acme = runtime.store.get_tenant_by_slug("acme")
    beta = runtime.store.get_tenant_by_slug("beta")
    return acme, beta


def _create_task(client, title="Call customer", **extra):
    return client.post(
        "/api/v1/tasks", json={"title": title, **extra}, headers=csrf_headers(client)
    )


class TestTenantIsolation:
    def test_spoofed_tenant_header_is_forbidden(self, client, two_tenants):
        _, beta = two_tenants
        for identifier in (beta.id, beta.slug):
            response = client.get("/api/v1/tasks", headers={"X-Tenant-Id": identifier})
            assert response.status_code == 403
            assert response.json()["error"]["message"] == (
                "Access denied: cannot access other tenant resources"
            )

    def test_matching_tenant_header_is_allowed(self, client, two_tenants):
        acme, _ = two_tenants
        response = client.get("/api/v1/tasks", headers={"X-Tenant-Id": acme.slug})
        assert response.status_code == 200

    def test_other_tenant_task_is_unreachable(self, client, runtime, two_tenants):
        acme, beta = two_tenants
        beta_owner = runtime.store.get_user_by_email_and_tenant("b@beta.com", beta.id)
        foreign = runtime.store.create_task(beta.id, title="Beta secret", created_by=beta_owner.id)

        listing = client.get("/api/v1/tasks").json()["data"]["items"]
        assert all(item["id"] != foreign.id for item in listing)

        update = client.patch(
            f"/api/v1/tasks/{foreign.id}", json={"title": "pwned"}, headers=csrf_headers(client)
        )
        delete = client.delete(f"/api/v1/tasks/{foreign.id}", headers=csrf_headers(client))
        assert update.status_code in (403, 404)
        assert delete.status_code in (403, 404)
        assert runtime.store.get_task(beta.id, foreign.id).title == "Beta secret"

    def test_users_listing_is_tenant_scoped(self, client, two_tenants):
        emails = {u["email"] for u in client.get("/api/v1/users").json()["data"]["items"]}
        assert emails == {"a@acme.com"}

    def test_audit_logs_are_tenant_scoped(self, client, runtime, two_tenants):
        acme, beta = two_tenants
        drain_background(client)
        items = client.get("/api/v1/audit-logs").json()["data"]["items"]
        assert items
        assert {item["tenant_id"] for item in items} == {acme.id}

    def test_cannot_assign_task_to_other_tenant_user(self, client, runtime, two_tenants):
        _, beta = two_tenants
        beta_owner = runtime.store.get_user_by_email_and_tenant("b@beta.com", beta.id)
        response = _create_task(client, assignedTo=beta_owner.id)
        assert response.status_code == 409


class TestOwnershipScoping:
    @pytest.fixture
    def manager_setup(self, client, runtime):
        register_tenant(client)
        acme = runtime.store.get_tenant_by_slug("acme")
        owner = runtime.store.get_user_by_email_and_tenant("a@acme.com", acme.id)
        manager = add_member(runtime, acme.id, "m@acme.com")
        own_task = runtime.store.create_task(
            acme.id, title="Mine", created_by=owner.id, assigned_to=manager.id
        )
        other_task = runtime.store.create_task(
            acme.id, title="Theirs", created_by=owner.id, assigned_to=owner.id
        )
        client.cookies.clear()
        assert login(client, "m@acme.com").status_code == 200
        return own_task, other_task

    def test_manager_updates_own_task(self, client, manager_setup):
        own_task, _ = manager_setup
        response = client.patch(
            f"/api/v1/tasks/{own_task.id}",
            json={"status": "done"},
            headers=csrf_headers(client),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "done"

    def test_manager_cannot_update_other_task(self, client, manager_setup):
        _, other_task = manager_setup
        response = client.patch(
            f"/api/v1/tasks/{other_task.id}",
            json={"status": "done"},
            headers=csrf_headers(client),
        )
        assert response.status_code == 403
        assert response.json()["error"]["message"] == (
            "Access denied. You can only access your own resources."
        )

    def test_missing_task_is_indistinguishable_from_foreign(self, client, manager_setup):
        response = client.patch(
            "/api/v1/tasks/00000000-0000-0000-0000-000000000000",
            json={"status": "done"},
            headers=csrf_headers(client),
        )
        assert response.status_code == 403

    def test_manager_lists_only_assigned_tasks(self, client, manager_setup):
        own_task, _ = manager_setup
        items = client.get("/api/v1/tasks").json()["data"]["items"]
        assert [item["id"] for item in items] == [own_task.id]

    def test_manager_lacks_admin_permissions(self, client, manager_setup):
        assert client.get("/api/v1/users").status_code == 403
        assert client.get("/api/v1/audit-logs").status_code == 403

    def test_owner_sees_every_task_and_gets_404_for_missing(self, client, runtime, manager_setup):
        client.cookies.clear()
        login(client, "a@acme.com")
        assert len(client.get("/api/v1/tasks").json()["data"]["items"]) == 2
        response = client.delete(
            "/api/v1/tasks/00000000-0000-0000-0000-000000000000", headers=csrf_headers(client)
        )
        assert response.status_code == 404


class TestTasks:
    def test_create_defaults_assignee_to_creator(self, client, runtime):
        user = register_tenant(client).json()["data"]["user"]
        response = _create_task(client, description="follow up")
        assert response.status_code == 201
        data = response.json()["data"]
        assert data["assigned_to"] == user["id"]
        assert data["created_by"] == user["id"]
        assert data["status"] == "open"

    def test_delete_task(self, client):
        register_tenant(client)
        task_id = _create_task(client).json()["data"]["id"]
        assert client.delete(f"/api/v1/tasks/{task_id}", headers=csrf_headers(client)).status_code == 200
        assert client.get("/api/v1/tasks").json()["data"]["items"] == []

    def test_empty_update_is_rejected(self, client):
        register_tenant(client)
        task_id = _create_task(client).json()["data"]["id"]
        response = client.patch(f"/api/v1/tasks/{task_id}", json={}, headers=csrf_headers(client))
        assert response.status_code == 400

    def test_disabled_module_is_forbidden(self, client):
        register_tenant(client)
        update = client.put(
            "/api/v1/tenants/current/settings",
            json={"modules": {"tasks": False}},
            headers=csrf_headers(client),
        )
        assert update.status_code == 200
        response = client.get("/api/v1/tasks")
        assert response.status_code == 403
        assert "tasks module" in response.json()["error"]["message"]
        assert client.get("/api/v1/auth/me").status_code == 200


class TestUserAdministration:
    @pytest.fixture
    def member(self, client, runtime):
        register_tenant(client)
        acme = runtime.store.get_tenant_by_slug("acme")
        return add_member(runtime, acme.id, "m@acme.com")

    def test_owner_promotes_member(self, client, runtime, member):
        response = client.patch(
            f"/api/v1/users/{member.id}/role", json={"role": "admin"}, headers=csrf_headers(client)
        )
        assert response.status_code == 200
        assert response.json()["data"]["role"] == "admin"
        assert runtime.store.get_user(member.id).token_version == 1

    def test_role_change_invalidates_member_tokens(self, client, runtime, member):
        member_token = runtime.tokens.issue(runtime.store.get_user(member.id))
        client.patch(
            f"/api/v1/users/{member.id}/role", json={"role": "admin"}, headers=csrf_headers(client)
        )
        stale = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {member_token}"})
        assert stale.status_code == 401

    def test_cannot_change_own_role(self, client, runtime):
        user_id = register_tenant(client).json()["data"]["user"]["id"]
        response = client.patch(
            f"/api/v1/users/{user_id}/role", json={"role": "manager"}, headers=csrf_headers(client)
        )
        assert response.status_code == 403

    def test_unknown_role_is_validation_error(self, client, member):
        response = client.patch(
            f"/api/v1/users/{member.id}/role", json={"role": "platform_owner"}, headers=csrf_headers(client)
        )
        assert response.status_code == 400

    def test_admin_cannot_grant_owner(self, client, runtime, member):
        acme = runtime.store.get_tenant_by_slug("acme")
        add_member(runtime, acme.id, "admin@acme.com", role="admin")
        client.cookies.clear()
        login(client, "admin@acme.com")
        response = client.patch(
            f"/api/v1/users/{member.id}/role", json={"role": "owner"}, headers=csrf_headers(client)
        )
        assert response.status_code == 403

    def test_deactivate_revokes_everything(self, client, runtime, member):
        acme = runtime.store.get_tenant_by_slug("acme")
        member_token = runtime.tokens.issue(runtime.store.get_user(member.id))
        runtime.tokens.issue_refresh(member.id, acme.id)

        response = client.post(
            f"/api/v1/users/{member.id}/deactivate", headers=csrf_headers(client)
        )

        assert response.status_code == 200
        assert response.json()["data"]["is_active"] is False
        stale = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {member_token}"})
        assert stale.status_code == 401
        tokens = [r for r in runtime.store.refresh_tokens.values() if r.user_id == member.id]
        assert tokens and all(r.is_revoked for r in tokens)

    def test_unknown_user_is_not_found(self, client, member):
        response = client.post(
            "/api/v1/users/00000000-0000-0000-0000-000000000000/deactivate",
            headers=csrf_headers(client),
        )
        assert response.status_code == 404


class TestTenantSettings:
    def test_owner_reads_current_tenant(self, client):
        register_tenant(client)
        response = client.get("/api/v1/tenants/current")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["slug"] == "acme"
        assert data["is_active"] is True

    def test_update_merges_module_flags_and_is_audited(self, client, runtime):
        register_tenant(client)
        acme = runtime.store.get_tenant_by_slug("acme")
        runtime.store.update_tenant_settings(acme.id, {"modules": {"billing": False}, "theme": "dark"})

        response = client.put(
            "/api/v1/tenants/current/settings",
            json={"modules": {"tasks": False}, "timezone": "UTC"},
            headers=csrf_headers(client),
        )

        assert response.status_code == 200
        settings = response.json()["data"]["settings"]
        assert settings == {
            "modules": {"billing": False, "tasks": False},
            "theme": "dark",
            "timezone": "UTC",
        }
        drain_background(client)
        entry = next(e for e in runtime.store.audit_logs if e.action == "tenant.settings.update")
        assert entry.tenant_id == acme.id
        assert entry.details == {"keys": ["modules", "timezone"]}

    def test_reenabling_a_module_restores_access(self, client):
        register_tenant(client)
        for enabled, expected in ((False, 403), (True, 200)):
            client.put(
                "/api/v1/tenants/current/settings",
                json={"modules": {"tasks": enabled}},
                headers=csrf_headers(client),
            )
            assert client.get("/api/v1/tasks").status_code == expected

    def test_admin_can_read_but_not_manage_settings(self, client, runtime):
        register_tenant(client)
        acme = runtime.store.get_tenant_by_slug("acme")
        add_member(runtime, acme.id, "admin@acme.com", role="admin")
        client.cookies.clear()
        login(client, "admin@acme.com")

        assert client.get("/api/v1/tenants/current").status_code == 200
        response = client.put(
            "/api/v1/tenants/current/settings",
            json={"modules": {"tasks": False}},
            headers=csrf_headers(client),
        )
        assert response.status_code == 403
        assert runtime.store.get_tenant(acme.id).module_enabled("tasks")

    def test_empty_or_malformed_update_is_rejected(self, client):
        register_tenant(client)
        for body in ({}, {"modules": {"tasks": "maybe"}}):
            response = client.put(
                "/api/v1/tenants/current/settings", json=body, headers=csrf_headers(client)
            )
            assert response.status_code == 400


class TestPlatformOwner:
    def test_platform_owner_must_pick_a_tenant(self, client, runtime):
        register_tenant(client)
        acme = runtime.store.get_tenant_by_slug("acme")
        runtime.store.create_user(
            email="ops@platform.io",
            password_hash=runtime.hasher.hash("Str0ng!Pass"),
            first_name="Ops",
            role="platform_owner",
            tenant_id=None,
        )
        client.cookies.clear()
        response = login(client, "ops@platform.io", slug=None)
        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None

        assert client.get("/api/v1/users").status_code == 400
        scoped = client.get("/api/v1/users", headers={"X-Tenant-Id": acme.id})
        assert scoped.status_code == 200

    def test_platform_owner_gets_no_refresh_token_with_a_slug(self, client, runtime):
        register_tenant(client)
        runtime.store.create_user(
            email="ops@platform.io",
            password_hash=runtime.hasher.hash("Str0ng!Pass"),
            first_name="Ops",
            role="platform_owner",
            tenant_id=None,
        )
        client.cookies.clear()
        platform_user = runtime.store.get_platform_user_by_email("ops@platform.io")

        response = login(client, "ops@platform.io", slug="acme")

        assert response.status_code == 200
        assert client.cookies.get("refresh_token") is None
        assert not [r for r in runtime.store.refresh_tokens.values() if r.user_id == platform_user.id]
