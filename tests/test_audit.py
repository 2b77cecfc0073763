"""Tests for audit trail sanitisation and background recording."""

import asyncio

from conftest import drain_background, login, register_tenant, replace_cookie
from tenantcrm.service.audit import AuditService, hash_value, sanitize_details
from tenantcrm.service.background import BackgroundRunner
from tenantcrm.storage.memory import MemoryStore


def test_sanitize_redacts_credentials_and_masks_email():
    details = sanitize_details(
        {
            "email": "Alice@Acme.com",
            "password": "hunter2",
            "refresh_token": "abc",
            "nested": {"reset_token": "xyz", "plan": "pro"},
        }
    )
    assert details["email"] == f"{hash_value('alice@acme.com')}@masked"
    assert details["password"] == "[REDACTED]"
    assert details["refresh_token"] == "[REDACTED]"
    assert details["nested"] == {"reset_token": "[REDACTED]", "plan": "pro"}


def test_sanitize_does_not_mutate_input():
    original = {"password": "hunter2"}
    sanitize_details(original)
    assert original == {"password": "hunter2"}


def test_entry_keeps_client_metadata():
    service = AuditService(MemoryStore(), BackgroundRunner())
    entry = service.build_entry(
        "auth.login.success",
        tenant_id="t1",
        ip_address="203.0.113.7",
        user_agent="curl/8" + "x" * 600,
        details={"password": "hunter2"},
    )
    assert entry.ip_address == "203.0.113.7"
    assert entry.user_agent.startswith("curl/8")
    assert len(entry.user_agent) == 512
    assert entry.details == {"password": "[REDACTED]"}


def test_entry_drops_unparseable_ip():
    entry = AuditService(MemoryStore(), BackgroundRunner()).build_entry(
        "auth.logout", ip_address="not-an-ip"
    )
    assert entry.ip_address is None


async def test_record_nowait_persists_after_drain():
    store = MemoryStore()
    runner = BackgroundRunner()
    service = AuditService(store, runner)

    service.record_nowait("tasks.created", tenant_id="t1", resource_type="task", resource_id="x")
    assert runner.pending == 1
    await runner.drain()

    assert [e.action for e in store.list_audit_logs("t1")] == ["tasks.created"]


async def test_failed_write_does_not_propagate(monkeypatch):
    store = MemoryStore()
    runner = BackgroundRunner()
    service = AuditService(store, runner)

    def broken(entry):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "append_audit_log", broken)
    service.record_nowait("auth.logout", tenant_id="t1")
    await runner.drain()
    await asyncio.sleep(0)
    assert runner.pending == 0


def test_record_without_loop_is_dropped():
    store = MemoryStore()
    service = AuditService(store, BackgroundRunner())
    service.record_nowait("auth.logout", tenant_id="t1")
    assert store.audit_logs == []


class TestAuditedFlows:
    def test_register_and_login_are_audited(self, client, runtime):
        register_tenant(client)
        client.cookies.clear()
        login(client, "a@acme.com")
        drain_background(client)

        entries = {e.action: e for e in runtime.store.audit_logs}
        assert set(entries) == {"auth.register", "auth.login.success"}
        assert entries["auth.login.success"].details["email"].endswith("@masked")

    def test_refresh_reuse_is_audited(self, client, runtime):
        register_tenant(client)
        stale_refresh = client.cookies.get("refresh_token")
        assert client.post("/api/v1/auth/refresh").status_code == 200

        replace_cookie(client, "refresh_token", stale_refresh)
        assert client.post("/api/v1/auth/refresh").status_code == 401
        drain_background(client)

        reuse = [e for e in runtime.store.audit_logs if e.action == "auth.refresh.reuse_detected"]
        assert len(reuse) == 1
        assert reuse[0].tenant_id == runtime.store.get_tenant_by_slug("acme").id
        assert all(r.is_revoked for r in runtime.store.refresh_tokens.values())
