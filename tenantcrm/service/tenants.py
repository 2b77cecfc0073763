from __future__ import annotations

from typing import Any, Dict

from tenantcrm.logging import get_logger
from tenantcrm.service.audit import AuditService
from tenantcrm.service.errors import NotFoundError, ValidationFailed
from tenantcrm.service.sessions import RequestContext
from tenantcrm.storage.models import Tenant

logger = get_logger(__name__)


def merge_settings(current: Dict[str, Any], changes: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge, except ``modules`` whose flags merge key by key."""
    merged = dict(current or {})
    for key, value in changes.items():
        if key == "modules":
            if not isinstance(value, dict):
                raise ValidationFailed("modules must be an object", detail={"field": "modules"})
            modules = dict(merged.get("modules") or {})
            modules.update(value)
            merged["modules"] = modules
        else:
            merged[key] = value
    return merged


class TenantSettingsService:
    """Settings updates for the caller's own tenant."""

    def __init__(self, store: Any, audit: AuditService) -> None:
        self.store = store
        self.audit = audit

    def update_settings(self, ctx: RequestContext, changes: Dict[str, Any]) -> Tenant:
        merged = merge_settings(ctx.tenant.settings, changes)
        tenant = self.store.update_tenant_settings(ctx.tenant_id, merged)
        if tenant is None:
            raise NotFoundError("Tenant not found")
        logger.info("tenant_settings_updated", tenant_id=ctx.tenant_id, keys=sorted(changes))
        self.audit.record_nowait(
            "tenant.settings.update",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="tenant",
            resource_id=ctx.tenant_id,
            details={"keys": sorted(changes)},
        )
        return tenant
