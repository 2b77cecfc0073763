from __future__ import annotations

from typing import Any, List

from tenantcrm.logging import get_logger
from tenantcrm.service.audit import AuditService
from tenantcrm.service.errors import ForbiddenError, NotFoundError, ValidationFailed
from tenantcrm.service.sessions import RequestContext
from tenantcrm.storage.common import ROLE_OWNER, TENANT_ROLES
from tenantcrm.storage.models import User

logger = get_logger(__name__)


class UserAdminService:
    """Tenant-scoped user administration."""

    def __init__(self, store: Any, audit: AuditService) -> None:
        self.store = store
        self.audit = audit

    def list_users(self, ctx: RequestContext, limit: int = 100) -> List[User]:
        return self.store.list_users(ctx.tenant_id, limit=limit)

    def get_profile(self, ctx: RequestContext) -> User:
        user = self.store.get_user(ctx.user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def change_role(self, ctx: RequestContext, user_id: str, role: str) -> User:
        if role not in TENANT_ROLES:
            raise ValidationFailed("Unknown role", detail={"field": "role"})
        if user_id == ctx.user_id:
            raise ForbiddenError("You cannot change your own role")
        target = self.store.get_user_in_tenant(ctx.tenant_id, user_id)
        if target is None:
            raise NotFoundError("User not found")
        if (ROLE_OWNER in (target.role, role)) and ctx.principal.role != ROLE_OWNER:
            raise ForbiddenError("Only an owner can grant or revoke the owner role")
        updated = self.store.update_user_role(ctx.tenant_id, user_id, role)
        logger.info("user_role_changed", tenant_id=ctx.tenant_id, user_id=user_id, role=role)
        self.audit.record_nowait(
            "users.role_changed",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="user",
            resource_id=user_id,
            details={"from": target.role, "to": role},
        )
        return updated

    def deactivate(self, ctx: RequestContext, user_id: str) -> User:
        if user_id == ctx.user_id:
            raise ForbiddenError("You cannot deactivate yourself")
        target = self.store.get_user_in_tenant(ctx.tenant_id, user_id)
        if target is None:
            raise NotFoundError("User not found")
        if target.role == ROLE_OWNER and ctx.principal.role != ROLE_OWNER:
            raise ForbiddenError("Only an owner can deactivate an owner")
        updated = self.store.deactivate_user(ctx.tenant_id, user_id)
        logger.info("user_deactivated", tenant_id=ctx.tenant_id, user_id=user_id)
        self.audit.record_nowait(
            "users.deactivated",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="user",
            resource_id=user_id,
        )
        return updated
