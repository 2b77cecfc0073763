from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TenantScopeViolation(RuntimeError):
    """Raised when a tenant-scoped statement is attempted without a tenant id."""


def require_tenant_id(tenant_id: Optional[str]) -> str:
    if not tenant_id:
        raise TenantScopeViolation("tenant-scoped storage call without tenant_id")
    return tenant_id


__all__ = ["ConstraintViolation", "TenantScopeViolation", "require_tenant_id"]
