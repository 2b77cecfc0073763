from __future__ import annotations

import asyncio
import hashlib
from typing import Any, Dict, List, Optional, Protocol

from tenantcrm.logging import get_logger, redact_sensitive
from tenantcrm.service.background import BackgroundRunner
from tenantcrm.storage.common import parse_ip_address
from tenantcrm.storage.models import AuditLogEntry, new_id

logger = get_logger(__name__)

MAX_USER_AGENT_LENGTH = 512


class AuditStore(Protocol):
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_logs(self, tenant_id: str, limit: int = 100) -> List[AuditLogEntry]: ...


def hash_value(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:16]


def sanitize_details(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Redact credentials and pseudonymise email addresses."""
    sanitized = redact_sensitive(dict(details or {}))
    email = sanitized.get("email")
    if isinstance(email, str):
        sanitized["email"] = f"{hash_value(email.lower())}@masked"
    return sanitized


class AuditService:
    """Append-only audit trail writer."""

    def __init__(self, store: AuditStore, background: BackgroundRunner) -> None:
        self.store = store
        self.background = background

    def build_entry(
        self,
        action: str,
        *,
        tenant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        return AuditLogEntry(
            id=new_id(),
            action=action,
            tenant_id=tenant_id,
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            details=sanitize_details(details),
            ip_address=parse_ip_address(ip_address),
            user_agent=user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None,
        )

    async def record(self, action: str, **fields: Any) -> AuditLogEntry:
        entry = self.build_entry(action, **fields)
        await asyncio.to_thread(self.store.append_audit_log, entry)
        return entry

    def record_nowait(self, action: str, **fields: Any) -> None:
        """Schedule ``record`` without waiting; failures are only logged."""
        self.background.spawn(self.record(action, **fields), name=f"audit:{action}")

    def list_for_tenant(self, tenant_id: str, limit: int = 100) -> List[AuditLogEntry]:
        return self.store.list_audit_logs(tenant_id, limit=limit)
