from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Tenant:
    id: str
    name: str
    slug: str
    is_active: bool = True
    settings: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def module_enabled(self, module: str) -> bool:
        """Modules are on unless the tenant explicitly switched them off."""
        modules = (self.settings or {}).get("modules") or {}
        return modules.get(module) is not False

    def public_view(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "slug": self.slug}


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: Optional[str] = None
    role: str = "manager"
    # None only for platform-level users
    tenant_id: Optional[str] = None
    is_active: bool = True
    token_version: int = 0
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "role": self.role,
            "tenant_id": self.tenant_id,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
        }


@dataclass
class RefreshTokenRecord:
    id: str
    user_id: str
    tenant_id: str
    token_hash: str
    family_id: str
    expires_at: datetime
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        tenant_id: str,
        token_hash: str,
        *,
        ttl_minutes: int,
        family_id: Optional[str] = None,
    ) -> "RefreshTokenRecord":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            tenant_id=tenant_id,
            token_hash=token_hash,
            family_id=family_id or new_id(),
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class LoginAttempt:
    email: str
    tenant_slug: str
    success: bool
    ip_address: Optional[str] = None
    attempted_at: datetime = field(default_factory=utcnow)


@dataclass
class AccountLockout:
    email: str
    tenant_slug: str
    locked_until: datetime
    failed_attempts: int = 0


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    tenant_id: Optional[str]
    token_hash: str
    expires_at: datetime
    used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TeamInvite:
    id: str
    tenant_id: str
    email: str
    role: str
    token_hash: str
    created_by: Optional[str]
    expires_at: datetime
    accepted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_pending(self, now: Optional[datetime] = None) -> bool:
        return self.accepted_at is None and not self.is_expired(now)


@dataclass
class AuditLogEntry:
    id: str
    action: str
    tenant_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Task:
    id: str
    tenant_id: str
    title: str
    created_by: str
    assigned_to: Optional[str] = None
    status: str = "open"
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
