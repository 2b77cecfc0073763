from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from tenantcrm.logging import get_logger
from tenantcrm.storage.common import (
    DEFAULT_ROLE_PERMISSIONS,
    MAX_ACTIVE_REFRESH_TOKENS,
    REFRESH_REVOKED_LOOKBACK,
    REFRESH_SCAN_REVOKED_LIMIT,
    REVOKE_REASON_SESSION_LIMIT,
    looks_like_uuid,
    normalize_email,
)
from tenantcrm.storage.errors import ConstraintViolation, require_tenant_id
from tenantcrm.storage.models import (
    AccountLockout,
    AuditLogEntry,
    LoginAttempt,
    PasswordResetToken,
    RefreshTokenRecord,
    Task,
    TeamInvite,
    Tenant,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process store used for tests and local development.

    Every public method holds ``_data_lock`` for its whole body, which makes
    each call atomic with respect to the others in the same way a single
    database transaction is for :class:`PostgresStore`.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.login_attempts: List[LoginAttempt] = []
        self.lockouts: Dict[Tuple[str, str], AccountLockout] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        self.invites: Dict[str, TeamInvite] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self.tasks: Dict[str, Task] = {}
        self.role_permissions: Dict[str, FrozenSet[str]] = dict(DEFAULT_ROLE_PERMISSIONS)
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()

    # -- health -----------------------------------------------------------

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # -- tenants ----------------------------------------------------------

    def tenant_slug_exists(self, slug: str) -> bool:
        with self._data_lock:
            return any(t.slug == slug for t in self.tenants.values())

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            return self.tenants.get(tenant_id)

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._data_lock:
            return next((t for t in self.tenants.values() if t.slug == slug), None)

    def find_active_tenant(self, identifier: str) -> Optional[Tenant]:
        """Look up an active tenant by id or slug."""
        with self._data_lock:
            tenant = None
            if looks_like_uuid(identifier):
                tenant = self.tenants.get(identifier)
            if tenant is None:
                tenant = self.get_tenant_by_slug(identifier.lower())
            if tenant is None or not tenant.is_active:
                return None
            return tenant

    def update_tenant_settings(self, tenant_id: str, settings: Dict[str, Any]) -> Optional[Tenant]:
        require_tenant_id(tenant_id)
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.settings = dict(settings)
            tenant.updated_at = utcnow()
            return tenant

    def create_tenant_with_owner(
        self,
        *,
        name: str,
        slug: str,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: Optional[str] = None,
        role: str = "owner",
        settings: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Tenant, User]:
        email = normalize_email(email)
        with self._data_lock:
            if self.tenant_slug_exists(slug):
                raise ConstraintViolation("tenant slug already exists", {"field": "company_slug"})
            if self.email_exists(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            tenant = Tenant(id=new_id(), name=name, slug=slug, settings=dict(settings or {}))
            user = User(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                tenant_id=tenant.id,
            )
            self.tenants[tenant.id] = tenant
            self.users[user.id] = user
            return tenant, user

    # -- users ------------------------------------------------------------

    def email_exists(self, email: str) -> bool:
        email = normalize_email(email)
        with self._data_lock:
            return any(u.email == email for u in self.users.values())

    def create_user(
        self,
        *,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: Optional[str] = None,
        role: str,
        tenant_id: Optional[str],
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if self.email_exists(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            user = User(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                tenant_id=tenant_id,
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_in_tenant(self, tenant_id: str, user_id: str) -> Optional[User]:
        require_tenant_id(tenant_id)
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None or user.tenant_id != tenant_id:
                return None
            return user

    def get_user_by_email_and_tenant(self, email: str, tenant_id: str) -> Optional[User]:
        require_tenant_id(tenant_id)
        email = normalize_email(email)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email == email and u.tenant_id == tenant_id),
                None,
            )

    def get_platform_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email == email and u.tenant_id is None),
                None,
            )

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        require_tenant_id(tenant_id)
        with self._data_lock:
            results = [u for u in self.users.values() if u.tenant_id == tenant_id]
            return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_user_role(self, tenant_id: str, user_id: str, role: str) -> Optional[User]:
        """Change a user's role; the token version bump ends their sessions."""
        with self._data_lock:
            user = self.get_user_in_tenant(tenant_id, user_id)
            if not user:
                return None
            user.role = role
            user.token_version += 1
            user.updated_at = utcnow()
            return user

    def deactivate_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.get_user_in_tenant(tenant_id, user_id)
            if not user:
                return None
            user.is_active = False
            user.token_version += 1
            user.updated_at = utcnow()
            self._revoke_where(lambda r: r.user_id == user_id)
            return user

    def update_last_login(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = utcnow()

    def get_role_permissions(self, role: str) -> FrozenSet[str]:
        with self._data_lock:
            return frozenset(self.role_permissions.get(role, frozenset()))

    def revoke_all_for_user(self, user_id: str) -> Optional[int]:
        """Bump token_version and revoke every refresh token of the user.

        Returns the new token version, or None when the user does not exist.
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.token_version += 1
            user.updated_at = utcnow()
            self._revoke_where(lambda r: r.user_id == user_id)
            return user.token_version

    def set_password_and_revoke(self, user_id: str, password_hash: str) -> Optional[int]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            return self.revoke_all_for_user(user_id)

    # -- refresh tokens ---------------------------------------------------

    def _revoke_where(self, predicate) -> int:
        now = utcnow()
        count = 0
        for record in self.refresh_tokens.values():
            if not record.is_revoked and predicate(record):
                record.is_revoked = True
                record.revoked_at = now
                count += 1
        return count

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        """Store ``record`` and evict the oldest sessions beyond the active cap."""
        require_tenant_id(record.tenant_id)
        with self._data_lock:
            if record.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
            self.refresh_tokens[record.id] = record
            active = sorted(
                (
                    r
                    for r in self.refresh_tokens.values()
                    if r.user_id == record.user_id
                    and r.tenant_id == record.tenant_id
                    and not r.is_revoked
                ),
                key=lambda r: r.created_at,
            )
            evicted = active[:-MAX_ACTIVE_REFRESH_TOKENS]
            now = utcnow()
            for old in evicted:
                old.is_revoked = True
                old.revoked_at = now
                old.revoked_reason = REVOKE_REASON_SESSION_LIMIT
            if evicted:
                self.logger.info(
                    "refresh_sessions_evicted",
                    user_id=record.user_id,
                    tenant_id=record.tenant_id,
                    evicted=len(evicted),
                )
            return record

    def list_refresh_candidates(self, user_id: str, tenant_id: str) -> List[RefreshTokenRecord]:
        """Most recent active tokens plus recently revoked ones, newest first."""
        require_tenant_id(tenant_id)
        cutoff = utcnow() - REFRESH_REVOKED_LOOKBACK
        with self._data_lock:
            rows = sorted(
                (
                    r
                    for r in self.refresh_tokens.values()
                    if r.user_id == user_id and r.tenant_id == tenant_id
                ),
                key=lambda r: r.created_at,
                reverse=True,
            )
            active = [r for r in rows if not r.is_revoked][:MAX_ACTIVE_REFRESH_TOKENS]
            revoked = [
                r
                for r in rows
                if r.is_revoked and r.revoked_at is not None and r.revoked_at >= cutoff
            ][:REFRESH_SCAN_REVOKED_LIMIT]
            return [replace(r) for r in active + revoked]

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        tenant_id: str,
        new_token_hash: str,
        ttl_minutes: int,
    ) -> Optional[RefreshTokenRecord]:
        """Revoke ``token_id`` and issue its successor in the same family.

        Returns None when the token was already revoked, which callers treat
        as reuse.
        """
        require_tenant_id(tenant_id)
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or current.tenant_id != tenant_id or current.is_revoked:
                return None
            current.is_revoked = True
            current.revoked_at = utcnow()
            successor = RefreshTokenRecord.new(
                current.user_id,
                tenant_id,
                new_token_hash,
                ttl_minutes=ttl_minutes,
                family_id=current.family_id,
            )
            self.refresh_tokens[successor.id] = successor
            return successor

    def revoke_refresh_token(self, token_id: str, tenant_id: str) -> bool:
        require_tenant_id(tenant_id)
        with self._data_lock:
            return bool(
                self._revoke_where(lambda r: r.id == token_id and r.tenant_id == tenant_id)
            )

    def revoke_refresh_family(self, family_id: str, tenant_id: str) -> int:
        require_tenant_id(tenant_id)
        with self._data_lock:
            return self._revoke_where(
                lambda r: r.family_id == family_id and r.tenant_id == tenant_id
            )

    def revoke_user_refresh_tokens(self, user_id: str, tenant_id: str) -> int:
        require_tenant_id(tenant_id)
        with self._data_lock:
            return self._revoke_where(
                lambda r: r.user_id == user_id and r.tenant_id == tenant_id
            )

    # -- login attempts and lockouts -------------------------------------

    def get_lockout(self, email: str, tenant_slug: str) -> Optional[AccountLockout]:
        key = (normalize_email(email), tenant_slug)
        with self._data_lock:
            return self.lockouts.get(key)

    def record_failed_login(
        self,
        email: str,
        tenant_slug: str,
        *,
        ip_address: Optional[str],
        window: timedelta,
        threshold: int,
        lock_duration: timedelta,
    ) -> Tuple[int, Optional[datetime]]:
        """Record a failure and lock once ``threshold`` is reached.

        Returns ``(failures_in_window, locked_until)``.
        """
        email = normalize_email(email)
        now = utcnow()
        with self._data_lock:
            self.login_attempts.append(
                LoginAttempt(email=email, tenant_slug=tenant_slug, success=False, ip_address=ip_address, attempted_at=now)
            )
            since = now - window
            failures = sum(
                1
                for a in self.login_attempts
                if a.email == email
                and a.tenant_slug == tenant_slug
                and not a.success
                and a.attempted_at >= since
            )
            if failures < threshold:
                return failures, None
            locked_until = now + lock_duration
            self.lockouts[(email, tenant_slug)] = AccountLockout(
                email=email,
                tenant_slug=tenant_slug,
                locked_until=locked_until,
                failed_attempts=failures,
            )
            return failures, locked_until

    def record_successful_login(
        self, email: str, tenant_slug: str, *, ip_address: Optional[str]
    ) -> None:
        email = normalize_email(email)
        with self._data_lock:
            self.login_attempts.append(
                LoginAttempt(email=email, tenant_slug=tenant_slug, success=True, ip_address=ip_address)
            )
            self.lockouts.pop((email, tenant_slug), None)

    # -- password reset ---------------------------------------------------

    def create_password_reset_token(
        self,
        *,
        user_id: str,
        tenant_id: Optional[str],
        token_hash: str,
        ttl_minutes: int,
    ) -> PasswordResetToken:
        with self._data_lock:
            token = PasswordResetToken(
                id=new_id(),
                user_id=user_id,
                tenant_id=tenant_id,
                token_hash=token_hash,
                expires_at=utcnow() + timedelta(minutes=ttl_minutes),
            )
            self.reset_tokens[token.id] = token
            return token

    def complete_password_reset(self, token_hash: str, password_hash: str) -> Optional[User]:
        """Consume a reset token and replace the password in one step.

        Returns the user, or None when the token is unknown, used or expired.
        """
        now = utcnow()
        with self._data_lock:
            token = next(
                (
                    t
                    for t in self.reset_tokens.values()
                    if t.token_hash == token_hash and t.used_at is None and t.expires_at > now
                ),
                None,
            )
            if token is None:
                return None
            user = self.users.get(token.user_id)
            if user is None:
                return None
            token.used_at = now
            self.set_password_and_revoke(user.id, password_hash)
            return user

    # -- team invites -----------------------------------------------------

    def create_invite(
        self,
        tenant_id: str,
        *,
        email: str,
        role: str,
        token_hash: str,
        created_by: Optional[str],
        ttl_hours: int,
    ) -> TeamInvite:
        require_tenant_id(tenant_id)
        with self._data_lock:
            if tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            invite = TeamInvite(
                id=new_id(),
                tenant_id=tenant_id,
                email=normalize_email(email),
                role=role,
                token_hash=token_hash,
                created_by=created_by,
                expires_at=utcnow() + timedelta(hours=ttl_hours),
            )
            self.invites[invite.id] = invite
            return replace(invite)

    def get_invite_by_token_hash(self, token_hash: str) -> Optional[TeamInvite]:
        with self._data_lock:
            invite = next(
                (i for i in self.invites.values() if i.token_hash == token_hash), None
            )
            return replace(invite) if invite else None

    def accept_invite(
        self,
        token_hash: str,
        *,
        password_hash: str,
        first_name: str,
        last_name: Optional[str] = None,
    ) -> Optional[User]:
        """Create the invited user and mark the invite used in one step.

        Returns None when the invite is unknown, already accepted or expired.
        """
        now = utcnow()
        with self._data_lock:
            invite = next(
                (i for i in self.invites.values() if i.token_hash == token_hash), None
            )
            if invite is None or not invite.is_pending(now):
                return None
            user = self.create_user(
                email=invite.email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=invite.role,
                tenant_id=invite.tenant_id,
            )
            invite.accepted_at = now
            return user

    # -- audit ------------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(entry)
            return entry

    def list_audit_logs(self, tenant_id: str, limit: int = 100) -> List[AuditLogEntry]:
        require_tenant_id(tenant_id)
        with self._data_lock:
            rows = [e for e in self.audit_logs if e.tenant_id == tenant_id]
            return sorted(rows, key=lambda e: e.created_at, reverse=True)[:limit]

    # -- tasks ------------------------------------------------------------

    def create_task(
        self,
        tenant_id: str,
        *,
        title: str,
        created_by: str,
        assigned_to: Optional[str] = None,
        description: Optional[str] = None,
        status: str = "open",
    ) -> Task:
        require_tenant_id(tenant_id)
        with self._data_lock:
            if assigned_to and self.get_user_in_tenant(tenant_id, assigned_to) is None:
                raise ConstraintViolation("assignee does not exist", {"field": "assigned_to"})
            task = Task(
                id=new_id(),
                tenant_id=tenant_id,
                title=title,
                description=description,
                status=status,
                created_by=created_by,
                assigned_to=assigned_to,
            )
            self.tasks[task.id] = task
            return task

    def list_tasks(
        self, tenant_id: str, *, assigned_to: Optional[str] = None, limit: int = 100
    ) -> List[Task]:
        require_tenant_id(tenant_id)
        with self._data_lock:
            rows = [
                t
                for t in self.tasks.values()
                if t.tenant_id == tenant_id and (assigned_to is None or t.assigned_to == assigned_to)
            ]
            return sorted(rows, key=lambda t: t.created_at, reverse=True)[:limit]

    def get_task(self, tenant_id: str, task_id: str) -> Optional[Task]:
        require_tenant_id(tenant_id)
        with self._data_lock:
            task = self.tasks.get(task_id)
            if task is None or task.tenant_id != tenant_id:
                return None
            return task

    def get_task_owner_id(self, tenant_id: str, task_id: str) -> Optional[str]:
        task = self.get_task(tenant_id, task_id)
        return task.assigned_to if task else None

    def update_task(self, tenant_id: str, task_id: str, fields: Dict[str, Any]) -> Optional[Task]:
        with self._data_lock:
            task = self.get_task(tenant_id, task_id)
            if task is None:
                return None
            assignee = fields.get("assigned_to")
            if assignee and self.get_user_in_tenant(tenant_id, assignee) is None:
                raise ConstraintViolation("assignee does not exist", {"field": "assigned_to"})
            for key in ("title", "description", "status", "assigned_to"):
                if key in fields:
                    setattr(task, key, fields[key])
            task.updated_at = utcnow()
            return task

    def delete_task(self, tenant_id: str, task_id: str) -> bool:
        with self._data_lock:
            if self.get_task(tenant_id, task_id) is None:
                return False
            self.tasks.pop(task_id, None)
            return True

    # -- maintenance ------------------------------------------------------

    def purge_expired(self) -> Dict[str, int]:
        """Drop stale login attempts, expired lockouts and expired reset tokens.

        Refresh tokens are kept; they are only ever revoked.
        """
        now = utcnow()
        cutoff = now - REFRESH_REVOKED_LOOKBACK
        with self._data_lock:
            before = len(self.login_attempts)
            self.login_attempts = [a for a in self.login_attempts if a.attempted_at >= cutoff]
            attempts = before - len(self.login_attempts)
            stale_reset = [tid for tid, t in self.reset_tokens.items() if t.expires_at < now]
            for tid in stale_reset:
                self.reset_tokens.pop(tid, None)
            expired_locks = [k for k, v in self.lockouts.items() if v.locked_until < now]
            for key in expired_locks:
                self.lockouts.pop(key, None)
        counts = {
            "login_attempts": attempts,
            "reset_tokens": len(stale_reset),
            "lockouts": len(expired_locks),
        }
        self.logger.info("store_purged", **counts)
        return counts
