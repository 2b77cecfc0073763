from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from typing import Any, Optional

from tenantcrm.config import Settings
from tenantcrm.logging import get_logger
from tenantcrm.service.audit import AuditService
from tenantcrm.service.background import BackgroundRunner
from tenantcrm.service.email import EmailService
from tenantcrm.service.errors import (
    AccountLocked,
    AuthenticationRequired,
    ConflictError,
    InvalidCredentials,
    TenantNotFound,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
    ValidationFailed,
)
from tenantcrm.service.lockout import LockoutGuard
from tenantcrm.service.passwords import PasswordHasher
from tenantcrm.service.sessions import Principal
from tenantcrm.service.tokens import TokenService
from tenantcrm.storage.common import REVOKE_REASON_SESSION_LIMIT, ROLE_OWNER, normalize_email
from tenantcrm.storage.errors import ConstraintViolation
from tenantcrm.storage.models import Tenant, User

logger = get_logger(__name__)

PASSWORD_RESET_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)


@dataclass
class IssuedSession:
    user: User
    tenant: Optional[Tenant]
    access_token: str
    refresh_token: Optional[str] = None

    @property
    def tenant_id(self) -> Optional[str]:
        if self.tenant is not None:
            return self.tenant.id
        return self.user.tenant_id


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


class AuthService:
    """Registration, login, refresh, logout and password flows."""

    def __init__(
        self,
        store: Any,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        tokens: TokenService,
        lockout: LockoutGuard,
        audit: AuditService,
        email: EmailService,
        background: BackgroundRunner,
        cache: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.lockout = lockout
        self.audit = audit
        self.email = email
        self.background = background
        self.cache = cache
        self.logger = logger
        self._random = secrets.SystemRandom()

    # -- registration -----------------------------------------------------

    async def register(
        self,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: Optional[str],
        company_name: str,
        company_slug: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        email = normalize_email(email)
        slug = company_slug.strip().lower()
        if self.store.tenant_slug_exists(slug):
            raise ConflictError("Company slug is already taken", detail={"field": "company_slug"})
        if self.store.email_exists(email):
            raise ConflictError("Email is already registered", detail={"field": "email"})

        password_hash = self.hasher.hash(password)
        try:
            tenant, user = self.store.create_tenant_with_owner(
                name=company_name.strip(),
                slug=slug,
                email=email,
                password_hash=password_hash,
                first_name=first_name.strip(),
                last_name=last_name.strip() if last_name else None,
                role=ROLE_OWNER,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise ConflictError(exc.message, detail=exc.detail)

        access_token = self.tokens.issue(user)
        refresh_token = self.tokens.issue_refresh(user.id, tenant.id)
        self.logger.info("tenant_registered", tenant_id=tenant.id, user_id=user.id, slug=slug)

        self.background.spawn(
            self.email.send_welcome_email_async(user.email, user.first_name, tenant.name),
            name="email:welcome",
        )
        self.audit.record_nowait(
            "auth.register",
            tenant_id=tenant.id,
            user_id=user.id,
            resource_type="tenant",
            resource_id=tenant.id,
            details={"email": email, "company_slug": slug},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return IssuedSession(user=user, tenant=tenant, access_token=access_token, refresh_token=refresh_token)

    # -- login ------------------------------------------------------------

    def _find_login_user(self, email: str, tenant_slug: Optional[str]) -> tuple[Optional[User], Optional[Tenant]]:
        tenant = self.store.get_tenant_by_slug(tenant_slug) if tenant_slug else None
        user = None
        if tenant is not None and tenant.is_active:
            user = self.store.get_user_by_email_and_tenant(email, tenant.id)
        if user is None:
            user = self.store.get_platform_user_by_email(email)
        if tenant is not None and not tenant.is_active:
            tenant = None
        return user, tenant

    async def login(
        self,
        *,
        email: str,
        password: str,
        tenant_slug: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        email = normalize_email(email)
        slug = tenant_slug.strip().lower() if tenant_slug else None

        try:
            self.lockout.ensure_not_locked(email, slug)
        except AccountLocked:
            # locked and wrong-password answers both cost one argon2 verification
            self.hasher.verify_decoy(password)
            raise

        user, tenant = self._find_login_user(email, slug)
        if user is None or not user.is_active:
            # Same cost as a real verification so timing does not leak existence
            self.hasher.verify_decoy(password)
            self.lockout.record_failure(email, slug, ip_address)
            self.logger.info("login_failed", email=email, tenant_slug=slug, reason="unknown_user")
            raise InvalidCredentials()

        if not self.hasher.verify(password, user.password_hash):
            self.lockout.record_failure(email, slug, ip_address)
            self.logger.info("login_failed", email=email, tenant_slug=slug, reason="password")
            raise InvalidCredentials()

        self.lockout.record_success(email, slug, ip_address)
        self.store.update_last_login(user.id)

        access_token = self.tokens.issue(user)
        session_tenant_id = user.tenant_id or (tenant.id if tenant else None)
        # Platform users have no home tenant and re-authenticate instead of refreshing
        refresh_token = self.tokens.issue_refresh(user.id, user.tenant_id) if user.tenant_id else None
        if tenant is None and user.tenant_id:
            tenant = self.store.get_tenant(user.tenant_id)

        self.logger.info("login_succeeded", user_id=user.id, tenant_id=session_tenant_id)
        self.audit.record_nowait(
            "auth.login.success",
            tenant_id=session_tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            details={"email": email},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return IssuedSession(user=user, tenant=tenant, access_token=access_token, refresh_token=refresh_token)

    # -- refresh ----------------------------------------------------------

    async def refresh(
        self,
        *,
        refresh_token: Optional[str],
        tenant_id: Optional[str],
        user_id: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        if not refresh_token or not tenant_id or not user_id:
            raise AuthenticationRequired()

        record = self.tokens.find_refresh(refresh_token, user_id, tenant_id)
        if record is None:
            self.logger.warning("refresh_token_unknown", user_id=user_id, tenant_id=tenant_id)
            raise TokenInvalid()

        if record.is_revoked and record.revoked_reason == REVOKE_REASON_SESSION_LIMIT:
            self.logger.info("refresh_token_evicted", user_id=user_id, tenant_id=tenant_id)
            raise TokenRevoked()

        if record.is_revoked:
            self._handle_reuse(record, ip_address=ip_address, user_agent=user_agent)
            raise TokenRevoked()

        if record.is_expired():
            self.tokens.revoke_refresh(record)
            self.logger.info("refresh_token_expired", user_id=user_id, tenant_id=tenant_id)
            raise TokenExpired()

        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            self.tokens.revoke_for_tenant(user_id, tenant_id)
            raise AuthenticationRequired()
        tenant = self.store.get_tenant(tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFound()

        rotated = self.tokens.rotate_refresh(record)
        if rotated is None:
            # A concurrent request rotated this token first
            self._handle_reuse(record, ip_address=ip_address, user_agent=user_agent)
            raise TokenRevoked()
        new_refresh, _ = rotated

        access_token = self.tokens.issue(user)
        self.audit.record_nowait(
            "auth.refresh.success",
            tenant_id=tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return IssuedSession(user=user, tenant=tenant, access_token=access_token, refresh_token=new_refresh)

    def _handle_reuse(self, record, *, ip_address: Optional[str], user_agent: Optional[str]) -> None:
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            tenant_id=record.tenant_id,
            family_id=record.family_id,
        )
        self.tokens.revoke_family(record)
        self.audit.record_nowait(
            "auth.refresh.reuse_detected",
            tenant_id=record.tenant_id,
            user_id=record.user_id,
            resource_type="refresh_token",
            resource_id=record.id,
            details={"family_id": record.family_id},
            ip_address=ip_address,
            user_agent=user_agent,
        )

    # -- logout -----------------------------------------------------------

    async def logout(
        self,
        *,
        user_id: Optional[str],
        tenant_id: Optional[str],
        access_jti: Optional[str] = None,
        access_ttl_seconds: int = 0,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        """Revoke the caller's refresh tokens for ``tenant_id``; safe to repeat."""
        revoked = 0
        if user_id and tenant_id:
            revoked = self.tokens.revoke_for_tenant(user_id, tenant_id)
        if self.cache is not None and access_jti:
            await self.cache.denylist_access_token(access_jti, access_ttl_seconds)
        if user_id:
            self.audit.record_nowait(
                "auth.logout",
                tenant_id=tenant_id,
                user_id=user_id,
                resource_type="user",
                resource_id=user_id,
                details={"revoked_refresh_tokens": revoked},
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return revoked

    # -- global revoke ----------------------------------------------------

    async def revoke_all_sessions(
        self,
        principal: Principal,
        tenant_id: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        version = self.tokens.revoke_all_for_user(principal.user_id)
        if version is None:
            raise AuthenticationRequired()
        self.audit.record_nowait(
            "auth.sessions.revoke_all",
            tenant_id=tenant_id,
            user_id=principal.user_id,
            resource_type="user",
            resource_id=principal.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return version

    # -- password flows ---------------------------------------------------

    def _reset_target_delay(self) -> float:
        low = self.settings.password_reset_min_delay_ms
        high = self.settings.password_reset_max_delay_ms
        return self._random.uniform(low, high) / 1000.0

    async def request_password_reset(
        self,
        *,
        email: str,
        tenant_slug: Optional[str],
        ip_address: Optional[str] = None,
    ) -> str:
        """Issue a reset link when the account exists.

        Response content and latency do not depend on whether it does.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        target = self._reset_target_delay()

        email = normalize_email(email)
        slug = tenant_slug.strip().lower() if tenant_slug else None
        user, _ = self._find_login_user(email, slug)
        if user is not None and user.is_active:
            raw_token = secrets.token_hex(32)
            self.store.create_password_reset_token(
                user_id=user.id,
                tenant_id=user.tenant_id,
                token_hash=hash_reset_token(raw_token),
                ttl_minutes=self.settings.password_reset_ttl_minutes,
            )
            reset_url = self.email.build_reset_url(raw_token)
            self.background.spawn(
                self.email.send_password_reset_email_async(user.email, reset_url, user.first_name),
                name="email:password_reset",
            )
            self.audit.record_nowait(
                "auth.password.reset_requested",
                tenant_id=user.tenant_id,
                user_id=user.id,
                resource_type="user",
                resource_id=user.id,
                ip_address=ip_address,
            )
        else:
            self.logger.info("password_reset_unknown_account", tenant_slug=slug)

        remaining = target - (loop.time() - started)
        if remaining > 0:
            await asyncio.sleep(remaining)
        return PASSWORD_RESET_MESSAGE

    async def complete_password_reset(
        self, *, token: str, new_password: str, ip_address: Optional[str] = None
    ) -> User:
        user = self.store.complete_password_reset(
            hash_reset_token(token), self.hasher.hash(new_password)
        )
        if user is None:
            raise ValidationFailed(
                "Invalid or expired reset token", detail={"field": "token"}
            )
        self.logger.info("password_reset_completed", user_id=user.id)
        self.audit.record_nowait(
            "auth.password.reset",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
        )
        return user

    async def change_password(
        self,
        principal: Principal,
        *,
        current_password: str,
        new_password: str,
        tenant_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        user = self.store.get_user(principal.user_id)
        if user is None or not user.is_active:
            raise AuthenticationRequired()
        if not self.hasher.verify(current_password, user.password_hash):
            raise ValidationFailed(
                "Current password is incorrect", detail={"field": "current_password"}
            )
        self.store.set_password_and_revoke(user.id, self.hasher.hash(new_password))
        self.audit.record_nowait(
            "auth.password.changed",
            tenant_id=tenant_id,
            user_id=user.id,
            resource_type="user",
            resource_id=user.id,
            ip_address=ip_address,
        )
