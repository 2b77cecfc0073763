from __future__ import annotations

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
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TenantNotFound,
    ValidationFailed,
)
from tenantcrm.service.passwords import PasswordHasher
from tenantcrm.service.sessions import RequestContext
from tenantcrm.storage.common import ROLE_OWNER, TENANT_ROLES, normalize_email
from tenantcrm.storage.errors import ConstraintViolation
from tenantcrm.storage.models import TeamInvite, Tenant, User, utcnow

logger = get_logger(__name__)

INVALID_INVITE_MESSAGE = "Invalid or expired invitation"


def hash_invite_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode()).hexdigest()


@dataclass
class InvitePreview:
    invite: TeamInvite
    tenant: Tenant


class InviteService:
    """Team invitations: send, look up and accept.

    Only the SHA-256 digest of an invite token is stored. Accepting an
    invite creates the user in the inviting tenant with the invited role
    and consumes the invite in the same store operation.
    """

    def __init__(
        self,
        store: Any,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        audit: AuditService,
        email: EmailService,
        background: BackgroundRunner,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.audit = audit
        self.email = email
        self.background = background

    def send_invite(
        self,
        ctx: RequestContext,
        *,
        email: str,
        role: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TeamInvite:
        if role not in TENANT_ROLES:
            raise ValidationFailed("Unknown role", detail={"field": "role"})
        if role == ROLE_OWNER and ctx.principal.role != ROLE_OWNER:
            raise ForbiddenError("Only an owner can invite another owner")
        email = normalize_email(email)
        if self.store.email_exists(email):
            raise ConflictError("A user with this email already exists", detail={"field": "email"})

        raw_token = secrets.token_hex(32)
        invite = self.store.create_invite(
            ctx.tenant_id,
            email=email,
            role=role,
            token_hash=hash_invite_token(raw_token),
            created_by=ctx.user_id,
            ttl_hours=self.settings.invite_ttl_hours,
        )
        logger.info("team_invite_created", tenant_id=ctx.tenant_id, invite_id=invite.id, role=role)

        inviter = self.store.get_user(ctx.user_id)
        inviter_name = inviter.first_name if inviter else ctx.principal.email
        self.background.spawn(
            self.email.send_team_invite_email_async(
                email,
                self.email.build_invite_url(raw_token),
                ctx.tenant.name,
                inviter_name,
                role,
            ),
            name="email:team_invite",
        )
        self.audit.record_nowait(
            "users.invited",
            tenant_id=ctx.tenant_id,
            user_id=ctx.user_id,
            resource_type="invite",
            resource_id=invite.id,
            details={"email": email, "role": role},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return invite

    def _pending(self, raw_token: str) -> TeamInvite:
        invite = self.store.get_invite_by_token_hash(hash_invite_token(raw_token))
        if invite is None:
            raise NotFoundError(INVALID_INVITE_MESSAGE)
        if invite.accepted_at is not None:
            raise ValidationFailed("Invitation already accepted")
        if invite.is_expired(utcnow()):
            raise ValidationFailed("Invitation has expired")
        return invite

    def verify(self, raw_token: str) -> InvitePreview:
        invite = self._pending(raw_token)
        tenant = self.store.get_tenant(invite.tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFound()
        return InvitePreview(invite=invite, tenant=tenant)

    def accept(
        self,
        raw_token: str,
        *,
        password: str,
        first_name: str,
        last_name: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        preview = self.verify(raw_token)
        password_hash = self.hasher.hash(password)
        try:
            user = self.store.accept_invite(
                preview.invite.token_hash,
                password_hash=password_hash,
                first_name=first_name.strip(),
                last_name=last_name.strip() if last_name else None,
            )
        except ConstraintViolation as exc:
            raise ConflictError("A user with this email already exists", detail=exc.detail)
        if user is None:
            # consumed by a concurrent accept between lookup and update
            raise ValidationFailed("Invitation already accepted")

        logger.info(
            "team_invite_accepted",
            tenant_id=user.tenant_id,
            user_id=user.id,
            invite_id=preview.invite.id,
        )
        self.audit.record_nowait(
            "users.invite_accepted",
            tenant_id=user.tenant_id,
            user_id=user.id,
            resource_type="invite",
            resource_id=preview.invite.id,
            details={"role": user.role},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user
