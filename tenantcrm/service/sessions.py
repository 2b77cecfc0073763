from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, FrozenSet, Optional, Protocol

from tenantcrm.config import Settings
from tenantcrm.logging import get_logger
from tenantcrm.service.errors import (
    AuthenticationRequired,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from tenantcrm.service.tokens import TokenService
from tenantcrm.storage.models import Tenant, User

logger = get_logger(__name__)


class SessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_role_permissions(self, role: str) -> FrozenSet[str]: ...


@dataclass(frozen=True)
class Principal:
    """Snapshot of the authenticated caller, built once per request."""

    user_id: str
    email: str
    role: str
    tenant_id: Optional[str]
    token_version: int
    permissions: FrozenSet[str]
    token_jti: str
    token_expires_at: datetime

    def has(self, permission: str) -> bool:
        return permission in self.permissions

    @property
    def token_ttl_seconds(self) -> int:
        return max(0, int((self.token_expires_at - datetime.now(timezone.utc)).total_seconds()))


@dataclass(frozen=True)
class RequestContext:
    principal: Principal
    tenant: Tenant

    @property
    def tenant_id(self) -> str:
        return self.tenant.id

    @property
    def user_id(self) -> str:
        return self.principal.user_id


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class SessionAuthenticator:
    """Turns a presented access token into a :class:`Principal`.

    Stages run strictly in order: extract, verify, load user, compare token
    version, load permissions. Any failure stops the pipeline.
    """

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenService,
        settings: Settings,
        cache: Optional[Any] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.settings = settings
        self.cache = cache

    def extract_token(
        self, authorization: Optional[str], cookie_token: Optional[str]
    ) -> Optional[str]:
        if self.settings.bearer_tokens_enabled:
            bearer = extract_bearer(authorization)
            if bearer:
                return bearer
        elif authorization:
            logger.debug("bearer_token_ignored")
        return cookie_token or None

    async def authenticate(self, token: Optional[str]) -> Principal:
        if not token:
            raise AuthenticationRequired()
        try:
            claims = self.tokens.verify(token)
        except TokenExpired:
            logger.info("access_token_expired")
            raise
        except TokenInvalid as exc:
            logger.warning("access_token_invalid", reason=exc.detail.get("reason"))
            raise

        if self.cache is not None and await self.cache.is_access_token_denylisted(claims.jti):
            logger.info("access_token_denylisted", user_id=claims.user_id)
            raise TokenRevoked()

        user = self.store.get_user(claims.user_id)
        if user is None or not user.is_active:
            logger.warning("session_user_unavailable", user_id=claims.user_id)
            raise AuthenticationRequired()
        if user.token_version != claims.token_version:
            logger.info(
                "access_token_version_stale",
                user_id=user.id,
                claim_version=claims.token_version,
                current_version=user.token_version,
            )
            raise TokenRevoked()

        return Principal(
            user_id=user.id,
            email=user.email,
            role=user.role,
            tenant_id=user.tenant_id,
            token_version=user.token_version,
            permissions=self.store.get_role_permissions(user.role),
            token_jti=claims.jti,
            token_expires_at=claims.expires_at,
        )
