"""Cookie handling and the per-request authorization pipeline.

``require(...)`` builds a FastAPI dependency that runs, strictly in order:
authenticate the access token, resolve the tenant, check the module guard,
then evaluate each permission check. The first failure raises and nothing
after it runs. The result is an immutable :class:`RequestContext` handed to
the route by parameter.
"""

from __future__ import annotations

import secrets
from typing import Callable, Optional

from fastapi import Request, Response

from tenantcrm.config import Settings
from tenantcrm.logging import bind_request_identity, get_logger
from tenantcrm.service.auth import IssuedSession
from tenantcrm.service.errors import AuthenticationError, ForbiddenError
from tenantcrm.service.permissions import (
    Decision,
    enforce,
    require_all,
    require_any,
    require_module,
    require_permission,
    require_permission_with_ownership,
)
from tenantcrm.service.runtime import get_runtime
from tenantcrm.service.sessions import Principal, RequestContext
from tenantcrm.service.tokens import AccessClaims
from tenantcrm.storage.common import parse_ip_address

logger = get_logger(__name__)

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
TENANT_COOKIE = "tenant_id"
CSRF_COOKIE = "csrf_token"

Check = Callable[[RequestContext, Request], Decision]
OwnerResolver = Callable[[RequestContext, Request], Optional[str]]


# -- cookies ----------------------------------------------------------------


def _cookie_kwargs(settings: Settings) -> dict:
    return {
        "secure": settings.is_production,
        "samesite": "lax",
        "path": "/",
        "domain": settings.cookie_domain,
    }


def set_csrf_cookie(response: Response, settings: Settings, token: Optional[str] = None) -> str:
    token = token or secrets.token_urlsafe(32)
    response.set_cookie(
        CSRF_COOKIE,
        token,
        httponly=False,
        max_age=settings.csrf_token_ttl_minutes * 60,
        **_cookie_kwargs(settings),
    )
    return token


def set_session_cookies(response: Response, settings: Settings, session: IssuedSession) -> str:
    """Write access, refresh, tenant and CSRF cookies; return the CSRF token."""
    opts = _cookie_kwargs(settings)
    refresh_max_age = settings.refresh_token_ttl_minutes * 60
    response.set_cookie(
        ACCESS_COOKIE,
        session.access_token,
        httponly=True,
        max_age=settings.access_token_ttl_minutes * 60,
        **opts,
    )
    if session.refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            session.refresh_token,
            httponly=True,
            max_age=refresh_max_age,
            **opts,
        )
    if session.tenant_id:
        response.set_cookie(
            TENANT_COOKIE,
            session.tenant_id,
            httponly=False,
            max_age=refresh_max_age,
            **opts,
        )
    return set_csrf_cookie(response, settings)


def clear_session_cookies(response: Response, settings: Settings) -> None:
    opts = _cookie_kwargs(settings)
    for name in (ACCESS_COOKIE, REFRESH_COOKIE, TENANT_COOKIE, CSRF_COOKIE):
        response.delete_cookie(name, httponly=name in (ACCESS_COOKIE, REFRESH_COOKIE), **opts)


# -- request metadata ---------------------------------------------------------


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        candidate = parse_ip_address(forwarded.split(",")[0].strip())
        if candidate:
            return candidate
    if request.client:
        return parse_ip_address(request.client.host)
    return None


def user_agent(request: Request) -> Optional[str]:
    value = request.headers.get("user-agent")
    return value[:512] if value else None


# -- authentication -----------------------------------------------------------


async def authenticate(request: Request) -> Principal:
    runtime = get_runtime()
    token = runtime.sessions.extract_token(
        request.headers.get("authorization"), request.cookies.get(ACCESS_COOKIE)
    )
    return await runtime.sessions.authenticate(token)


async def optional_principal(request: Request) -> Optional[Principal]:
    """Authenticate when credentials are present; None instead of 401."""
    try:
        return await authenticate(request)
    except AuthenticationError:
        return None


def expired_access_claims(request: Request) -> Optional[AccessClaims]:
    """Signature-checked claims from the access cookie, expiry ignored."""
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        return None
    runtime = get_runtime()
    try:
        return runtime.tokens.verify(token, allow_expired=True)
    except AuthenticationError:
        return None


# -- checks -----------------------------------------------------------------


def permission(name: str) -> Check:
    def check(ctx: RequestContext, request: Request) -> Decision:
        return require_permission(ctx.principal.permissions, name)

    return check


def any_permission(*names: str) -> Check:
    def check(ctx: RequestContext, request: Request) -> Decision:
        return require_any(ctx.principal.permissions, *names)

    return check


def all_permissions(*names: str) -> Check:
    def check(ctx: RequestContext, request: Request) -> Decision:
        return require_all(ctx.principal.permissions, *names)

    return check


def ownership(all_name: str, own_name: str, owner_of: OwnerResolver) -> Check:
    def check(ctx: RequestContext, request: Request) -> Decision:
        return require_permission_with_ownership(
            ctx.principal.permissions,
            all_name,
            own_name,
            user_id=ctx.user_id,
            get_owner_id=lambda: owner_of(ctx, request),
        )

    return check


def require(*checks: Check, module: Optional[str] = None):
    """Dependency factory running the ordered request pipeline."""

    async def dependency(request: Request) -> RequestContext:
        runtime = get_runtime()
        principal = await authenticate(request)
        tenant = runtime.tenants.resolve(
            user_id=principal.user_id,
            role=principal.role,
            user_tenant_id=principal.tenant_id,
            identifier=runtime.tenants.extract_identifier(request.headers),
        )
        ctx = RequestContext(principal=principal, tenant=tenant)
        bind_request_identity(tenant_id=tenant.id, user_id=principal.user_id)
        stages = []
        if module:
            stages.append(lambda: require_module(tenant, module))
        for check in checks:
            stages.append(lambda check=check: check(ctx, request))
        try:
            enforce(stages)
        except ForbiddenError:
            logger.info(
                "request_denied",
                path=request.url.path,
                user_id=principal.user_id,
                tenant_id=tenant.id,
            )
            raise
        return ctx

    return dependency


def require_tenant_public():
    """Dependency resolving the tenant for an unauthenticated caller."""

    async def dependency(request: Request):
        runtime = get_runtime()
        return runtime.tenants.resolve(
            user_id=None,
            role=None,
            user_tenant_id=None,
            identifier=runtime.tenants.extract_identifier(request.headers),
        )

    return dependency
