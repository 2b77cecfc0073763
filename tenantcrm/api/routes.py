from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from tenantcrm.api.schemas import (
    AcceptInviteRequest,
    AuthResponse,
    Envelope,
    InvitePreviewResponse,
    InviteRequest,
    InviteResponse,
    LoginRequest,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordResetRequest,
    RegisterRequest,
    RoleChangeRequest,
    TaskCreateRequest,
    TaskUpdateRequest,
    TenantDetailResponse,
    TenantResponse,
    TenantSettingsRequest,
    UserListResponse,
    UserResponse,
)
from tenantcrm.api.security import (
    REFRESH_COOKIE,
    TENANT_COOKIE,
    all_permissions,
    any_permission,
    clear_session_cookies,
    client_ip,
    expired_access_claims,
    optional_principal,
    ownership,
    permission,
    require,
    require_tenant_public,
    set_session_cookies,
    user_agent,
)
from tenantcrm.logging import get_logger
from tenantcrm.service.auth import IssuedSession
from tenantcrm.service.errors import RateLimitedError
from tenantcrm.service.runtime import check_rate_limit, get_runtime
from tenantcrm.service.sessions import RequestContext
from tenantcrm.storage.models import Tenant, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    """Raise ``RateLimitedError`` once ``key`` exceeds ``limit`` per window."""
    allowed, _, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit)
        raise RateLimitedError(detail={"retry_after": max(1, reset_seconds)})


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(**user.public_view())


def _tenant_to_response(tenant: Optional[Tenant]) -> Optional[TenantResponse]:
    if tenant is None:
        return None
    return TenantResponse(**tenant.public_view())


def _auth_envelope(runtime, session: IssuedSession, csrf_token: str) -> Envelope:
    # Access tokens only leave the cookie jar when bearer auth is accepted
    access_token = session.access_token if runtime.settings.bearer_tokens_enabled else None
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(session.user),
            tenant=_tenant_to_response(session.tenant),
            access_token=access_token,
            csrf_token=csrf_token,
        ),
    )


# -- auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a tenant and its owner account, then sign the owner in.

    Raises:
        409: If the company slug or the email is already taken
        429: If too many registrations came from this address
    """
    runtime = get_runtime()
    ip = client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip or 'unknown'}",
        runtime.settings.register_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    session = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        company_name=body.company_name,
        company_slug=body.company_slug,
        ip_address=ip,
        user_agent=user_agent(request),
    )
    csrf_token = set_session_cookies(response, runtime.settings, session)
    return _auth_envelope(runtime, session, csrf_token)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email, password and tenant slug.

    Unknown users, wrong passwords and locked accounts all produce the same
    401 response.
    """
    runtime = get_runtime()
    ip = client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{ip or 'unknown'}:{body.email}:{body.tenant_slug or ''}",
        runtime.settings.login_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    session = await runtime.auth.login(
        email=body.email,
        password=body.password,
        tenant_slug=body.tenant_slug,
        ip_address=ip,
        user_agent=user_agent(request),
    )
    csrf_token = set_session_cookies(response, runtime.settings, session)
    return _auth_envelope(runtime, session, csrf_token)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Rotate the refresh token cookie and mint a new access token.

    The caller is identified by a live session or, failing that, by the
    signature-valid but possibly expired access token cookie. On any failure
    no cookies are written.
    """
    runtime = get_runtime()
    principal = await optional_principal(request)
    user_id = principal.user_id if principal else None
    if user_id is None:
        claims = expired_access_claims(request)
        user_id = claims.user_id if claims else None
    session = await runtime.auth.refresh(
        refresh_token=request.cookies.get(REFRESH_COOKIE),
        tenant_id=request.cookies.get(TENANT_COOKIE),
        user_id=user_id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    csrf_token = set_session_cookies(response, runtime.settings, session)
    return _auth_envelope(runtime, session, csrf_token)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Revoke the caller's refresh tokens and clear cookies; safe to repeat."""
    runtime = get_runtime()
    principal = await optional_principal(request)
    user_id = tenant_id = access_jti = None
    access_ttl = 0
    if principal is not None:
        user_id, tenant_id = principal.user_id, principal.tenant_id
        access_jti, access_ttl = principal.token_jti, principal.token_ttl_seconds
    else:
        claims = expired_access_claims(request)
        if claims is not None:
            user_id, tenant_id = claims.user_id, claims.tenant_id
    tenant_id = tenant_id or request.cookies.get(TENANT_COOKIE)
    revoked = await runtime.auth.logout(
        user_id=user_id,
        tenant_id=tenant_id,
        access_jti=access_jti,
        access_ttl_seconds=access_ttl,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Logged out", "revoked": revoked})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"reset:{ip or 'unknown'}:{body.email}:{body.tenant_slug or ''}",
        runtime.settings.reset_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    message = await runtime.auth.request_password_reset(
        email=body.email, tenant_slug=body.tenant_slug, ip_address=ip
    )
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request):
    runtime = get_runtime()
    ip = client_ip(request)
    # Same bucket as forgot so tokens cannot be brute-forced
    await _enforce_rate_limit(
        runtime,
        f"reset:confirm:{ip or 'unknown'}",
        runtime.settings.reset_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    await runtime.auth.complete_password_reset(
        token=body.token, new_password=body.new_password, ip_address=ip
    )
    return Envelope(status="ok", data={"message": "Password has been reset"})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(ctx: RequestContext = Depends(require())):
    runtime = get_runtime()
    user = runtime.users.get_profile(ctx)
    return Envelope(
        status="ok",
        data={
            "user": _user_to_response(user).model_dump(),
            "tenant": _tenant_to_response(ctx.tenant).model_dump(),
            "permissions": sorted(ctx.principal.permissions),
        },
    )


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(require()),
):
    """Change the caller's password and end every session, this one included."""
    runtime = get_runtime()
    await runtime.auth.change_password(
        ctx.principal,
        current_password=body.current_password,
        new_password=body.new_password,
        tenant_id=ctx.tenant_id,
        ip_address=client_ip(request),
    )
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Password changed, please sign in again"})


@router.post("/auth/sessions/revoke-all", response_model=Envelope, tags=["auth"])
async def revoke_all_sessions(
    request: Request,
    response: Response,
    ctx: RequestContext = Depends(require()),
):
    runtime = get_runtime()
    version = await runtime.auth.revoke_all_sessions(
        ctx.principal,
        ctx.tenant_id,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"token_version": version})


# -- tasks ------------------------------------------------------------------


def _task_owner(ctx: RequestContext, request: Request) -> Optional[str]:
    runtime = get_runtime()
    return runtime.tasks.owner_lookup(ctx.tenant_id, request.path_params["task_id"])()


@router.get("/tasks", response_model=Envelope, tags=["tasks"])
async def list_tasks(
    ctx: RequestContext = Depends(
        require(any_permission("tasks:read:all", "tasks:read:own"), module="tasks")
    ),
):
    runtime = get_runtime()
    tasks = runtime.tasks.list_tasks(ctx)
    return Envelope(status="ok", data={"items": [t.as_dict() for t in tasks]})


@router.post("/tasks", response_model=Envelope, status_code=201, tags=["tasks"])
async def create_task(
    body: TaskCreateRequest,
    ctx: RequestContext = Depends(require(permission("tasks:create"), module="tasks")),
):
    runtime = get_runtime()
    task = runtime.tasks.create_task(
        ctx,
        title=body.title,
        description=body.description,
        assigned_to=body.assigned_to,
    )
    return Envelope(status="ok", data=task.as_dict())


@router.patch("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def update_task(
    body: TaskUpdateRequest,
    task_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(
        require(
            ownership("tasks:update:all", "tasks:update:own", _task_owner),
            module="tasks",
        )
    ),
):
    runtime = get_runtime()
    task = runtime.tasks.update_task(ctx, task_id, body.changes())
    return Envelope(status="ok", data=task.as_dict())


@router.delete("/tasks/{task_id}", response_model=Envelope, tags=["tasks"])
async def delete_task(
    task_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(
        require(
            ownership("tasks:delete:all", "tasks:delete:own", _task_owner),
            module="tasks",
        )
    ),
):
    runtime = get_runtime()
    runtime.tasks.delete_task(ctx, task_id)
    return Envelope(status="ok", data={"deleted": True, "id": task_id})


# -- users ------------------------------------------------------------------


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(require(permission("users:read"))),
):
    runtime = get_runtime()
    users = runtime.users.list_users(ctx, limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_to_response(u) for u in users])
    )


@router.patch("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def change_user_role(
    body: RoleChangeRequest,
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require(permission("users:manage"))),
):
    runtime = get_runtime()
    user = runtime.users.change_role(ctx, user_id, body.role)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/users/{user_id}/deactivate", response_model=Envelope, tags=["users"])
async def deactivate_user(
    user_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(require(permission("users:manage"))),
):
    runtime = get_runtime()
    user = runtime.users.deactivate(ctx, user_id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/users/invites", response_model=Envelope, status_code=201, tags=["users"])
async def invite_user(
    body: InviteRequest,
    request: Request,
    ctx: RequestContext = Depends(require(all_permissions("users:create", "users:manage"))),
):
    """Email a single-use invitation to join the caller's tenant.

    Raises:
        403: If the caller lacks either permission, or a non-owner invites an owner
        409: If an account with the email already exists
    """
    runtime = get_runtime()
    invite = runtime.invites.send_invite(
        ctx,
        email=body.email,
        role=body.role,
        ip_address=client_ip(request),
        user_agent=user_agent(request),
    )
    return Envelope(
        status="ok",
        data=InviteResponse(
            email=invite.email, role=invite.role, expires_at=invite.expires_at.isoformat()
        ),
    )


# -- tenant -----------------------------------------------------------------


def _tenant_detail(tenant: Tenant) -> TenantDetailResponse:
    return TenantDetailResponse(
        **tenant.public_view(), is_active=tenant.is_active, settings=tenant.settings or {}
    )


@router.get("/tenants/current", response_model=Envelope, tags=["tenants"])
async def current_tenant(ctx: RequestContext = Depends(require(permission("settings:read")))):
    return Envelope(status="ok", data=_tenant_detail(ctx.tenant))


@router.put("/tenants/current/settings", response_model=Envelope, tags=["tenants"])
async def update_tenant_settings(
    body: TenantSettingsRequest,
    ctx: RequestContext = Depends(require(permission("settings:manage"))),
):
    """Merge the given keys into the tenant's settings; module flags merge per key."""
    runtime = get_runtime()
    tenant = runtime.tenant_settings.update_settings(ctx, body.changes())
    return Envelope(status="ok", data=_tenant_detail(tenant))


# -- audit ------------------------------------------------------------------


@router.get("/audit-logs", response_model=Envelope, tags=["audit"])
async def list_audit_logs(
    limit: int = Query(100, ge=1, le=500),
    ctx: RequestContext = Depends(require(permission("audit:read"))),
):
    runtime = get_runtime()
    entries = runtime.audit.list_for_tenant(ctx.tenant_id, limit=limit)
    return Envelope(status="ok", data={"items": [e.as_dict() for e in entries]})


# -- public -----------------------------------------------------------------


@router.get("/public/tenant", response_model=Envelope, tags=["public"])
async def public_tenant(tenant: Tenant = Depends(require_tenant_public())):
    return Envelope(status="ok", data=_tenant_to_response(tenant))


@router.get("/public/invites/{token}", response_model=Envelope, tags=["public"])
async def verify_invite(token: str = Path(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    preview = runtime.invites.verify(token)
    return Envelope(
        status="ok",
        data=InvitePreviewResponse(
            email=preview.invite.email,
            role=preview.invite.role,
            company_name=preview.tenant.name,
        ),
    )


@router.post("/public/invites/accept", response_model=Envelope, status_code=201, tags=["public"])
async def accept_invite(body: AcceptInviteRequest, request: Request):
    """Create the invited account; the new user then signs in normally.

    Raises:
        400: If the invitation was already accepted or has expired
        404: If the token matches no invitation
        409: If an account with the email was created in the meantime
    """
    runtime = get_runtime()
    ip = client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"invite:accept:{ip or 'unknown'}",
        runtime.settings.invite_accept_rate_limit_per_minute,
        RATE_LIMIT_WINDOW_SECONDS,
    )
    user = runtime.invites.accept(
        body.token,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_address=ip,
        user_agent=user_agent(request),
    )
    return Envelope(status="ok", data=_user_to_response(user))
