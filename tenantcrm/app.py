from __future__ import annotations

import asyncio
import hmac
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantcrm.api.error_handling import register_exception_handlers
from tenantcrm.api.routes import router
from tenantcrm.api.security import CSRF_COOKIE, set_csrf_cookie
from tenantcrm.config import Settings
from tenantcrm.logging import (
    clear_request_identity,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup; drain background work on shutdown."""
    from tenantcrm.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__, app_env=runtime.settings.app_env.value)

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tenant CRM API", version=__version__, lifespan=lifespan)


_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
_CSRF_EXEMPT_PATHS = frozenset({
    "/api/v1/auth/login",
    "/api/v1/auth/register",
    "/api/v1/auth/refresh",
    "/api/v1/auth/password/forgot",
    "/api/v1/auth/password/reset",
    "/api/v1/health",
})
_CSRF_EXEMPT_PATTERNS = (re.compile(r"^/api/v1/public/forms/.+$"),)


def _csrf_exempt(path: str) -> bool:
    if path in _CSRF_EXEMPT_PATHS:
        return True
    return any(pattern.match(path) for pattern in _CSRF_EXEMPT_PATTERNS)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Avoid wildcard when credentials are enabled
    return [_settings.frontend_url]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Tenant-Id",
        "X-CSRF-Token",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Double-submit check: ``X-CSRF-Token`` must equal the ``csrf_token`` cookie."""
    if request.method.upper() in _CSRF_SAFE_METHODS or _csrf_exempt(request.url.path):
        return await call_next(request)
    header_token = request.headers.get("X-CSRF-Token") or ""
    cookie_token = request.cookies.get(CSRF_COOKIE) or ""
    if not header_token or not cookie_token or not hmac.compare_digest(
        header_token.encode(), cookie_token.encode()
    ):
        logger.warning(
            "csrf_validation_failed",
            path=request.url.path,
            method=request.method,
            header_present=bool(header_token),
            cookie_present=bool(cookie_token),
        )
        return JSONResponse(
            status_code=403,
            content={
                "status": "error",
                "error": {
                    "code": "forbidden",
                    "message": "Invalid or missing CSRF token",
                    "details": None,
                },
                "request_id": get_correlation_id(),
            },
        )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault("API-Version", __version__)
    return response


# Registered last so it runs first and every log line carries the id
@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Take ``X-Request-ID`` from the client or generate one; echo it back."""
    client_request_id = request.headers.get("X-Request-ID")
    clear_request_identity()
    correlation_id = set_correlation_id(client_request_id[:128] if client_request_id else None)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/api/v1/health")
async def health(request: Request, response: Response) -> Dict[str, Any]:
    """Liveness check; also hands out a CSRF cookie to new browsers."""
    from tenantcrm.service.runtime import get_runtime

    runtime = get_runtime()
    if not request.cookies.get(CSRF_COOKIE):
        set_csrf_cookie(response, runtime.settings)
    return {
        "status": "ok",
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/v1/ready")
async def ready() -> JSONResponse:
    """Readiness check covering the store and Redis."""
    from tenantcrm.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, check) -> bool:
        try:
            return bool(await asyncio.wait_for(check(), HEALTH_CHECK_TIMEOUT_SECONDS))
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", lambda: asyncio.to_thread(runtime.store.ping))
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.ping)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    healthy = db_ok and redis_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ready" if healthy else "unavailable", "checks": checks},
    )
