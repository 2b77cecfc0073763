from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tenantcrm.api.schemas import Envelope, ErrorBody
from tenantcrm.config import get_settings
from tenantcrm.logging import get_correlation_id, get_logger
from tenantcrm.service.errors import ServiceError
from tenantcrm.storage.errors import ConstraintViolation, TenantScopeViolation

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    422: "validation_error",
    429: "rate_limited",
    500: "server_error",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Build the ``{"status": "error", ...}`` envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details)
    envelope = Envelope(status="error", error=error_body)
    request_id = get_correlation_id()
    if request_id:
        envelope.request_id = request_id
    return JSONResponse(status_code=status_code, content=envelope.model_dump(), headers=headers)


def _validation_details(exc: RequestValidationError) -> list:
    details = []
    for err in exc.errors():
        # Drop the leading "body"/"query" segment so clients see field names
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        details.append({"field": ".".join(loc) or None, "message": err.get("msg", "invalid value")})
    return details


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        details = _validation_details(exc)
        logger.info(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            fields=[d["field"] for d in details],
        )
        return _error_response(400, "Validation failed", details, code="validation_error")

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
            detail=exc.detail,
        )
        return _error_response(409, exc.message, exc.detail, code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        error_code = getattr(exc, "error_code", None)
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_type=type(exc).__name__,
            error_code=error_code,
            message=exc.message,
            detail=exc.detail,
        )
        headers = None
        retry_after = exc.detail.get("retry_after")
        if exc.status_code == 429 and retry_after:
            headers = {"Retry-After": str(retry_after)}
        # 401 reasons stay in the logs; clients get the generic message only
        details = None if exc.status_code == 401 else (exc.detail or None)
        return _error_response(
            exc.status_code, exc.message, details, code=error_code, headers=headers
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        details = exc.detail if isinstance(exc.detail, (dict, list)) else None
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
                message=message,
            )
        return _error_response(exc.status_code, message, details, headers=getattr(exc, "headers", None))

    @app.exception_handler(TenantScopeViolation)
    async def handle_tenant_scope_violation(request: Request, exc: TenantScopeViolation):
        logger.error(
            "tenant_scope_violation",
            path=request.url.path,
            method=request.method,
            error=str(exc),
        )
        return _error_response(500, _server_error_message(exc), code="server_error")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return _error_response(500, _server_error_message(exc), code="server_error")


def _server_error_message(exc: Exception) -> str:
    if get_settings().is_production:
        return "Internal server error"
    return str(exc) or "Internal server error"
