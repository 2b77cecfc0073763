from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use ``correlation_id`` for the current request, generating one if absent."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_identity(*, tenant_id: Optional[str], user_id: Optional[str]) -> None:
    """Attach tenant and user to every later log line of this request."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id, user_id=user_id)


def clear_request_identity() -> None:
    structlog.contextvars.clear_contextvars()


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return value[:2] + "***"
    return f"{local[:1]}***@{domain}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and email addresses before rendering.

    Emails keep their domain so tenant-level patterns stay visible; secrets
    keep two characters at each end.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif any(part in lower_key for part in ("password", "secret", "token", "authorization", "cookie")):
            event_dict[key] = value[:2] + "***" + value[-2:] if len(value) > 4 else "***"
    return event_dict


def configure_logging(level: str = "INFO", *, console: bool = False) -> None:
    """Install the structlog pipeline.

    JSON lines by default; ``console`` switches to the coloured dev renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if console:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    console=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY
    or os.getenv("LOG_JSON", "true").lower() not in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Values under these keys never reach audit rows or responses
SENSITIVE_KEYS = frozenset({
    "password", "new_password", "current_password", "password_hash",
    "token", "access_token", "refresh_token", "csrf_token", "reset_token",
    "secret", "jwt_secret", "authorization", "api_key",
})


def redact_sensitive(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Return a copy of ``data`` with sensitive values set to ``"[REDACTED]"``.

    Dicts, lists and tuples are walked recursively; any key ending in
    ``_token`` counts as sensitive.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            normalized = str(key).lower().replace("-", "_").replace(" ", "_")
            if normalized in SENSITIVE_KEYS or normalized.endswith("_token"):
                result[key] = "[REDACTED]"
            else:
                result[key] = redact_sensitive(value, depth=depth + 1, max_depth=max_depth)
        return result
    if isinstance(data, (list, tuple)):
        return [redact_sensitive(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
