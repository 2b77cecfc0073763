"""Storage helpers shared between the memory and postgres backends.

Both stores seed and read the same role catalog and apply the same refresh
token candidate bounds so behavior does not drift between test and
production deployments.
"""

from __future__ import annotations

import re
import uuid
from datetime import timedelta
from ipaddress import ip_address
from typing import Any, Dict, FrozenSet, Optional

ROLE_OWNER = "owner"
ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_PLATFORM_OWNER = "platform_owner"

TENANT_ROLES = frozenset({ROLE_OWNER, ROLE_ADMIN, ROLE_MANAGER})
PLATFORM_ROLES = frozenset({ROLE_PLATFORM_OWNER})

_TENANT_ADMIN_PERMISSIONS = frozenset({
    "tasks:read:all",
    "tasks:read:own",
    "tasks:create",
    "tasks:update:all",
    "tasks:update:own",
    "tasks:delete:all",
    "tasks:delete:own",
    "users:read",
    "users:read:own",
    "users:create",
    "users:manage",
    "audit:read",
    "settings:read",
})

# Role -> permission catalog; seeded into both backends
DEFAULT_ROLE_PERMISSIONS: Dict[str, FrozenSet[str]] = {
    ROLE_OWNER: _TENANT_ADMIN_PERMISSIONS | {"settings:manage", "billing:manage"},
    ROLE_ADMIN: _TENANT_ADMIN_PERMISSIONS,
    ROLE_MANAGER: frozenset({
        "tasks:read:own",
        "tasks:create",
        "tasks:update:own",
        "tasks:delete:own",
        "users:read:own",
    }),
    ROLE_PLATFORM_OWNER: _TENANT_ADMIN_PERMISSIONS
    | {"settings:manage", "tenants:read", "tenants:manage"},
}

# Active refresh tokens per (user, tenant); issuing one more revokes the oldest.
# Lookups scan exactly this set plus a few recent revocations.
MAX_ACTIVE_REFRESH_TOKENS = 10
REFRESH_SCAN_REVOKED_LIMIT = 5
REFRESH_REVOKED_LOOKBACK = timedelta(days=30)
REVOKE_REASON_SESSION_LIMIT = "session_limit"

_SLUG_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_slug(slug: str) -> bool:
    return bool(_SLUG_PATTERN.match(slug or ""))


def looks_like_uuid(value: str) -> bool:
    """True when ``value`` parses as a UUID, so tenant lookups try ids first."""
    try:
        uuid.UUID(str(value))
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a normalised IP string or None for anything unparseable."""
    if raw_ip is None:
        return None
    try:
        return str(ip_address(str(raw_ip).strip()))
    except ValueError:
        return None
