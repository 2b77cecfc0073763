"""Permission checks as pure decisions.

Permission names follow ``resource:action[:scope]`` where scope is ``all``
or ``own``. Each check takes the caller's flattened permission set and
returns a :class:`Decision`; the request pipeline turns a denial into the
matching 403 error. Nothing here reads global state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, FrozenSet, Iterable, Optional

from tenantcrm.service.errors import (
    InsufficientPermission,
    ModuleDisabled,
    OwnershipDenied,
)
from tenantcrm.storage.models import Tenant

OwnerLookup = Callable[[], Optional[str]]


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str = ""
    error: Optional[type] = None

    @classmethod
    def allow(cls, reason: str = "granted") -> "Decision":
        return cls(True, reason)

    @classmethod
    def deny(cls, reason: str, error: type = InsufficientPermission) -> "Decision":
        return cls(False, reason, error)

    def raise_if_denied(self) -> None:
        if self.allowed:
            return
        error_cls = self.error or InsufficientPermission
        raise error_cls(self.reason)


def require_permission(granted: FrozenSet[str], name: str) -> Decision:
    if name in granted:
        return Decision.allow(name)
    return Decision.deny(f"Insufficient permissions. Required: {name}")


def require_any(granted: FrozenSet[str], *names: str) -> Decision:
    for name in names:
        if name in granted:
            return Decision.allow(name)
    return Decision.deny(
        f"Insufficient permissions. Required one of: {', '.join(names)}"
    )


def require_all(granted: FrozenSet[str], *names: str) -> Decision:
    missing = [name for name in names if name not in granted]
    if not missing:
        return Decision.allow(", ".join(names))
    return Decision.deny(f"Insufficient permissions. Required: {', '.join(names)}")


def require_permission_with_ownership(
    granted: FrozenSet[str],
    all_name: str,
    own_name: str,
    *,
    user_id: str,
    get_owner_id: OwnerLookup,
) -> Decision:
    """Allow on ``all_name``; otherwise require ``own_name`` and ownership.

    ``get_owner_id`` is only called when the caller holds just the ``own``
    variant. A None owner (missing or unowned resource) is a denial.
    """
    if all_name in granted:
        return Decision.allow(all_name)
    if own_name not in granted:
        return Decision.deny(
            f"Insufficient permissions. Required: {all_name} or {own_name}"
        )
    owner_id = get_owner_id()
    if owner_id is None or owner_id != user_id:
        return Decision.deny(
            "Access denied. You can only access your own resources.", OwnershipDenied
        )
    return Decision.allow(own_name)


def require_module(tenant: Tenant, module: str) -> Decision:
    if tenant.module_enabled(module):
        return Decision.allow(module)
    return Decision.deny(
        f"The {module} module is not enabled for your organization", ModuleDisabled
    )


def enforce(decisions: Iterable[Callable[[], Decision]]) -> None:
    """Evaluate checks in order and stop at the first denial."""
    for check in decisions:
        check().raise_if_denied()


__all__ = [
    "Decision",
    "enforce",
    "require_all",
    "require_any",
    "require_module",
    "require_permission",
    "require_permission_with_ownership",
]
