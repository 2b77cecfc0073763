from __future__ import annotations

from typing import Mapping, Optional, Protocol

from tenantcrm.logging import get_logger
from tenantcrm.service.errors import (
    TenantAccessDenied,
    TenantNotFound,
    TenantNotResolved,
)
from tenantcrm.storage.common import PLATFORM_ROLES
from tenantcrm.storage.models import Tenant

logger = get_logger(__name__)

TENANT_HEADER = "x-tenant-id"
_IGNORED_SUBDOMAINS = frozenset({"www", "api", "app"})


class TenantStore(Protocol):
    def find_active_tenant(self, identifier: str) -> Optional[Tenant]: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...


def normalize_host(host: Optional[str]) -> str:
    """Lowercase host without port, taking the first value of a forwarded list."""
    normalized = (host or "").split(",")[0].strip().lower()
    if not normalized:
        return ""
    normalized = normalized.split("/")[0]
    if normalized.startswith("["):
        # IPv6 literal; never carries a tenant label
        return ""
    return normalized.split(":")[0]


def subdomain_from_host(host: Optional[str], base_domain: Optional[str] = None) -> Optional[str]:
    """Return the tenant label of ``host``.

    With ``base_domain`` configured only hosts under it yield a label. Without
    it, the left-most label of a host with more than two labels is used.
    """
    normalized = normalize_host(host)
    if not normalized:
        return None
    if base_domain:
        base = base_domain.strip().lower().lstrip(".")
        suffix = f".{base}"
        if not normalized.endswith(suffix):
            return None
        label = normalized[: -len(suffix)].split(".")[-1]
    else:
        parts = normalized.split(".")
        if len(parts) <= 2:
            return None
        label = parts[0]
    if not label or label in _IGNORED_SUBDOMAINS:
        return None
    return label


class TenantResolver:
    """Decides which tenant a request is allowed to act on.

    The supplied identifier comes from the ``X-Tenant-Id`` header or, failing
    that, the host subdomain. For tenant-bound users it is only ever a
    consistency check against the user's own tenant.
    """

    def __init__(self, store: TenantStore, *, base_domain: Optional[str] = None) -> None:
        self.store = store
        self.base_domain = base_domain

    def extract_identifier(self, headers: Mapping[str, str], host: Optional[str] = None) -> Optional[str]:
        header_value = (headers.get(TENANT_HEADER) or "").strip()
        if header_value:
            return header_value
        return subdomain_from_host(host or headers.get("host"), self.base_domain)

    def _lookup(self, identifier: str) -> Tenant:
        tenant = self.store.find_active_tenant(identifier)
        if tenant is None:
            raise TenantNotFound()
        return tenant

    def resolve(
        self,
        *,
        user_id: Optional[str],
        role: Optional[str],
        user_tenant_id: Optional[str],
        identifier: Optional[str],
    ) -> Tenant:
        if user_id is None:
            if not identifier:
                raise TenantNotResolved()
            return self._lookup(identifier)

        if role in PLATFORM_ROLES:
            if not identifier:
                raise TenantNotResolved("Tenant identifier is required for platform users")
            tenant = self._lookup(identifier)
            logger.info("platform_tenant_selected", user_id=user_id, tenant_id=tenant.id)
            return tenant

        if not user_tenant_id:
            raise TenantAccessDenied("User has no associated tenant")

        if identifier:
            supplied = self._lookup(identifier)
            if supplied.id != user_tenant_id:
                logger.warning(
                    "tenant_spoofing_attempt",
                    user_id=user_id,
                    user_tenant_id=user_tenant_id,
                    supplied_identifier=identifier,
                    supplied_tenant_id=supplied.id,
                )
                raise TenantAccessDenied()
            return supplied

        tenant = self.store.get_tenant(user_tenant_id)
        if tenant is None or not tenant.is_active:
            raise TenantNotFound()
        return tenant
