from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from tenantcrm.config import Settings
from tenantcrm.logging import get_logger
from tenantcrm.service.errors import AccountLocked
from tenantcrm.storage.models import AccountLockout, utcnow

logger = get_logger(__name__)


class LockoutStore(Protocol):
    def get_lockout(self, email: str, tenant_slug: str) -> Optional[AccountLockout]: ...

    def record_failed_login(
        self,
        email: str,
        tenant_slug: str,
        *,
        ip_address: Optional[str],
        window: timedelta,
        threshold: int,
        lock_duration: timedelta,
    ) -> Tuple[int, Optional[datetime]]: ...

    def record_successful_login(
        self, email: str, tenant_slug: str, *, ip_address: Optional[str]
    ) -> None: ...


class LockoutGuard:
    """Per (email, tenant slug) failed-login tracking with a fixed lock."""

    def __init__(self, store: LockoutStore, settings: Settings) -> None:
        self.store = store
        self.threshold = settings.lockout_threshold
        self.window = timedelta(minutes=settings.lockout_window_minutes)
        self.lock_duration = timedelta(minutes=settings.lockout_duration_minutes)

    @staticmethod
    def _key(email: str, tenant_slug: Optional[str]) -> Tuple[str, str]:
        return email.strip().lower(), (tenant_slug or "").strip().lower()

    def locked_until(self, email: str, tenant_slug: Optional[str]) -> Optional[datetime]:
        email, slug = self._key(email, tenant_slug)
        lockout = self.store.get_lockout(email, slug)
        if lockout and lockout.locked_until > utcnow():
            return lockout.locked_until
        return None

    def ensure_not_locked(self, email: str, tenant_slug: Optional[str]) -> None:
        """Raise ``AccountLocked`` before any password work happens."""
        until = self.locked_until(email, tenant_slug)
        if until is not None:
            _, slug = self._key(email, tenant_slug)
            logger.warning("login_blocked_locked", email=email, tenant_slug=slug, locked_until=until.isoformat())
            raise AccountLocked()

    def record_failure(
        self, email: str, tenant_slug: Optional[str], ip_address: Optional[str] = None
    ) -> Optional[datetime]:
        email, slug = self._key(email, tenant_slug)
        failures, locked_until = self.store.record_failed_login(
            email,
            slug,
            ip_address=ip_address,
            window=self.window,
            threshold=self.threshold,
            lock_duration=self.lock_duration,
        )
        if locked_until is not None:
            logger.warning(
                "account_locked",
                email=email,
                tenant_slug=slug,
                failures=failures,
                locked_until=locked_until.isoformat(),
            )
        return locked_until

    def record_success(
        self, email: str, tenant_slug: Optional[str], ip_address: Optional[str] = None
    ) -> None:
        email, slug = self._key(email, tenant_slug)
        self.store.record_successful_login(email, slug, ip_address=ip_address)
