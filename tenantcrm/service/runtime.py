from __future__ import annotations

import threading
import time
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import urlsplit, urlunsplit

from tenantcrm.config import get_settings, reset_settings_cache
from tenantcrm.logging import get_logger
from tenantcrm.service.audit import AuditService
from tenantcrm.service.auth import AuthService
from tenantcrm.service.background import BackgroundRunner
from tenantcrm.service.email import EmailService
from tenantcrm.service.invites import InviteService
from tenantcrm.service.lockout import LockoutGuard
from tenantcrm.service.passwords import PasswordHasher
from tenantcrm.service.sessions import SessionAuthenticator
from tenantcrm.service.tasks import TaskService
from tenantcrm.service.tenancy import TenantResolver
from tenantcrm.service.tenants import TenantSettingsService
from tenantcrm.service.tokens import TokenService
from tenantcrm.service.users import UserAdminService
from tenantcrm.storage.memory import MemoryStore
from tenantcrm.storage.postgres import PostgresStore
from tenantcrm.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***``."""
    if not url:
        return url
    parsed = urlsplit(url)
    userinfo, sep, hostinfo = parsed.netloc.rpartition("@")
    if not sep or ":" not in userinfo:
        return url
    user = userinfo.split(":", 1)[0]
    return urlunsplit(parsed._replace(netloc=f"{user}:***@{hostinfo}"))


class Runtime:
    """Wires the store, cache and services shared by every request."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            app_env=self.settings.app_env.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = self._open_store()
        self.cache = self._connect_cache()

        self.background = BackgroundRunner()
        self.hasher = PasswordHasher()
        self.tokens = TokenService(self.store, self.settings)
        self.sessions = SessionAuthenticator(
            self.store, self.tokens, self.settings, cache=self.cache
        )
        self.tenants = TenantResolver(self.store, base_domain=self.settings.base_domain)
        self.lockout = LockoutGuard(self.store, self.settings)
        self.audit = AuditService(self.store, self.background)
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            frontend_url=self.settings.frontend_url,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            tokens=self.tokens,
            lockout=self.lockout,
            audit=self.audit,
            email=self.email,
            background=self.background,
            cache=self.cache,
        )
        self.users = UserAdminService(self.store, self.audit)
        self.invites = InviteService(
            self.store,
            self.settings,
            hasher=self.hasher,
            audit=self.audit,
            email=self.email,
            background=self.background,
        )
        self.tenant_settings = TenantSettingsService(self.store, self.audit)
        self.tasks = TaskService(self.store, self.audit)
        # in-process sliding windows, used only without Redis
        self._local_rate_limits: Dict[str, List[float]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type="memory" if isinstance(self.store, MemoryStore) else "postgres",
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            bearer_tokens_enabled=self.settings.bearer_tokens_enabled,
        )

    def _open_store(self):
        if self.settings.use_memory_store:
            return MemoryStore()
        try:
            return PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

    def _connect_cache(self) -> Optional[Union[RedisCache, SyncRedisCache]]:
        """Connect to Redis, or fall back to in-process state where allowed.

        Outside TEST_MODE and ALLOW_REDIS_FALLBACK_DEV a missing Redis is fatal.
        """
        settings = self.settings
        failure: Optional[Exception] = None
        if settings.redis_url:
            # the async client binds to one event loop, which TestClient does not keep
            cache_cls = SyncRedisCache if settings.test_mode else RedisCache
            try:
                cache = cache_cls(settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                failure = exc
        if not (settings.test_mode or settings.allow_redis_fallback_dev):
            raise RuntimeError(
                "Redis is required for rate limits and the access token denylist; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from failure
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(settings.redis_url),
            error=str(failure) if failure else "redis_url_missing",
            mode="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
        )
        return None

    async def close(self) -> None:
        await self.background.drain()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache._sync_client.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
) -> Union[bool, Tuple[bool, int, int]]:
    """Enforce sliding-window rate limits even when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Maximum requests per window
        window_seconds: Window duration in seconds
        return_remaining: If True, return (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining
        )
    now = time.monotonic()
    with runtime._local_rate_limit_lock:
        hits = [ts for ts in runtime._local_rate_limits.get(key, []) if ts > now - window_seconds]
        allowed = len(hits) < limit
        if allowed:
            hits.append(now)
        runtime._local_rate_limits[key] = hits
        remaining = max(0, limit - len(hits))
        reset_seconds = 0 if allowed else int(hits[0] + window_seconds - now) + 1
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
