from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantcrm.logging import get_logger
from tenantcrm.storage.common import (
    MAX_ACTIVE_REFRESH_TOKENS,
    REFRESH_REVOKED_LOOKBACK,
    REFRESH_SCAN_REVOKED_LIMIT,
    REVOKE_REASON_SESSION_LIMIT,
    looks_like_uuid,
    normalize_email,
    parse_ip_address,
)
from tenantcrm.storage.errors import ConstraintViolation, require_tenant_id
from tenantcrm.storage.models import (
    AccountLockout,
    AuditLogEntry,
    PasswordResetToken,
    RefreshTokenRecord,
    Task,
    TeamInvite,
    Tenant,
    User,
    new_id,
)

_TASK_UPDATABLE_COLUMNS = ("title", "description", "status", "assigned_to")


def _str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _json_field(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class PostgresStore:
    """Postgres-backed credential, tenant and task store.

    Every public method runs in one pooled connection with autocommit
    disabled, so everything it executes commits or rolls back together.
    Tenant-scoped methods additionally set ``app.tenant_id`` for the
    transaction so row-level security policies apply alongside the explicit
    ``tenant_id`` predicates.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _tenant_conn(self, tenant_id: str) -> Iterator[Any]:
        require_tenant_id(tenant_id)
        with self._connect() as conn:
            conn.execute("SELECT set_config('app.tenant_id', %s, true)", (str(tenant_id),))
            yield conn

    def _verify_required_schema(self) -> None:
        """Fail fast when the schema has not been installed."""

        required_tables = [
            "tenants",
            "users",
            "roles",
            "permissions",
            "role_permissions",
            "refresh_tokens",
            "login_attempts",
            "account_lockouts",
            "password_reset_tokens",
            "audit_logs",
            "tasks",
            "team_invites",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def ping(self) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _to_tenant(row: Dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            is_active=row.get("is_active", True),
            settings=_json_field(row.get("settings")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            first_name=row["first_name"],
            last_name=row.get("last_name"),
            role=row["role"],
            tenant_id=_str_or_none(row.get("tenant_id")),
            is_active=row.get("is_active", True),
            token_version=row.get("token_version", 0),
            last_login_at=row.get("last_login_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_refresh(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=str(row["tenant_id"]),
            token_hash=row["token_hash"],
            family_id=str(row["family_id"]),
            expires_at=row["expires_at"],
            is_revoked=row["is_revoked"],
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_invite(row: Dict[str, Any]) -> TeamInvite:
        return TeamInvite(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            email=row["email"],
            role=row["role"],
            token_hash=row["token_hash"],
            created_by=_str_or_none(row.get("created_by")),
            expires_at=row["expires_at"],
            accepted_at=row.get("accepted_at"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_task(row: Dict[str, Any]) -> Task:
        return Task(
            id=str(row["id"]),
            tenant_id=str(row["tenant_id"]),
            title=row["title"],
            description=row.get("description"),
            status=row["status"],
            assigned_to=_str_or_none(row.get("assigned_to")),
            created_by=str(row["created_by"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _to_audit(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            tenant_id=_str_or_none(row.get("tenant_id")),
            user_id=_str_or_none(row.get("user_id")),
            action=row["action"],
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            details=_json_field(row.get("details")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=row["created_at"],
        )

    # -- tenants ----------------------------------------------------------

    def tenant_slug_exists(self, slug: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM tenants WHERE slug = %s", (slug,)).fetchone()
        return row is not None

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        if not looks_like_uuid(tenant_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE id = %s", (tenant_id,)).fetchone()
        return self._to_tenant(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenants WHERE slug = %s", (slug,)).fetchone()
        return self._to_tenant(row) if row else None

    def find_active_tenant(self, identifier: str) -> Optional[Tenant]:
        """Look up an active tenant by id or slug."""
        with self._connect() as conn:
            if looks_like_uuid(identifier):
                row = conn.execute(
                    "SELECT * FROM tenants WHERE (id = %s OR slug = %s) AND is_active = TRUE",
                    (identifier, identifier.lower()),
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM tenants WHERE slug = %s AND is_active = TRUE",
                    (identifier.lower(),),
                ).fetchone()
        return self._to_tenant(row) if row else None

    def update_tenant_settings(self, tenant_id: str, settings: Dict[str, Any]) -> Optional[Tenant]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "UPDATE tenants SET settings = %s, updated_at = now() WHERE id = %s RETURNING *",
                (json.dumps(settings), tenant_id),
            ).fetchone()
        return self._to_tenant(row) if row else None

    def create_tenant_with_owner(
        self,
        *,
        name: str,
        slug: str,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: Optional[str] = None,
        role: str = "owner",
        settings: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Tenant, User]:
        email = normalize_email(email)
        try:
            with self._connect() as conn:
                tenant_row = conn.execute(
                    """
                    INSERT INTO tenants (id, name, slug, settings)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), name, slug, json.dumps(settings or {})),
                ).fetchone()
                conn.execute(
                    "SELECT set_config('app.tenant_id', %s, true)", (str(tenant_row["id"]),)
                )
                user_row = conn.execute(
                    """
                    INSERT INTO users (id, tenant_id, email, password_hash, first_name, last_name, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_row["id"], email, password_hash, first_name, last_name, role),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = "company_slug" if "slug" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._to_tenant(tenant_row), self._to_user(user_row)

    # -- users ------------------------------------------------------------

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM users WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return row is not None

    def create_user(
        self,
        *,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: Optional[str] = None,
        role: str,
        tenant_id: Optional[str],
    ) -> User:
        try:
            with self._connect() as conn:
                if tenant_id:
                    conn.execute("SELECT set_config('app.tenant_id', %s, true)", (tenant_id,))
                row = conn.execute(
                    """
                    INSERT INTO users (id, tenant_id, email, password_hash, first_name, last_name, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), tenant_id, normalize_email(email), password_hash, first_name, last_name, role),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return self._to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        if not looks_like_uuid(user_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._to_user(row) if row else None

    def get_user_in_tenant(self, tenant_id: str, user_id: str) -> Optional[User]:
        if not looks_like_uuid(user_id):
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE id = %s AND tenant_id = %s", (user_id, tenant_id)
            ).fetchone()
        return self._to_user(row) if row else None

    def get_user_by_email_and_tenant(self, email: str, tenant_id: str) -> Optional[User]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s AND tenant_id = %s",
                (normalize_email(email), tenant_id),
            ).fetchone()
        return self._to_user(row) if row else None

    def get_platform_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = %s AND tenant_id IS NULL",
                (normalize_email(email),),
            ).fetchone()
        return self._to_user(row) if row else None

    def list_users(self, tenant_id: str, limit: int = 100) -> List[User]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                (tenant_id, limit),
            ).fetchall()
        return [self._to_user(row) for row in rows]

    def update_user_role(self, tenant_id: str, user_id: str, role: str) -> Optional[User]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                """
                UPDATE users
                SET role = %s, token_version = token_version + 1, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (role, user_id, tenant_id),
            ).fetchone()
        return self._to_user(row) if row else None

    def deactivate_user(self, tenant_id: str, user_id: str) -> Optional[User]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                """
                UPDATE users
                SET is_active = FALSE, token_version = token_version + 1, updated_at = now()
                WHERE id = %s AND tenant_id = %s
                RETURNING *
                """,
                (user_id, tenant_id),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (user_id,),
            )
        return self._to_user(row)

    def update_last_login(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET last_login_at = now() WHERE id = %s", (user_id,))

    def get_role_permissions(self, role: str) -> FrozenSet[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.name FROM permissions p
                JOIN role_permissions rp ON rp.permission_id = p.id
                JOIN roles r ON r.id = rp.role_id
                WHERE r.name = %s
                """,
                (role,),
            ).fetchall()
        return frozenset(row["name"] for row in rows)

    def revoke_all_for_user(self, user_id: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users SET token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (user_id,),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (user_id,),
            )
        return row["token_version"]

    def set_password_and_revoke(self, user_id: str, password_hash: str) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING token_version
                """,
                (password_hash, user_id),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (user_id,),
            )
        return row["token_version"]

    # -- refresh tokens ---------------------------------------------------

    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        """Store ``record`` and evict the oldest sessions beyond the active cap."""
        try:
            with self._tenant_conn(record.tenant_id) as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_tokens (id, user_id, tenant_id, family_id, token_hash, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.tenant_id,
                        record.family_id,
                        record.token_hash,
                        record.expires_at,
                        record.created_at,
                    ),
                )
                evicted = conn.execute(
                    """
                    UPDATE refresh_tokens
                    SET is_revoked = TRUE, revoked_at = now(), revoked_reason = %s
                    WHERE id IN (
                        SELECT id FROM refresh_tokens
                        WHERE user_id = %s AND tenant_id = %s AND is_revoked = FALSE
                        ORDER BY created_at DESC
                        OFFSET %s
                        FOR UPDATE
                    )
                    """,
                    (
                        REVOKE_REASON_SESSION_LIMIT,
                        record.user_id,
                        record.tenant_id,
                        MAX_ACTIVE_REFRESH_TOKENS,
                    ),
                ).rowcount
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": record.user_id})
        if evicted:
            self.logger.info(
                "refresh_sessions_evicted",
                user_id=record.user_id,
                tenant_id=record.tenant_id,
                evicted=evicted,
            )
        return record

    def list_refresh_candidates(self, user_id: str, tenant_id: str) -> List[RefreshTokenRecord]:
        """Most recent active tokens plus recently revoked ones, newest first."""
        if not looks_like_uuid(user_id):
            return []
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                """
                (SELECT * FROM refresh_tokens
                 WHERE user_id = %s AND tenant_id = %s AND is_revoked = FALSE
                 ORDER BY created_at DESC LIMIT %s)
                UNION ALL
                (SELECT * FROM refresh_tokens
                 WHERE user_id = %s AND tenant_id = %s AND is_revoked = TRUE
                   AND revoked_at >= now() - %s
                 ORDER BY revoked_at DESC LIMIT %s)
                """,
                (
                    user_id,
                    tenant_id,
                    MAX_ACTIVE_REFRESH_TOKENS,
                    user_id,
                    tenant_id,
                    REFRESH_REVOKED_LOOKBACK,
                    REFRESH_SCAN_REVOKED_LIMIT,
                ),
            ).fetchall()
        return [self._to_refresh(row) for row in rows]

    def rotate_refresh_token(
        self,
        token_id: str,
        *,
        tenant_id: str,
        new_token_hash: str,
        ttl_minutes: int,
    ) -> Optional[RefreshTokenRecord]:
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE id = %s AND tenant_id = %s AND is_revoked = FALSE
                RETURNING user_id, family_id
                """,
                (token_id, tenant_id),
            ).fetchone()
            if not row:
                return None
            successor = RefreshTokenRecord.new(
                str(row["user_id"]),
                tenant_id,
                new_token_hash,
                ttl_minutes=ttl_minutes,
                family_id=str(row["family_id"]),
            )
            conn.execute(
                """
                INSERT INTO refresh_tokens (id, user_id, tenant_id, family_id, token_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    successor.id,
                    successor.user_id,
                    successor.tenant_id,
                    successor.family_id,
                    successor.token_hash,
                    successor.expires_at,
                    successor.created_at,
                ),
            )
        return successor

    def revoke_refresh_token(self, token_id: str, tenant_id: str) -> bool:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE id = %s AND tenant_id = %s AND is_revoked = FALSE
                """,
                (token_id, tenant_id),
            )
            return cur.rowcount > 0

    def revoke_refresh_family(self, family_id: str, tenant_id: str) -> int:
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE family_id = %s AND tenant_id = %s AND is_revoked = FALSE
                """,
                (family_id, tenant_id),
            )
            return cur.rowcount

    def revoke_user_refresh_tokens(self, user_id: str, tenant_id: str) -> int:
        if not looks_like_uuid(user_id):
            return 0
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND tenant_id = %s AND is_revoked = FALSE
                """,
                (user_id, tenant_id),
            )
            return cur.rowcount

    # -- login attempts and lockouts -------------------------------------

    def get_lockout(self, email: str, tenant_slug: str) -> Optional[AccountLockout]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_lockouts WHERE email = %s AND tenant_slug = %s",
                (normalize_email(email), tenant_slug),
            ).fetchone()
        if not row:
            return None
        return AccountLockout(
            email=row["email"],
            tenant_slug=row["tenant_slug"],
            locked_until=row["locked_until"],
            failed_attempts=row["failed_attempts"],
        )

    def record_failed_login(
        self,
        email: str,
        tenant_slug: str,
        *,
        ip_address: Optional[str],
        window: timedelta,
        threshold: int,
        lock_duration: timedelta,
    ) -> Tuple[int, Optional[datetime]]:
        email = normalize_email(email)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (email, tenant_slug, success, ip_address)
                VALUES (%s, %s, FALSE, %s)
                """,
                (email, tenant_slug, parse_ip_address(ip_address)),
            )
            row = conn.execute(
                """
                SELECT count(*) AS failures FROM login_attempts
                WHERE email = %s AND tenant_slug = %s AND success = FALSE
                  AND attempted_at >= now() - %s
                """,
                (email, tenant_slug, window),
            ).fetchone()
            failures = int(row["failures"])
            if failures < threshold:
                return failures, None
            locked = conn.execute(
                """
                INSERT INTO account_lockouts (email, tenant_slug, locked_until, failed_attempts)
                VALUES (%s, %s, now() + %s, %s)
                ON CONFLICT (email, tenant_slug) DO UPDATE
                SET locked_until = EXCLUDED.locked_until,
                    failed_attempts = EXCLUDED.failed_attempts
                RETURNING locked_until
                """,
                (email, tenant_slug, lock_duration, failures),
            ).fetchone()
        return failures, locked["locked_until"]

    def record_successful_login(
        self, email: str, tenant_slug: str, *, ip_address: Optional[str]
    ) -> None:
        email = normalize_email(email)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO login_attempts (email, tenant_slug, success, ip_address)
                VALUES (%s, %s, TRUE, %s)
                """,
                (email, tenant_slug, parse_ip_address(ip_address)),
            )
            conn.execute(
                "DELETE FROM account_lockouts WHERE email = %s AND tenant_slug = %s",
                (email, tenant_slug),
            )

    # -- password reset ---------------------------------------------------

    def create_password_reset_token(
        self,
        *,
        user_id: str,
        tenant_id: Optional[str],
        token_hash: str,
        ttl_minutes: int,
    ) -> PasswordResetToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO password_reset_tokens (id, user_id, tenant_id, token_hash, expires_at)
                VALUES (%s, %s, %s, %s, now() + %s)
                RETURNING *
                """,
                (new_id(), user_id, tenant_id, token_hash, timedelta(minutes=ttl_minutes)),
            ).fetchone()
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            tenant_id=_str_or_none(row.get("tenant_id")),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
        )

    def complete_password_reset(self, token_hash: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            token_row = conn.execute(
                """
                UPDATE password_reset_tokens SET used_at = now()
                WHERE token_hash = %s AND used_at IS NULL AND expires_at > now()
                RETURNING user_id
                """,
                (token_hash,),
            ).fetchone()
            if not token_row:
                return None
            user_row = conn.execute(
                """
                UPDATE users
                SET password_hash = %s, token_version = token_version + 1, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, token_row["user_id"]),
            ).fetchone()
            conn.execute(
                """
                UPDATE refresh_tokens SET is_revoked = TRUE, revoked_at = now()
                WHERE user_id = %s AND is_revoked = FALSE
                """,
                (token_row["user_id"],),
            )
        return self._to_user(user_row) if user_row else None

    # -- team invites -----------------------------------------------------

    def create_invite(
        self,
        tenant_id: str,
        *,
        email: str,
        role: str,
        token_hash: str,
        created_by: Optional[str],
        ttl_hours: int,
    ) -> TeamInvite:
        try:
            with self._tenant_conn(tenant_id) as conn:
                row = conn.execute(
                    """
                    INSERT INTO team_invites (id, tenant_id, email, role, token_hash, created_by, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, now() + %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        tenant_id,
                        normalize_email(email),
                        role,
                        token_hash,
                        created_by,
                        timedelta(hours=ttl_hours),
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return self._to_invite(row)

    def get_invite_by_token_hash(self, token_hash: str) -> Optional[TeamInvite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM team_invites WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._to_invite(row) if row else None

    def accept_invite(
        self,
        token_hash: str,
        *,
        password_hash: str,
        first_name: str,
        last_name: Optional[str] = None,
    ) -> Optional[User]:
        """Create the invited user and mark the invite used in one transaction."""
        try:
            with self._connect() as conn:
                invite = conn.execute(
                    """
                    UPDATE team_invites SET accepted_at = now()
                    WHERE token_hash = %s AND accepted_at IS NULL AND expires_at > now()
                    RETURNING tenant_id, email, role
                    """,
                    (token_hash,),
                ).fetchone()
                if not invite:
                    return None
                conn.execute(
                    "SELECT set_config('app.tenant_id', %s, true)", (str(invite["tenant_id"]),)
                )
                row = conn.execute(
                    """
                    INSERT INTO users (id, tenant_id, email, password_hash, first_name, last_name, role)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        invite["tenant_id"],
                        invite["email"],
                        password_hash,
                        first_name,
                        last_name,
                        invite["role"],
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._to_user(row)

    # -- audit ------------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            if entry.tenant_id:
                conn.execute("SELECT set_config('app.tenant_id', %s, true)", (entry.tenant_id,))
            conn.execute(
                """
                INSERT INTO audit_logs (id, tenant_id, user_id, action, resource_type, resource_id, details, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.tenant_id,
                    entry.user_id,
                    entry.action,
                    entry.resource_type,
                    entry.resource_id,
                    json.dumps(entry.details),
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(self, tenant_id: str, limit: int = 100) -> List[AuditLogEntry]:
        with self._tenant_conn(tenant_id) as conn:
            rows = conn.execute(
                "SELECT * FROM audit_logs WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                (tenant_id, limit),
            ).fetchall()
        return [self._to_audit(row) for row in rows]

    # -- tasks ------------------------------------------------------------

    def _assignee_in_tenant(self, conn: Any, tenant_id: str, assignee: Optional[str]) -> None:
        if not assignee:
            return
        row = None
        if looks_like_uuid(assignee):
            row = conn.execute(
                "SELECT 1 FROM users WHERE id = %s AND tenant_id = %s", (assignee, tenant_id)
            ).fetchone()
        if row is None:
            raise ConstraintViolation("assignee does not exist", {"field": "assigned_to"})

    def create_task(
        self,
        tenant_id: str,
        *,
        title: str,
        created_by: str,
        assigned_to: Optional[str] = None,
        description: Optional[str] = None,
        status: str = "open",
    ) -> Task:
        with self._tenant_conn(tenant_id) as conn:
            self._assignee_in_tenant(conn, tenant_id, assigned_to)
            row = conn.execute(
                """
                INSERT INTO tasks (id, tenant_id, title, description, status, assigned_to, created_by)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (new_id(), tenant_id, title, description, status, assigned_to, created_by),
            ).fetchone()
        return self._to_task(row)

    def list_tasks(
        self, tenant_id: str, *, assigned_to: Optional[str] = None, limit: int = 100
    ) -> List[Task]:
        with self._tenant_conn(tenant_id) as conn:
            if assigned_to is None:
                rows = conn.execute(
                    "SELECT * FROM tasks WHERE tenant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM tasks WHERE tenant_id = %s AND assigned_to = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (tenant_id, assigned_to, limit),
                ).fetchall()
        return [self._to_task(row) for row in rows]

    def get_task(self, tenant_id: str, task_id: str) -> Optional[Task]:
        if not looks_like_uuid(task_id):
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE id = %s AND tenant_id = %s", (task_id, tenant_id)
            ).fetchone()
        return self._to_task(row) if row else None

    def get_task_owner_id(self, tenant_id: str, task_id: str) -> Optional[str]:
        if not looks_like_uuid(task_id):
            return None
        with self._tenant_conn(tenant_id) as conn:
            row = conn.execute(
                "SELECT assigned_to FROM tasks WHERE id = %s AND tenant_id = %s",
                (task_id, tenant_id),
            ).fetchone()
        return _str_or_none(row["assigned_to"]) if row else None

    def update_task(self, tenant_id: str, task_id: str, fields: Dict[str, Any]) -> Optional[Task]:
        if not looks_like_uuid(task_id):
            return None
        columns = [c for c in _TASK_UPDATABLE_COLUMNS if c in fields]
        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(column)) for column in columns
        ]
        assignments.append(sql.SQL("updated_at = now()"))
        statement = sql.SQL(
            "UPDATE tasks SET {} WHERE id = %s AND tenant_id = %s RETURNING *"
        ).format(sql.SQL(", ").join(assignments))
        params = [fields[column] for column in columns] + [task_id, tenant_id]
        with self._tenant_conn(tenant_id) as conn:
            if "assigned_to" in columns:
                self._assignee_in_tenant(conn, tenant_id, fields["assigned_to"])
            row = conn.execute(statement, params).fetchone()
        return self._to_task(row) if row else None

    def delete_task(self, tenant_id: str, task_id: str) -> bool:
        if not looks_like_uuid(task_id):
            return False
        with self._tenant_conn(tenant_id) as conn:
            cur = conn.execute(
                "DELETE FROM tasks WHERE id = %s AND tenant_id = %s", (task_id, tenant_id)
            )
            return cur.rowcount > 0

    # -- maintenance ------------------------------------------------------

    def purge_expired(self) -> Dict[str, int]:
        """Drop stale login attempts, expired lockouts and expired reset tokens.

        Refresh tokens are kept; they are only ever revoked.
        """
        with self._connect() as conn:
            attempts = conn.execute(
                "DELETE FROM login_attempts WHERE attempted_at < now() - %s",
                (REFRESH_REVOKED_LOOKBACK,),
            ).rowcount
            reset_tokens = conn.execute(
                "DELETE FROM password_reset_tokens WHERE expires_at < now()"
            ).rowcount
            lockouts = conn.execute(
                "DELETE FROM account_lockouts WHERE locked_until < now()"
            ).rowcount
        counts = {
            "login_attempts": attempts,
            "reset_tokens": reset_tokens,
            "lockouts": lockouts,
        }
        self.logger.info("store_purged", **counts)
        return counts
