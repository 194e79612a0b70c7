from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from pixora_auth.logging import get_logger
from pixora_auth.storage.common import (
    build_mfa_cipher,
    decrypt_secret,
    encrypt_secret,
    ensure_aware,
    generate_uuid,
    parse_ip_address,
    validate_account_fields,
)
from pixora_auth.storage.errors import ConstraintViolation, StorageUnavailable
from pixora_auth.storage.models import (
    PROFILE_FIELDS,
    Account,
    Session,
    UserMFAConfig,
    parse_user_agent,
)


class PostgresStore:
    """Postgres-backed credential and session store.

    Every conditional write (session rotation, single-use token consumption,
    failed-login increments) is a single ``UPDATE ... WHERE ... RETURNING``
    so concurrent requests cannot both win.
    """

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        timeout_seconds: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        """Yield a pooled connection; unreachable or slow databases become StorageUnavailable.

        The connection context commits on success and rolls back on error, so
        a statement that times out leaves nothing partially applied.
        """
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except (PoolTimeout, errors.OperationalError) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable(backend="postgres") from exc

    def _verify_required_schema(self) -> None:
        """Ensure core tables exist before serving requests."""

        required_tables = [
            "app_account",
            "account_credential",
            "account_mfa",
            "auth_session",
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
                "Missing required Postgres tables: {}. Apply pixora_auth/sql/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def health_check(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1")
        return True

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row.get("role", "user"),
            is_active=bool(row.get("is_active", True)),
            email_verified=bool(row.get("email_verified", False)),
            email_verification_token=row.get("email_verification_token"),
            email_verification_expires=ensure_aware(row.get("email_verification_expires")),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=ensure_aware(row.get("password_reset_expires")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=ensure_aware(row.get("locked_until")),
            two_factor_enabled=bool(row.get("two_factor_enabled", False)),
            last_login_at=ensure_aware(row.get("last_login_at")),
            last_login_ip=parse_ip_address(row.get("last_login_ip")),
            phone=row.get("phone"),
            company=row.get("company"),
            title=row.get("title"),
            bio=row.get("bio"),
            avatar_url=row.get("avatar_url"),
            website=row.get("website"),
            location=row.get("location"),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            access_jti=row["access_jti"],
            access_expires_at=ensure_aware(row["access_expires_at"]),
            refresh_jti=row["refresh_jti"],
            expires_at=ensure_aware(row["expires_at"]),
            remember_me=bool(row.get("remember_me", False)),
            is_active=bool(row.get("is_active", True)),
            ip_addr=parse_ip_address(row.get("ip_addr")),
            user_agent=row.get("user_agent"),
            device_type=row.get("device_type") or "Desktop",
            browser=row.get("browser") or "Unknown",
            os=row.get("os") or "Unknown",
            created_at=ensure_aware(row["created_at"]),
            last_used_at=ensure_aware(row["last_used_at"]),
        )

    # -- accounts ---------------------------------------------------------

    def create_account(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
        email_verification_token: Optional[str] = None,
        email_verification_expires: Optional[datetime] = None,
        profile: Optional[Dict[str, Any]] = None,
    ) -> Account:
        extra = {
            name: value for name, value in (profile or {}).items() if name in PROFILE_FIELDS
        }
        columns = [
            "id",
            "email",
            "first_name",
            "last_name",
            "role",
            "is_active",
            "email_verified",
            "email_verification_token",
            "email_verification_expires",
            *extra.keys(),
        ]
        values = [
            generate_uuid(),
            email,
            first_name,
            last_name,
            role,
            is_active,
            email_verified,
            email_verification_token,
            email_verification_expires,
            *extra.values(),
        ]
        query = sql.SQL("INSERT INTO app_account ({}) VALUES ({}) RETURNING *").format(
            sql.SQL(", ").join(sql.Identifier(col) for col in columns),
            sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        try:
            with self._connect() as conn:
                row = conn.execute(query, values).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Account]:
        clauses = []
        params: List[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(role)
        if is_active is not None:
            clauses.append("is_active = %s")
            params.append(is_active)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM app_account {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]:
        validate_account_fields(changes)
        if not changes:
            return self.get_account(account_id)
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in changes
        )
        query = sql.SQL(
            "UPDATE app_account SET {}, updated_at = now() WHERE id = %s RETURNING *"
        ).format(assignments)
        with self._connect() as conn:
            row = conn.execute(query, [*changes.values(), account_id]).fetchone()
        return self._account_from_row(row) if row else None

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: datetime,
    ) -> Optional[Account]:
        # Increment and lock in one statement; an expired lock restarts the count.
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until <= %(now)s THEN NULL
                        WHEN locked_until IS NULL AND failed_login_attempts + 1 >= %(max_attempts)s
                            THEN %(lock_until)s
                        ELSE locked_until
                    END,
                    updated_at = %(now)s
                WHERE id = %(id)s
                RETURNING *
                """,
                {
                    "id": account_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": now + lockout,
                },
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_successful_login(
        self, account_id: str, ip_addr: Optional[str], now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET failed_login_attempts = 0, locked_until = NULL,
                    last_login_at = %s, last_login_ip = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, parse_ip_address(ip_addr), now, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def consume_password_reset(
        self, account_id: str, expected_digest: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET password_reset_token = NULL, password_reset_expires = NULL,
                    failed_login_attempts = 0, locked_until = NULL, updated_at = %s
                WHERE id = %s AND password_reset_token = %s AND password_reset_expires > %s
                RETURNING *
                """,
                (now, account_id, expected_digest, now),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def consume_email_verification(
        self, account_id: str, expected_digest: str, now: datetime
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_account
                SET email_verified = TRUE, email_verification_token = NULL,
                    email_verification_expires = NULL, updated_at = %s
                WHERE id = %s AND email_verification_token = %s AND email_verification_expires > %s
                RETURNING *
                """,
                (now, account_id, expected_digest, now),
            ).fetchone()
        return self._account_from_row(row) if row else None

    # -- credentials ------------------------------------------------------

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for credentials", {"account_id": account_id}
            )

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM account_credential WHERE account_id = %s",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # -- two-factor -------------------------------------------------------

    def set_mfa_config(
        self,
        account_id: str,
        secret: str,
        *,
        backup_codes: List[str],
        enabled: bool = False,
    ) -> UserMFAConfig:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account_mfa (account_id, secret, enabled, backup_codes, created_at)
                    VALUES (%s, %s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled,
                        backup_codes = EXCLUDED.backup_codes, created_at = now()
                    RETURNING created_at
                    """,
                    (account_id, encrypt_secret(self._mfa_cipher, secret), enabled, list(backup_codes)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found for mfa", {"account_id": account_id})
        return UserMFAConfig(
            user_id=account_id,
            secret=secret,
            enabled=enabled,
            backup_codes=list(backup_codes),
            created_at=ensure_aware(row["created_at"]),
        )

    def get_mfa_config(self, account_id: str) -> Optional[UserMFAConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_mfa WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return UserMFAConfig(
            user_id=str(row["account_id"]),
            secret=decrypt_secret(self._mfa_cipher, row["secret"]),
            enabled=bool(row.get("enabled", False)),
            backup_codes=list(row.get("backup_codes") or []),
            created_at=ensure_aware(row["created_at"]),
        )

    def enable_mfa(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            updated = conn.execute(
                "UPDATE account_mfa SET enabled = TRUE WHERE account_id = %s RETURNING account_id",
                (account_id,),
            ).fetchone()
            if not updated:
                return None
            row = conn.execute(
                """
                UPDATE app_account SET two_factor_enabled = TRUE, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def clear_mfa_config(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            conn.execute("DELETE FROM account_mfa WHERE account_id = %s", (account_id,))
            row = conn.execute(
                """
                UPDATE app_account SET two_factor_enabled = FALSE, updated_at = now()
                WHERE id = %s RETURNING *
                """,
                (account_id,),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def consume_backup_code(self, account_id: str, code_digest: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account_mfa
                SET backup_codes = array_remove(backup_codes, %s)
                WHERE account_id = %s AND %s = ANY(backup_codes)
                RETURNING account_id
                """,
                (code_digest, account_id, code_digest),
            ).fetchone()
        return row is not None

    # -- sessions ---------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        user_id: str,
        *,
        refresh_token_hash: str,
        access_jti: str,
        access_expires_at: datetime,
        refresh_jti: str,
        expires_at: datetime,
        remember_me: bool = False,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        device = parse_user_agent(user_agent)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, refresh_token_hash, access_jti, access_expires_at,
                        refresh_jti, remember_me, is_active, expires_at, ip_addr,
                        user_agent, device_type, browser, os
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, TRUE, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        session_id,
                        user_id,
                        refresh_token_hash,
                        access_jti,
                        access_expires_at,
                        refresh_jti,
                        remember_me,
                        expires_at,
                        parse_ip_address(ip_addr),
                        user_agent,
                        device.device_type,
                        device.browser,
                        device.os,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session_id})
        return self._session_from_row(row)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session(
        self,
        session_id: str,
        expected_hash: str,
        *,
        refresh_token_hash: str,
        access_jti: str,
        access_expires_at: datetime,
        refresh_jti: str,
        expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, access_jti = %s, access_expires_at = %s,
                    refresh_jti = %s, expires_at = %s, last_used_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND is_active AND expires_at > %s
                RETURNING *
                """,
                (
                    refresh_token_hash,
                    access_jti,
                    access_expires_at,
                    refresh_jti,
                    expires_at,
                    now,
                    session_id,
                    expected_hash,
                    now,
                ),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def invalidate_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET is_active = FALSE
                WHERE id = %s AND is_active
                RETURNING *
                """,
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def invalidate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._connect() as conn:
            if except_session_id:
                rows = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active AND id <> %s
                    RETURNING *
                    """,
                    (user_id, except_session_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active
                    RETURNING *
                    """,
                    (user_id,),
                ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_sessions(self, user_id: str, *, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_used_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]
