from __future__ import annotations

import json
import threading
from dataclasses import fields as dataclass_fields
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

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
from pixora_auth.storage.errors import ConstraintViolation
from pixora_auth.storage.models import (
    PROFILE_FIELDS,
    Account,
    Session,
    UserMFAConfig,
    register_failed_login,
    register_successful_login,
)

_ACCOUNT_DATETIME_FIELDS = frozenset(
    {
        "email_verification_expires",
        "password_reset_expires",
        "locked_until",
        "last_login_at",
        "created_at",
        "updated_at",
    }
)
_SESSION_DATETIME_FIELDS = frozenset(
    {"access_expires_at", "expires_at", "created_at", "last_used_at"}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    """In-process credential and session store for development and tests.

    Every mutation happens under one re-entrant lock, which is what makes
    the compare-and-swap operations (session rotation, single-use token
    consumption, failed-login increments) atomic here.
    """

    def __init__(
        self, fs_root: str = "/tmp/pixora_auth", *, mfa_encryption_key: str
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.mfa_configs: Dict[str, UserMFAConfig] = {}
        # RLock so helpers can be called from within other locked methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._mfa_cipher = build_mfa_cipher(mfa_encryption_key)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def health_check(self) -> bool:
        return True

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
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = _utcnow()
            extra = {
                name: value
                for name, value in (profile or {}).items()
                if name in PROFILE_FIELDS
            }
            account = Account(
                id=generate_uuid(),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                email_verification_token=email_verification_token,
                email_verification_expires=email_verification_expires,
                created_at=now,
                updated_at=now,
                **extra,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (acct for acct in self.accounts.values() if acct.email == email), None
            )

    def list_accounts(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Account]:
        with self._data_lock:
            accounts = sorted(self.accounts.values(), key=lambda a: a.created_at, reverse=True)
        if role is not None:
            accounts = [a for a in accounts if a.role == role]
        if is_active is not None:
            accounts = [a for a in accounts if a.is_active == is_active]
        return accounts[offset : offset + limit]

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]:
        validate_account_fields(changes)
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(account, updated_at=_utcnow(), **changes)
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    def record_failed_login(
        self,
        account_id: str,
        *,
        max_attempts: int,
        lockout: timedelta,
        now: datetime,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = register_failed_login(account, now, max_attempts, lockout)
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    def record_successful_login(
        self, account_id: str, ip_addr: Optional[str], now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = register_successful_login(account, parse_ip_address(ip_addr), now)
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    def consume_password_reset(
        self, account_id: str, expected_digest: str, now: datetime
    ) -> Optional[Account]:
        """Clear the reset token if it is still the stored, unexpired one.

        Also clears lockout state. Returns None when another caller already
        spent the token.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if (
                not account
                or account.password_reset_token != expected_digest
                or account.password_reset_expires is None
                or account.password_reset_expires <= now
            ):
                return None
            updated = replace(
                account,
                password_reset_token=None,
                password_reset_expires=None,
                failed_login_attempts=0,
                locked_until=None,
                updated_at=now,
            )
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    def consume_email_verification(
        self, account_id: str, expected_digest: str, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if (
                not account
                or account.email_verification_token != expected_digest
                or account.email_verification_expires is None
                or account.email_verification_expires <= now
            ):
                return None
            updated = replace(
                account,
                email_verified=True,
                email_verification_token=None,
                email_verification_expires=None,
                updated_at=now,
            )
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    # -- credentials ------------------------------------------------------

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for credentials", {"account_id": account_id}
                )
            self.credentials[account_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(account_id)

    # -- two-factor -------------------------------------------------------

    def set_mfa_config(
        self,
        account_id: str,
        secret: str,
        *,
        backup_codes: List[str],
        enabled: bool = False,
    ) -> UserMFAConfig:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found for mfa", {"account_id": account_id})
            record = UserMFAConfig(
                user_id=account_id,
                secret=encrypt_secret(self._mfa_cipher, secret),
                enabled=enabled,
                backup_codes=list(backup_codes),
            )
            self.mfa_configs[account_id] = record
            self._persist_state()
            return replace(record, secret=secret)

    def get_mfa_config(self, account_id: str) -> Optional[UserMFAConfig]:
        with self._data_lock:
            cfg = self.mfa_configs.get(account_id)
            if not cfg:
                return None
            return replace(
                cfg,
                secret=decrypt_secret(self._mfa_cipher, cfg.secret),
                backup_codes=list(cfg.backup_codes),
            )

    def enable_mfa(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            cfg = self.mfa_configs.get(account_id)
            account = self.accounts.get(account_id)
            if not cfg or not account:
                return None
            cfg.enabled = True
            updated = replace(account, two_factor_enabled=True, updated_at=_utcnow())
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    def clear_mfa_config(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            self.mfa_configs.pop(account_id, None)
            account = self.accounts.get(account_id)
            if not account:
                return None
            updated = replace(account, two_factor_enabled=False, updated_at=_utcnow())
            self.accounts[account_id] = updated
            self._persist_state()
            return updated

    def consume_backup_code(self, account_id: str, code_digest: str) -> bool:
        with self._data_lock:
            cfg = self.mfa_configs.get(account_id)
            if not cfg or code_digest not in cfg.backup_codes:
                return False
            cfg.backup_codes.remove(code_digest)
            self._persist_state()
            return True

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
        with self._data_lock:
            if user_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"user_id": user_id})
            if session_id in self.sessions or any(
                s.refresh_token_hash == refresh_token_hash for s in self.sessions.values()
            ):
                raise ConstraintViolation("session already exists", {"session_id": session_id})
            sess = Session.new(
                session_id,
                user_id,
                refresh_token_hash=refresh_token_hash,
                access_jti=access_jti,
                access_expires_at=access_expires_at,
                refresh_jti=refresh_jti,
                expires_at=expires_at,
                remember_me=remember_me,
                user_agent=user_agent,
                ip_addr=parse_ip_address(ip_addr),
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

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
        """Swap in a new token pair only if ``expected_hash`` is still current.

        Exactly one of several concurrent callers holding the same refresh
        token gets a session back; the rest get None.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or not sess.is_active
                or sess.expires_at <= now
                or sess.refresh_token_hash != expected_hash
            ):
                return None
            rotated = replace(
                sess,
                refresh_token_hash=refresh_token_hash,
                access_jti=access_jti,
                access_expires_at=access_expires_at,
                refresh_jti=refresh_jti,
                expires_at=expires_at,
                last_used_at=now,
            )
            self.sessions[session_id] = rotated
            self._persist_state()
            return replace(rotated)

    def invalidate_session(self, session_id: str) -> Optional[Session]:
        """Mark a session inactive; returns it only if it was active before."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.is_active = False
            self._persist_state()
            return replace(sess)

    def invalidate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> List[Session]:
        with self._data_lock:
            invalidated = []
            for sess in self.sessions.values():
                if sess.user_id != user_id or not sess.is_active:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.is_active = False
                invalidated.append(replace(sess))
            if invalidated:
                self._persist_state()
            return invalidated

    def list_sessions(self, user_id: str, *, now: datetime) -> List[Session]:
        """Active, unexpired sessions of a user, newest first."""
        with self._data_lock:
            sessions = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_active and sess.expires_at > now
            ]
        return sorted(sessions, key=lambda s: s.last_used_at, reverse=True)

    # -- persistence ------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "mfa_configs": [
                self._serialize_mfa_config(cfg) for cfg in self.mfa_configs.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.mfa_configs = {
            cfg["user_id"]: self._deserialize_mfa_config(cfg)
            for cfg in data.get("mfa_configs", [])
        }
        self.logger.info(
            "memory_state_loaded",
            accounts=len(self.accounts),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        return ensure_aware(datetime.fromisoformat(raw))

    def _serialize_account(self, account: Account) -> dict:
        payload = {}
        for f in dataclass_fields(Account):
            value = getattr(account, f.name)
            if f.name in _ACCOUNT_DATETIME_FIELDS:
                value = self._serialize_datetime(value)
            payload[f.name] = value
        return payload

    def _deserialize_account(self, data: dict) -> Account:
        known = {f.name for f in dataclass_fields(Account)}
        kwargs = {}
        for name, value in data.items():
            if name not in known:
                continue
            if name in _ACCOUNT_DATETIME_FIELDS:
                value = self._deserialize_datetime(value)
            kwargs[name] = value
        return Account(**kwargs)

    def _serialize_session(self, session: Session) -> dict:
        payload = {}
        for f in dataclass_fields(Session):
            value = getattr(session, f.name)
            if f.name in _SESSION_DATETIME_FIELDS:
                value = self._serialize_datetime(value)
            payload[f.name] = value
        return payload

    def _deserialize_session(self, data: dict) -> Session:
        known = {f.name for f in dataclass_fields(Session)}
        kwargs = {}
        for name, value in data.items():
            if name not in known:
                continue
            if name in _SESSION_DATETIME_FIELDS:
                value = self._deserialize_datetime(value)
            kwargs[name] = value
        return Session(**kwargs)

    def _serialize_mfa_config(self, cfg: UserMFAConfig) -> dict:
        return {
            "user_id": cfg.user_id,
            "secret": cfg.secret,
            "enabled": cfg.enabled,
            "backup_codes": list(cfg.backup_codes),
            "created_at": self._serialize_datetime(cfg.created_at),
        }

    def _deserialize_mfa_config(self, data: dict) -> UserMFAConfig:
        return UserMFAConfig(
            user_id=data["user_id"],
            secret=data["secret"],
            enabled=bool(data.get("enabled", False)),
            backup_codes=list(data.get("backup_codes", [])),
            created_at=self._deserialize_datetime(data.get("created_at")) or _utcnow(),
        )
