from __future__ import annotations

import asyncio
import hashlib
import hmac
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pixora_auth.logging import get_logger
from pixora_auth.service.errors import (
    AccountDisabled,
    AccountInactive,
    AccountLocked,
    AuthenticationError,
    ConflictError,
    DuplicateEmail,
    ExpiredToken,
    ForbiddenError,
    InvalidCredentials,
    InvalidOrExpiredToken,
    InvalidToken,
    InvalidTwoFactorCode,
    NotFoundError,
    SessionInvalid,
    TokenRevoked,
    ValidationError,
    WrongTokenKind,
)
from pixora_auth.service.notifier import Notifier
from pixora_auth.service.tokens import (
    ACCESS,
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    REFRESH,
    TokenPair,
    TokenService,
    generate_secure_token,
    hash_token,
)
from pixora_auth.service.totp import (
    generate_backup_codes,
    generate_secret,
    normalize_backup_code,
    provisioning_uri,
    verify_totp,
)
from pixora_auth.storage.common import digest_value
from pixora_auth.storage.errors import ConstraintViolation, StorageUnavailable
from pixora_auth.storage.models import (
    ROLES,
    Account,
    Session,
    UserMFAConfig,
    is_locked,
    role_allows,
    session_is_valid,
)

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = (
    "If an account with that email exists, a password reset link has been sent."
)
RESEND_VERIFICATION_MESSAGE = (
    "If an unverified account with that email exists, a verification link has been sent."
)

_PASSWORD_ALGO = "argon2id"
_TOKEN_FAILURES = (InvalidToken, ExpiredToken, WrongTokenKind)


class AuthStore(Protocol):
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
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Account]: ...

    def update_account(self, account_id: str, **changes: Any) -> Optional[Account]: ...

    def record_failed_login(
        self, account_id: str, *, max_attempts: int, lockout: timedelta, now: datetime
    ) -> Optional[Account]: ...

    def record_successful_login(
        self, account_id: str, ip_addr: Optional[str], now: datetime
    ) -> Optional[Account]: ...

    def consume_password_reset(
        self, account_id: str, expected_digest: str, now: datetime
    ) -> Optional[Account]: ...

    def consume_email_verification(
        self, account_id: str, expected_digest: str, now: datetime
    ) -> Optional[Account]: ...

    def save_password(
        self, account_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...

    def set_mfa_config(
        self, account_id: str, secret: str, *, backup_codes: List[str], enabled: bool = False
    ) -> UserMFAConfig: ...

    def get_mfa_config(self, account_id: str) -> Optional[UserMFAConfig]: ...

    def enable_mfa(self, account_id: str) -> Optional[Account]: ...

    def clear_mfa_config(self, account_id: str) -> Optional[Account]: ...

    def consume_backup_code(self, account_id: str, code_digest: str) -> bool: ...

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
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

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
    ) -> Optional[Session]: ...

    def invalidate_session(self, session_id: str) -> Optional[Session]: ...

    def invalidate_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> List[Session]: ...

    def list_sessions(self, user_id: str, *, now: datetime) -> List[Session]: ...


class RevocationCache(Protocol):
    async def blacklist_token(self, jti: str, expires_at: datetime) -> bool: ...

    async def is_token_blacklisted(self, jti: str) -> bool: ...

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool: ...


@dataclass(frozen=True)
class RequestContext:
    """Caller details captured by the HTTP layer; advisory only."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    role: str
    session_id: str
    jti: str
    expires_at: datetime


@dataclass
class RegistrationResult:
    account: Account
    verification_token: str


@dataclass
class LoginResult:
    account: Optional[Account] = None
    tokens: Optional[TokenPair] = None
    two_factor_required: bool = False


@dataclass
class RefreshResult:
    account: Account
    tokens: TokenPair


@dataclass
class TwoFactorSetup:
    secret: str
    otpauth_url: str
    backup_codes: List[str] = field(default_factory=list)


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", email or "").strip().lower()


def _email_hash(email: str) -> str:
    return hashlib.sha256(email.encode()).hexdigest()[:16]


class SessionManager:
    """Login, refresh, logout, reset, verification and two-factor flows.

    Holds no per-request state: everything shared lives in the store and
    the revocation cache, both passed in explicitly. Password hashing runs
    in a worker thread and is the only producer of stored password hashes.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: RevocationCache,
        tokens: TokenService,
        notifier: Notifier,
        *,
        max_failed_logins: int = 5,
        lockout: timedelta = timedelta(minutes=30),
        mfa_enabled: bool = True,
        mfa_issuer: str = "Pixora Craftt",
        send_login_alerts: bool = False,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.notifier = notifier
        self.max_failed_logins = max_failed_logins
        self.lockout = lockout
        self.mfa_enabled = mfa_enabled
        self.mfa_issuer = mfa_issuer
        self.send_login_alerts = send_login_alerts
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        """Shared clock with the token service so expiry and lockout agree."""
        return self.tokens.now()

    # -- passwords --------------------------------------------------------

    async def _hash_password(self, password: str) -> Tuple[str, str]:
        digest = await asyncio.to_thread(self._pwd_hasher.hash, password)
        return digest, _PASSWORD_ALGO

    async def _verify_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=account_id)
            await self._burn_password_check(password)
            return False
        stored_hash, algo = record
        if algo != _PASSWORD_ALGO:
            self.logger.warning("password_algo_mismatch", user_id=account_id, algo=algo)
            return False
        try:
            return await asyncio.to_thread(self._pwd_hasher.verify, stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            self.logger.warning("password_hash_unusable", user_id=account_id)
            return False

    async def _burn_password_check(self, password: str) -> None:
        """Spend the same hashing work as a real check so unknown emails aren't faster."""
        if self._dummy_hash is None:
            self._dummy_hash = await asyncio.to_thread(
                self._pwd_hasher.hash, generate_secure_token(16)
            )
        try:
            await asyncio.to_thread(self._pwd_hasher.verify, self._dummy_hash, password)
        except VerificationError:
            pass

    async def _store_new_password(self, account_id: str, password: str) -> None:
        password_hash, algo = await self._hash_password(password)
        self.store.save_password(account_id, password_hash, algo)

    # -- revocation -------------------------------------------------------

    async def _blacklist(self, jti: str, expires_at: datetime) -> None:
        """Best-effort revocation write; reads elsewhere still fail closed."""
        try:
            await self.cache.blacklist_token(jti, expires_at)
        except StorageUnavailable as exc:
            self.logger.error("token_blacklist_failed", jti=jti, error=str(exc))

    async def _blacklist_sessions(self, sessions: Iterable[Session]) -> None:
        for sess in sessions:
            await self._blacklist(sess.access_jti, sess.access_expires_at)
            await self._blacklist(sess.refresh_jti, sess.expires_at)

    # -- registration / verification -------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        profile: Optional[Dict[str, Any]] = None,
        context: Optional[RequestContext] = None,
    ) -> RegistrationResult:
        email = normalize_email(email)
        if self.store.get_account_by_email(email):
            self.logger.info("register_duplicate_email", email_hash=_email_hash(email))
            raise DuplicateEmail()
        password_hash, algo = await self._hash_password(password)
        verification_token = self.tokens.issue_single_use(EMAIL_VERIFICATION, email)
        now = self._now()
        try:
            account = self.store.create_account(
                email,
                first_name.strip(),
                last_name.strip(),
                email_verification_token=hash_token(verification_token),
                email_verification_expires=now + self.tokens.single_use_ttl(EMAIL_VERIFICATION),
                profile=profile,
            )
        except ConstraintViolation:
            raise DuplicateEmail()
        self.store.save_password(account.id, password_hash, algo)
        self.notifier.welcome(account.email, account.first_name, verification_token)
        self.logger.info(
            "account_registered",
            user_id=account.id,
            ip_addr=context.ip_addr if context else None,
        )
        return RegistrationResult(account=account, verification_token=verification_token)

    async def verify_email(self, token: str) -> Account:
        try:
            claims = self.tokens.verify_single_use(token, EMAIL_VERIFICATION)
        except _TOKEN_FAILURES:
            raise InvalidOrExpiredToken()
        now = self._now()
        digest = hash_token(token)
        account = self.store.get_account_by_email(claims.email)
        if not account or not self._stored_token_matches(
            account.email_verification_token, account.email_verification_expires, digest, now
        ):
            self.logger.info("email_verification_rejected", email_hash=_email_hash(claims.email))
            raise InvalidOrExpiredToken()
        updated = self.store.consume_email_verification(account.id, digest, now)
        if not updated:
            raise InvalidOrExpiredToken()
        self.logger.info("email_verified", user_id=account.id)
        return updated

    async def resend_verification(self, email: str) -> str:
        email = normalize_email(email)
        token = self.tokens.issue_single_use(EMAIL_VERIFICATION, email)
        account = self.store.get_account_by_email(email)
        if account and account.is_active and not account.email_verified:
            self.store.update_account(
                account.id,
                email_verification_token=hash_token(token),
                email_verification_expires=self._now()
                + self.tokens.single_use_ttl(EMAIL_VERIFICATION),
            )
            self.notifier.email_verification(account.email, account.first_name, token)
            self.logger.info("email_verification_resent", user_id=account.id)
        return RESEND_VERIFICATION_MESSAGE

    @staticmethod
    def _stored_token_matches(
        stored_digest: Optional[str],
        expires_at: Optional[datetime],
        presented_digest: str,
        now: datetime,
    ) -> bool:
        # Expiry is checked here; stores are not trusted to purge stale tokens.
        if not stored_digest or expires_at is None:
            return False
        if not hmac.compare_digest(stored_digest, presented_digest):
            return False
        return expires_at > now

    # -- login / refresh / logout ----------------------------------------

    async def login(
        self,
        email: str,
        password: str,
        two_factor_code: Optional[str] = None,
        remember_me: bool = False,
        *,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        context = context or RequestContext()
        email = normalize_email(email)
        now = self._now()
        account = self.store.get_account_by_email(email)
        if not account:
            await self._burn_password_check(password)
            self.logger.info("login_failed", reason="unknown_account", email_hash=_email_hash(email))
            raise InvalidCredentials()
        if is_locked(account, now):
            self.logger.warning("login_rejected_locked", user_id=account.id)
            raise AccountLocked(detail={"locked_until": account.locked_until.isoformat()})
        if not account.is_active:
            self.logger.info("login_rejected_disabled", user_id=account.id)
            raise AccountDisabled()

        if not await self._verify_password(account.id, password):
            self._record_failure(account.id, now, reason="bad_password")
            raise InvalidCredentials()

        if self.mfa_enabled and account.two_factor_enabled:
            if not two_factor_code:
                self.logger.info("login_two_factor_required", user_id=account.id)
                return LoginResult(two_factor_required=True)
            if not self._check_second_factor(account.id, two_factor_code, now):
                # A wrong second factor counts toward lockout like a wrong password
                self._record_failure(account.id, now, reason="bad_two_factor")
                raise InvalidTwoFactorCode()

        updated = self.store.record_successful_login(account.id, context.ip_addr, now) or account
        tokens = await self._open_session(updated, remember_me, context)
        if self.send_login_alerts:
            self.notifier.login_alert(
                updated.email,
                updated.first_name,
                ip_addr=context.ip_addr,
                device=context.user_agent or "Unknown device",
                login_time=now,
            )
        self.logger.info(
            "login_succeeded",
            user_id=updated.id,
            session_id=tokens.session_id,
            remember_me=remember_me,
        )
        return LoginResult(account=updated, tokens=tokens)

    def _record_failure(self, account_id: str, now: datetime, *, reason: str) -> None:
        updated = self.store.record_failed_login(
            account_id,
            max_attempts=self.max_failed_logins,
            lockout=self.lockout,
            now=now,
        )
        attempts = updated.failed_login_attempts if updated else None
        self.logger.warning(
            "login_failed",
            reason=reason,
            user_id=account_id,
            failed_attempts=attempts,
            locked=bool(updated and is_locked(updated, now)),
        )

    def _check_second_factor(self, account_id: str, code: str, now: datetime) -> bool:
        cfg = self.store.get_mfa_config(account_id)
        if not cfg or not cfg.enabled:
            return False
        code = code.strip()
        if code.isdigit() and len(code) == 6:
            return verify_totp(cfg.secret, code, now=now.timestamp())
        consumed = self.store.consume_backup_code(
            account_id, digest_value(normalize_backup_code(code))
        )
        if consumed:
            self.logger.info("backup_code_used", user_id=account_id)
        return consumed

    async def _open_session(
        self, account: Account, remember_me: bool, context: RequestContext
    ) -> TokenPair:
        tokens = self.tokens.issue_pair(
            account.id, account.email, account.role, extended_lifetime=remember_me
        )
        self.store.create_session(
            tokens.session_id,
            account.id,
            refresh_token_hash=hash_token(tokens.refresh_token),
            access_jti=tokens.jti,
            access_expires_at=tokens.access_expires_at,
            refresh_jti=tokens.refresh_jti,
            expires_at=tokens.refresh_expires_at,
            remember_me=remember_me,
            user_agent=context.user_agent,
            ip_addr=context.ip_addr,
        )
        return tokens

    async def refresh(
        self, refresh_token: str, *, context: Optional[RequestContext] = None
    ) -> RefreshResult:
        claims = self.tokens.verify(refresh_token, REFRESH)
        # Cache errors propagate as StorageUnavailable: refresh fails closed
        if await self.cache.is_token_blacklisted(claims.jti):
            self.logger.warning("refresh_token_revoked", session_id=claims.session_id)
            raise TokenRevoked()

        now = self._now()
        presented_hash = hash_token(refresh_token)
        session = self.store.get_session(claims.session_id)
        if (
            not session
            or session.user_id != claims.subject
            or not session_is_valid(session, now)
            or not hmac.compare_digest(session.refresh_token_hash, presented_hash)
        ):
            self.logger.warning("refresh_session_invalid", session_id=claims.session_id)
            raise SessionInvalid()

        account = self.store.get_account(session.user_id)
        if not account or not account.is_active:
            self.logger.warning("refresh_account_inactive", user_id=session.user_id)
            raise AccountInactive()

        tokens = self.tokens.issue_pair(
            account.id,
            account.email,
            account.role,
            session_id=session.id,
            extended_lifetime=session.remember_me,
        )
        rotated = self.store.rotate_session(
            session.id,
            presented_hash,
            refresh_token_hash=hash_token(tokens.refresh_token),
            access_jti=tokens.jti,
            access_expires_at=tokens.access_expires_at,
            refresh_jti=tokens.refresh_jti,
            expires_at=tokens.refresh_expires_at,
            now=now,
        )
        if rotated is None:
            # Another request rotated this session first
            self.logger.warning("refresh_rotation_conflict", session_id=session.id)
            raise SessionInvalid()

        await self._blacklist(session.access_jti, session.access_expires_at)
        await self._blacklist(claims.jti, claims.expires_at)
        self.logger.info("session_refreshed", user_id=account.id, session_id=session.id)
        return RefreshResult(account=account, tokens=tokens)

    async def logout(self, refresh_token: Optional[str]) -> None:
        """End the session behind ``refresh_token``; bad tokens are ignored silently."""
        if not refresh_token:
            return
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except _TOKEN_FAILURES:
            self.logger.info("logout_token_ignored")
            return
        session = self.store.get_session(claims.session_id)
        if (
            not session
            or session.user_id != claims.subject
            or not hmac.compare_digest(session.refresh_token_hash, hash_token(refresh_token))
        ):
            return
        invalidated = self.store.invalidate_session(session.id)
        if invalidated:
            await self._blacklist_sessions([invalidated])
            self.logger.info("logout", user_id=session.user_id, session_id=session.id)

    async def logout_all(self, account_id: str) -> int:
        sessions = self.store.invalidate_user_sessions(account_id)
        await self._blacklist_sessions(sessions)
        self.logger.info("logout_all", user_id=account_id, sessions_revoked=len(sessions))
        return len(sessions)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Access token required")
        claims = self.tokens.verify(token, ACCESS)
        if await self.cache.is_token_blacklisted(claims.jti):
            self.logger.info("access_token_revoked", session_id=claims.session_id)
            raise TokenRevoked()
        return AuthContext(
            user_id=claims.subject,
            email=claims.email,
            role=claims.role,
            session_id=claims.session_id,
            jti=claims.jti,
            expires_at=claims.expires_at,
        )

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    @staticmethod
    def require_role(ctx: AuthContext, minimum: str) -> None:
        if not role_allows(ctx.role, minimum):
            logger.info("authorization_denied", user_id=ctx.user_id, role=ctx.role, required=minimum)
            raise ForbiddenError()

    # -- password reset / change -----------------------------------------

    async def forgot_password(self, email: str) -> str:
        email = normalize_email(email)
        # Minted for unknown emails too so both paths cost the same
        token = self.tokens.issue_single_use(PASSWORD_RESET, email)
        account = self.store.get_account_by_email(email)
        if account and account.is_active:
            self.store.update_account(
                account.id,
                password_reset_token=hash_token(token),
                password_reset_expires=self._now() + self.tokens.single_use_ttl(PASSWORD_RESET),
            )
            self.notifier.password_reset(account.email, account.first_name, token)
            self.logger.info("password_reset_requested", user_id=account.id)
        else:
            self.logger.info("password_reset_unmatched", email_hash=_email_hash(email))
        return FORGOT_PASSWORD_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        try:
            claims = self.tokens.verify_single_use(token, PASSWORD_RESET)
        except _TOKEN_FAILURES:
            raise InvalidOrExpiredToken()
        now = self._now()
        digest = hash_token(token)
        account = self.store.get_account_by_email(claims.email)
        if not account or not self._stored_token_matches(
            account.password_reset_token, account.password_reset_expires, digest, now
        ):
            self.logger.info("password_reset_rejected", email_hash=_email_hash(claims.email))
            raise InvalidOrExpiredToken()

        password_hash, algo = await self._hash_password(new_password)
        if not self.store.consume_password_reset(account.id, digest, now):
            raise InvalidOrExpiredToken()
        self.store.save_password(account.id, password_hash, algo)
        sessions = self.store.invalidate_user_sessions(account.id)
        await self._blacklist_sessions(sessions)
        self.notifier.password_changed(account.email, account.first_name)
        self.logger.info(
            "password_reset_completed", user_id=account.id, sessions_revoked=len(sessions)
        )

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        keep_session_id: Optional[str] = None,
    ) -> int:
        account = self._require_active_account(account_id)
        if not await self._verify_password(account.id, current_password):
            self.logger.info("change_password_rejected", user_id=account.id)
            raise InvalidCredentials("Current password is incorrect")
        await self._store_new_password(account.id, new_password)
        sessions = self.store.invalidate_user_sessions(
            account.id, except_session_id=keep_session_id
        )
        await self._blacklist_sessions(sessions)
        self.notifier.password_changed(account.email, account.first_name)
        self.logger.info(
            "password_changed", user_id=account.id, sessions_revoked=len(sessions)
        )
        return len(sessions)

    # -- two-factor -------------------------------------------------------

    async def setup_two_factor(self, account_id: str, password: str) -> TwoFactorSetup:
        if not self.mfa_enabled:
            raise ForbiddenError("Two-factor authentication is disabled")
        account = self._require_active_account(account_id)
        if account.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not await self._verify_password(account.id, password):
            self.logger.info("two_factor_setup_rejected", user_id=account.id)
            raise InvalidCredentials("Password is incorrect")
        secret = generate_secret()
        backup_codes = generate_backup_codes()
        self.store.set_mfa_config(
            account.id,
            secret,
            backup_codes=[digest_value(code) for code in backup_codes],
            enabled=False,
        )
        self.logger.info("two_factor_setup_started", user_id=account.id)
        return TwoFactorSetup(
            secret=secret,
            otpauth_url=provisioning_uri(secret, account.email, self.mfa_issuer),
            backup_codes=backup_codes,
        )

    async def verify_two_factor(self, account_id: str, code: str) -> Account:
        account = self._require_active_account(account_id)
        cfg = self.store.get_mfa_config(account.id)
        if not cfg:
            raise ValidationError("Two-factor setup has not been started")
        if cfg.enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not verify_totp(cfg.secret, code.strip(), now=self._now().timestamp()):
            self.logger.info("two_factor_verify_rejected", user_id=account.id)
            raise InvalidTwoFactorCode()
        updated = self.store.enable_mfa(account.id) or account
        self.notifier.two_factor_enabled(updated.email, updated.first_name)
        self.logger.info("two_factor_enabled", user_id=account.id)
        return updated

    async def disable_two_factor(self, account_id: str) -> Account:
        account = self._require_active_account(account_id)
        if not account.two_factor_enabled and not self.store.get_mfa_config(account.id):
            raise ValidationError("Two-factor authentication is not enabled")
        updated = self.store.clear_mfa_config(account.id) or account
        self.logger.info("two_factor_disabled", user_id=account.id)
        return updated

    # -- account / session views -----------------------------------------

    def _require_active_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if not account or not account.is_active:
            raise AccountInactive()
        return account

    async def get_current_account(self, account_id: str) -> Account:
        return self._require_active_account(account_id)

    async def list_sessions(self, account_id: str) -> List[Session]:
        return self.store.list_sessions(account_id, now=self._now())

    async def revoke_session(self, account_id: str, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if not session or session.user_id != account_id:
            raise NotFoundError("Session not found")
        invalidated = self.store.invalidate_session(session_id)
        if invalidated:
            await self._blacklist_sessions([invalidated])
        self.logger.info("session_revoked", user_id=account_id, session_id=session_id)

    # -- administration ---------------------------------------------------

    async def list_accounts(
        self,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Account]:
        if role is not None and role not in ROLES:
            raise ValidationError("Unknown role", detail={"role": role})
        return self.store.list_accounts(role=role, is_active=is_active, limit=limit, offset=offset)

    async def set_role(self, actor: AuthContext, account_id: str, role: str) -> Account:
        if role not in ROLES:
            raise ValidationError("Unknown role", detail={"role": role})
        if actor.user_id == account_id:
            raise ForbiddenError("Cannot change your own role")
        target = self.store.get_account(account_id)
        if not target:
            raise NotFoundError("User not found")
        updated = self.store.update_account(account_id, role=role) or target
        revoked = 0
        if target.role != role:
            # Access tokens carry the role claim, so old ones must not outlive it
            sessions = self.store.invalidate_user_sessions(account_id)
            await self._blacklist_sessions(sessions)
            revoked = len(sessions)
        self.logger.info(
            "role_changed",
            user_id=account_id,
            role=role,
            actor_id=actor.user_id,
            sessions_revoked=revoked,
        )
        return updated

    async def set_active(self, actor: AuthContext, account_id: str, is_active: bool) -> Account:
        if actor.user_id == account_id and not is_active:
            raise ForbiddenError("Cannot deactivate your own account")
        target = self.store.get_account(account_id)
        if not target:
            raise NotFoundError("User not found")
        if not role_allows(actor.role, target.role):
            raise ForbiddenError("Cannot change the status of a higher-ranked account")
        updated = self.store.update_account(account_id, is_active=is_active) or target
        if not is_active:
            sessions = self.store.invalidate_user_sessions(account_id)
            await self._blacklist_sessions(sessions)
        self.logger.info(
            "account_status_changed",
            user_id=account_id,
            is_active=is_active,
            actor_id=actor.user_id,
        )
        return updated

    async def create_admin(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        role: str = "super_admin",
    ) -> Account:
        """Create a pre-verified privileged account, or promote an existing one."""
        if role not in ROLES:
            raise ValidationError("Unknown role", detail={"role": role})
        email = normalize_email(email)
        existing = self.store.get_account_by_email(email)
        if existing:
            updated = self.store.update_account(
                existing.id, role=role, is_active=True, email_verified=True
            )
            await self._store_new_password(existing.id, password)
            self.logger.info("admin_promoted", user_id=existing.id, role=role)
            return updated or existing
        account = self.store.create_account(
            email, first_name, last_name, role=role, email_verified=True
        )
        await self._store_new_password(account.id, password)
        self.logger.info("admin_created", user_id=account.id, role=role)
        return account
