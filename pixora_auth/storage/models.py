from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

ROLES = ("user", "editor", "admin", "super_admin")
_ROLE_RANK = {role: rank for rank, role in enumerate(ROLES)}

PROFILE_FIELDS = (
    "phone",
    "company",
    "title",
    "bio",
    "avatar_url",
    "website",
    "location",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Account:
    id: str
    email: str
    first_name: str
    last_name: str
    role: str = "user"
    is_active: bool = True
    email_verified: bool = False
    email_verification_token: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    two_factor_enabled: bool = False
    last_login_at: Optional[datetime] = None
    last_login_ip: Optional[str] = None
    phone: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    website: Optional[str] = None
    location: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    refresh_token_hash: str
    access_jti: str
    access_expires_at: datetime
    refresh_jti: str
    expires_at: datetime
    remember_me: bool = False
    is_active: bool = True
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: str = "Desktop"
    browser: str = "Unknown"
    os: str = "Unknown"
    created_at: datetime = field(default_factory=_utcnow)
    last_used_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
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
    ) -> "Session":
        now = _utcnow()
        device = parse_user_agent(user_agent)
        return cls(
            id=session_id,
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            access_jti=access_jti,
            access_expires_at=access_expires_at,
            refresh_jti=refresh_jti,
            expires_at=expires_at,
            remember_me=remember_me,
            ip_addr=ip_addr,
            user_agent=user_agent,
            device_type=device.device_type,
            browser=device.browser,
            os=device.os,
            created_at=now,
            last_used_at=now,
        )


@dataclass
class UserMFAConfig:
    user_id: str
    secret: str
    enabled: bool = False
    backup_codes: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str
    browser: str
    os: str


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Best-effort device classification; advisory only."""
    if not user_agent:
        return DeviceInfo("Desktop", "Unknown", "Unknown")
    ua = user_agent

    if "Tablet" in ua or "iPad" in ua:
        device_type = "Tablet"
    elif "Mobile" in ua:
        device_type = "Mobile"
    else:
        device_type = "Desktop"

    # Order matters: Edge and Opera UAs also carry "Chrome", Chrome carries "Safari"
    if "Edg" in ua:
        browser = "Edge"
    elif "OPR" in ua or "Opera" in ua:
        browser = "Opera"
    elif "Firefox" in ua:
        browser = "Firefox"
    elif "Chrome" in ua:
        browser = "Chrome"
    elif "Safari" in ua:
        browser = "Safari"
    else:
        browser = "Unknown"

    if "Android" in ua:
        os_name = "Android"
    elif "iPhone" in ua or "iPad" in ua or "iOS" in ua:
        os_name = "iOS"
    elif "Windows" in ua:
        os_name = "Windows"
    elif "Mac OS" in ua or "Macintosh" in ua:
        os_name = "macOS"
    elif "Linux" in ua:
        os_name = "Linux"
    else:
        os_name = "Unknown"
    return DeviceInfo(device_type, browser, os_name)


def is_locked(account: Account, now: datetime) -> bool:
    return account.locked_until is not None and account.locked_until > now


def register_failed_login(
    account: Account, now: datetime, max_attempts: int, lockout: timedelta
) -> Account:
    """Return the account after one more failed password check.

    A failure that arrives after an earlier lock has run out starts a fresh
    count instead of re-locking on the first mistake.
    """
    if account.locked_until is not None and account.locked_until <= now:
        return replace(account, failed_login_attempts=1, locked_until=None, updated_at=now)
    attempts = account.failed_login_attempts + 1
    locked_until = account.locked_until
    if attempts >= max_attempts and not is_locked(account, now):
        locked_until = now + lockout
    return replace(
        account, failed_login_attempts=attempts, locked_until=locked_until, updated_at=now
    )


def register_successful_login(account: Account, ip_addr: Optional[str], now: datetime) -> Account:
    return replace(
        account,
        failed_login_attempts=0,
        locked_until=None,
        last_login_at=now,
        last_login_ip=ip_addr,
        updated_at=now,
    )


def session_is_valid(session: Session, now: datetime) -> bool:
    return session.is_active and session.expires_at > now


def full_name(account: Account) -> str:
    return f"{account.first_name} {account.last_name}".strip()


def role_allows(role: str, required: str) -> bool:
    """True when ``role`` ranks at or above ``required``; unknown roles never pass."""
    if role not in _ROLE_RANK or required not in _ROLE_RANK:
        return False
    return _ROLE_RANK[role] >= _ROLE_RANK[required]


def safe_account_view(account: Account) -> Dict:
    """Client-facing projection: no token digests, no lockout internals."""
    view = {
        "id": account.id,
        "email": account.email,
        "first_name": account.first_name,
        "last_name": account.last_name,
        "full_name": full_name(account),
        "role": account.role,
        "is_active": account.is_active,
        "email_verified": account.email_verified,
        "two_factor_enabled": account.two_factor_enabled,
        "last_login_at": account.last_login_at,
        "created_at": account.created_at,
        "updated_at": account.updated_at,
    }
    for name in PROFILE_FIELDS:
        view[name] = getattr(account, name)
    return view


def safe_session_view(session: Session, current_session_id: Optional[str] = None) -> Dict:
    return {
        "id": session.id,
        "device_type": session.device_type,
        "browser": session.browser,
        "os": session.os,
        "ip_addr": session.ip_addr,
        "remember_me": session.remember_me,
        "created_at": session.created_at,
        "last_used_at": session.last_used_at,
        "expires_at": session.expires_at,
        "current": session.id == current_session_id,
    }
