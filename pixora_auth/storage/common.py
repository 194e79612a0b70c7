"""Common storage utilities shared between memory and postgres implementations.

Both backends encrypt two-factor secrets, hash single-use values and
restrict which account columns a caller may update through the same
helpers, so the two stores cannot drift apart.
"""

from __future__ import annotations

import base64
import hashlib
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken

from pixora_auth.logging import get_logger
from pixora_auth.storage.errors import ConstraintViolation

logger = get_logger(__name__)


# ============================================================================
# ACCOUNT UPDATES
# ============================================================================

# Columns ``update_account`` may touch. Identity, credential and timestamp
# columns have dedicated code paths.
UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "role",
        "is_active",
        "email_verified",
        "email_verification_token",
        "email_verification_expires",
        "password_reset_token",
        "password_reset_expires",
        "failed_login_attempts",
        "locked_until",
        "two_factor_enabled",
        "last_login_at",
        "last_login_ip",
        "phone",
        "company",
        "title",
        "bio",
        "avatar_url",
        "website",
        "location",
    }
)


def validate_account_fields(fields: Iterable[str]) -> None:
    """Reject updates to columns outside the allowlist.

    Args:
        fields: Column names supplied by the caller

    Raises:
        ConstraintViolation: If any name is not updatable
    """
    unknown = sorted(set(fields) - UPDATABLE_ACCOUNT_FIELDS)
    if unknown:
        raise ConstraintViolation("unknown account fields", {"fields": unknown})


# ============================================================================
# HASHING / ENCRYPTION
# ============================================================================

def digest_value(value: str) -> str:
    """SHA-256 hex digest used for refresh tokens, single-use tokens and backup codes."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def derive_cipher_key(key_material: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())


def build_mfa_cipher(key_material: str) -> Fernet:
    """Build the Fernet cipher protecting TOTP secrets at rest.

    Args:
        key_material: Arbitrary-length secret; stretched to a Fernet key

    Raises:
        RuntimeError: If no key material is available
    """
    if not key_material:
        raise RuntimeError("MFA encryption key material is required")
    return Fernet(derive_cipher_key(key_material))


def encrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    return cipher.encrypt(secret.encode()).decode()


def decrypt_secret(cipher: Fernet, secret: str) -> str:
    if not secret:
        return secret
    try:
        return cipher.decrypt(secret.encode()).decode()
    except InvalidToken as exc:
        logger.error("mfa_secret_decrypt_failed")
        raise RuntimeError("stored MFA secret cannot be decrypted") from exc


# ============================================================================
# ROW HELPERS
# ============================================================================

def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an IP address to its canonical string form.

    Args:
        raw_ip: Raw IP address value (string, ipaddress object, or None)

    Returns:
        Canonical string or None when empty or unparseable
    """
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return None


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC so comparisons with ``now`` never raise."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def generate_uuid() -> str:
    """Generate a new UUID string.

    Returns:
        String representation of a new UUID4
    """
    return str(uuid.uuid4())
