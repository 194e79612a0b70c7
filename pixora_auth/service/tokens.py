from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import math
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pixora_auth.config import Settings
from pixora_auth.logging import get_logger
from pixora_auth.service.errors import (
    ExpiredToken,
    InsecureConfiguration,
    InvalidToken,
    WrongTokenKind,
)
from pixora_auth.storage.common import digest_value, generate_uuid

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"

PAIR_KINDS = frozenset({ACCESS, REFRESH})
SINGLE_USE_KINDS = frozenset({EMAIL_VERIFICATION, PASSWORD_RESET})
TOKEN_KINDS = PAIR_KINDS | SINGLE_USE_KINDS


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    jti: str
    refresh_jti: str


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    email: str
    role: str
    session_id: str
    jti: str
    kind: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class SingleUseClaims:
    email: str
    kind: str
    jti: str
    expires_at: datetime
    nonce: Optional[str] = None


def hash_token(token: str) -> str:
    """Digest stored in place of refresh and single-use token values."""
    return digest_value(token)


def generate_secure_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def _new_jti() -> str:
    return secrets.token_hex(16)


def validate_signing_secrets(
    access_secret: Optional[str],
    refresh_secret: Optional[str],
    *,
    hardened: bool,
    min_length: int = 32,
) -> None:
    """Refuse to run with missing, shared, or (in production) short secrets.

    Raises:
        InsecureConfiguration: On any violation
    """
    if not access_secret or not refresh_secret:
        raise InsecureConfiguration("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must both be set")
    if hmac.compare_digest(access_secret.encode(), refresh_secret.encode()):
        raise InsecureConfiguration("access and refresh signing secrets must differ")
    if hardened:
        for name, secret in (
            ("JWT_ACCESS_SECRET", access_secret),
            ("JWT_REFRESH_SECRET", refresh_secret),
        ):
            if len(secret) < min_length:
                raise InsecureConfiguration(
                    f"{name} must be at least {min_length} characters in production"
                )


class TokenService:
    """Mints and verifies HS256 tokens; no storage access.

    Access and email-verification tokens are signed with the access secret,
    refresh and password-reset tokens with the refresh secret. The secret
    used to check a signature is chosen from the token's own ``type`` claim,
    so presenting one kind where another is expected surfaces as
    :class:`WrongTokenKind` while forged or cross-signed tokens surface as
    :class:`InvalidToken`.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        extended_refresh_ttl: timedelta = timedelta(days=30),
        email_verification_ttl: timedelta = timedelta(minutes=30),
        password_reset_ttl: timedelta = timedelta(minutes=15),
        hardened: bool = False,
        min_secret_length: int = 32,
        clock: Callable[[], float] = time.time,
    ) -> None:
        validate_signing_secrets(
            access_secret, refresh_secret, hardened=hardened, min_length=min_secret_length
        )
        self._access_secret = access_secret.encode()
        self._refresh_secret = refresh_secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.extended_refresh_ttl = extended_refresh_ttl
        self._single_use_ttls = {
            EMAIL_VERIFICATION: email_verification_ttl,
            PASSWORD_RESET: password_reset_ttl,
        }
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "TokenService":
        return cls(
            access_secret=settings.jwt_access_secret or "",
            refresh_secret=settings.jwt_refresh_secret or "",
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            extended_refresh_ttl=timedelta(days=settings.remember_me_refresh_ttl_days),
            email_verification_ttl=timedelta(minutes=settings.email_verification_ttl_minutes),
            password_reset_ttl=timedelta(minutes=settings.password_reset_ttl_minutes),
            hardened=settings.is_production,
            min_secret_length=settings.jwt_min_secret_length,
            clock=clock,
        )

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def single_use_ttl(self, kind: str) -> timedelta:
        if kind not in SINGLE_USE_KINDS:
            raise ValueError(f"unsupported single-use token kind {kind!r}")
        return self._single_use_ttls[kind]

    def issue_pair(
        self,
        account_id: str,
        email: str,
        role: str,
        session_id: Optional[str] = None,
        extended_lifetime: bool = False,
    ) -> TokenPair:
        """Mint an access/refresh pair bound to ``session_id`` (new when omitted)."""
        issued_at = math.floor(self._clock())
        session_id = session_id or generate_uuid()
        refresh_ttl = self.extended_refresh_ttl if extended_lifetime else self.refresh_ttl
        access_exp = issued_at + int(self.access_ttl.total_seconds())
        refresh_exp = issued_at + int(refresh_ttl.total_seconds())
        access_jti = _new_jti()
        refresh_jti = _new_jti()
        common = {
            "sub": account_id,
            "email": email,
            "role": role,
            "sid": session_id,
            "iat": issued_at,
            "iss": self.issuer,
            "aud": self.audience,
        }
        access_token = self._encode_jwt(
            {**common, "type": ACCESS, "jti": access_jti, "exp": access_exp}
        )
        refresh_token = self._encode_jwt(
            {**common, "type": REFRESH, "jti": refresh_jti, "exp": refresh_exp}
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=datetime.fromtimestamp(access_exp, tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_exp, tz=timezone.utc),
            session_id=session_id,
            jti=access_jti,
            refresh_jti=refresh_jti,
        )

    def verify(self, token: str, expected_kind: str) -> TokenClaims:
        if expected_kind not in PAIR_KINDS:
            raise ValueError(f"verify() handles access/refresh tokens, not {expected_kind!r}")
        payload = self._decode_jwt(token, expected_kind)
        subject = payload.get("sub")
        session_id = payload.get("sid")
        jti = payload.get("jti")
        if not all(isinstance(v, str) and v for v in (subject, session_id, jti)):
            logger.info("token_rejected", reason="missing_claims", token_kind=expected_kind)
            raise InvalidToken()
        return TokenClaims(
            subject=subject,
            email=str(payload.get("email", "")),
            role=str(payload.get("role", "user")),
            session_id=session_id,
            jti=jti,
            kind=payload["type"],
            issued_at=datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
        )

    def issue_single_use(self, kind: str, email: str) -> str:
        """Mint an email-bound token; reset tokens carry a nonce so each is unique."""
        if kind not in SINGLE_USE_KINDS:
            raise ValueError(f"unsupported single-use token kind {kind!r}")
        issued_at = math.floor(self._clock())
        payload: dict[str, Any] = {
            "email": email,
            "type": kind,
            "jti": _new_jti(),
            "iat": issued_at,
            "exp": issued_at + int(self._single_use_ttls[kind].total_seconds()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        if kind == PASSWORD_RESET:
            payload["nonce"] = generate_secure_token(16)
        return self._encode_jwt(payload)

    def verify_single_use(self, token: str, expected_kind: str) -> SingleUseClaims:
        if expected_kind not in SINGLE_USE_KINDS:
            raise ValueError(f"unsupported single-use token kind {expected_kind!r}")
        payload = self._decode_jwt(token, expected_kind)
        email = payload.get("email")
        jti = payload.get("jti")
        if not isinstance(email, str) or not email or not isinstance(jti, str):
            logger.info("token_rejected", reason="missing_claims", token_kind=expected_kind)
            raise InvalidToken()
        nonce = payload.get("nonce")
        if expected_kind == PASSWORD_RESET and not isinstance(nonce, str):
            logger.info("token_rejected", reason="missing_nonce", token_kind=expected_kind)
            raise InvalidToken()
        return SingleUseClaims(
            email=email,
            kind=expected_kind,
            jti=jti,
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            nonce=nonce,
        )

    # -- encoding ---------------------------------------------------------

    def _secret_for(self, kind: str) -> bytes:
        if kind in (ACCESS, EMAIL_VERIFICATION):
            return self._access_secret
        return self._refresh_secret

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, kind: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret_for(kind), signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, payload['type'])}"

    def _decode_jwt(self, token: str, expected_kind: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidToken()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            logger.info("token_rejected", reason="malformed", token_kind=expected_kind)
            raise InvalidToken()

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            logger.info("token_rejected", reason="undecodable", token_kind=expected_kind)
            raise InvalidToken()
        if not isinstance(header, dict):
            raise InvalidToken()
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise InvalidToken()
        if not isinstance(payload, dict):
            raise InvalidToken()

        kind = payload.get("type")
        if kind not in TOKEN_KINDS:
            logger.info("token_rejected", reason="unknown_type", token_kind=expected_kind)
            raise InvalidToken()
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.info("token_rejected", reason="bad_signature", token_kind=expected_kind)
            raise InvalidToken()

        if payload.get("iss") != self.issuer:
            logger.info("token_rejected", reason="issuer_mismatch", token_kind=expected_kind)
            raise InvalidToken()
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            logger.info("token_rejected", reason="audience_mismatch", token_kind=expected_kind)
            raise InvalidToken()

        if kind != expected_kind:
            logger.info("token_wrong_kind", token_kind=expected_kind, presented=kind)
            raise WrongTokenKind()

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise InvalidToken()
        # Valid strictly before exp
        if self._clock() >= exp:
            raise ExpiredToken()
        return payload
