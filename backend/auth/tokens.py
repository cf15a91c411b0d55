"""Signed session credentials.

Access tokens live 15 minutes, refresh tokens 7 days. Both are HS256 JWTs
signed with ``JWT_SECRET``. During a secret rotation ``JWT_SECRET_PREVIOUS``
holds the old secret: tokens it signed still verify, but nothing new is ever
signed with it. Only a SHA-256 of each refresh token is persisted.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from utils.errors import TokenError, TokenErrorCode

logger = logging.getLogger(__name__)

MIN_SECRET_LENGTH = 32
ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class SigningKeys:
    current: str
    previous: str | None = None


@dataclass(frozen=True)
class TokenPayload:
    user_id: int
    email: str
    type: str
    jti: str | None
    issued_at: datetime | None
    expires_at: datetime | None
    signed_with_previous_key: bool = False


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_at: datetime


class SigningKeyCache:
    """Loads the signing secrets on first use and keeps them until invalidated."""

    def __init__(self, settings):
        self._settings = settings
        self._keys: SigningKeys | None = None
        self._lock = threading.Lock()

    def get(self) -> SigningKeys:
        keys = self._keys
        if keys is not None:
            return keys
        with self._lock:
            if self._keys is None:
                self._keys = self._load()
            return self._keys

    def invalidate(self) -> None:
        with self._lock:
            self._keys = None

    def _load(self) -> SigningKeys:
        current = (self._settings.JWT_SECRET or "").strip()
        if not current:
            raise TokenError("JWT_SECRET is not configured", TokenErrorCode.MISSING_SECRET)
        if len(current) < MIN_SECRET_LENGTH:
            raise TokenError(
                f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters",
                TokenErrorCode.MISSING_SECRET,
            )
        previous = (self._settings.JWT_SECRET_PREVIOUS or "").strip() or None
        if previous is not None and len(previous) < MIN_SECRET_LENGTH:
            raise TokenError(
                f"JWT_SECRET_PREVIOUS must be at least {MIN_SECRET_LENGTH} characters",
                TokenErrorCode.MISSING_SECRET,
            )
        if previous == current:
            previous = None
        if previous:
            logger.info("Signing key rotation window active; previous key accepted for verification")
        return SigningKeys(current=current, previous=previous)


def hash_for_storage(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


class TokenService:
    def __init__(self, settings):
        self._settings = settings
        self.keys = SigningKeyCache(settings)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=int(self._settings.ACCESS_TOKEN_MINUTES))

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=int(self._settings.REFRESH_TOKEN_DAYS))

    def _sign(self, claims: dict, ttl: timedelta) -> str:
        key = self.keys.get().current
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iss": self._settings.JWT_ISSUER,
            "aud": self._settings.JWT_AUDIENCE,
            "iat": now,
            "exp": now + ttl,
        }
        return jwt.encode(payload, key, algorithm=self._settings.JWT_ALGORITHM)

    def issue_access_token(self, user_id: int, email: str) -> str:
        return self._sign(
            {"userId": str(user_id), "email": email, "type": ACCESS_TOKEN_TYPE},
            self.access_ttl,
        )

    def issue_refresh_token(self, user_id: int, email: str) -> str:
        return self._sign(
            {
                "userId": str(user_id),
                "email": email,
                "type": REFRESH_TOKEN_TYPE,
                "jti": secrets.token_hex(16),
            },
            self.refresh_ttl,
        )

    def issue_token_pair(self, user_id: int, email: str) -> TokenPair:
        access_token = self.issue_access_token(user_id, email)
        refresh_token = self.issue_refresh_token(user_id, email)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_at=(datetime.now(timezone.utc) + self.refresh_ttl).replace(tzinfo=None),
        )

    def _decode(self, token: str, key: str) -> dict:
        return jwt.decode(
            token,
            key,
            algorithms=[self._settings.JWT_ALGORITHM],
            issuer=self._settings.JWT_ISSUER,
            audience=self._settings.JWT_AUDIENCE,
            options={"require": ["exp", "iat", "iss", "aud"]},
        )

    def verify(self, token: str, expected_type: str = ACCESS_TOKEN_TYPE) -> TokenPayload:
        if not token or not isinstance(token, str):
            raise TokenError("Token is required", TokenErrorCode.INVALID)
        keys = self.keys.get()

        used_previous = False
        try:
            claims = self._decode(token, keys.current)
        except jwt.ExpiredSignatureError:
            raise TokenError("Token has expired", TokenErrorCode.EXPIRED)
        except jwt.InvalidSignatureError:
            if not keys.previous:
                raise TokenError("Invalid token", TokenErrorCode.INVALID)
            try:
                claims = self._decode(token, keys.previous)
            except jwt.ExpiredSignatureError:
                raise TokenError("Token has expired", TokenErrorCode.EXPIRED)
            except jwt.InvalidTokenError:
                raise TokenError("Invalid token", TokenErrorCode.INVALID)
            used_previous = True
        except jwt.InvalidTokenError:
            raise TokenError("Invalid token", TokenErrorCode.INVALID)

        token_type = claims.get("type")
        if token_type != expected_type:
            raise TokenError(
                f"Expected {expected_type} token but got {token_type}",
                TokenErrorCode.WRONG_TYPE,
            )
        raw_user_id = claims.get("userId")
        email = claims.get("email")
        if not raw_user_id or not email:
            raise TokenError("Token missing required claims", TokenErrorCode.INVALID)
        try:
            user_id = int(raw_user_id)
        except (TypeError, ValueError):
            raise TokenError("Token missing required claims", TokenErrorCode.INVALID)

        return TokenPayload(
            user_id=user_id,
            email=str(email),
            type=str(token_type),
            jti=claims.get("jti"),
            issued_at=_claim_datetime(claims.get("iat")),
            expires_at=_claim_datetime(claims.get("exp")),
            signed_with_previous_key=used_previous,
        )

    def hash_for_storage(self, raw_token: str) -> str:
        return hash_for_storage(raw_token)


def _claim_datetime(value) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError):
        return None


_TOKEN_SERVICE: TokenService | None = None


def get_token_service() -> TokenService:
    global _TOKEN_SERVICE
    if _TOKEN_SERVICE is None:
        from config import settings

        _TOKEN_SERVICE = TokenService(settings)
    return _TOKEN_SERVICE
