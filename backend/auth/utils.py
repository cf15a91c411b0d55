import hashlib
import logging
import re
import secrets

import bcrypt
import httpx
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from auth.tokens import ACCESS_TOKEN_TYPE, TokenService, get_token_service
from db.database import get_db
from db.models import User
from services.request_context import bind_user
from utils.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

PASSWORD_MIN_LENGTH = 12
PASSWORD_MAX_LENGTH = 128
HIBP_RANGE_URL = "https://api.pwnedpasswords.com/range/"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    normalized = normalize_email(email)
    if len(normalized) > 320 or not _EMAIL_RE.match(normalized):
        raise ValidationError("Invalid email address")
    return normalized


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str | None) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


def password_strength_errors(password: str) -> list[str]:
    errors: list[str] = []
    value = password or ""
    if len(value) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        errors.append(f"Password must be at most {PASSWORD_MAX_LENGTH} characters")
    if not re.search(r"[a-z]", value):
        errors.append("Password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        errors.append("Password must contain an uppercase letter")
    if not re.search(r"[0-9]", value):
        errors.append("Password must contain a number")
    if not re.search(r"[^A-Za-z0-9]", value):
        errors.append("Password must contain a special character")
    return errors


def validate_password_strength(password: str) -> None:
    errors = password_strength_errors(password)
    if errors:
        raise ValidationError("Password does not meet requirements", details={"password": errors})


def is_password_breached(password: str, *, timeout: float = 3.0, transport: httpx.BaseTransport | None = None) -> bool:
    """k-anonymity lookup against Have I Been Pwned. Fails open."""
    digest = hashlib.sha1(password.encode("utf-8")).hexdigest().upper()
    prefix, suffix = digest[:5], digest[5:]
    try:
        with httpx.Client(timeout=timeout, transport=transport) as client:
            resp = client.get(f"{HIBP_RANGE_URL}{prefix}", headers={"Add-Padding": "true"})
        if resp.status_code != 200:
            logger.warning(f"Breach check returned {resp.status_code}; allowing password")
            return False
    except httpx.HTTPError as exc:
        logger.warning(f"Breach check unavailable; allowing password: {exc}")
        return False
    for line in resp.text.splitlines():
        candidate, _, count = line.partition(":")
        if candidate.strip().upper() == suffix and count.strip() not in {"", "0"}:
            return True
    return False


def generate_opaque_token() -> str:
    return secrets.token_urlsafe(32)


def hash_opaque_token(token: str) -> str:
    return hashlib.sha256((token or "").encode("utf-8")).hexdigest()


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
) -> User:
    if not credentials or not credentials.credentials:
        raise AuthenticationError("Not authenticated")
    payload = tokens.verify(credentials.credentials, ACCESS_TOKEN_TYPE)
    user = db.query(User).filter(User.id == payload.user_id).first()
    if not user:
        raise AuthenticationError("User not found")
    request.state.user_id = user.id
    bind_user(user.id)
    return user
