import re
import secrets
import string

SHARE_ID_LENGTH = 10
SHARE_ID_ALPHABET = string.ascii_letters + string.digits

_SHARE_ID_RE = re.compile(rf"^[A-Za-z0-9]{{{SHARE_ID_LENGTH}}}$")


def generate_share_id() -> str:
    return "".join(secrets.choice(SHARE_ID_ALPHABET) for _ in range(SHARE_ID_LENGTH))


def is_valid_share_id(value: str | None) -> bool:
    return bool(value) and bool(_SHARE_ID_RE.match(value))


def share_url(frontend_url: str, share_id: str) -> str:
    base = (frontend_url or "").rstrip("/")
    return f"{base}/meal/{share_id}"
