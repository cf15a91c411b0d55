import re
import secrets
import time

from config import settings
from utils.errors import PayloadTooLargeError, UnsupportedFileTypeError, ValidationError

ALLOWED_IMAGE_MIME_TYPES = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/heic": "heic",
    "image/webp": "webp",
}

BLOB_PREFIX = "meals"
_BLOB_NAME_RE = re.compile(r"^meals/([A-Za-z0-9_-]+)/([A-Za-z0-9._-]+)$")


def max_upload_bytes() -> int:
    return int(settings.MAX_UPLOAD_SIZE_MB) * 1024 * 1024


def normalize_content_type(content_type: str | None) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def validate_upload_request(content_type: str | None, file_size: int) -> str:
    """Check a declared upload and return the file extension to use."""
    normalized = normalize_content_type(content_type)
    ext = ALLOWED_IMAGE_MIME_TYPES.get(normalized)
    if not ext:
        raise UnsupportedFileTypeError(normalized or "unknown")
    if file_size is None or int(file_size) <= 0:
        raise ValidationError("File size must be positive")
    if int(file_size) > max_upload_bytes():
        raise PayloadTooLargeError(int(settings.MAX_UPLOAD_SIZE_MB))
    return ext


def generate_blob_name(user_id: int, ext: str) -> str:
    stamp = int(time.time() * 1000)
    return f"{BLOB_PREFIX}/{user_id}/{stamp}-{secrets.token_hex(6)}.{ext}"


def validate_blob_name(blob_name: str | None) -> str:
    value = (blob_name or "").strip()
    if not value:
        raise ValidationError("blob_name is required")
    if ".." in value or not _BLOB_NAME_RE.match(value):
        raise ValidationError("Invalid blob name")
    return value
