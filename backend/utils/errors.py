from __future__ import annotations

from enum import Enum


class AppError(Exception):
    """Base class for errors that map to a fixed HTTP status."""

    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, details: dict | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_body(self) -> dict:
        body: dict = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    status_code = 400
    code = "validation_error"
    default_message = "Invalid request"


class AuthenticationError(AppError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required"


class ForbiddenError(AppError):
    status_code = 403
    code = "forbidden"
    default_message = "You do not have permission to access this resource"


class NotFoundError(AppError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found"


class ConflictError(AppError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists"


class PayloadTooLargeError(AppError):
    status_code = 413
    code = "file_too_large"

    def __init__(self, max_size_mb: int):
        super().__init__(f"File size exceeds limit of {max_size_mb} MB")


class UnsupportedFileTypeError(AppError):
    status_code = 415
    code = "unsupported_file_type"

    def __init__(self, content_type: str):
        super().__init__(
            f"Unsupported file type: {content_type}. Only JPEG, PNG, HEIC and WebP are allowed."
        )


class QuotaExceededError(AppError):
    status_code = 429
    code = "quota_exceeded"
    default_message = "Scan quota exceeded"


class AIAnalysisError(AppError):
    status_code = 502
    code = "ai_analysis_failed"

    def __init__(self, message: str):
        super().__init__(f"AI analysis failed: {message}")


class SchemaValidationError(AppError):
    status_code = 502
    code = "ai_schema_invalid"

    def __init__(self, details: str):
        super().__init__(f"Invalid AI response schema: {details}")


class InternalError(AppError):
    pass


class TokenErrorCode(str, Enum):
    INVALID = "INVALID"
    EXPIRED = "EXPIRED"
    WRONG_TYPE = "WRONG_TYPE"
    MISSING_SECRET = "MISSING_SECRET"


class TokenError(AppError):
    """Signed-token failure. MISSING_SECRET is a server misconfiguration."""

    def __init__(self, message: str, code: TokenErrorCode = TokenErrorCode.INVALID):
        super().__init__(message)
        self.token_code = TokenErrorCode(code)

    @property
    def status_code(self) -> int:  # type: ignore[override]
        return 500 if self.token_code is TokenErrorCode.MISSING_SECRET else 401

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.token_code.value


class EmailNotVerifiedError(ForbiddenError):
    code = "EMAIL_NOT_VERIFIED"
    default_message = "Please verify your email before signing in"
