import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from auth.models import (
    EmailRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    ResetPasswordRequest,
    SigninRequest,
    SigninResponse,
    SignupRequest,
    SignupResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from auth.tokens import TokenService, get_token_service
from auth.utils import (
    generate_opaque_token,
    get_current_user,
    hash_opaque_token,
    hash_password,
    is_password_breached,
    normalize_email,
    validate_email,
    validate_password_strength,
    verify_password,
)
from config import settings
from db.database import get_db
from db.models import EmailVerificationToken, PasswordResetToken, User
from services.email_service import EmailService, get_email_service
from services.rate_limit_service import require_within_limit, signin_rule, signup_rule
from services.session_service import revoke_all_for_user, revoke_refresh_token, rotate_refresh_token, store_refresh_token
from utils.datetime_utils import utcnow
from utils.errors import AuthenticationError, ConflictError, EmailNotVerifiedError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

RESEND_VERIFICATION_PER_HOUR = 5
FORGOT_PASSWORD_PER_HOUR = 3
GENERIC_RESET_MESSAGE = "If an account exists for that email, a password reset link has been sent."
GENERIC_RESEND_MESSAGE = "If that account needs verification, a new link has been sent."


def _client_ip(request: Request) -> str:
    return (request.client.host if request.client else "") or "unknown"


def _tokens_issued_last_hour(db: Session, model, user_id: int) -> int:
    since = utcnow() - timedelta(hours=1)
    return db.query(model).filter(model.user_id == user_id, model.created_at >= since).count()


def _check_new_password(password: str) -> None:
    validate_password_strength(password)
    if settings.PASSWORD_BREACH_CHECK_ENABLED and is_password_breached(password):
        raise ValidationError(
            "This password has appeared in a data breach. Please choose a different password."
        )


def _issue_verification_token(db: Session, user: User) -> str:
    raw = generate_opaque_token()
    db.add(
        EmailVerificationToken(
            user_id=user.id,
            token_hash=hash_opaque_token(raw),
            expires_at=utcnow() + timedelta(hours=int(settings.EMAIL_VERIFICATION_HOURS)),
        )
    )
    return raw


@router.post("/signup", response_model=SignupResponse, status_code=status.HTTP_201_CREATED)
def signup(
    req: SignupRequest,
    request: Request,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    email = validate_email(req.email)
    require_within_limit(
        signup_rule(),
        scope_key=_client_ip(request),
        ip_address=_client_ip(request),
        message="Too many signup attempts. Please try again later.",
    )
    if db.query(User.id).filter(User.email == email).first():
        raise ConflictError("An account with this email already exists")
    _check_new_password(req.password)

    user = User(
        email=email,
        password_hash=hash_password(req.password),
        first_name=(req.first_name or "").strip() or None,
        last_name=(req.last_name or "").strip() or None,
        email_verified=False,
        plan="FREE",
    )
    db.add(user)
    db.flush()
    raw_token = _issue_verification_token(db, user)
    db.commit()
    logger.info(f"User signed up user_id={user.id}")

    email_service.send_verification_email(user.email, user.first_name, raw_token)
    return SignupResponse(
        message="Account created. Check your email to verify your address.",
        user_id=user.id,
        email=user.email,
        verification_token=raw_token if settings.exposes_dev_tokens else None,
    )


@router.post("/signin", response_model=SigninResponse)
def signin(
    req: SigninRequest,
    request: Request,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    email = normalize_email(req.email)
    require_within_limit(
        signin_rule(),
        scope_key=f"{_client_ip(request)}:{email}",
        ip_address=_client_ip(request),
        message="Too many sign-in attempts. Please try again later.",
    )
    user = db.query(User).filter(User.email == email).first()
    if not user or not verify_password(req.password, user.password_hash):
        raise AuthenticationError("Invalid email or password")
    if not user.email_verified:
        raise EmailNotVerifiedError()

    pair = tokens.issue_token_pair(user.id, user.email)
    store_refresh_token(
        db,
        tokens,
        user_id=user.id,
        raw_token=pair.refresh_token,
        expires_at=pair.refresh_expires_at,
        device_info=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    logger.info(f"User signed in user_id={user.id}")
    return SigninResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        refresh_expires_at=pair.refresh_expires_at,
        user=UserResponse.model_validate(user),
    )


@router.post("/refresh", response_model=TokenResponse)
def refresh(
    req: RefreshRequest,
    request: Request,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    pair = rotate_refresh_token(
        db,
        tokens,
        req.refresh_token,
        device_info=request.headers.get("user-agent"),
        ip_address=_client_ip(request),
    )
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        refresh_expires_at=pair.refresh_expires_at,
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    req: LogoutRequest,
    db: Session = Depends(get_db),
    tokens: TokenService = Depends(get_token_service),
):
    if req.refresh_token:
        revoke_refresh_token(db, tokens, req.refresh_token)
    return MessageResponse(message="Signed out")


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return user


@router.post("/verify-email", response_model=MessageResponse)
def verify_email(req: VerifyEmailRequest, db: Session = Depends(get_db)):
    row = (
        db.query(EmailVerificationToken)
        .filter(EmailVerificationToken.token_hash == hash_opaque_token(req.token))
        .first()
    )
    if row is None or row.used_at is not None or row.expires_at <= utcnow():
        raise ValidationError("Invalid or expired verification token")
    user = db.query(User).filter(User.id == row.user_id).first()
    if user is None:
        raise ValidationError("Invalid or expired verification token")
    row.used_at = utcnow()
    user.email_verified = True
    db.commit()
    logger.info(f"Email verified user_id={user.id}")
    return MessageResponse(message="Email verified. You can now sign in.")


@router.post("/resend-verification", response_model=MessageResponse)
def resend_verification(
    req: EmailRequest,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    email = normalize_email(req.email)
    user = db.query(User).filter(User.email == email).first()
    if user is None or user.email_verified:
        return MessageResponse(message=GENERIC_RESEND_MESSAGE)
    if _tokens_issued_last_hour(db, EmailVerificationToken, user.id) >= RESEND_VERIFICATION_PER_HOUR:
        logger.info(f"Verification resend limit reached user_id={user.id}")
        return MessageResponse(message=GENERIC_RESEND_MESSAGE)

    raw_token = _issue_verification_token(db, user)
    db.commit()
    email_service.send_verification_email(user.email, user.first_name, raw_token)
    return MessageResponse(
        message=GENERIC_RESEND_MESSAGE,
        token=raw_token if settings.exposes_dev_tokens else None,
    )


@router.post("/forgot-password", response_model=MessageResponse)
def forgot_password(
    req: EmailRequest,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    email = normalize_email(req.email)
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        return MessageResponse(message=GENERIC_RESET_MESSAGE)
    if _tokens_issued_last_hour(db, PasswordResetToken, user.id) >= FORGOT_PASSWORD_PER_HOUR:
        logger.info(f"Password reset limit reached user_id={user.id}")
        return MessageResponse(message=GENERIC_RESET_MESSAGE)

    raw_token = generate_opaque_token()
    db.add(
        PasswordResetToken(
            user_id=user.id,
            token_hash=hash_opaque_token(raw_token),
            expires_at=utcnow() + timedelta(hours=int(settings.PASSWORD_RESET_HOURS)),
        )
    )
    db.commit()
    email_service.send_password_reset_email(user.email, user.first_name, raw_token)
    return MessageResponse(
        message=GENERIC_RESET_MESSAGE,
        token=raw_token if settings.exposes_dev_tokens else None,
    )


@router.post("/reset-password", response_model=MessageResponse)
def reset_password(
    req: ResetPasswordRequest,
    db: Session = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    row = (
        db.query(PasswordResetToken)
        .filter(PasswordResetToken.token_hash == hash_opaque_token(req.token))
        .first()
    )
    if row is None or row.used_at is not None or row.expires_at <= utcnow():
        raise ValidationError("Invalid or expired reset token")
    _check_new_password(req.password)

    user = db.query(User).filter(User.id == row.user_id).first()
    if user is None:
        raise ValidationError("Invalid or expired reset token")
    user.password_hash = hash_password(req.password)
    row.used_at = utcnow()
    revoked = revoke_all_for_user(db, user.id, commit=False)
    db.commit()
    logger.info(f"Password reset user_id={user.id} sessions_revoked={revoked}")

    email_service.send_password_changed_email(user.email, user.first_name)
    return MessageResponse(message="Password updated. Please sign in again.")
