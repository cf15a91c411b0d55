"""Refresh-token persistence and rotation.

The database only ever sees ``hash_for_storage(token)``. Rows are revoked,
never deleted, so a replayed token can be told apart from an unknown one.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from auth.tokens import REFRESH_TOKEN_TYPE, TokenPair, TokenService
from db.models import RefreshToken
from utils.datetime_utils import utcnow
from utils.errors import TokenError, TokenErrorCode

logger = logging.getLogger(__name__)


def _clip(value: str | None, limit: int) -> str | None:
    text = (value or "").strip()
    return text[:limit] or None


def store_refresh_token(
    db: Session,
    tokens: TokenService,
    *,
    user_id: int,
    raw_token: str,
    expires_at,
    device_info: str | None = None,
    ip_address: str | None = None,
    commit: bool = True,
) -> RefreshToken:
    row = RefreshToken(
        user_id=user_id,
        token_hash=tokens.hash_for_storage(raw_token),
        expires_at=expires_at,
        device_info=_clip(device_info, 255),
        ip_address=_clip(ip_address, 45),
    )
    db.add(row)
    if commit:
        db.commit()
    return row


def rotate_refresh_token(
    db: Session,
    tokens: TokenService,
    raw_token: str,
    *,
    device_info: str | None = None,
    ip_address: str | None = None,
) -> TokenPair:
    payload = tokens.verify(raw_token, REFRESH_TOKEN_TYPE)

    token_hash = tokens.hash_for_storage(raw_token)
    stored = db.query(RefreshToken).filter(RefreshToken.token_hash == token_hash).first()
    if stored is None:
        raise TokenError("Refresh token not recognized", TokenErrorCode.INVALID)
    if stored.revoked_at is not None:
        logger.warning(f"Revoked refresh token presented user_id={stored.user_id} token_id={stored.id}")
        raise TokenError("Refresh token has been revoked", TokenErrorCode.INVALID)
    if stored.expires_at <= utcnow():
        raise TokenError("Refresh token has expired", TokenErrorCode.INVALID)
    if stored.user_id != payload.user_id:
        raise TokenError("Refresh token does not match its owner", TokenErrorCode.INVALID)

    pair = tokens.issue_token_pair(payload.user_id, payload.email)

    try:
        revoked = (
            db.query(RefreshToken)
            .filter(RefreshToken.id == stored.id, RefreshToken.revoked_at.is_(None))
            .update({RefreshToken.revoked_at: utcnow()}, synchronize_session=False)
        )
        if revoked != 1:
            db.rollback()
            logger.warning(f"Refresh token rotated concurrently user_id={payload.user_id} token_id={stored.id}")
            raise TokenError("Refresh token has already been used", TokenErrorCode.INVALID)
        store_refresh_token(
            db,
            tokens,
            user_id=payload.user_id,
            raw_token=pair.refresh_token,
            expires_at=pair.refresh_expires_at,
            device_info=device_info or stored.device_info,
            ip_address=ip_address or stored.ip_address,
            commit=False,
        )
        db.commit()
    except TokenError:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(f"Refresh token rotated user_id={payload.user_id}")
    return pair


def revoke_refresh_token(db: Session, tokens: TokenService, raw_token: str) -> bool:
    token_hash = tokens.hash_for_storage(raw_token)
    revoked = (
        db.query(RefreshToken)
        .filter(RefreshToken.token_hash == token_hash, RefreshToken.revoked_at.is_(None))
        .update({RefreshToken.revoked_at: utcnow()}, synchronize_session=False)
    )
    db.commit()
    return bool(revoked)


def revoke_all_for_user(db: Session, user_id: int, *, commit: bool = True) -> int:
    revoked = (
        db.query(RefreshToken)
        .filter(RefreshToken.user_id == user_id, RefreshToken.revoked_at.is_(None))
        .update({RefreshToken.revoked_at: utcnow()}, synchronize_session=False)
    )
    if commit:
        db.commit()
    logger.info(f"Revoked {revoked} refresh tokens user_id={user_id}")
    return int(revoked)
