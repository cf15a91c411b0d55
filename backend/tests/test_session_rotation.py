from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth.tokens import TokenService  # noqa: E402
from config import Settings  # noqa: E402
from db.database import Base  # noqa: E402
from db.models import RefreshToken, User  # noqa: E402
from services.session_service import (  # noqa: E402
    revoke_all_for_user,
    revoke_refresh_token,
    rotate_refresh_token,
    store_refresh_token,
)
from utils.datetime_utils import utcnow  # noqa: E402
from utils.errors import TokenError, TokenErrorCode  # noqa: E402

SECRET = "rotation-secret-" + "z" * 32


def _new_db():
    engine = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)()


def _signed_in(db, tokens: TokenService, email: str = "rot@example.com"):
    user = User(email=email, password_hash="x", email_verified=True, plan="FREE")
    db.add(user)
    db.commit()
    pair = tokens.issue_token_pair(user.id, user.email)
    store_refresh_token(
        db,
        tokens,
        user_id=user.id,
        raw_token=pair.refresh_token,
        expires_at=pair.refresh_expires_at,
        device_info="pytest",
        ip_address="127.0.0.1",
    )
    return user, pair


def test_store_refresh_token_persists_only_the_hash():
    db = _new_db()
    tokens = TokenService(Settings(JWT_SECRET=SECRET))
    _user, pair = _signed_in(db, tokens)

    row = db.query(RefreshToken).one()
    assert row.token_hash == tokens.hash_for_storage(pair.refresh_token)
    assert row.token_hash != pair.refresh_token
    assert row.revoked_at is None


def test_rotation_revokes_old_row_and_stores_successor():
    db = _new_db()
    tokens = TokenService(Settings(JWT_SECRET=SECRET))
    user, pair = _signed_in(db, tokens)

    new_pair = rotate_refresh_token(db, tokens, pair.refresh_token)

    assert new_pair.refresh_token != pair.refresh_token
    assert tokens.verify(new_pair.access_token, "access").user_id == user.id
    old_row = db.query(RefreshToken).filter(RefreshToken.token_hash == tokens.hash_for_storage(pair.refresh_token)).one()
    new_row = db.query(RefreshToken).filter(RefreshToken.token_hash == tokens.hash_for_storage(new_pair.refresh_token)).one()
    db.refresh(old_row)
    assert old_row.revoked_at is not None
    assert new_row.revoked_at is None
    assert new_row.device_info == "pytest"


def test_replaying_a_rotated_token_is_rejected():
    db = _new_db()
    tokens = TokenService(Settings(JWT_SECRET=SECRET))
    _user, pair = _signed_in(db, tokens)
    rotate_refresh_token(db, tokens, pair.refresh_token)

    with pytest.raises(TokenError) as excinfo:
        rotate_refresh_token(db, tokens, pair.refresh_token)
    assert excinfo.value.token_code is TokenErrorCode.INVALID
    assert db.query(RefreshToken).count() == 2


def test_rotation_rejects_unknown_expired_and_access_tokens():
    db = _new_db()
    tokens = TokenService(Settings(JWT_SECRET=SECRET))
    user, pair = _signed_in(db, tokens)

    unknown = tokens.issue_refresh_token(user.id, user.email)
    with pytest.raises(TokenError) as excinfo:
        rotate_refresh_token(db, tokens, unknown)
    assert excinfo.value.token_code is TokenErrorCode.INVALID

    with pytest.raises(TokenError) as excinfo:
        rotate_refresh_token(db, tokens, pair.access_token)
    assert excinfo.value.token_code is TokenErrorCode.WRONG_TYPE

    row = db.query(RefreshToken).one()
    row.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()
    with pytest.raises(TokenError) as excinfo:
        rotate_refresh_token(db, tokens, pair.refresh_token)
    assert excinfo.value.token_code is TokenErrorCode.INVALID


def test_rotation_loses_race_when_row_already_revoked():
    db = _new_db()
    tokens = TokenService(Settings(JWT_SECRET=SECRET))
    _user, pair = _signed_in(db, tokens)

    # Another request revokes the row between lookup and the conditional update.
    original_issue = tokens.issue_token_pair

    def racing_issue(user_id, email):
        db.query(RefreshToken).update({RefreshToken.revoked_at: utcnow()})
        db.commit()
        return original_issue(user_id, email)

    tokens.issue_token_pair = racing_issue
    with pytest.raises(TokenError) as excinfo:
        rotate_refresh_token(db, tokens, pair.refresh_token)
    assert excinfo.value.token_code is TokenErrorCode.INVALID
    assert db.query(RefreshToken).count() == 1


def test_revoke_single_and_all_tokens():
    db = _new_db()
    tokens = TokenService(Settings(JWT_SECRET=SECRET))
    user, pair = _signed_in(db, tokens)
    second = tokens.issue_token_pair(user.id, user.email)
    store_refresh_token(db, tokens, user_id=user.id, raw_token=second.refresh_token, expires_at=second.refresh_expires_at)

    assert revoke_refresh_token(db, tokens, pair.refresh_token) is True
    assert revoke_refresh_token(db, tokens, pair.refresh_token) is False
    assert revoke_all_for_user(db, user.id) == 1

    with pytest.raises(TokenError):
        rotate_refresh_token(db, tokens, second.refresh_token)
