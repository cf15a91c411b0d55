from __future__ import annotations

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import jwt
import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from auth.tokens import TokenService, hash_for_storage  # noqa: E402
from config import Settings  # noqa: E402
from utils.errors import TokenError, TokenErrorCode  # noqa: E402

KEY_ONE = "k1-" + "a" * 40
KEY_TWO = "k2-" + "b" * 40


def _settings(current: str | None = KEY_ONE, previous: str | None = None) -> Settings:
    return Settings(JWT_SECRET=current, JWT_SECRET_PREVIOUS=previous)


def _raw_token(key: str, **overrides) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "userId": "7",
        "email": "eve@example.com",
        "type": "access",
        "iss": "proteinlens",
        "aud": "proteinlens-api",
        "iat": now,
        "exp": now + timedelta(minutes=15),
    }
    claims.update(overrides)
    claims = {k: v for k, v in claims.items() if v is not None}
    return jwt.encode(claims, key, algorithm="HS256")


def _expect_code(code: TokenErrorCode, fn, *args):
    with pytest.raises(TokenError) as excinfo:
        fn(*args)
    assert excinfo.value.token_code is code
    return excinfo.value


def test_issue_token_pair_types_and_lifetimes():
    service = TokenService(_settings())
    pair = service.issue_token_pair(7, "eve@example.com")

    access = service.verify(pair.access_token, "access")
    refresh = service.verify(pair.refresh_token, "refresh")

    assert access.user_id == 7 and access.email == "eve@example.com"
    assert access.type == "access" and access.jti is None
    assert refresh.type == "refresh" and refresh.jti and len(refresh.jti) == 32
    assert pair.expires_in == 900
    assert (access.expires_at - access.issued_at) == timedelta(minutes=15)
    assert (refresh.expires_at - refresh.issued_at) == timedelta(days=7)


def test_verify_rejects_wrong_token_type_both_ways():
    service = TokenService(_settings())
    pair = service.issue_token_pair(1, "a@example.com")

    err = _expect_code(TokenErrorCode.WRONG_TYPE, service.verify, pair.access_token, "refresh")
    _expect_code(TokenErrorCode.WRONG_TYPE, service.verify, pair.refresh_token, "access")
    assert err.status_code == 401


def test_refresh_tokens_are_unique_per_issue():
    service = TokenService(_settings())
    first = service.issue_refresh_token(1, "a@example.com")
    second = service.issue_refresh_token(1, "a@example.com")
    assert first != second


def test_missing_or_short_secret_is_a_server_error():
    err = _expect_code(TokenErrorCode.MISSING_SECRET, TokenService(_settings(current=None)).issue_access_token, 1, "a@x.io")
    assert err.status_code == 500

    _expect_code(TokenErrorCode.MISSING_SECRET, TokenService(_settings(current="short")).verify, "x.y.z", "access")
    _expect_code(
        TokenErrorCode.MISSING_SECRET,
        TokenService(_settings(previous="too-short")).issue_access_token,
        1,
        "a@x.io",
    )


def test_expired_token_reports_expired():
    service = TokenService(_settings())
    past = datetime.now(timezone.utc) - timedelta(hours=1)
    token = _raw_token(KEY_ONE, iat=past - timedelta(minutes=15), exp=past)
    _expect_code(TokenErrorCode.EXPIRED, service.verify, token, "access")


def test_missing_claims_issuer_and_garbage_are_invalid():
    service = TokenService(_settings())
    _expect_code(TokenErrorCode.INVALID, service.verify, _raw_token(KEY_ONE, email=None), "access")
    _expect_code(TokenErrorCode.INVALID, service.verify, _raw_token(KEY_ONE, userId=None), "access")
    _expect_code(TokenErrorCode.INVALID, service.verify, _raw_token(KEY_ONE, aud="someone-else"), "access")
    _expect_code(TokenErrorCode.INVALID, service.verify, _raw_token(KEY_ONE, iss="not-us"), "access")
    _expect_code(TokenErrorCode.INVALID, service.verify, "not-a-jwt", "access")
    _expect_code(TokenErrorCode.INVALID, service.verify, _raw_token(KEY_TWO), "access")


def test_previous_key_accepted_during_rotation_window():
    old_service = TokenService(_settings(current=KEY_ONE))
    old_pair = old_service.issue_token_pair(3, "rot@example.com")

    rotated = TokenService(_settings(current=KEY_TWO, previous=KEY_ONE))
    payload = rotated.verify(old_pair.refresh_token, "refresh")
    assert payload.user_id == 3
    assert payload.signed_with_previous_key is True

    # New tokens are always signed with the current key.
    new_access = rotated.issue_access_token(3, "rot@example.com")
    assert rotated.verify(new_access, "access").signed_with_previous_key is False
    _expect_code(TokenErrorCode.INVALID, old_service.verify, new_access, "access")


def test_previous_key_does_not_bypass_type_or_expiry_checks():
    rotated = TokenService(_settings(current=KEY_TWO, previous=KEY_ONE))
    old_access = _raw_token(KEY_ONE)
    _expect_code(TokenErrorCode.WRONG_TYPE, rotated.verify, old_access, "refresh")

    past = datetime.now(timezone.utc) - timedelta(minutes=5)
    old_expired = _raw_token(KEY_ONE, iat=past - timedelta(minutes=15), exp=past)
    _expect_code(TokenErrorCode.EXPIRED, rotated.verify, old_expired, "access")


def test_removing_previous_key_after_invalidate_rejects_old_tokens():
    cfg = _settings(current=KEY_ONE)
    service = TokenService(cfg)
    old_token = service.issue_access_token(9, "k@example.com")

    cfg.JWT_SECRET_PREVIOUS = KEY_ONE
    cfg.JWT_SECRET = KEY_TWO
    # Keys stay cached until invalidated.
    assert service.verify(old_token, "access").signed_with_previous_key is False
    service.keys.invalidate()
    assert service.verify(old_token, "access").signed_with_previous_key is True

    cfg.JWT_SECRET_PREVIOUS = None
    service.keys.invalidate()
    _expect_code(TokenErrorCode.INVALID, service.verify, old_token, "access")


def test_hash_for_storage_is_deterministic_and_distinct():
    service = TokenService(_settings())
    tokens = [service.issue_refresh_token(1, "h@example.com") for _ in range(25)]
    hashes = [hash_for_storage(t) for t in tokens]

    assert hashes == [service.hash_for_storage(t) for t in tokens]
    assert len(set(hashes)) == len(tokens)
    assert all(len(h) == 64 and h not in tokens for h in hashes)
