"""Sliding-window throttling for the auth endpoints.

Counters live in process memory, so each worker enforces its own window.
Blocked attempts are written to ``rate_limit_audit_events`` with the scope
key hashed so raw emails and IPs never reach that table.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass

from fastapi import HTTPException, status

from config import settings
from db.database import SessionLocal
from db.models import RateLimitAuditEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    endpoint: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int
    remaining: int


def signin_rule() -> RateLimitRule:
    return RateLimitRule(
        endpoint="/api/auth/signin",
        limit=settings.RATE_LIMIT_AUTH_SIGNIN_ATTEMPTS,
        window_seconds=settings.RATE_LIMIT_AUTH_SIGNIN_WINDOW_SECONDS,
    )


def signup_rule() -> RateLimitRule:
    return RateLimitRule(
        endpoint="/api/auth/signup",
        limit=settings.RATE_LIMIT_AUTH_SIGNUP_ATTEMPTS,
        window_seconds=settings.RATE_LIMIT_AUTH_SIGNUP_WINDOW_SECONDS,
    )


class InMemoryRateLimiter:
    SWEEP_INTERVAL_SECONDS = 60

    def __init__(self, clock=time.monotonic) -> None:
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._window_lengths: dict[str, int] = {}
        self._next_sweep = 0.0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def _sweep(self, now: float) -> None:
        # Drop keys whose newest hit has left its window.
        stale = [
            key
            for key, stamps in self._windows.items()
            if not stamps or now - stamps[-1] >= self._window_lengths[key]
        ]
        for key in stale:
            del self._windows[key]
            del self._window_lengths[key]
        self._next_sweep = now + self.SWEEP_INTERVAL_SECONDS

    def hit(self, key: str, rule: RateLimitRule) -> RateLimitDecision:
        now = self._clock()
        window = max(int(rule.window_seconds), 1)
        ceiling = max(int(rule.limit), 1)
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            stamps = self._windows.setdefault(key, deque())
            self._window_lengths[key] = window
            while stamps and now - stamps[0] >= window:
                stamps.popleft()
            if len(stamps) >= ceiling:
                wait = int(max(stamps[0] + window - now, 1))
                return RateLimitDecision(allowed=False, retry_after=wait, remaining=0)
            stamps.append(now)
            return RateLimitDecision(allowed=True, retry_after=0, remaining=ceiling - len(stamps))

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
            self._window_lengths.clear()
            self._next_sweep = 0.0


_limiter = InMemoryRateLimiter()


def reset_rate_limits() -> None:
    _limiter.reset()


def hash_scope_key(scope_key: str) -> str:
    return hashlib.sha256((scope_key or "").encode("utf-8")).hexdigest()[:24]


def audit_blocked_attempt(
    rule: RateLimitRule,
    *,
    scope_key: str,
    retry_after: int,
    ip_address: str | None,
    session_factory=SessionLocal,
) -> None:
    db = session_factory()
    try:
        db.add(
            RateLimitAuditEvent(
                endpoint=rule.endpoint,
                scope_key=hash_scope_key(scope_key),
                blocked=True,
                retry_after_seconds=retry_after,
                ip_address=(ip_address or "").strip()[:128] or None,
                details_json=json.dumps({"limit": rule.limit, "window_seconds": rule.window_seconds}),
            )
        )
        db.commit()
    except Exception as exc:
        db.rollback()
        logger.warning(f"Could not audit blocked attempt on {rule.endpoint}: {exc}")
    finally:
        db.close()


def require_within_limit(rule: RateLimitRule, *, scope_key: str, ip_address: str | None, message: str) -> None:
    decision = _limiter.hit(f"{rule.endpoint}:{scope_key}", rule)
    if decision.allowed:
        return
    logger.info(f"Rate limit hit endpoint={rule.endpoint} retry_after={decision.retry_after}s")
    audit_blocked_attempt(rule, scope_key=scope_key, retry_after=decision.retry_after, ip_address=ip_address)
    raise HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail=message,
        headers={"Retry-After": str(decision.retry_after)},
    )
