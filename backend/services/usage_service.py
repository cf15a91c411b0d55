from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from config import settings
from db.models import Usage, User
from services.subscription_service import PLAN_FREE, PLAN_PRO, user_has_pro_access
from utils.datetime_utils import days_ago, utcnow
from utils.errors import QuotaExceededError

logger = logging.getLogger(__name__)

USAGE_MEAL_ANALYSIS = "MEAL_ANALYSIS"
UNLIMITED = -1


@dataclass(frozen=True)
class ScanAllowance:
    can_scan: bool
    plan: str
    scans_used: int
    scans_remaining: int  # -1 for unlimited
    scans_limit: int  # -1 for unlimited
    reason: str | None = None


def get_usage_count(db: Session, user_id: int, usage_type: str = USAGE_MEAL_ANALYSIS) -> int:
    window_start = days_ago(int(settings.ROLLING_WINDOW_DAYS))
    return (
        db.query(Usage)
        .filter(
            Usage.user_id == user_id,
            Usage.usage_type == usage_type,
            Usage.created_at >= window_start,
        )
        .count()
    )


def can_perform_scan(db: Session, user: User) -> ScanAllowance:
    used = get_usage_count(db, user.id)
    if user_has_pro_access(user):
        return ScanAllowance(True, PLAN_PRO, used, UNLIMITED, UNLIMITED)

    limit = int(settings.FREE_SCANS_PER_WEEK)
    if used >= limit:
        return ScanAllowance(
            False,
            PLAN_FREE,
            used,
            0,
            limit,
            reason=f"You've used all {limit} free scans this week. Upgrade to Pro for unlimited scans.",
        )
    return ScanAllowance(True, PLAN_FREE, used, max(limit - used, 0), limit)


def enforce_scan_quota(db: Session, user: User) -> ScanAllowance:
    allowance = can_perform_scan(db, user)
    if not allowance.can_scan:
        logger.info(f"Scan quota exceeded user_id={user.id} used={allowance.scans_used}")
        raise QuotaExceededError(
            allowance.reason,
            details={
                "plan": allowance.plan,
                "scans_used": allowance.scans_used,
                "scans_limit": allowance.scans_limit,
            },
        )
    return allowance


def record_usage(
    db: Session,
    user_id: int,
    *,
    meal_id: str | None = None,
    usage_type: str = USAGE_MEAL_ANALYSIS,
) -> Usage:
    row = Usage(user_id=user_id, usage_type=usage_type, meal_id=meal_id)
    db.add(row)
    db.commit()
    return row


def get_usage_stats(db: Session, user: User) -> dict:
    allowance = can_perform_scan(db, user)
    period_end: datetime = utcnow()
    return {
        "plan": allowance.plan,
        "scans_used": allowance.scans_used,
        "scans_remaining": allowance.scans_remaining,
        "scans_limit": allowance.scans_limit,
        "period_start": days_ago(int(settings.ROLLING_WINDOW_DAYS)),
        "period_end": period_end,
    }
