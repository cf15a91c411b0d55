from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from db.models import SubscriptionEvent, User
from utils.datetime_utils import utcnow

logger = logging.getLogger(__name__)

PLAN_FREE = "FREE"
PLAN_PRO = "PRO"

_ACTIVE_STATUSES = {"active", "trialing"}
_GRACE_STATUSES = {"canceled", "past_due"}
_KNOWN_STATUSES = _ACTIVE_STATUSES | _GRACE_STATUSES


def map_stripe_status(status: str | None) -> str:
    value = (status or "").strip().lower()
    # Unrecognized states (incomplete, unpaid, ...) lose access.
    return value if value in _KNOWN_STATUSES else "canceled"


def should_have_pro_access(
    plan: str | None,
    subscription_status: str | None,
    current_period_end: datetime | None,
    *,
    now: datetime | None = None,
) -> bool:
    if (plan or PLAN_FREE) != PLAN_PRO:
        return False
    if subscription_status in _ACTIVE_STATUSES:
        return True
    if subscription_status in _GRACE_STATUSES:
        if current_period_end is None:
            return False
        grace_end = current_period_end + timedelta(days=int(settings.GRACE_PERIOD_DAYS))
        return (now or utcnow()) <= grace_end
    return False


def user_has_pro_access(user: User) -> bool:
    return should_have_pro_access(user.plan, user.subscription_status, user.current_period_end)


def find_user_by_customer(db: Session, stripe_customer_id: str | None) -> User | None:
    if not stripe_customer_id:
        return None
    return db.query(User).filter(User.stripe_customer_id == stripe_customer_id).first()


def update_subscription_from_webhook(
    db: Session,
    *,
    stripe_customer_id: str,
    subscription_id: str | None,
    status: str | None,
    current_period_end: datetime | None,
) -> User | None:
    user = find_user_by_customer(db, stripe_customer_id)
    if user is None:
        logger.warning(f"No user found for Stripe customer {stripe_customer_id}")
        return None

    mapped = map_stripe_status(status)
    if mapped in _ACTIVE_STATUSES:
        user.plan = PLAN_PRO
    user.stripe_subscription_id = subscription_id
    user.subscription_status = mapped
    user.current_period_end = current_period_end
    db.commit()
    logger.info(f"Subscription updated user_id={user.id} status={mapped} plan={user.plan}")
    return user


def mark_past_due(db: Session, stripe_customer_id: str) -> User | None:
    user = find_user_by_customer(db, stripe_customer_id)
    if user is None:
        return None
    user.subscription_status = "past_due"
    db.commit()
    return user


def downgrade_to_free(db: Session, stripe_customer_id: str) -> User | None:
    user = find_user_by_customer(db, stripe_customer_id)
    if user is None:
        return None
    user.plan = PLAN_FREE
    user.subscription_status = None
    user.stripe_subscription_id = None
    user.current_period_end = None
    db.commit()
    logger.info(f"User downgraded to free user_id={user.id}")
    return user


def event_already_processed(db: Session, stripe_event_id: str) -> bool:
    return (
        db.query(SubscriptionEvent.id)
        .filter(SubscriptionEvent.stripe_event_id == stripe_event_id)
        .first()
        is not None
    )


def log_subscription_event(
    db: Session,
    *,
    user_id: int | None,
    event_type: str,
    stripe_event_id: str,
    payload: dict | None,
) -> bool:
    """Insert the audit row; returns False when the event id was already logged."""
    if event_already_processed(db, stripe_event_id):
        logger.info(f"Duplicate Stripe event ignored: {stripe_event_id}")
        return False
    db.add(
        SubscriptionEvent(
            user_id=user_id,
            event_type=event_type,
            stripe_event_id=stripe_event_id,
            payload_json=json.dumps(payload or {}, default=str),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Duplicate Stripe event ignored: {stripe_event_id}")
        return False
    return True
