import logging
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth.utils import get_current_user
from config import settings
from db.database import get_db
from db.models import User
from services import subscription_service
from services.stripe_service import StripeService, WebhookSignatureError, get_stripe_service
from services.usage_service import get_usage_stats
from utils.datetime_utils import from_unix, isoformat_z
from utils.errors import AuthenticationError, InternalError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    plan: Literal["monthly", "annual"] = "monthly"


def _price_for(plan: str) -> str | None:
    return settings.STRIPE_PRICE_ANNUAL if plan == "annual" else settings.STRIPE_PRICE_MONTHLY


@router.post("/checkout")
def create_checkout(
    req: CheckoutRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    price_id = _price_for(req.plan)
    if not stripe_service.enabled or not price_id:
        raise InternalError("Billing is not configured")

    if not user.stripe_customer_id:
        user.stripe_customer_id = stripe_service.create_customer(email=user.email, user_id=user.id)
        db.commit()
    session = stripe_service.create_checkout_session(
        customer_id=user.stripe_customer_id,
        price_id=price_id,
        user_id=user.id,
    )
    logger.info(f"Checkout session created user_id={user.id} plan={req.plan}")
    return session


@router.post("/portal")
def create_portal(
    user: User = Depends(get_current_user),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    if not user.stripe_customer_id:
        raise ValidationError("No billing account found. Subscribe to a plan first.")
    if not stripe_service.enabled:
        raise InternalError("Billing is not configured")
    return stripe_service.create_portal_session(user.stripe_customer_id)


@router.get("/usage")
def usage(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    stats = get_usage_stats(db, user)
    stats["period_start"] = isoformat_z(stats["period_start"])
    stats["period_end"] = isoformat_z(stats["period_end"])
    return stats


def _handle_checkout_completed(db: Session, obj: dict, stripe_service: StripeService) -> int | None:
    customer_id = obj.get("customer")
    subscription_id = obj.get("subscription")
    raw_user_id = (obj.get("metadata") or {}).get("userId")
    user = None
    if raw_user_id and str(raw_user_id).isdigit():
        user = db.query(User).filter(User.id == int(raw_user_id)).first()
    if user is None:
        user = subscription_service.find_user_by_customer(db, customer_id)
    if user is None:
        logger.warning(f"Checkout completed for unknown user customer={customer_id}")
        return None

    if customer_id and not user.stripe_customer_id:
        user.stripe_customer_id = customer_id
    status_value = "active"
    period_end = None
    if subscription_id:
        try:
            subscription = stripe_service.retrieve_subscription(subscription_id)
            status_value = subscription.get("status") or status_value
            period_end = from_unix(subscription.get("current_period_end"))
        except Exception as exc:
            logger.warning(f"Could not load subscription {subscription_id}: {exc}")
    user.plan = subscription_service.PLAN_PRO
    user.stripe_subscription_id = subscription_id
    user.subscription_status = subscription_service.map_stripe_status(status_value)
    user.current_period_end = period_end
    db.commit()
    logger.info(f"Checkout completed user_id={user.id} subscription={subscription_id}")
    return user.id


def _dispatch_event(db: Session, event_type: str, obj: dict, stripe_service: StripeService) -> int | None:
    if event_type == "checkout.session.completed":
        return _handle_checkout_completed(db, obj, stripe_service)
    if event_type == "customer.subscription.updated":
        user = subscription_service.update_subscription_from_webhook(
            db,
            stripe_customer_id=obj.get("customer"),
            subscription_id=obj.get("id"),
            status=obj.get("status"),
            current_period_end=from_unix(obj.get("current_period_end")),
        )
        return user.id if user else None
    if event_type == "customer.subscription.deleted":
        user = subscription_service.downgrade_to_free(db, obj.get("customer"))
        return user.id if user else None
    if event_type == "invoice.payment_failed":
        user = subscription_service.mark_past_due(db, obj.get("customer"))
        return user.id if user else None
    logger.info(f"Unhandled Stripe event type {event_type}")
    user = subscription_service.find_user_by_customer(db, obj.get("customer"))
    return user.id if user else None


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise ValidationError("Missing Stripe-Signature header")
    payload = await request.body()
    try:
        event = stripe_service.construct_event(payload, signature)
    except WebhookSignatureError as exc:
        logger.warning(f"Stripe webhook rejected: {exc}")
        raise AuthenticationError("Invalid webhook signature")

    event_id = event["id"]
    event_type = event["type"]
    obj = event["data"]["object"]
    if subscription_service.event_already_processed(db, event_id):
        logger.info(f"Duplicate Stripe event acknowledged: {event_id}")
        return {"received": True, "duplicate": True}

    user_id = _dispatch_event(db, event_type, obj, stripe_service)
    subscription_service.log_subscription_event(
        db,
        user_id=user_id,
        event_type=event_type,
        stripe_event_id=event_id,
        payload=dict(obj),
    )
    return {"received": True}
