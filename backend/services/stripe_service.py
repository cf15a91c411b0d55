from __future__ import annotations

import logging

import stripe

logger = logging.getLogger(__name__)


class WebhookSignatureError(Exception):
    pass


class StripeService:
    def __init__(self, *, secret_key: str | None, webhook_secret: str | None, app_url: str):
        self.secret_key = (secret_key or "").strip()
        self.webhook_secret = (webhook_secret or "").strip()
        self.app_url = (app_url or "").rstrip("/")

    @classmethod
    def from_settings(cls, settings) -> "StripeService":
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            app_url=settings.FRONTEND_URL,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.secret_key)

    def _configure(self) -> None:
        if not self.enabled:
            raise RuntimeError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self.secret_key

    def create_customer(self, *, email: str, user_id: int) -> str:
        self._configure()
        customer = stripe.Customer.create(email=email, metadata={"userId": str(user_id)})
        logger.info(f"Stripe customer created user_id={user_id}")
        return customer.id

    def create_checkout_session(self, *, customer_id: str, price_id: str, user_id: int) -> dict:
        self._configure()
        session = stripe.checkout.Session.create(
            customer=customer_id,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=f"{self.app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{self.app_url}/pricing?canceled=true",
            subscription_data={"metadata": {"userId": str(user_id)}},
            metadata={"userId": str(user_id)},
        )
        return {"session_id": session.id, "url": session.url or ""}

    def create_portal_session(self, customer_id: str) -> dict:
        self._configure()
        session = stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=f"{self.app_url}/settings",
        )
        return {"url": session.url}

    def retrieve_subscription(self, subscription_id: str):
        self._configure()
        return stripe.Subscription.retrieve(subscription_id)

    def construct_event(self, payload: bytes, signature: str):
        if not self.webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET is not configured")
        try:
            return stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as exc:
            raise WebhookSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise WebhookSignatureError(f"Malformed webhook payload: {exc}") from exc


_STRIPE_SERVICE: StripeService | None = None


def get_stripe_service() -> StripeService:
    global _STRIPE_SERVICE
    if _STRIPE_SERVICE is None:
        from config import settings

        _STRIPE_SERVICE = StripeService.from_settings(settings)
    return _STRIPE_SERVICE
