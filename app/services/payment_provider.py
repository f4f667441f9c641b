"""
Payment provider boundary: Stripe calls normalised into plain dataclasses.

Required environment variables:
    STRIPE_SECRET_KEY       Stripe secret key (sk_live_... or sk_test_...)
    STRIPE_WEBHOOK_SECRET   Stripe webhook signing secret (whsec_...)

Every Stripe error is translated to ``ProviderError`` carrying only the
Stripe error code; request payloads are never logged.
"""
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

import stripe
from fastapi import HTTPException

from app.core.config import get_settings
from app.core.errors import ProviderError, SignatureError
from app.services.plan_catalog import Plan

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300


@dataclass
class CheckoutSession:
    session_id: str
    url: str


@dataclass
class SessionInfo:
    session_id: str
    payment_status: Optional[str]
    subscription_ref: Optional[str]
    customer_ref: Optional[str]
    metadata: dict = field(default_factory=dict)


@dataclass
class ProviderSubscription:
    ref: str
    status: Optional[str]
    customer_ref: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    item_id: Optional[str] = None
    price_ref: Optional[str] = None
    product_ref: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class WebhookEvent:
    id: str
    type: str
    data_object: dict


def get_field(obj: Any, key: str, default=None):
    """Read ``key`` from a dict or a StripeObject without assuming either."""
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError, AttributeError):
        return default
    return default if value is None else value


def _timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def as_ref(value) -> Optional[str]:
    """Stripe returns either an id string or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return get_field(value, "id")


def _metadata(obj) -> dict:
    meta = get_field(obj, "metadata", {})
    try:
        return {k: meta[k] for k in meta}
    except TypeError:
        return {}


def parse_subscription(obj) -> ProviderSubscription:
    """Build a ProviderSubscription from an API object or a webhook payload dict."""
    items = get_field(get_field(obj, "items"), "data", [])
    first_item = items[0] if items else None
    price = get_field(first_item, "price")

    # Newer API versions moved the billing period onto the subscription item.
    period_start = get_field(obj, "current_period_start") or get_field(first_item, "current_period_start")
    period_end = get_field(obj, "current_period_end") or get_field(first_item, "current_period_end")

    return ProviderSubscription(
        ref=get_field(obj, "id"),
        status=get_field(obj, "status"),
        customer_ref=as_ref(get_field(obj, "customer")),
        period_start=_timestamp(period_start),
        period_end=_timestamp(period_end),
        cancel_at_period_end=bool(get_field(obj, "cancel_at_period_end", False)),
        canceled_at=_timestamp(get_field(obj, "canceled_at")),
        item_id=get_field(first_item, "id"),
        price_ref=get_field(price, "id"),
        product_ref=as_ref(get_field(price, "product")),
        metadata=_metadata(obj),
    )


def parse_session(obj) -> SessionInfo:
    return SessionInfo(
        session_id=get_field(obj, "id"),
        payment_status=get_field(obj, "payment_status"),
        subscription_ref=as_ref(get_field(obj, "subscription")),
        customer_ref=as_ref(get_field(obj, "customer")),
        metadata=_metadata(obj),
    )


class StripePaymentProvider:
    """Thin wrapper over the ``stripe`` library used by BillingReconciler."""

    def __init__(self, api_key: str, webhook_secret: Optional[str] = None, currency: str = "eur"):
        stripe.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as e:
            code = getattr(e, "code", None)
            logger.warning("Stripe %s failed (code=%s, http_status=%s)", operation, code, getattr(e, "http_status", None))
            raise ProviderError(f"Payment provider error during {operation}", code=code) from e

    def create_customer(self, email: str, user_id: int) -> str:
        customer = self._call(
            "create_customer",
            stripe.Customer.create,
            email=email,
            metadata={"userId": str(user_id)},
        )
        return customer["id"]

    def create_checkout_session(
        self,
        customer_ref: str,
        plan: Plan,
        success_url: str,
        cancel_url: str,
        metadata: dict,
    ) -> CheckoutSession:
        session = self._call(
            "create_checkout_session",
            stripe.checkout.Session.create,
            customer=customer_ref,
            mode="subscription",
            payment_method_types=["card"],
            line_items=[
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": plan.name,
                            "description": plan.description,
                            "metadata": {"planType": plan.id},
                        },
                        "unit_amount": plan.monthly_price_minor_units,
                        "recurring": {"interval": "month", "interval_count": 1},
                    },
                    "quantity": 1,
                }
            ],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
        )
        return CheckoutSession(session_id=session["id"], url=session["url"])

    def retrieve_session(self, session_id: str) -> SessionInfo:
        session = self._call("retrieve_session", stripe.checkout.Session.retrieve, session_id)
        return parse_session(session)

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        subscription = self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_ref)
        return parse_subscription(subscription)

    def cancel_subscription(self, subscription_ref: str) -> ProviderSubscription:
        subscription = self._call("cancel_subscription", stripe.Subscription.cancel, subscription_ref)
        return parse_subscription(subscription)

    def update_subscription(
        self,
        subscription_ref: str,
        cancel_at_period_end: Optional[bool] = None,
        items: Optional[list] = None,
        metadata: Optional[dict] = None,
    ) -> ProviderSubscription:
        params = {}
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end
        if items is not None:
            params["items"] = items
        if metadata is not None:
            params["metadata"] = metadata
        subscription = self._call("update_subscription", stripe.Subscription.modify, subscription_ref, **params)
        return parse_subscription(subscription)

    def plan_item(self, item_id: str, plan: Plan, product_ref: str) -> dict:
        """Subscription item payload that moves ``item_id`` onto ``plan``'s price."""
        return {
            "id": item_id,
            "price_data": {
                "currency": self.currency,
                "product": product_ref,
                "unit_amount": plan.monthly_price_minor_units,
                "recurring": {"interval": "month", "interval_count": 1},
            },
        }

    def verify_webhook_signature(self, payload: bytes, signature_header: Optional[str]) -> WebhookEvent:
        if not self.webhook_secret:
            logger.error("Stripe webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise SignatureError("Webhook secret not configured")
        if not signature_header:
            raise SignatureError("Missing webhook signature")

        try:
            body = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                body, signature_header, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
            )
            event = json.loads(body)
        except (stripe.SignatureVerificationError, ValueError, UnicodeDecodeError) as e:
            logger.warning("Stripe webhook signature verification failed: %s", type(e).__name__)
            raise SignatureError() from e

        event_id = get_field(event, "id")
        event_type = get_field(event, "type")
        data_object = get_field(get_field(event, "data"), "object")
        if not event_id or not event_type or not isinstance(data_object, dict):
            raise SignatureError("Malformed webhook event")
        return WebhookEvent(id=event_id, type=event_type, data_object=data_object)


@lru_cache()
def _stripe_provider(api_key: str, webhook_secret: Optional[str], currency: str) -> StripePaymentProvider:
    return StripePaymentProvider(api_key, webhook_secret, currency)


def get_payment_provider() -> StripePaymentProvider:
    """FastAPI dependency. Tests override it with a fake provider."""
    settings = get_settings()
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(
            status_code=503,
            detail="Stripe is not configured. Set STRIPE_SECRET_KEY in the environment.",
        )
    return _stripe_provider(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET, settings.BILLING_CURRENCY)
