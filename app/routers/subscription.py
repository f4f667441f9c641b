"""
Subscription endpoints: plans, checkout, session sync, webhook, cancel and plan change.

The webhook is unauthenticated and relies on the Stripe signature instead.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import BillingError, NotFoundError
from app.core.limiter import limiter
from app.middleware.auth import get_current_user
from app.models import User
from app.schemas.billing import CheckoutRequest, SyncRequest, UpdatePlanRequest
from app.services import plan_catalog
from app.services.billing_reconciler import BillingReconciler, get_billing_reconciler
from app.services.subscription_store import SubscriptionStore
from app.services.webhook_cache import get_webhook_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription", tags=["Subscription"])


# ---------------------------------------------------------------------------
# GET /subscription/plans  (public, no auth)
# ---------------------------------------------------------------------------

@router.get(
    "/plans",
    summary="Available plans",
    description="Returns the plan catalog: price in minor units and monthly thumbnail credits.",
)
@limiter.limit("30/minute")
def get_plans(request: Request):
    return {"plans": [plan.to_dict() for plan in plan_catalog.list_plans()]}


# ---------------------------------------------------------------------------
# GET /subscription/config  (public, no auth)
# ---------------------------------------------------------------------------

@router.get(
    "/config",
    summary="Stripe configuration status",
    description="Returns the Stripe publishable key and whether Stripe is configured. No auth required.",
)
@limiter.limit("30/minute")
def get_stripe_config(request: Request):
    settings = get_settings()
    return {
        "publishableKey": settings.STRIPE_PUBLISHABLE_KEY or None,
        "stripeConfigured": bool(settings.STRIPE_SECRET_KEY),
    }


# ---------------------------------------------------------------------------
# POST /subscription/checkout
# ---------------------------------------------------------------------------

@router.post(
    "/checkout",
    summary="Create a checkout session",
    description="Creates a Stripe Checkout session for a paid plan and returns its redirect URL.",
)
@limiter.limit("5/minute")
def create_checkout(
    body: CheckoutRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    return reconciler.create_checkout(db, user.id, body.planType)


# ---------------------------------------------------------------------------
# POST /subscription/sync
# ---------------------------------------------------------------------------

@router.post(
    "/sync",
    summary="Sync a completed checkout session",
    description="Activates the subscription behind a paid checkout session. Safe to call more than once.",
)
@limiter.limit("10/minute")
def sync_checkout_session(
    body: SyncRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    try:
        result = reconciler.sync_checkout_session(db, user.id, body.sessionId)
    except (BillingError, HTTPException):
        raise
    except Exception as e:
        logger.exception("Checkout session sync failed for user %s", user.id)
        raise BillingError("Failed to sync subscription") from e
    return {"success": True, **result}


# ---------------------------------------------------------------------------
# POST /subscription/webhook  (no auth, verified by Stripe signature)
# ---------------------------------------------------------------------------

@router.post(
    "/webhook",
    summary="Stripe webhook endpoint",
    description="Receives Stripe events. Verifies the signature and skips already processed event ids.",
    include_in_schema=False,
)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await run_in_threadpool(reconciler.handle_webhook, db, payload, sig_header, get_webhook_cache())


# ---------------------------------------------------------------------------
# GET /subscription
# ---------------------------------------------------------------------------

@router.get(
    "",
    summary="Current subscription",
    description="Returns the active subscription, or the most recent one when none is active.",
)
@limiter.limit("30/minute")
def get_subscription(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    subscription = SubscriptionStore.get_current(db, user.id)
    if subscription is None:
        raise NotFoundError("No active subscription found")
    return {"subscription": subscription.to_dict()}


# ---------------------------------------------------------------------------
# POST /subscription/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/cancel",
    summary="Cancel at period end",
    description="Schedules cancellation of the paid subscription at the end of the current period.",
)
@limiter.limit("5/minute")
def cancel_subscription(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    result = reconciler.cancel_for_user(db, user.id)
    return {"success": True, "message": "Subscription will be canceled at period end", **result}


# ---------------------------------------------------------------------------
# POST /subscription/update
# ---------------------------------------------------------------------------

@router.post(
    "/update",
    summary="Change plan",
    description="Moves the paid subscription to another paid plan.",
)
@limiter.limit("5/minute")
def update_subscription(
    body: UpdatePlanRequest,
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    result = reconciler.change_plan(db, user.id, body.newPlanType)
    return {"success": True, **result}
