"""
Admin subscription endpoints: list, grant and terminate.

All routes require an admin JWT carrying the super admin role.
"""
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import AdminPrincipal, require_super_admin
from app.schemas.billing import AdminGrantRequest, AdminTerminateRequest
from app.services.billing_reconciler import BillingReconciler, get_billing_reconciler
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/admin/subscription",
    tags=["Admin Subscription"],
    dependencies=[Depends(require_super_admin)],
)


@router.get("/all", summary="All active subscriptions")
@limiter.limit("30/minute")
def list_active_subscriptions(
    request: Request,
    db: Session = Depends(get_db),
):
    subscriptions = [
        {**subscription.to_dict(), "userId": user.id, "name": user.name, "email": user.email}
        for subscription, user in SubscriptionStore.list_active(db)
    ]
    return {"subscriptions": subscriptions, "count": len(subscriptions)}


@router.post(
    "/grant",
    summary="Grant a plan",
    description="Gives the user a plan without payment. Any other active subscription is canceled.",
)
@limiter.limit("10/minute")
def grant_subscription(
    body: AdminGrantRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin: AdminPrincipal = Depends(require_super_admin),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    result = reconciler.admin_grant(db, body.userId, body.planType)
    logger.info("Plan grant by admin %s for user %s", admin.id, body.userId)
    return {"success": True, **result}


@router.post(
    "/terminate",
    summary="Terminate a subscription",
    description="Cancels the active subscription and moves the user back to the free plan.",
)
@limiter.limit("10/minute")
def terminate_subscription(
    body: AdminTerminateRequest,
    request: Request,
    db: Session = Depends(get_db),
    admin: AdminPrincipal = Depends(require_super_admin),
    reconciler: BillingReconciler = Depends(get_billing_reconciler),
):
    result = reconciler.admin_terminate(db, body.userId)
    logger.info("Subscription termination by admin %s for user %s", admin.id, body.userId)
    return {"success": True, **result}
