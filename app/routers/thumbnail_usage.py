"""
Thumbnail usage endpoints: credit reads and charges for the current user.

``/credits`` and ``/record`` go through the credit ledger; ``""``, ``/check``
and ``/sync`` serve the user-level usage mirror.
"""
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.limiter import limiter
from app.middleware.auth import get_current_user
from app.models import User
from app.services import quota_mirror
from app.services.credit_ledger import CreditLedger

router = APIRouter(prefix="/thumbnail/usage", tags=["Thumbnail Usage"])


@router.get(
    "",
    summary="Thumbnail usage",
    description="Returns the usage mirror (used, limit, remaining), resetting it first if the period has ended.",
)
@limiter.limit("30/minute")
def get_thumbnail_usage(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"usage": quota_mirror.get_remaining_thumbnails(db, user.id)}


@router.get(
    "/check",
    summary="Can the user create a thumbnail",
)
@limiter.limit("30/minute")
def check_thumbnail_limit(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    can_create = quota_mirror.can_create_thumbnail(db, user.id)
    return {
        "canCreate": can_create,
        "usage": quota_mirror.get_remaining_thumbnails(db, user.id),
    }


@router.get(
    "/credits",
    summary="Subscription credits",
    description="Returns credits of the active subscription. Users without one get a free plan.",
)
@limiter.limit("30/minute")
def get_subscription_credits(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return {"usage": CreditLedger.ensure_credits_info(db, user.id)}


@router.post(
    "/record",
    summary="Record a thumbnail creation",
    description="Charges one credit. Answers 403 with remaining=0 when the limit is reached.",
)
@limiter.limit("20/minute")
def record_thumbnail_creation(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    result = quota_mirror.increment_thumbnail_usage(db, user.id)
    return {"message": "Thumbnail creation recorded", **result}


@router.post(
    "/sync",
    summary="Sync usage limits with the subscription",
)
@limiter.limit("10/minute")
def sync_limits(
    request: Request,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    quota_mirror.sync_from_subscription(db, user.id)
    return {"usage": quota_mirror.get_remaining_thumbnails(db, user.id)}
