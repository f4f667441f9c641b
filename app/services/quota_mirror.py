"""
User quota mirror: keeps ``User.thumbnails_*`` in step with the active subscription.

The mirror is a read projection for older callers (plan info, usage check).
Recording a thumbnail still goes through ``CreditLedger.try_deduct``; the
mirror counter is only advanced after the ledger accepted the charge.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, QuotaExceededError
from app.models import User
from app.services import plan_catalog
from app.services.credit_ledger import CreditLedger
from app.services.subscription_store import SubscriptionStore, default_period_end

logger = logging.getLogger(__name__)


def _get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def usage_snapshot(user: User) -> dict:
    return {
        "remaining": max(0, user.thumbnail_limit - user.thumbnails_created),
        "limit": user.thumbnail_limit,
        "used": user.thumbnails_created,
    }


def reset_thumbnail_usage_if_needed(db: Session, user: User, now: Optional[datetime] = None) -> bool:
    """Zero the mirror counter once ``thumbnail_reset_date`` has passed.

    Must run before any comparison of ``thumbnails_created`` against the limit.
    Does not commit.
    """
    now = now or datetime.utcnow()
    if now <= user.thumbnail_reset_date:
        return False

    user.thumbnails_created = 0
    subscription = SubscriptionStore.get_active(db, user.id)
    if subscription and subscription.current_period_end and subscription.current_period_end > now:
        user.thumbnail_reset_date = subscription.current_period_end
    else:
        user.thumbnail_reset_date = default_period_end(now)
    logger.info("Thumbnail usage reset for user %s, next reset %s", user.id, user.thumbnail_reset_date)
    return True


def sync_from_subscription(db: Session, user_id: int, plan_change: bool = False) -> Optional[User]:
    """Copy plan, limit and reset date from the active subscription onto the user.

    ``thumbnails_created`` is zeroed only for a plan change. A second call with
    no subscription change in between writes nothing.
    """
    user = db.get(User, user_id)
    if not user:
        return None

    subscription = SubscriptionStore.get_active(db, user_id)
    if not subscription:
        return user

    if not plan_catalog.is_valid_plan(subscription.plan_type):
        logger.warning("Invalid plan type on subscription %s: %s", subscription.id, subscription.plan_type)
        return user

    target = {
        "subscription_plan": subscription.plan_type,
        "has_plan": subscription.plan_type != plan_catalog.FREE_PLAN,
        "thumbnail_limit": plan_catalog.limit_for(subscription.plan_type),
    }
    if subscription.current_period_end:
        target["thumbnail_reset_date"] = subscription.current_period_end
    if plan_change:
        target["thumbnails_created"] = 0

    changed = False
    for field, value in target.items():
        if getattr(user, field) != value:
            setattr(user, field, value)
            changed = True

    if changed:
        db.commit()
    return user


def reset_to_free(user: User, now: Optional[datetime] = None) -> None:
    """Put the mirror back on the free plan. Does not commit."""
    now = now or datetime.utcnow()
    user.subscription_plan = plan_catalog.FREE_PLAN
    user.has_plan = False
    user.thumbnail_limit = plan_catalog.limit_for(plan_catalog.FREE_PLAN)
    user.thumbnails_created = 0
    user.thumbnail_reset_date = default_period_end(now)


def can_create_thumbnail(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
    user = _get_user(db, user_id)
    if reset_thumbnail_usage_if_needed(db, user, now):
        db.commit()
    return user.thumbnails_created < user.thumbnail_limit


def get_remaining_thumbnails(db: Session, user_id: int, now: Optional[datetime] = None) -> dict:
    user = _get_user(db, user_id)
    if reset_thumbnail_usage_if_needed(db, user, now):
        db.commit()
    return usage_snapshot(user)


def increment_thumbnail_usage(db: Session, user_id: int, now: Optional[datetime] = None) -> dict:
    """Record one thumbnail: charge the ledger, then advance the mirror.

    Raises ``QuotaExceededError`` when the ledger refuses the charge.
    """
    user = _get_user(db, user_id)
    if reset_thumbnail_usage_if_needed(db, user, now):
        db.commit()

    result = CreditLedger.try_deduct(db, user_id, now)
    if not result.success:
        raise QuotaExceededError(result.message, used=result.used, remaining=0)

    db.query(User).filter(
        User.id == user_id,
        User.thumbnails_created < User.thumbnail_limit,
    ).update(
        {User.thumbnails_created: User.thumbnails_created + 1},
        synchronize_session=False,
    )
    db.commit()

    return {"credits": result.to_dict(), "usage": usage_snapshot(_get_user(db, user_id))}
