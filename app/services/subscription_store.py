"""
Subscription record store: queries and row-level mutations for subscriptions.

Nothing here enforces "one active subscription per user"; callers that
activate a row go through BillingReconciler, which supersedes the others.
Methods flush but do not commit: the calling operation owns the transaction.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.models import Subscription, SubscriptionOrigin, SubscriptionStatus, User, can_transition
from app.services import plan_catalog

logger = logging.getLogger(__name__)

ADMIN_GRANT_REF_PREFIX = "admin-grant"
FREE_REF_PREFIX = "free"


def billing_period_days() -> int:
    return get_settings().BILLING_PERIOD_DAYS


def default_period_end(now: datetime) -> datetime:
    return now + timedelta(days=billing_period_days())


def resolve_billing_period(
    start: Optional[datetime],
    end: Optional[datetime],
    now: Optional[datetime] = None,
) -> Tuple[datetime, datetime]:
    """Return the provider period, or ``[now, now + 30 days]`` if either bound is missing."""
    if start and end:
        return start, end
    now = now or datetime.utcnow()
    logger.warning("Subscription period dates missing from provider, using fallback dates")
    return now, default_period_end(now)


def synthetic_ref(prefix: str, user_id: int) -> str:
    return f"{prefix}-{user_id}-{uuid.uuid4().hex[:12]}"


class SubscriptionStore:

    @staticmethod
    def get_active(db: Session, user_id: int) -> Optional[Subscription]:
        return (
            db.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(Subscription.id.desc())
            .first()
        )

    @staticmethod
    def get_current(db: Session, user_id: int) -> Optional[Subscription]:
        """Active row if any, otherwise the most recent row for the user."""
        active = SubscriptionStore.get_active(db, user_id)
        if active:
            return active
        return (
            db.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.id.desc())
            .first()
        )

    @staticmethod
    def list_for_user(db: Session, user_id: int, status: Optional[SubscriptionStatus] = None) -> List[Subscription]:
        query = db.query(Subscription).filter(Subscription.user_id == user_id)
        if status is not None:
            query = query.filter(Subscription.status == status)
        return query.order_by(Subscription.id.asc()).all()

    @staticmethod
    def list_active(db: Session) -> List[Tuple[Subscription, User]]:
        return (
            db.query(Subscription, User)
            .join(User, Subscription.user_id == User.id)
            .filter(Subscription.status == SubscriptionStatus.ACTIVE)
            .order_by(Subscription.created_at.desc())
            .all()
        )

    @staticmethod
    def find_by_external_ref(db: Session, external_subscription_ref: str) -> Optional[Subscription]:
        if not external_subscription_ref:
            return None
        return (
            db.query(Subscription)
            .filter(Subscription.external_subscription_ref == external_subscription_ref)
            .first()
        )

    @staticmethod
    def find_active_by_customer(db: Session, external_customer_ref: str) -> Optional[Subscription]:
        if not external_customer_ref:
            return None
        return (
            db.query(Subscription)
            .filter(
                Subscription.external_customer_ref == external_customer_ref,
                Subscription.status == SubscriptionStatus.ACTIVE,
            )
            .order_by(Subscription.id.desc())
            .first()
        )

    @staticmethod
    def create(
        db: Session,
        user_id: int,
        plan_type: str,
        origin: SubscriptionOrigin,
        external_subscription_ref: str,
        period_start: datetime,
        period_end: datetime,
        external_customer_ref: Optional[str] = None,
        external_product_ref: Optional[str] = None,
        external_price_ref: Optional[str] = None,
    ) -> Subscription:
        limit = plan_catalog.limit_for(plan_type)
        subscription = Subscription(
            user_id=user_id,
            plan_type=plan_type,
            origin=origin,
            external_customer_ref=external_customer_ref,
            external_subscription_ref=external_subscription_ref,
            external_product_ref=external_product_ref,
            external_price_ref=external_price_ref,
            status=SubscriptionStatus.ACTIVE,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=False,
            credits_used=0,
            credits_limit=limit,
            thumbnail_limit=limit,
        )
        db.add(subscription)
        db.flush()
        return subscription

    @staticmethod
    def provision_free(db: Session, user_id: int, now: Optional[datetime] = None) -> Subscription:
        now = now or datetime.utcnow()
        return SubscriptionStore.create(
            db,
            user_id=user_id,
            plan_type=plan_catalog.FREE_PLAN,
            origin=SubscriptionOrigin.FREE,
            external_subscription_ref=synthetic_ref(FREE_REF_PREFIX, user_id),
            period_start=now,
            period_end=default_period_end(now),
        )

    @staticmethod
    def apply_plan(subscription: Subscription, plan_type: str, reset_credits: bool = False) -> None:
        limit = plan_catalog.limit_for(plan_type)
        subscription.plan_type = plan_type
        subscription.credits_limit = limit
        subscription.thumbnail_limit = limit
        if reset_credits:
            subscription.credits_used = 0

    @staticmethod
    def set_status(db: Session, subscription: Subscription, target: SubscriptionStatus,
                   now: Optional[datetime] = None) -> bool:
        """Move ``subscription`` to ``target`` if the transition table allows it."""
        current = subscription.status
        if current == target:
            return False
        if not can_transition(current, target):
            logger.warning(
                "Ignoring subscription %s transition %s -> %s",
                subscription.id, current.value, target.value,
            )
            return False
        subscription.status = target
        if target == SubscriptionStatus.CANCELED:
            subscription.canceled_at = now or datetime.utcnow()
            subscription.cancel_at_period_end = False
        db.flush()
        return True

    @staticmethod
    def delete_for_user(db: Session, user_id: int, origins: Optional[List[SubscriptionOrigin]] = None) -> int:
        query = db.query(Subscription).filter(Subscription.user_id == user_id)
        if origins:
            query = query.filter(Subscription.origin.in_(origins))
        return query.delete(synchronize_session=False)
