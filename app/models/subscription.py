from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import relationship

from .user import Base


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    PAUSED = "paused"


class SubscriptionOrigin(str, Enum):
    """Who manages the subscription. Only ``PROVIDER`` rows exist at Stripe."""

    PROVIDER = "provider"
    ADMIN_GRANT = "admin_grant"
    FREE = "free"


# Allowed status transitions. A canceled row is terminal: reactivation needs
# a new row tied to a new external subscription.
STATUS_TRANSITIONS = {
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.PAUSED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.UNPAID,
    },
    SubscriptionStatus.UNPAID: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.UNPAID,
    },
    SubscriptionStatus.PAUSED: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.PAUSED,
    },
    SubscriptionStatus.CANCELED: {SubscriptionStatus.CANCELED},
}


def can_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    return target in STATUS_TRANSITIONS.get(current, set())


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Subscription(Base):
    """
    Subscription - per-user plan, billing period and credit counter.

    Several rows may exist for one user over time; at most one of them is
    ``active``. That rule is not a database constraint: every write path that
    activates a row cancels the others first (see BillingReconciler).
    """
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    plan_type = Column(String(20), nullable=False)          # free|basic|pro|enterprise
    origin = Column(
        SAEnum(SubscriptionOrigin, native_enum=False, length=20, values_callable=_enum_values),
        default=SubscriptionOrigin.PROVIDER,
        nullable=False,
    )

    # Billing provider references (synthetic for admin_grant / free rows)
    external_customer_ref = Column(String(100), nullable=True)
    external_subscription_ref = Column(String(150), nullable=False, unique=True)
    external_product_ref = Column(String(100), nullable=True)
    external_price_ref = Column(String(100), nullable=True)

    status = Column(
        SAEnum(SubscriptionStatus, native_enum=False, length=20, values_callable=_enum_values),
        default=SubscriptionStatus.ACTIVE,
        nullable=False,
    )
    current_period_start = Column(DateTime, nullable=False)
    current_period_end = Column(DateTime, nullable=False)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime, nullable=True)

    credits_used = Column(Integer, default=0, nullable=False)
    credits_limit = Column(Integer, nullable=False)
    thumbnail_limit = Column(Integer, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="subscriptions")

    __table_args__ = (
        Index("idx_subscriptions_user", "user_id"),
        Index("idx_subscriptions_user_status", "user_id", "status"),
    )

    @property
    def credits_remaining(self) -> int:
        return max(0, self.credits_limit - self.credits_used)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "planType": self.plan_type,
            "origin": self.origin.value if self.origin else None,
            "status": self.status.value if self.status else None,
            "currentPeriodStart": self.current_period_start.isoformat() if self.current_period_start else None,
            "currentPeriodEnd": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "canceledAt": self.canceled_at.isoformat() if self.canceled_at else None,
            "credits": {
                "used": self.credits_used,
                "limit": self.credits_limit,
                "remaining": self.credits_remaining,
            },
            "thumbnailLimit": self.thumbnail_limit,
        }
