"""
SQLAlchemy models base and User model.

This module defines the declarative base for all models and the User model,
which also carries the legacy thumbnail usage mirror.
"""
from datetime import datetime, timedelta

from sqlalchemy import Column, String, Integer, DateTime, Boolean
from sqlalchemy.orm import declarative_base, relationship

from app.core.config import get_settings
from app.services import plan_catalog

Base = declarative_base()


def _default_reset_date():
    return datetime.utcnow() + timedelta(days=get_settings().BILLING_PERIOD_DAYS)


def _default_thumbnail_limit():
    return plan_catalog.limit_for(plan_catalog.FREE_PLAN)


class User(Base):
    """
    Users table - account, current plan and thumbnail usage mirror.

    The ``thumbnails_*`` columns mirror the active Subscription for older
    read paths. They never gate a generation on their own: the Subscription
    credit counter is authoritative.

    Attributes:
        id: Unique identifier (auto-increment primary key)
        name: Display name
        email: Login email (unique, lower-cased)
        external_customer_ref: Billing provider customer id, created lazily
        subscription_plan: Current plan id (free|basic|pro|enterprise)
        has_plan: True only for paid plans (subscription_plan != "free")
        thumbnails_created: Thumbnails recorded in the current mirror period
        thumbnail_limit: Plan cap copied from the plan catalog
        thumbnail_reset_date: When the mirror counter resets next
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    external_customer_ref = Column(String(100), unique=True, nullable=True)

    subscription_plan = Column(String(20), default=plan_catalog.FREE_PLAN, nullable=False)
    has_plan = Column(Boolean, default=False, nullable=False)

    thumbnails_created = Column(Integer, default=0, nullable=False)
    thumbnail_limit = Column(Integer, default=_default_thumbnail_limit, nullable=False)
    thumbnail_reset_date = Column(DateTime, default=_default_reset_date, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    subscriptions = relationship("Subscription", back_populates="user")

    def thumbnail_usage(self) -> dict:
        return {
            "created": self.thumbnails_created,
            "limit": self.thumbnail_limit,
            "resetDate": self.thumbnail_reset_date.isoformat() if self.thumbnail_reset_date else None,
        }
