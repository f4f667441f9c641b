"""
CreditLedger: atomic credit accounting against the active subscription.

Usage:
    result = CreditLedger.try_deduct(db, user_id)
    if not result.success:
        raise QuotaExceededError(used=result.used, remaining=result.remaining)

The check and the increment are one conditional UPDATE
(``credits_used < credits_limit``), so two concurrent deductions at
``used == limit - 1`` produce exactly one success.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, aliased

from app.core.errors import QuotaExceededError
from app.models import Subscription, SubscriptionStatus
from app.services.subscription_store import SubscriptionStore, default_period_end

logger = logging.getLogger(__name__)

NO_ACTIVE_SUBSCRIPTION = "No active subscription found"
LIMIT_REACHED = "Credit limit reached"


@dataclass
class DeductionResult:
    success: bool
    used: int
    remaining: int
    message: str

    def to_dict(self) -> dict:
        return asdict(self)


def _active_subscription_id(user_id: int):
    # Aliased so the subquery is not correlated to the UPDATE target.
    candidate = aliased(Subscription)
    return (
        select(candidate.id)
        .where(
            candidate.user_id == user_id,
            candidate.status == SubscriptionStatus.ACTIVE,
        )
        .order_by(candidate.id.desc())
        .limit(1)
        .scalar_subquery()
    )


class CreditLedger:

    @staticmethod
    def roll_period_if_expired(db: Session, user_id: int, now: Optional[datetime] = None) -> bool:
        """Zero ``credits_used`` and open a new period once the current one has ended.

        Conditional on ``current_period_end < now`` so concurrent callers reset
        at most once per period.
        """
        now = now or datetime.utcnow()
        rows = (
            db.query(Subscription)
            .filter(
                Subscription.id == _active_subscription_id(user_id),
                Subscription.current_period_end < now,
            )
            .update(
                {
                    Subscription.credits_used: 0,
                    Subscription.current_period_start: now,
                    Subscription.current_period_end: default_period_end(now),
                    Subscription.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if rows:
            logger.info("Billing period rolled over for user %s, credits reset", user_id)
        return bool(rows)

    @staticmethod
    def try_deduct(db: Session, user_id: int, now: Optional[datetime] = None) -> DeductionResult:
        now = now or datetime.utcnow()
        CreditLedger.roll_period_if_expired(db, user_id, now)

        rows = (
            db.query(Subscription)
            .filter(
                Subscription.id == _active_subscription_id(user_id),
                Subscription.credits_used < Subscription.credits_limit,
            )
            .update(
                {
                    Subscription.credits_used: Subscription.credits_used + 1,
                    Subscription.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        db.commit()

        # The UPDATE above decided the outcome; this read only explains it.
        subscription = SubscriptionStore.get_active(db, user_id)

        if rows:
            used = subscription.credits_used if subscription else 0
            remaining = subscription.credits_remaining if subscription else 0
            return DeductionResult(True, used, remaining, "Credit deducted successfully")

        if not subscription:
            return DeductionResult(False, 0, 0, NO_ACTIVE_SUBSCRIPTION)

        return DeductionResult(False, subscription.credits_used, subscription.credits_remaining, LIMIT_REACHED)

    @staticmethod
    def credits_info(db: Session, user_id: int) -> Optional[dict]:
        subscription = SubscriptionStore.get_active(db, user_id)
        if not subscription:
            return None
        return {
            "used": subscription.credits_used,
            "limit": subscription.credits_limit,
            "remaining": subscription.credits_remaining,
        }

    @staticmethod
    def ensure_credits_info(db: Session, user_id: int) -> dict:
        """Like ``credits_info`` but provisions a free plan for users without one."""
        info = CreditLedger.credits_info(db, user_id)
        if info is not None:
            return info
        SubscriptionStore.provision_free(db, user_id)
        db.commit()
        logger.info("Provisioned free plan subscription for user %s", user_id)
        return CreditLedger.credits_info(db, user_id)

    @staticmethod
    def precheck(db: Session, user_id: int) -> dict:
        """Refuse to start a generation when no credit is left. Does not deduct."""
        CreditLedger.roll_period_if_expired(db, user_id)
        db.commit()
        info = CreditLedger.credits_info(db, user_id)
        if info is None:
            raise QuotaExceededError(NO_ACTIVE_SUBSCRIPTION, used=0, remaining=0)
        if info["remaining"] <= 0:
            raise QuotaExceededError(LIMIT_REACHED, used=info["used"], remaining=0)
        return info

    @staticmethod
    def settle_generation(db: Session, user_id: int, reference: Optional[str] = None) -> DeductionResult:
        """Charge one credit for a generation that already succeeded.

        The artefact is kept whatever happens here; a failed charge is a
        reconciliation gap for operators, not an error for the caller.
        """
        try:
            result = CreditLedger.try_deduct(db, user_id)
        except Exception:
            db.rollback()
            logger.critical(
                "Credit deduction raised after successful generation (user=%s, ref=%s)",
                user_id, reference, exc_info=True,
            )
            return DeductionResult(False, 0, 0, "Error deducting credit")

        if not result.success:
            logger.critical(
                "Uncounted generation: credit deduction failed (user=%s, ref=%s, reason=%s)",
                user_id, reference, result.message,
            )
        return result
