"""
BillingReconciler: applies billing events to local subscription state.

Event sources: checkout-session sync (client, after redirect), Stripe
webhooks (signature-verified, deduplicated by event id), admin grant /
terminate, and user cancel / plan change.

Rules every write path follows:
    - at most one ``active`` subscription per user: activating a row cancels
      the others first (provider side best-effort, then locally);
    - a provider call that fails aborts the operation before any local write,
      except the best-effort cancel of superseded subscriptions, which is
      logged and skipped;
    - a canceled row is never reactivated.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import Depends
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.database import handle_database_errors
from app.core.errors import (
    BillingError,
    ClientInputError,
    DuplicateKeyError,
    ForbiddenError,
    NotFoundError,
    PaymentNotCompleted,
    PlanTypeMissing,
    ProviderError,
)
from app.models import Subscription, SubscriptionOrigin, SubscriptionStatus, User
from app.services import plan_catalog, quota_mirror
from app.services.payment_provider import (
    ProviderSubscription,
    WebhookEvent,
    as_ref,
    get_field,
    get_payment_provider,
    parse_session,
    parse_subscription,
)
from app.services.subscription_store import (
    ADMIN_GRANT_REF_PREFIX,
    SubscriptionStore,
    default_period_end,
    resolve_billing_period,
    synthetic_ref,
)
from app.services.webhook_cache import WebhookIdempotencyCache

logger = logging.getLogger(__name__)

# Stripe subscription status -> local status
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.PAUSED,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


def map_provider_status(status: Optional[str]) -> Optional[SubscriptionStatus]:
    return PROVIDER_STATUS_MAP.get(status) if status else None


def _metadata_user_id(metadata: dict) -> Optional[int]:
    raw = metadata.get("userId") or metadata.get("user_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _metadata_plan_type(metadata: dict) -> Optional[str]:
    return metadata.get("planType") or metadata.get("plan_type")


class BillingReconciler:

    def __init__(self, provider):
        self.provider = provider

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _get_user(db: Session, user_id) -> User:
        user = db.get(User, user_id) if user_id is not None else None
        if not user:
            raise NotFoundError("User not found")
        return user

    def _cancel_at_provider_best_effort(self, subscription: Subscription) -> None:
        if subscription.origin != SubscriptionOrigin.PROVIDER:
            return
        try:
            self.provider.cancel_subscription(subscription.external_subscription_ref)
            logger.info("Canceled superseded provider subscription %s", subscription.external_subscription_ref)
        except ProviderError as e:
            # Stale provider-side duplicates are reconciled out of band.
            logger.warning(
                "Could not cancel superseded provider subscription (local id=%s, code=%s); continuing",
                subscription.id, e.code,
            )

    def _supersede_active(self, db: Session, user_id: int, keep: Optional[Subscription] = None,
                          now: Optional[datetime] = None) -> list:
        superseded = []
        for subscription in SubscriptionStore.list_for_user(db, user_id, SubscriptionStatus.ACTIVE):
            if keep is not None and subscription.id == keep.id:
                continue
            self._cancel_at_provider_best_effort(subscription)
            SubscriptionStore.set_status(db, subscription, SubscriptionStatus.CANCELED, now)
            superseded.append(subscription)
        if superseded:
            logger.info("Superseded %d active subscription(s) for user %s", len(superseded), user_id)
        return superseded

    def _revert_to_free(self, db: Session, user: User, now: Optional[datetime] = None) -> Subscription:
        """Reset the user to the free plan and give the ledger a free-plan row."""
        now = now or datetime.utcnow()
        quota_mirror.reset_to_free(user, now)
        return SubscriptionStore.provision_free(db, user.id, now)

    def _activate_provider_subscription(
        self,
        db: Session,
        user: User,
        plan_type: str,
        provider_sub: ProviderSubscription,
        customer_ref: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Subscription]:
        """Find-or-create the local row for ``provider_sub`` and make it the user's only active one.

        Returns None when the row exists but is already canceled.
        """
        now = now or datetime.utcnow()
        period_start, period_end = resolve_billing_period(provider_sub.period_start, provider_sub.period_end, now)
        existing = SubscriptionStore.find_by_external_ref(db, provider_sub.ref)

        if existing is not None and existing.user_id != user.id:
            logger.error("Provider subscription is linked to another user (local id=%s)", existing.id)
            raise DuplicateKeyError("This subscription already belongs to another account.")

        if existing is not None and existing.status == SubscriptionStatus.CANCELED:
            logger.warning("Refusing to reactivate canceled subscription %s", existing.id)
            return None

        self._supersede_active(db, user.id, keep=existing, now=now)

        if existing is None:
            subscription = SubscriptionStore.create(
                db,
                user_id=user.id,
                plan_type=plan_type,
                origin=SubscriptionOrigin.PROVIDER,
                external_subscription_ref=provider_sub.ref,
                external_customer_ref=customer_ref or provider_sub.customer_ref,
                external_product_ref=provider_sub.product_ref,
                external_price_ref=provider_sub.price_ref,
                period_start=period_start,
                period_end=period_end,
            )
            plan_changed = True
            logger.info("Created %s subscription %s for user %s", plan_type, subscription.id, user.id)
        else:
            subscription = existing
            plan_changed = subscription.plan_type != plan_type
            SubscriptionStore.apply_plan(subscription, plan_type, reset_credits=plan_changed)
            SubscriptionStore.set_status(db, subscription, SubscriptionStatus.ACTIVE, now)
            subscription.current_period_start = period_start
            subscription.current_period_end = period_end
            subscription.cancel_at_period_end = provider_sub.cancel_at_period_end
            subscription.external_product_ref = provider_sub.product_ref or subscription.external_product_ref
            subscription.external_price_ref = provider_sub.price_ref or subscription.external_price_ref
            logger.info("Updated existing subscription %s for user %s", subscription.id, user.id)

        if customer_ref and not user.external_customer_ref:
            user.external_customer_ref = customer_ref

        db.commit()
        quota_mirror.sync_from_subscription(db, user.id, plan_change=plan_changed)
        return subscription

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    @handle_database_errors
    def create_checkout(self, db: Session, user_id: int, plan_type: Optional[str]) -> dict:
        plan = plan_catalog.get_plan(plan_type)
        if not plan.is_paid:
            raise ClientInputError("The free plan does not require checkout")
        user = self._get_user(db, user_id)

        frontend_url = get_settings().FRONTEND_URL
        if not frontend_url:
            raise BillingError("Server configuration error: FRONTEND_URL not set")

        customer_ref = user.external_customer_ref
        if not customer_ref:
            customer_ref = self.provider.create_customer(user.email, user.id)
            user.external_customer_ref = customer_ref
            db.commit()

        session = self.provider.create_checkout_session(
            customer_ref=customer_ref,
            plan=plan,
            success_url=f"{frontend_url}/payment-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{frontend_url}/payment-failed",
            metadata={"userId": str(user.id), "planType": plan.id},
        )
        logger.info("Checkout session created for user %s (%s)", user.id, plan.id)
        return {"sessionId": session.session_id, "url": session.url}

    @handle_database_errors
    def sync_checkout_session(self, db: Session, user_id: int, session_id: Optional[str]) -> dict:
        if not session_id:
            raise ClientInputError("Session ID is required")
        user = self._get_user(db, user_id)

        session = self.provider.retrieve_session(session_id)
        if session.payment_status != "paid":
            raise PaymentNotCompleted(session.payment_status)

        plan_type = _metadata_plan_type(session.metadata)
        if not plan_type:
            raise PlanTypeMissing()
        plan = plan_catalog.get_plan(plan_type)

        owner_id = _metadata_user_id(session.metadata)
        if owner_id is not None and owner_id != user.id:
            raise ForbiddenError("Checkout session belongs to another user")
        if not session.subscription_ref:
            raise ClientInputError("Checkout session has no subscription")

        provider_sub = self.provider.retrieve_subscription(session.subscription_ref)
        subscription = self._activate_provider_subscription(db, user, plan.id, provider_sub, session.customer_ref)
        if subscription is None:
            raise ClientInputError("This subscription has already been canceled")

        return {
            "planType": plan.id,
            "thumbnailLimit": plan.credit_limit,
            "subscription": subscription.to_dict(),
        }

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def handle_webhook(self, db: Session, payload: bytes, signature_header: Optional[str],
                       cache: WebhookIdempotencyCache) -> dict:
        event = self.provider.verify_webhook_signature(payload, signature_header)

        if not cache.check_and_mark(event.id):
            logger.info("Webhook %s already processed, skipping", event.id)
            return {"received": True, "duplicate": True}

        logger.info("Stripe webhook received: %s", event.type)
        try:
            self.apply_event(db, event)
        except Exception:
            # Let the provider's redelivery reprocess this event.
            cache.forget(event.id)
            db.rollback()
            raise
        return {"received": True}

    @handle_database_errors
    def apply_event(self, db: Session, event: WebhookEvent) -> None:
        handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.updated": self._on_subscription_updated,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_failed": self._on_invoice_payment_failed,
            "invoice.payment_succeeded": self._on_invoice_payment_succeeded,
        }
        handler = handlers.get(event.type)
        if handler is None:
            logger.debug("Unhandled Stripe event: %s", event.type)
            return
        handler(db, event.data_object)

    def _on_checkout_completed(self, db: Session, session_obj: dict) -> None:
        session = parse_session(session_obj)
        user_id = _metadata_user_id(session.metadata)
        plan_type = _metadata_plan_type(session.metadata)

        if not session.subscription_ref or user_id is None:
            logger.warning("checkout.session.completed without subscription or userId, ignoring")
            return
        if not plan_catalog.is_valid_plan(plan_type):
            logger.warning("checkout.session.completed with invalid plan type %r, ignoring", plan_type)
            return
        if session.payment_status == "unpaid":
            logger.info("checkout.session.completed still unpaid, waiting for invoice events")
            return

        user = db.get(User, user_id)
        if not user:
            logger.warning("checkout.session.completed for unknown user %s", user_id)
            return

        provider_sub = self.provider.retrieve_subscription(session.subscription_ref)
        subscription = self._activate_provider_subscription(db, user, plan_type, provider_sub, session.customer_ref)
        if subscription is not None:
            logger.info("User %s upgraded to %s plan", user.id, plan_type)

    def _on_subscription_updated(self, db: Session, sub_obj: dict) -> None:
        provider_sub = parse_subscription(sub_obj)
        subscription = SubscriptionStore.find_by_external_ref(db, provider_sub.ref)
        if subscription is None or subscription.origin != SubscriptionOrigin.PROVIDER:
            logger.debug("subscription.updated for unknown subscription, ignoring")
            return

        # New billing period observed at the provider: renewal resets credits.
        if (
            provider_sub.period_start
            and subscription.current_period_start
            and provider_sub.period_start > subscription.current_period_start
        ):
            subscription.credits_used = 0
        if provider_sub.period_start:
            subscription.current_period_start = provider_sub.period_start
        if provider_sub.period_end:
            subscription.current_period_end = provider_sub.period_end
        subscription.cancel_at_period_end = provider_sub.cancel_at_period_end

        plan_changed = False
        plan_type = _metadata_plan_type(provider_sub.metadata)
        if plan_catalog.is_valid_plan(plan_type) and plan_type != subscription.plan_type:
            SubscriptionStore.apply_plan(subscription, plan_type)
            plan_changed = True

        target = map_provider_status(provider_sub.status)
        if target is None:
            logger.warning("Unknown provider status %r on subscription %s", provider_sub.status, subscription.id)
        elif target == SubscriptionStatus.ACTIVE and subscription.status != SubscriptionStatus.ACTIVE:
            if subscription.status != SubscriptionStatus.CANCELED:
                self._supersede_active(db, subscription.user_id, keep=subscription)
            SubscriptionStore.set_status(db, subscription, target)
        else:
            SubscriptionStore.set_status(db, subscription, target)

        db.commit()
        if subscription.status == SubscriptionStatus.ACTIVE:
            quota_mirror.sync_from_subscription(db, subscription.user_id, plan_change=plan_changed)

    def _on_subscription_deleted(self, db: Session, sub_obj: dict) -> None:
        provider_sub = parse_subscription(sub_obj)
        subscription = SubscriptionStore.find_by_external_ref(db, provider_sub.ref)
        if subscription is None:
            logger.debug("subscription.deleted for unknown subscription, ignoring")
            return

        SubscriptionStore.set_status(db, subscription, SubscriptionStatus.CANCELED)

        # past_due rows end here too after failed dunning
        if SubscriptionStore.get_active(db, subscription.user_id) is None:
            user = db.get(User, subscription.user_id)
            if user:
                self._revert_to_free(db, user)
                logger.info("User %s reset to free plan after subscription deletion", user.id)
        db.commit()

    @staticmethod
    def _invoice_subscription(db: Session, invoice_obj: dict) -> Optional[Subscription]:
        subscription_ref = as_ref(get_field(invoice_obj, "subscription"))
        if not subscription_ref:
            details = get_field(get_field(invoice_obj, "parent"), "subscription_details")
            subscription_ref = as_ref(get_field(details, "subscription"))
        if subscription_ref:
            return SubscriptionStore.find_by_external_ref(db, subscription_ref)
        return SubscriptionStore.find_active_by_customer(db, as_ref(get_field(invoice_obj, "customer")))

    def _on_invoice_payment_failed(self, db: Session, invoice_obj: dict) -> None:
        subscription = self._invoice_subscription(db, invoice_obj)
        if subscription is None:
            logger.debug("invoice.payment_failed for unknown subscription, ignoring")
            return
        if SubscriptionStore.set_status(db, subscription, SubscriptionStatus.PAST_DUE):
            logger.info("Subscription %s marked past_due after failed payment", subscription.id)
        db.commit()

    def _on_invoice_payment_succeeded(self, db: Session, invoice_obj: dict) -> None:
        subscription = self._invoice_subscription(db, invoice_obj)
        if subscription is None or subscription.status not in (SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID):
            return
        if SubscriptionStore.get_active(db, subscription.user_id) is not None:
            logger.info("Not reactivating subscription %s: user already has an active one", subscription.id)
            return
        SubscriptionStore.set_status(db, subscription, SubscriptionStatus.ACTIVE)
        db.commit()
        quota_mirror.sync_from_subscription(db, subscription.user_id)

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    def get_subscription(self, db: Session, user_id: int) -> Subscription:
        subscription = SubscriptionStore.get_current(db, user_id)
        if subscription is None:
            raise NotFoundError("No active subscription found")
        return subscription

    @handle_database_errors
    def cancel_for_user(self, db: Session, user_id: int) -> dict:
        subscription = self.get_subscription(db, user_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise ClientInputError("Only active subscriptions can be canceled")
        if subscription.origin == SubscriptionOrigin.ADMIN_GRANT:
            raise ClientInputError("Admin-granted subscriptions cannot be canceled by users")
        if subscription.origin != SubscriptionOrigin.PROVIDER:
            raise ClientInputError("The free plan cannot be canceled")

        provider_sub = self.provider.update_subscription(
            subscription.external_subscription_ref, cancel_at_period_end=True
        )

        now = datetime.utcnow()
        subscription.cancel_at_period_end = True
        subscription.canceled_at = provider_sub.canceled_at or now
        db.commit()
        logger.info("Subscription %s set to cancel at period end", subscription.id)

        period_end = provider_sub.period_end or subscription.current_period_end
        return {
            "canceledAt": subscription.canceled_at.isoformat(),
            "currentPeriodEnd": period_end.isoformat() if period_end else None,
        }

    @handle_database_errors
    def change_plan(self, db: Session, user_id: int, new_plan_type: Optional[str]) -> dict:
        plan = plan_catalog.get_plan(new_plan_type)
        if not plan.is_paid:
            raise ClientInputError("Cancel the subscription to return to the free plan")

        subscription = SubscriptionStore.get_active(db, user_id)
        if subscription is None:
            raise NotFoundError("No active subscription found")
        if subscription.origin != SubscriptionOrigin.PROVIDER:
            raise ClientInputError("Only paid subscriptions can change plan; start a checkout instead")

        if subscription.plan_type != plan.id:
            provider_sub = self.provider.retrieve_subscription(subscription.external_subscription_ref)
            product_ref = provider_sub.product_ref or subscription.external_product_ref
            items = None
            if provider_sub.item_id and product_ref:
                items = [self.provider.plan_item(provider_sub.item_id, plan, product_ref)]
            updated = self.provider.update_subscription(
                subscription.external_subscription_ref,
                items=items,
                metadata={"userId": str(user_id), "planType": plan.id},
            )

            SubscriptionStore.apply_plan(subscription, plan.id)
            subscription.external_price_ref = updated.price_ref or subscription.external_price_ref
            db.commit()
            quota_mirror.sync_from_subscription(db, user_id)
            logger.info("Subscription %s changed to %s plan", subscription.id, plan.id)

        return {"planType": plan.id, "thumbnailLimit": plan.credit_limit}

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    @handle_database_errors
    def admin_grant(self, db: Session, user_id, plan_type, now: Optional[datetime] = None) -> dict:
        if not user_id or not plan_type:
            raise ClientInputError("userId and planType are required")
        plan = plan_catalog.get_plan(plan_type)
        user = self._get_user(db, user_id)
        now = now or datetime.utcnow()

        self._supersede_active(db, user.id, now=now)
        # Synthetic rows have no provider history worth keeping.
        SubscriptionStore.delete_for_user(
            db, user.id, origins=[SubscriptionOrigin.ADMIN_GRANT, SubscriptionOrigin.FREE]
        )

        subscription = SubscriptionStore.create(
            db,
            user_id=user.id,
            plan_type=plan.id,
            origin=SubscriptionOrigin.ADMIN_GRANT,
            external_subscription_ref=synthetic_ref(ADMIN_GRANT_REF_PREFIX, user.id),
            external_customer_ref=user.external_customer_ref,
            period_start=now,
            period_end=default_period_end(now),
        )
        db.commit()
        quota_mirror.sync_from_subscription(db, user.id, plan_change=True)
        logger.info("Admin granted %s plan to user %s", plan.id, user.id)

        return {
            "planType": plan.id,
            "thumbnailLimit": plan.credit_limit,
            "subscription": subscription.to_dict(),
        }

    @handle_database_errors
    def admin_terminate(self, db: Session, user_id) -> dict:
        if not user_id:
            raise ClientInputError("userId is required")
        user = self._get_user(db, user_id)

        subscription = SubscriptionStore.get_active(db, user.id)
        if subscription is not None:
            self._cancel_at_provider_best_effort(subscription)
            SubscriptionStore.set_status(db, subscription, SubscriptionStatus.CANCELED)

        self._revert_to_free(db, user)
        db.commit()
        logger.info("Admin terminated subscription for user %s", user.id)
        return {"userId": user.id, "planType": plan_catalog.FREE_PLAN}


def get_billing_reconciler(provider=Depends(get_payment_provider)) -> BillingReconciler:
    """FastAPI dependency wiring the reconciler to the configured provider."""
    return BillingReconciler(provider)
