from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from app.core.config import get_settings
from app.core.errors import NotFoundError, QuotaExceededError
from app.models import SubscriptionOrigin
from app.services import plan_catalog, quota_mirror
from factories import make_subscription, make_user


def test_lazy_reset_runs_before_check(db_session):
    now = datetime.utcnow()
    user = make_user(db_session, thumbnails_created=3, thumbnail_limit=3, thumbnail_reset_date=now - timedelta(days=1))

    assert quota_mirror.can_create_thumbnail(db_session, user.id, now) is True

    db_session.refresh(user)
    assert user.thumbnails_created == 0
    assert user.thumbnail_reset_date > now


def test_lazy_reset_uses_active_period_end(db_session):
    now = datetime.utcnow()
    user = make_user(db_session, thumbnails_created=2, thumbnail_reset_date=now - timedelta(days=1))
    subscription = make_subscription(db_session, user, period_start=now - timedelta(days=5), period_end=now + timedelta(days=25))

    assert quota_mirror.reset_thumbnail_usage_if_needed(db_session, user, now) is True
    assert user.thumbnail_reset_date == subscription.current_period_end


def test_lazy_reset_falls_back_to_thirty_days(db_session):
    now = datetime.utcnow()
    user = make_user(db_session, thumbnails_created=2, thumbnail_reset_date=now - timedelta(days=1))

    quota_mirror.reset_thumbnail_usage_if_needed(db_session, user, now)

    assert user.thumbnail_reset_date == now + timedelta(days=30)


def test_new_user_starts_on_catalog_free_plan(db_session):
    before = datetime.utcnow()
    user = make_user(db_session)

    assert user.subscription_plan == plan_catalog.FREE_PLAN
    assert user.has_plan is False
    assert user.thumbnails_created == 0
    assert user.thumbnail_limit == plan_catalog.limit_for(plan_catalog.FREE_PLAN)
    assert before + timedelta(days=29) < user.thumbnail_reset_date < before + timedelta(days=31)


def test_new_user_reset_date_follows_billing_period(db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "BILLING_PERIOD_DAYS", 7)
    before = datetime.utcnow()

    user = make_user(db_session)

    assert before + timedelta(days=7) <= user.thumbnail_reset_date < before + timedelta(days=8)


def test_no_reset_before_reset_date(db_session):
    now = datetime.utcnow()
    user = make_user(db_session, thumbnails_created=3, thumbnail_limit=3, thumbnail_reset_date=now + timedelta(days=3))

    assert quota_mirror.can_create_thumbnail(db_session, user.id, now) is False
    assert quota_mirror.get_remaining_thumbnails(db_session, user.id, now) == {"remaining": 0, "limit": 3, "used": 3}


@pytest.mark.parametrize("plan_type", sorted(plan_catalog.PLANS_CATALOG))
def test_sync_copies_plan_limit(db_session, plan_type):
    user = make_user(db_session)
    origin = SubscriptionOrigin.FREE if plan_type == "free" else SubscriptionOrigin.PROVIDER
    subscription = make_subscription(db_session, user, plan_type=plan_type, origin=origin)

    quota_mirror.sync_from_subscription(db_session, user.id)

    db_session.refresh(user)
    assert user.thumbnail_limit == plan_catalog.limit_for(subscription.plan_type)
    assert user.subscription_plan == plan_type
    assert user.has_plan is (plan_type != "free")
    assert user.thumbnail_reset_date == subscription.current_period_end


def test_sync_keeps_count_unless_plan_changes(db_session):
    user = make_user(db_session, thumbnails_created=2)
    make_subscription(db_session, user, plan_type="basic", origin=SubscriptionOrigin.PROVIDER)

    quota_mirror.sync_from_subscription(db_session, user.id)
    assert user.thumbnails_created == 2

    quota_mirror.sync_from_subscription(db_session, user.id, plan_change=True)
    assert user.thumbnails_created == 0


def test_sync_is_idempotent(db_session):
    user = make_user(db_session)
    make_subscription(db_session, user, plan_type="pro", origin=SubscriptionOrigin.PROVIDER)
    quota_mirror.sync_from_subscription(db_session, user.id)

    with patch.object(db_session, "commit", wraps=db_session.commit) as commit:
        quota_mirror.sync_from_subscription(db_session, user.id)
    commit.assert_not_called()


def test_sync_without_subscription_leaves_user_alone(db_session):
    user = make_user(db_session, thumbnails_created=1)
    quota_mirror.sync_from_subscription(db_session, user.id)
    db_session.refresh(user)
    assert user.subscription_plan == "free"
    assert user.thumbnails_created == 1


def test_increment_charges_ledger_and_mirror(db_session):
    user = make_user(db_session)
    subscription = make_subscription(db_session, user)

    result = quota_mirror.increment_thumbnail_usage(db_session, user.id)

    assert result["credits"]["success"] is True
    assert result["usage"]["used"] == 1
    db_session.refresh(subscription)
    assert subscription.credits_used == 1


def test_increment_refused_by_ledger_leaves_mirror(db_session):
    user = make_user(db_session)
    make_subscription(db_session, user, credits_used=3)

    with pytest.raises(QuotaExceededError) as exc:
        quota_mirror.increment_thumbnail_usage(db_session, user.id)

    assert exc.value.remaining == 0
    db_session.refresh(user)
    assert user.thumbnails_created == 0


def test_reset_to_free(db_session):
    now = datetime.utcnow()
    user = make_user(db_session, subscription_plan="pro", has_plan=True, thumbnail_limit=999999, thumbnails_created=40)

    quota_mirror.reset_to_free(user, now)

    assert user.subscription_plan == "free"
    assert user.has_plan is False
    assert user.thumbnail_limit == 3
    assert user.thumbnails_created == 0
    assert user.thumbnail_reset_date == now + timedelta(days=30)


def test_unknown_user(db_session):
    with pytest.raises(NotFoundError):
        quota_mirror.get_remaining_thumbnails(db_session, 12345)
