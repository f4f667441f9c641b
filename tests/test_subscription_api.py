from app.core.config import get_settings
from app.models import Subscription, SubscriptionOrigin, SubscriptionStatus
from factories import auth_headers, make_subscription, make_user


def _active_rows(db, user_id):
    return db.query(Subscription).filter_by(user_id=user_id, status=SubscriptionStatus.ACTIVE).all()


def test_plans_are_public(client):
    response = client.get("/subscription/plans")
    assert response.status_code == 200
    plans = {plan["id"]: plan for plan in response.json()["plans"]}
    assert plans["basic"]["credits"] == 50
    assert plans["pro"]["price"] == 7900


def test_requires_authentication(client):
    assert client.get("/subscription").status_code == 401
    bad = {"Authorization": "Bearer not-a-jwt"}
    assert client.get("/subscription", headers=bad).status_code == 401


def test_checkout_creates_customer_once(client, db_session, provider, monkeypatch):
    monkeypatch.setattr(get_settings(), "FRONTEND_URL", "https://app.example.com")
    user = make_user(db_session)

    first = client.post("/subscription/checkout", json={"planType": "basic"}, headers=auth_headers(user))
    second = client.post("/subscription/checkout", json={"planType": "pro"}, headers=auth_headers(user))

    assert first.status_code == 200
    assert first.json()["url"].startswith("https://checkout.test/")
    assert second.status_code == 200
    assert len(provider.called("create_customer")) == 1
    db_session.refresh(user)
    assert user.external_customer_ref == f"cus_{user.id}"

    _, customer_ref, plan_id, success_url, cancel_url, metadata = provider.called("create_checkout_session")[0]
    assert plan_id == "basic"
    assert success_url == "https://app.example.com/payment-success?session_id={CHECKOUT_SESSION_ID}"
    assert cancel_url == "https://app.example.com/payment-failed"
    assert metadata == {"userId": str(user.id), "planType": "basic"}


def test_checkout_rejects_free_and_unknown_plans(client, db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "FRONTEND_URL", "https://app.example.com")
    user = make_user(db_session)

    free = client.post("/subscription/checkout", json={"planType": "free"}, headers=auth_headers(user))
    unknown = client.post("/subscription/checkout", json={"planType": "gold"}, headers=auth_headers(user))

    assert free.status_code == 400
    assert unknown.status_code == 400
    assert unknown.json()["detail"] == "Invalid plan type"


def test_checkout_without_frontend_url(client, db_session, monkeypatch):
    monkeypatch.setattr(get_settings(), "FRONTEND_URL", None)
    user = make_user(db_session)
    response = client.post("/subscription/checkout", json={"planType": "basic"}, headers=auth_headers(user))
    assert response.status_code == 500


def test_sync_twice_updates_instead_of_duplicating(client, db_session, provider):
    user = make_user(db_session)
    free = make_subscription(db_session, user)
    provider.add_paid_session("cs_1", user.id, "basic", "sub_basic")

    first = client.post("/subscription/sync", json={"sessionId": "cs_1"}, headers=auth_headers(user))
    assert first.status_code == 200
    assert first.json()["planType"] == "basic"
    assert first.json()["thumbnailLimit"] == 50

    client.post("/thumbnail/usage/record", headers=auth_headers(user))

    second = client.post("/subscription/sync", json={"sessionId": "cs_1"}, headers=auth_headers(user))
    assert second.status_code == 200

    rows = db_session.query(Subscription).filter_by(external_subscription_ref="sub_basic").all()
    assert len(rows) == 1
    # Same plan: credits already spent in this period are kept
    assert rows[0].credits_used == 1
    assert [row.id for row in _active_rows(db_session, user.id)] == [rows[0].id]
    db_session.refresh(free)
    assert free.status == SubscriptionStatus.CANCELED

    db_session.refresh(user)
    assert user.subscription_plan == "basic"
    assert user.has_plan is True
    assert user.thumbnail_limit == 50


def test_sync_supersedes_previous_paid_subscription(client, db_session, provider):
    user = make_user(db_session)
    old = make_subscription(db_session, user, plan_type="basic", origin=SubscriptionOrigin.PROVIDER, ref="sub_old")
    provider.failing_cancels.add("sub_old")
    provider.add_paid_session("cs_2", user.id, "pro", "sub_new")

    response = client.post("/subscription/sync", json={"sessionId": "cs_2"}, headers=auth_headers(user))

    assert response.status_code == 200
    assert ("cancel_subscription", "sub_old") in provider.calls
    db_session.refresh(old)
    assert old.status == SubscriptionStatus.CANCELED
    active = _active_rows(db_session, user.id)
    assert len(active) == 1
    assert active[0].external_subscription_ref == "sub_new"


def test_sync_unpaid_session(client, db_session, provider):
    user = make_user(db_session)
    provider.add_paid_session("cs_3", user.id, "basic", "sub_3", payment_status="unpaid")

    response = client.post("/subscription/sync", json={"sessionId": "cs_3"}, headers=auth_headers(user))

    assert response.status_code == 400
    assert response.json()["detail"] == "Payment not completed"
    assert db_session.query(Subscription).count() == 0


def test_sync_session_without_plan_type(client, db_session, provider):
    user = make_user(db_session)
    provider.add_paid_session("cs_4", user.id, None, "sub_4")

    response = client.post("/subscription/sync", json={"sessionId": "cs_4"}, headers=auth_headers(user))

    assert response.status_code == 400
    assert response.json()["detail"] == "Plan type not found in session"


def test_sync_session_of_another_user(client, db_session, provider):
    owner = make_user(db_session)
    other = make_user(db_session)
    provider.add_paid_session("cs_5", owner.id, "basic", "sub_5")

    response = client.post("/subscription/sync", json={"sessionId": "cs_5"}, headers=auth_headers(other))

    assert response.status_code == 403
    assert db_session.query(Subscription).count() == 0


def test_sync_provider_failure_leaves_plan_untouched(client, db_session, provider):
    user = make_user(db_session)
    make_subscription(db_session, user)

    response = client.post("/subscription/sync", json={"sessionId": "cs_missing"}, headers=auth_headers(user))

    assert response.status_code == 500
    assert response.json()["code"] == "resource_missing"
    assert _active_rows(db_session, user.id)[0].plan_type == "free"


def test_get_subscription(client, db_session):
    user = make_user(db_session)
    assert client.get("/subscription", headers=auth_headers(user)).status_code == 404

    make_subscription(db_session, user, plan_type="pro", origin=SubscriptionOrigin.PROVIDER)
    response = client.get("/subscription", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["subscription"]["planType"] == "pro"
    assert response.json()["subscription"]["credits"]["remaining"] == 999999


def test_cancel_sets_cancel_at_period_end(client, db_session, provider):
    user = make_user(db_session)
    subscription = make_subscription(db_session, user, plan_type="basic", origin=SubscriptionOrigin.PROVIDER, ref="sub_c")

    response = client.post("/subscription/cancel", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["currentPeriodEnd"] is not None
    assert provider.called("update_subscription")[0][1:3] == ("sub_c", True)
    db_session.refresh(subscription)
    assert subscription.cancel_at_period_end is True
    assert subscription.status == SubscriptionStatus.ACTIVE


def test_cancel_refuses_admin_grant_and_free(client, db_session, provider):
    granted_user = make_user(db_session)
    make_subscription(db_session, granted_user, plan_type="pro", origin=SubscriptionOrigin.ADMIN_GRANT)
    free_user = make_user(db_session)
    make_subscription(db_session, free_user)

    assert client.post("/subscription/cancel", headers=auth_headers(granted_user)).status_code == 400
    assert client.post("/subscription/cancel", headers=auth_headers(free_user)).status_code == 400
    assert provider.called("update_subscription") == []


def test_change_plan(client, db_session, provider):
    user = make_user(db_session)
    subscription = make_subscription(db_session, user, plan_type="basic", origin=SubscriptionOrigin.PROVIDER, ref="sub_u")
    provider.add_subscription("sub_u")

    response = client.post("/subscription/update", json={"newPlanType": "pro"}, headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json()["thumbnailLimit"] == 999999
    db_session.refresh(subscription)
    assert subscription.plan_type == "pro"
    assert subscription.credits_limit == 999999
    db_session.refresh(user)
    assert user.thumbnail_limit == 999999


def test_change_plan_requires_paid_subscription(client, db_session):
    user = make_user(db_session)
    make_subscription(db_session, user)
    response = client.post("/subscription/update", json={"newPlanType": "pro"}, headers=auth_headers(user))
    assert response.status_code == 400


def test_config_reports_stripe_status(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "STRIPE_PUBLISHABLE_KEY", "pk_test_123")
    monkeypatch.setattr(get_settings(), "STRIPE_SECRET_KEY", None)

    response = client.get("/subscription/config")

    assert response.json() == {"publishableKey": "pk_test_123", "stripeConfigured": False}
