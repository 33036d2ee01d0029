"""
Subscription API contract tests (mocked gateway).
"""
from heirloom.features.billing.provider import BillingProviderError, CheckoutSession
from heirloom.models.plan import Plan
from heirloom.models.subscription import SubscriptionStatus
from heirloom.tests.mocks import seed_subscription, seed_usage, stripe_subscription

ALICE = {"X-User-Id": "user_alice"}


def test_plans_are_public(client):
    resp = client.get("/api/subscription/plans")
    assert resp.status_code == 200
    plans = resp.json()["plans"]
    assert set(plans) == {"personal", "premium", "ultimate"}
    assert plans["premium"]["price"] == 24.99
    assert plans["premium"]["limits"]["interview_sessions"] == 50
    assert "Unlimited voice clones" in plans["ultimate"]["features"]


def test_status_requires_auth(client):
    resp = client.get("/api/subscription/status")
    assert resp.status_code == 401


def test_status_for_new_user(client):
    resp = client.get("/api/subscription/status", headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "free"
    assert body["hasActiveSubscription"] is False


def test_checkout(client, mock_provider):
    mock_provider.ensure_customer.return_value = "cus_123"
    mock_provider.create_checkout_session.return_value = CheckoutSession(
        session_id="cs_1", url="https://checkout.stripe.com/c/cs_1"
    )
    resp = client.post("/api/subscription/checkout", json={"planType": "premium"}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json() == {"sessionId": "cs_1", "redirectUrl": "https://checkout.stripe.com/c/cs_1"}


def test_checkout_unknown_plan(client, mock_provider):
    resp = client.post("/api/subscription/checkout", json={"planType": "gold"}, headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "unknown_plan"


def test_checkout_missing_plan_is_400(client, mock_provider):
    resp = client.post("/api/subscription/checkout", json={}, headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_when_subscribed_conflicts(client, mock_provider):
    seed_subscription("user_alice", Plan.PERSONAL)
    resp = client.post("/api/subscription/checkout", json={"planType": "premium"}, headers=ALICE)
    assert resp.status_code == 409


def test_checkout_gateway_error_is_redacted(client, mock_provider):
    mock_provider.ensure_customer.side_effect = BillingProviderError("sk_live_secret rejected")
    resp = client.post("/api/subscription/checkout", json={"planType": "premium"}, headers=ALICE)
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"]["code"] == "provider_error"
    assert "sk_live_secret" not in resp.text


def test_cancel_and_resume(client, mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM, sub_id="sub_123")
    mock_provider.set_cancel_at_period_end.return_value = stripe_subscription(
        sub_id="sub_123", cancel_at_period_end=True
    )
    resp = client.post("/api/subscription/cancel", headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["subscription"]["cancelAtPeriodEnd"] is True

    mock_provider.set_cancel_at_period_end.return_value = stripe_subscription(sub_id="sub_123")
    resp = client.post("/api/subscription/resume", headers=ALICE)
    assert resp.status_code == 200
    assert resp.json()["subscription"]["cancelAtPeriodEnd"] is False


def test_cancel_without_subscription_is_404(client, mock_provider):
    resp = client.post("/api/subscription/cancel", headers=ALICE)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "no_active_subscription"


def test_change_plan_upgrade(client, mock_provider):
    seed_subscription("user_alice", Plan.PERSONAL, sub_id="sub_123")
    mock_provider.change_line_item.return_value = stripe_subscription(sub_id="sub_123", plan="ultimate")

    resp = client.post("/api/subscription/change-plan", json={"planType": "ultimate"}, headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "changed"
    assert body["oldPlan"] == "personal"
    assert body["newPlan"] == "ultimate"
    assert body["direction"] == "upgrade"


def test_change_plan_downgrade_blocked(client, mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM, sub_id="sub_123")
    seed_usage("user_alice", "memory_graph_operations", 150)

    resp = client.post("/api/subscription/change-plan", json={"planType": "personal"}, headers=ALICE)
    assert resp.status_code == 403
    body = resp.json()
    assert body["error"] == "Downgrade not allowed"
    assert body["reason"] == "downgrade_blocked"
    assert body["needsCleanup"] is True
    assert body["blockedFeatures"][0]["feature"] == "memory_graph_operations"
    assert body["blockedFeatures"][0]["overage"] == 149
    assert body["request_id"] == resp.headers["x-request-id"]
    mock_provider.change_line_item.assert_not_called()


def test_change_plan_without_subscription_is_409(client, mock_provider):
    resp = client.post("/api/subscription/change-plan", json={"planType": "premium"}, headers=ALICE)
    assert resp.status_code == 409


def test_change_plan_preview(client):
    seed_subscription("user_alice", Plan.PREMIUM)
    seed_usage("user_alice", "avatar_generations", 5)

    resp = client.get("/api/subscription/change-plan/preview", params={"planType": "personal"}, headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["allowed"] is False
    assert body["currentPlan"] == "premium"
    assert body["direction"] == "downgrade"
    assert body["overages"][0]["newLimit"] == 1


def test_usage_stats(client):
    seed_subscription("user_alice", Plan.PREMIUM)
    seed_usage("user_alice", "interview_sessions", 10)

    resp = client.get("/api/subscription/usage", headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "premium"
    sessions = body["features"]["interview_sessions"]
    assert sessions["limit"] == 50
    assert sessions["current_usage"] == 10
    assert sessions["remaining"] == 40
    assert sessions["percent"] == 20


def test_usage_stats_free_user(client):
    resp = client.get("/api/subscription/usage", headers=ALICE)
    body = resp.json()
    assert body["plan"] == "free"
    assert body["features"]["voice_clones"]["limit"] == 0


def test_billing_overview_without_customer(client):
    seed_subscription("user_alice", Plan.PREMIUM, status=SubscriptionStatus.CANCELED, customer_id=None)
    resp = client.get("/api/subscription/billing", headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["subscription"]["status"] == "canceled"
    assert body["invoices"] == []


def test_billing_disabled_is_503(client, monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    resp = client.post("/api/subscription/checkout", json={"planType": "premium"}, headers=ALICE)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"
