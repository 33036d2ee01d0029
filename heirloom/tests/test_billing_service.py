"""
Test billing service.

Tests with mocked Stripe provider (no real API calls).
"""
import pytest
from unittest.mock import patch
from datetime import datetime, timezone

from heirloom.core.config import settings
from heirloom.core.errors import (
    BillingDisabledError,
    ConflictError,
    NoActiveSubscriptionError,
    UnknownPlanError,
)
from heirloom.features.billing import service as billing_service
from heirloom.features.billing.provider import BillingProviderError, CheckoutSession
from heirloom.features.billing.service import (
    cancel_subscription,
    ensure_customer_for_user,
    get_billing_overview,
    get_price_for_plan,
    get_subscription_status,
    plan_for_price,
    resume_subscription,
    start_checkout,
    subscription_state_from_payload,
)
from heirloom.features.subscriptions import store
from heirloom.features.users.service import get_or_create_user, get_user, link_stripe_customer
from heirloom.models.plan import Plan
from heirloom.models.subscription import SubscriptionStatus
from heirloom.tests.mocks import PERIOD_END, PERIOD_START, seed_subscription, stripe_subscription


def test_billing_disabled_without_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    with patch.object(billing_service.settings, "STRIPE_SECRET_KEY", None):
        assert billing_service.billing_enabled() is False
        assert billing_service.get_provider() is None
        with pytest.raises(BillingDisabledError):
            start_checkout("user_alice", "premium")


def test_price_mapping_round_trip():
    for plan in (Plan.PERSONAL, Plan.PREMIUM, Plan.ULTIMATE):
        assert plan_for_price(get_price_for_plan(plan)) == plan


def test_unknown_price_defaults_to_personal():
    assert plan_for_price("price_mystery") == Plan.PERSONAL
    assert plan_for_price(None) == Plan.PERSONAL


def test_missing_price_is_not_configured(monkeypatch):
    monkeypatch.delenv("STRIPE_PRICE_ULTIMATE", raising=False)
    monkeypatch.setattr(settings, "STRIPE_PRICE_ULTIMATE", None)
    with pytest.raises(BillingDisabledError) as exc_info:
        get_price_for_plan("ultimate")
    assert exc_info.value.code == "price_not_configured"


def test_free_has_no_price():
    with pytest.raises(UnknownPlanError):
        get_price_for_plan("free")


def test_state_from_payload_top_level_periods():
    state = subscription_state_from_payload(stripe_subscription(plan="ultimate"), "user_alice")
    assert state.plan == Plan.ULTIMATE
    assert state.status == SubscriptionStatus.ACTIVE
    assert state.stripe_customer_id == "cus_123"
    assert state.current_period_start == PERIOD_START
    assert state.current_period_end == PERIOD_END


def test_state_from_payload_item_level_periods():
    payload = stripe_subscription()
    item = payload["items"]["data"][0]
    item["current_period_start"] = payload.pop("current_period_start")
    item["current_period_end"] = payload.pop("current_period_end")
    state = subscription_state_from_payload(payload, "user_alice", plan="personal")
    assert state.plan == Plan.PERSONAL
    assert state.current_period_end == PERIOD_END


def test_ensure_customer_creates_and_links(mock_provider):
    mock_provider.ensure_customer.return_value = "cus_new"
    assert ensure_customer_for_user("user_alice") == "cus_new"
    assert get_user("user_alice").stripe_customer_id == "cus_new"

    # Second call reuses the link
    assert ensure_customer_for_user("user_alice") == "cus_new"
    mock_provider.ensure_customer.assert_called_once()


def test_link_is_immutable():
    get_or_create_user("user_alice")
    link_stripe_customer("user_alice", "cus_1")
    link_stripe_customer("user_alice", "cus_1")
    with pytest.raises(ConflictError):
        link_stripe_customer("user_alice", "cus_2")


def test_start_checkout(mock_provider):
    mock_provider.ensure_customer.return_value = "cus_123"
    mock_provider.create_checkout_session.return_value = CheckoutSession(
        session_id="cs_123", url="https://checkout.stripe.com/c/cs_123"
    )

    result = start_checkout("user_alice", "premium")
    assert result == {"session_id": "cs_123", "redirect_url": "https://checkout.stripe.com/c/cs_123"}

    kwargs = mock_provider.create_checkout_session.call_args.kwargs
    assert kwargs["customer_id"] == "cus_123"
    assert kwargs["price_id"] == "price_premium"
    assert kwargs["metadata"] == {"user_id": "user_alice", "plan": "premium"}
    assert kwargs["success_url"].endswith("/subscription/success?session_id={CHECKOUT_SESSION_ID}")
    assert kwargs["cancel_url"].endswith("/subscription/cancel")


def test_start_checkout_rejects_free_and_unknown(mock_provider):
    with pytest.raises(UnknownPlanError):
        start_checkout("user_alice", "free")
    with pytest.raises(UnknownPlanError):
        start_checkout("user_alice", "platinum")
    mock_provider.create_checkout_session.assert_not_called()


def test_start_checkout_conflicts_with_active_subscription(mock_provider):
    seed_subscription("user_alice", Plan.PERSONAL)
    with pytest.raises(ConflictError):
        start_checkout("user_alice", "premium")
    mock_provider.create_checkout_session.assert_not_called()


def test_start_checkout_gateway_failure_propagates(mock_provider):
    mock_provider.ensure_customer.return_value = "cus_123"
    mock_provider.create_checkout_session.side_effect = BillingProviderError("boom")
    with pytest.raises(BillingProviderError):
        start_checkout("user_alice", "premium")


def test_status_without_subscription():
    status = get_subscription_status("user_alice")
    assert status["plan"] == "free"
    assert status["status"] == "inactive"
    assert status["hasActiveSubscription"] is False


def test_status_reports_effective_plan():
    seed_subscription("user_alice", Plan.PREMIUM, status=SubscriptionStatus.PAST_DUE)
    status = get_subscription_status("user_alice")
    assert status["plan"] == "free"
    assert status["status"] == "past_due"
    assert status["hasActiveSubscription"] is False


def test_cancel_sets_flag_and_keeps_access(mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM, sub_id="sub_123")
    mock_provider.set_cancel_at_period_end.return_value = stripe_subscription(
        sub_id="sub_123", plan="premium", cancel_at_period_end=True
    )

    updated = cancel_subscription("user_alice")
    mock_provider.set_cancel_at_period_end.assert_called_once_with("sub_123", True)
    assert updated.cancel_at_period_end is True
    assert updated.status == SubscriptionStatus.ACTIVE
    assert updated.plan == Plan.PREMIUM


def test_cancel_without_subscription(mock_provider):
    with pytest.raises(NoActiveSubscriptionError):
        cancel_subscription("user_alice")


def test_resume_clears_flag(mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM, sub_id="sub_123", cancel_at_period_end=True)
    mock_provider.set_cancel_at_period_end.return_value = stripe_subscription(sub_id="sub_123")

    updated = resume_subscription("user_alice")
    mock_provider.set_cancel_at_period_end.assert_called_once_with("sub_123", False)
    assert updated.cancel_at_period_end is False


def test_resume_when_not_cancelling_is_noop(mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM)
    resume_subscription("user_alice")
    mock_provider.set_cancel_at_period_end.assert_not_called()


def test_cancel_gateway_failure_leaves_store_untouched(mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM, sub_id="sub_123")
    mock_provider.set_cancel_at_period_end.side_effect = BillingProviderError("stripe down")
    with pytest.raises(BillingProviderError):
        cancel_subscription("user_alice")
    assert store.get_by_provider_id("sub_123").cancel_at_period_end is False


def test_billing_overview(mock_provider):
    get_or_create_user("user_alice")
    link_stripe_customer("user_alice", "cus_123")
    seed_subscription("user_alice", Plan.PREMIUM, sub_id="sub_123")

    mock_provider.retrieve_customer.return_value = {
        "id": "cus_123",
        "invoice_settings": {"default_payment_method": "pm_2"},
    }
    mock_provider.list_payment_methods.return_value = [
        {"id": "pm_1", "card": {"brand": "amex", "last4": "0005", "exp_month": 1, "exp_year": 2027}},
        {"id": "pm_2", "card": {"brand": "visa", "last4": "4242", "exp_month": 12, "exp_year": 2030}},
    ]
    mock_provider.list_invoices.return_value = [
        {"id": "in_1", "number": "A-1", "amount_paid": 2499, "currency": "aud", "status": "paid", "created": 1790000000},
    ]
    mock_provider.retrieve_upcoming_invoice.return_value = {
        "amount_due": 2499,
        "currency": "aud",
        "period_end": 1792000000,
        "next_payment_attempt": 1792003600,
    }

    overview = get_billing_overview("user_alice")
    assert overview["subscription"]["plan"] == "premium"
    assert overview["paymentMethod"]["last4"] == "4242"
    assert overview["invoices"][0]["amount"] == 2499
    assert overview["upcomingInvoice"]["amountDue"] == 2499
    assert overview["upcomingInvoice"]["periodEnd"] == datetime.fromtimestamp(1792000000, tz=timezone.utc)
    mock_provider.retrieve_upcoming_invoice.assert_called_once_with("cus_123", "sub_123")


def test_billing_overview_without_customer():
    overview = get_billing_overview("user_alice")
    assert overview == {
        "subscription": None,
        "paymentMethod": None,
        "invoices": [],
        "upcomingInvoice": None,
    }


def test_billing_overview_skips_upcoming_for_canceled(mock_provider):
    seed_subscription("user_alice", Plan.PREMIUM, status=SubscriptionStatus.CANCELED, customer_id="cus_9")
    mock_provider.retrieve_customer.return_value = {"id": "cus_9"}
    mock_provider.list_payment_methods.return_value = []
    mock_provider.list_invoices.return_value = []

    overview = get_billing_overview("user_alice")
    assert overview["paymentMethod"] is None
    assert overview["upcomingInvoice"] is None
    mock_provider.retrieve_upcoming_invoice.assert_not_called()
