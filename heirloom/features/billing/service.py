"""
Billing service orchestrator.

Business logic that coordinates:
- Customer management (user <-> Stripe customer link)
- Checkout
- Subscription status, cancel and resume
- Billing overview (payment method, invoices, upcoming invoice)
- Price <-> plan mapping and Stripe payload normalization

All Stripe-specific code is in stripe_provider.py.
"""
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Union
import logging

from heirloom.core.config import get_setting, settings
from heirloom.core.errors import BillingDisabledError, ConflictError, NoActiveSubscriptionError
from heirloom.core.logging import log_event
from heirloom.features.billing.provider import BillingProvider, BillingProviderError
from heirloom.features.billing.stripe_provider import StripeProvider
from heirloom.features.quotas.service import parse_paid_plan
from heirloom.features.subscriptions import store
from heirloom.features.users.service import get_or_create_user, get_user, link_stripe_customer
from heirloom.models.plan import Plan, PAID_PLANS
from heirloom.models.subscription import Subscription, SubscriptionState


logger = logging.getLogger(__name__)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(get_setting("STRIPE_SECRET_KEY"))


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def require_provider() -> BillingProvider:
    provider = get_provider()
    if not provider:
        raise BillingDisabledError("Billing is not configured")
    return provider


def get_price_for_plan(plan: Union[str, Plan]) -> str:
    """Map a paid plan to its Stripe price ID."""
    plan = parse_paid_plan(plan)
    price_id = get_setting(f"STRIPE_PRICE_{plan.value.upper()}")
    if not price_id:
        raise BillingDisabledError(
            f"No Stripe price configured for plan: {plan.value}",
            code="price_not_configured",
        )
    return price_id


def plan_for_price(price_id: Optional[str]) -> Plan:
    """Map a Stripe price ID back to a plan; unknown prices fall back to personal."""
    for plan in PAID_PLANS:
        if price_id and get_setting(f"STRIPE_PRICE_{plan.value.upper()}") == price_id:
            return plan
    logger.warning("[billing] unknown price id, defaulting to personal", extra={"price_id": price_id})
    return Plan.PERSONAL


def from_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _first_item(payload: Dict[str, Any]) -> Dict[str, Any]:
    items = (payload.get("items") or {}).get("data") or []
    return items[0] if items else {}


def price_id_from_payload(payload: Dict[str, Any]) -> Optional[str]:
    price = _first_item(payload).get("price") or {}
    return object_id(price)


def subscription_state_from_payload(
    payload: Dict[str, Any],
    user_id: str,
    plan: Optional[Union[str, Plan]] = None,
) -> SubscriptionState:
    """
    Normalize a Stripe subscription payload into a SubscriptionState.

    Period timestamps are read from the subscription, or from its first item
    on API versions that moved them there. The plan is taken from `plan`
    when given, else from the first item's price.
    """
    item = _first_item(payload)
    period_start = payload.get("current_period_start") or item.get("current_period_start")
    period_end = payload.get("current_period_end") or item.get("current_period_end")
    resolved_plan = parse_paid_plan(plan) if plan else plan_for_price(price_id_from_payload(payload))

    return SubscriptionState(
        user_id=user_id,
        stripe_subscription_id=payload["id"],
        stripe_customer_id=object_id(payload.get("customer")),
        plan=resolved_plan,
        status=store.coerce_status(payload.get("status")),
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(payload.get("cancel_at_period_end", False)),
        canceled_at=from_timestamp(payload.get("canceled_at")),
        provider_snapshot=payload,
    )


def ensure_customer_for_user(user_id: str) -> str:
    """
    Ensure a Stripe customer exists for the user and is linked to them.

    Returns:
        Stripe customer ID

    Raises:
        BillingDisabledError: If Stripe is not configured
        BillingProviderError: If customer creation fails
    """
    user = get_or_create_user(user_id)
    if user.stripe_customer_id:
        return user.stripe_customer_id

    provider = require_provider()
    stripe_customer_id = provider.ensure_customer(user_id, user.email)
    try:
        link_stripe_customer(user_id, stripe_customer_id)
    except ConflictError:
        # Another request linked a customer first; keep that one
        return get_user(user_id).stripe_customer_id

    log_event("info", "billing.customer_linked", user_id=user_id, event_type="customer.linked")
    return stripe_customer_id


def start_checkout(user_id: str, plan: Union[str, Plan]) -> Dict[str, str]:
    """
    Start a subscription checkout session.

    Returns:
        {"session_id": ..., "redirect_url": ...}

    Raises:
        UnknownPlanError: If plan is not a paid plan
        BillingDisabledError: If billing or the plan's price is not configured
        ConflictError: If the user already has a live subscription
        BillingProviderError: If checkout creation fails
    """
    plan = parse_paid_plan(plan)
    provider = require_provider()
    price_id = get_price_for_plan(plan)

    if store.get_active(user_id):
        raise ConflictError("User already has an active subscription; change plan instead")

    customer_id = ensure_customer_for_user(user_id)
    frontend = settings.FRONTEND_URL.rstrip("/")
    checkout = provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=f"{frontend}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{frontend}/subscription/cancel",
        metadata={"user_id": user_id, "plan": plan.value},
    )

    log_event(
        "info",
        "billing.checkout_started",
        user_id=user_id,
        event_type="checkout.started",
        extra={"plan": plan.value, "session_id": checkout.session_id},
    )
    return {"session_id": checkout.session_id, "redirect_url": checkout.url}


def get_subscription_status(user_id: str) -> Dict[str, Any]:
    """
    Status of the user's most recent subscription.

    plan is the effective plan: a subscription that is not active/trialing
    reports free.
    """
    subscription = store.get_latest(user_id)
    if not subscription:
        return {
            "plan": Plan.FREE.value,
            "status": "inactive",
            "currentPeriodEnd": None,
            "cancelAtPeriodEnd": False,
            "hasActiveSubscription": False,
        }

    return {
        "plan": subscription.plan.value if subscription.is_live else Plan.FREE.value,
        "status": subscription.status.value,
        "currentPeriodEnd": subscription.current_period_end,
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "hasActiveSubscription": subscription.is_live,
    }


def _require_active(user_id: str) -> Subscription:
    subscription = store.get_active(user_id)
    if not subscription:
        raise NoActiveSubscriptionError("No active subscription found")
    return subscription


def _mirror(payload: Dict[str, Any], subscription: Subscription) -> Subscription:
    state = subscription_state_from_payload(payload, subscription.user_id, plan=subscription.plan)
    return store.upsert_by_provider_id(state)


def cancel_subscription(user_id: str) -> Subscription:
    """Set cancel_at_period_end; access is kept until the period closes."""
    subscription = _require_active(user_id)
    provider = require_provider()
    payload = provider.set_cancel_at_period_end(subscription.stripe_subscription_id, True)
    updated = _mirror(payload, subscription)

    log_event(
        "info",
        "subscription.cancel_scheduled",
        user_id=user_id,
        event_type="subscription.cancel",
        extra={"stripe_subscription_id": subscription.stripe_subscription_id},
    )
    return updated


def resume_subscription(user_id: str) -> Subscription:
    """Clear cancel_at_period_end. A subscription that is not cancelling is returned as is."""
    subscription = _require_active(user_id)
    if not subscription.cancel_at_period_end:
        return subscription

    provider = require_provider()
    payload = provider.set_cancel_at_period_end(subscription.stripe_subscription_id, False)
    updated = _mirror(payload, subscription)

    log_event(
        "info",
        "subscription.resumed",
        user_id=user_id,
        event_type="subscription.resume",
        extra={"stripe_subscription_id": subscription.stripe_subscription_id},
    )
    return updated


def _payment_method_summary(method: Dict[str, Any]) -> Dict[str, Any]:
    card = method.get("card") or {}
    return {
        "id": method.get("id"),
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "expMonth": card.get("exp_month"),
        "expYear": card.get("exp_year"),
    }


def _invoice_summary(invoice: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": invoice.get("id"),
        "number": invoice.get("number"),
        "amount": invoice.get("amount_paid", invoice.get("amount_due")),
        "currency": invoice.get("currency"),
        "status": invoice.get("status"),
        "created": from_timestamp(invoice.get("created")),
        "hostedInvoiceUrl": invoice.get("hosted_invoice_url"),
        "invoicePdf": invoice.get("invoice_pdf"),
    }


def _subscription_summary(subscription: Subscription) -> Dict[str, Any]:
    return {
        "id": subscription.stripe_subscription_id,
        "plan": subscription.plan.value,
        "status": subscription.status.value,
        "currentPeriodStart": subscription.current_period_start,
        "currentPeriodEnd": subscription.current_period_end,
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
        "canceledAt": subscription.canceled_at,
    }


def get_billing_overview(user_id: str, invoice_limit: int = 10) -> Dict[str, Any]:
    """
    Composite billing view.

    Returns:
        {
            "subscription": {...} | None,
            "paymentMethod": {brand, last4, expMonth, expYear} | None,
            "invoices": [...],
            "upcomingInvoice": {amountDue, currency, periodEnd, nextPaymentAttempt} | None
        }
    """
    subscription = store.get_latest(user_id)
    user = get_user(user_id)
    customer_id = (user.stripe_customer_id if user else None) or (
        subscription.stripe_customer_id if subscription else None
    )

    overview: Dict[str, Any] = {
        "subscription": _subscription_summary(subscription) if subscription else None,
        "paymentMethod": None,
        "invoices": [],
        "upcomingInvoice": None,
    }
    if not customer_id:
        return overview

    provider = require_provider()

    customer = provider.retrieve_customer(customer_id)
    methods = provider.list_payment_methods(customer_id)
    default_id = object_id((customer.get("invoice_settings") or {}).get("default_payment_method"))
    default = next((m for m in methods if m.get("id") == default_id), methods[0] if methods else None)
    if default:
        overview["paymentMethod"] = _payment_method_summary(default)

    overview["invoices"] = [_invoice_summary(i) for i in provider.list_invoices(customer_id, limit=invoice_limit)]

    if subscription and subscription.is_live:
        upcoming = provider.retrieve_upcoming_invoice(customer_id, subscription.stripe_subscription_id)
        if upcoming:
            overview["upcomingInvoice"] = {
                "amountDue": upcoming.get("amount_due"),
                "currency": upcoming.get("currency"),
                "periodEnd": from_timestamp(upcoming.get("period_end")),
                "nextPaymentAttempt": from_timestamp(upcoming.get("next_payment_attempt")),
            }
    return overview
