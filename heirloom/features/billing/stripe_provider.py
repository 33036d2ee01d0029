"""
Stripe billing provider implementation.

Implements BillingProvider protocol using the Stripe API.
Stripe objects are converted to plain dicts before they leave this module.
"""
import json
from typing import Dict, Any, List, Optional
import stripe

from heirloom.core.config import get_setting, settings
from heirloom.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    CheckoutSession,
    WebhookSignatureInvalid,
)


def _as_dict(obj: Any) -> Dict[str, Any]:
    """Convert a StripeObject (or a plain mapping) into a plain dict."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or get_setting("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or get_setting("STRIPE_WEBHOOK_SECRET")
        self.tolerance = settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        # Failures surface to the caller; the core does not retry
        stripe.max_network_retries = 0

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Create Stripe customer for user."""
        try:
            customer_data: Dict[str, Any] = {"metadata": {"user_id": user_id}}
            if email:
                customer_data["email"] = email
            customer = stripe.Customer.create(
                idempotency_key=f"customer-{user_id}",
                **customer_data,
            )
            return customer["id"]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                subscription_data={"metadata": metadata or {}},
            )
            return CheckoutSession(session_id=session["id"], url=session["url"])
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        try:
            return _as_dict(stripe.Subscription.retrieve(subscription_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        try:
            return _as_dict(stripe.Customer.retrieve(customer_id))
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer retrieval failed: {e}")

    def change_line_item(self, subscription_id: str, price_id: str) -> Dict[str, Any]:
        """Swap the single line item to a new price, prorated, re-anchored now."""
        try:
            current = stripe.Subscription.retrieve(subscription_id)
            items = (current.get("items") or {}).get("data") or []
            if not items:
                raise BillingProviderError(f"Subscription {subscription_id} has no line items")
            updated = stripe.Subscription.modify(
                subscription_id,
                items=[{"id": items[0]["id"], "price": price_id}],
                proration_behavior="create_prorations",
                billing_cycle_anchor="now",
            )
            return _as_dict(updated)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe plan change failed: {e}")

    def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Dict[str, Any]:
        try:
            updated = stripe.Subscription.modify(subscription_id, cancel_at_period_end=flag)
            return _as_dict(updated)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe cancel flag update failed: {e}")

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            invoices = stripe.Invoice.list(customer=customer_id, limit=limit)
            return [_as_dict(invoice) for invoice in invoices["data"]]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe invoice listing failed: {e}")

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        try:
            methods = stripe.PaymentMethod.list(customer=customer_id, type="card")
            return [_as_dict(method) for method in methods["data"]]
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe payment method listing failed: {e}")

    def retrieve_upcoming_invoice(
        self, customer_id: str, subscription_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        params: Dict[str, Any] = {"customer": customer_id}
        if subscription_id:
            params["subscription"] = subscription_id
        try:
            return _as_dict(stripe.Invoice.create_preview(**params))
        except stripe.InvalidRequestError:
            # Nothing upcoming (e.g. subscription set to cancel)
            return None
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe upcoming invoice retrieval failed: {e}")

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """Verify Stripe webhook signature and return the event as a dict."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise WebhookSignatureInvalid("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8") if isinstance(body, (bytes, bytearray)) else body
        except UnicodeDecodeError as e:
            raise WebhookSignatureInvalid(f"Invalid payload encoding: {e}")
        try:
            stripe.WebhookSignature.verify_header(payload, sig_header, self.webhook_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureInvalid(f"Invalid signature: {e}")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise WebhookSignatureInvalid(f"Invalid payload: {e}")
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise WebhookSignatureInvalid("Event payload missing id or type")
        return event
