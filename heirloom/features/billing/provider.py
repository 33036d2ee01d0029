"""
Billing provider protocol.

Defines the interface for the payment gateway (Stripe).
Business logic depends on this protocol so tests can swap in a mock.
All payloads cross the boundary as plain dicts.
"""
from typing import Protocol, Dict, Any, List, Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class CheckoutSession:
    """A hosted checkout session the user is redirected to."""
    session_id: str
    url: str


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation
    - Checkout session creation
    - Subscription reads and mutations (line item swap, cancel flag)
    - Invoice and payment method reads for the billing overview
    - Webhook signature verification
    """

    def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """
        Create a billing customer tagged with the user id.

        Returns:
            Provider customer ID (e.g., Stripe customer ID)

        Raises:
            BillingProviderError: If customer creation fails
        """
        ...

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a subscription-mode checkout session.

        Raises:
            BillingProviderError: If session creation fails
        """
        ...

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        ...

    def change_line_item(self, subscription_id: str, price_id: str) -> Dict[str, Any]:
        """
        Swap the subscription's single line item to `price_id` with proration.

        Returns:
            The updated subscription payload
        """
        ...

    def set_cancel_at_period_end(self, subscription_id: str, flag: bool) -> Dict[str, Any]:
        ...

    def list_invoices(self, customer_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        ...

    def list_payment_methods(self, customer_id: str) -> List[Dict[str, Any]]:
        ...

    def retrieve_upcoming_invoice(
        self, customer_id: str, subscription_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Preview of the next invoice, or None when there is nothing upcoming."""
        ...

    def verify_webhook(self, headers: Dict[str, str], body: bytes) -> Dict[str, Any]:
        """
        Verify webhook signature and parse the event.

        Args:
            headers: HTTP headers (must include the signature header)
            body: Raw webhook body (for signature verification)

        Returns:
            The event as a plain dict

        Raises:
            WebhookSignatureInvalid: If signature or payload is invalid
        """
        ...


class BillingProviderError(Exception):
    """Base exception for billing provider errors."""
    pass


class BillingWebhookError(BillingProviderError):
    """Exception for webhook processing errors."""
    pass


class WebhookSignatureInvalid(BillingWebhookError):
    """Webhook signature missing, stale or not matching the secret."""
    pass
