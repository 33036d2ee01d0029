"""
Stripe webhook ingestor.

1. Verify signature (nothing is stored for a bad signature)
2. Record receipt in billing_events (idempotency by stripe_event_id)
3. Dispatch by event type into the subscription store
4. Mark processed, or store the error and re-raise so Stripe retries

An event already marked processed is acknowledged without dispatch. An event
recorded by an earlier failed attempt is dispatched again.
"""
import hashlib
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple
import logging
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from heirloom.core.database import get_db_session, billing_events, utc_now
from heirloom.core.errors import ConflictError, WebhookDispatchError
from heirloom.core.logging import log_event
from heirloom.features.billing import service as billing_service
from heirloom.features.billing.provider import BillingProvider
from heirloom.features.subscriptions import store
from heirloom.features.users.service import find_user_by_customer, get_or_create_user, link_stripe_customer
from heirloom.models.subscription import SubscriptionStatus


logger = logging.getLogger(__name__)

# Error text stored on the event row is truncated to this length
MAX_ERROR_LENGTH = 1000


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    dispatched: bool
    duplicate: bool


def _metadata_value(metadata: Optional[Dict[str, Any]], *keys: str) -> Optional[str]:
    metadata = metadata or {}
    for key in keys:
        if metadata.get(key):
            return str(metadata[key])
    return None


def _event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = billing_service.object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    # Newer API versions nest it under parent.subscription_details
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return billing_service.object_id(details.get("subscription"))


def resolve_user_id(provider: BillingProvider, subscription: Dict[str, Any]) -> Optional[str]:
    """
    Find the local user for a Stripe subscription.

    Order: customer metadata user_id, the app user owning the customer id,
    the existing subscription row, the subscription's own metadata.
    """
    customer_id = billing_service.object_id(subscription.get("customer"))
    if customer_id:
        customer = provider.retrieve_customer(customer_id)
        user_id = _metadata_value(customer.get("metadata"), "user_id", "userId")
        if user_id:
            return user_id

        user = find_user_by_customer(customer_id)
        if user:
            return user.user_id

    if subscription.get("id"):
        existing = store.get_by_provider_id(subscription["id"])
        if existing:
            return existing.user_id

    return _metadata_value(subscription.get("metadata"), "user_id", "userId")


def _require_user_id(provider: BillingProvider, subscription: Dict[str, Any]) -> str:
    user_id = resolve_user_id(provider, subscription)
    if not user_id:
        raise WebhookDispatchError(
            f"Cannot resolve user for subscription {subscription.get('id')}"
        )
    return user_id


def handle_checkout_completed(provider: BillingProvider, event: Dict[str, Any]) -> None:
    session = _event_object(event)
    metadata = session.get("metadata")
    user_id = _metadata_value(metadata, "user_id", "userId")
    plan = _metadata_value(metadata, "plan", "planType")
    if not user_id or not plan:
        raise WebhookDispatchError("Checkout session is missing user_id/plan metadata")

    subscription_id = billing_service.object_id(session.get("subscription"))
    if not subscription_id:
        logger.info("[webhooks] checkout without subscription ignored", extra={"event_id": event["id"]})
        return

    customer_id = billing_service.object_id(session.get("customer"))
    if customer_id:
        get_or_create_user(user_id)
        try:
            link_stripe_customer(user_id, customer_id)
        except ConflictError:
            logger.warning(
                "[webhooks] checkout customer conflicts with an existing link",
                extra={"user_id": user_id, "stripe_customer_id": customer_id},
            )

    payload = provider.retrieve_subscription(subscription_id)
    store.upsert_by_provider_id(
        billing_service.subscription_state_from_payload(payload, user_id, plan=plan)
    )


def handle_subscription_updated(provider: BillingProvider, event: Dict[str, Any]) -> None:
    payload = _event_object(event)
    user_id = _require_user_id(provider, payload)
    store.upsert_by_provider_id(billing_service.subscription_state_from_payload(payload, user_id))


def handle_subscription_deleted(provider: BillingProvider, event: Dict[str, Any]) -> None:
    payload = _event_object(event)
    user_id = _require_user_id(provider, payload)
    canceled_at = billing_service.from_timestamp(event.get("created")) or utc_now()
    state = billing_service.subscription_state_from_payload(payload, user_id).model_copy(
        update={
            "status": SubscriptionStatus.CANCELED,
            "canceled_at": canceled_at,
            "cancel_at_period_end": False,
        }
    )
    store.upsert_by_provider_id(state)


def handle_payment_succeeded(provider: BillingProvider, event: Dict[str, Any]) -> None:
    subscription_id = _invoice_subscription_id(_event_object(event))
    if not subscription_id:
        return
    payload = provider.retrieve_subscription(subscription_id)
    user_id = _require_user_id(provider, payload)
    store.upsert_by_provider_id(billing_service.subscription_state_from_payload(payload, user_id))


def handle_payment_failed(provider: BillingProvider, event: Dict[str, Any]) -> None:
    subscription_id = _invoice_subscription_id(_event_object(event))
    if not subscription_id:
        return
    if store.set_status(subscription_id, SubscriptionStatus.PAST_DUE) is None:
        logger.warning(
            "[webhooks] payment failed for unknown subscription",
            extra={"stripe_subscription_id": subscription_id},
        )


EVENT_HANDLERS: Dict[str, Callable[[BillingProvider, Dict[str, Any]], None]] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_payment_succeeded,
    "invoice.payment_failed": handle_payment_failed,
}


def _record_receipt(event_id: str, event_type: str, payload_hash: str) -> Tuple[bool, bool]:
    """
    Record the event and decide whether to dispatch it.

    Returns:
        (dispatch, seen_before)
    """
    try:
        with get_db_session() as session:
            existing = session.execute(
                select(billing_events)
                .where(billing_events.c.stripe_event_id == event_id)
                .with_for_update()
            ).first()

            if existing is None:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=event_id,
                        event_type=event_type,
                        payload_hash=payload_hash,
                        processed=False,
                        attempts=1,
                        received_at=utc_now(),
                    )
                )
                return True, False

            if existing.processed:
                return False, True

            session.execute(
                update(billing_events)
                .where(billing_events.c.id == existing.id)
                .values(attempts=billing_events.c.attempts + 1)
            )
            return True, True
    except IntegrityError:
        # Concurrent delivery of the same event; the other worker owns it
        return False, True


def _mark_processed(event_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(processed=True, processed_at=utc_now(), error=None)
        )


def _mark_failed(event_id: str, error: Exception) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.stripe_event_id == event_id)
            .values(error=str(error)[:MAX_ERROR_LENGTH])
        )


def process_webhook_event(headers: Dict[str, str], body: bytes) -> WebhookOutcome:
    """
    Process a Stripe webhook delivery (idempotent).

    Raises:
        BillingDisabledError: If billing is not configured
        WebhookSignatureInvalid: If signature or payload is invalid
        Exception: Whatever the handler raised, after recording it
    """
    provider = billing_service.require_provider()
    event = provider.verify_webhook(headers, body)
    event_id = event["id"]
    event_type = event["type"]
    payload_hash = hashlib.sha256(body).hexdigest()

    dispatch, seen_before = _record_receipt(event_id, event_type, payload_hash)
    if not dispatch:
        logger.info("[webhooks] duplicate event acknowledged", extra={"event_id": event_id, "event_type": event_type})
        return WebhookOutcome(event_id=event_id, event_type=event_type, dispatched=False, duplicate=True)

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("[webhooks] unhandled event type", extra={"event_id": event_id, "event_type": event_type})
        _mark_processed(event_id)
        return WebhookOutcome(event_id=event_id, event_type=event_type, dispatched=False, duplicate=seen_before)

    try:
        handler(provider, event)
    except Exception as e:
        _mark_failed(event_id, e)
        log_event(
            "error",
            "webhook.failed",
            event_type=event_type,
            error_code=getattr(e, "code", "webhook_error"),
            extra={"event_id": event_id, "error": str(e)},
        )
        raise

    _mark_processed(event_id)
    log_event("info", "webhook.processed", event_type=event_type, extra={"event_id": event_id})
    return WebhookOutcome(event_id=event_id, event_type=event_type, dispatched=True, duplicate=seen_before)
