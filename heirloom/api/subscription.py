"""
Subscription API routes.

- GET  /api/subscription/plans: Public plan catalog
- GET  /api/subscription/status: Current subscription status
- POST /api/subscription/checkout: Create checkout session
- POST /api/subscription/cancel: Cancel at period end
- POST /api/subscription/resume: Undo a scheduled cancellation
- POST /api/subscription/change-plan: Upgrade/downgrade (prorated)
- GET  /api/subscription/change-plan/preview: Downgrade admission preview
- GET  /api/subscription/billing: Payment method, invoices, upcoming invoice
- GET  /api/subscription/usage: Per-feature usage stats
- POST /api/subscription/webhook: Stripe webhooks (signature verified, no auth)
"""
from typing import Any, Dict, Optional
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.concurrency import run_in_threadpool

from heirloom.core.auth import get_current_user_id
from heirloom.core.errors import DowngradeBlockedError, WebhookSignatureError
from heirloom.features.billing import service as billing_service
from heirloom.features.billing.provider import WebhookSignatureInvalid
from heirloom.features.billing.webhooks import process_webhook_event
from heirloom.features.entitlements.service import plan_for
from heirloom.features.plan_changes import service as plan_change_service
from heirloom.features.plan_changes.downgrade import check_downgrade
from heirloom.features.plans.catalog import list_plans
from heirloom.features.quotas.service import parse_paid_plan
from heirloom.features.usage.service import get_usage_stats
from heirloom.models.plan import change_direction
from heirloom.models.subscription import Subscription


router = APIRouter(prefix="/subscription", tags=["subscription"])


class PlanRequest(BaseModel):
    """Body for checkout and change-plan."""
    model_config = ConfigDict(populate_by_name=True)

    plan_type: str = Field(alias="planType")


class CheckoutResponse(BaseModel):
    sessionId: str
    redirectUrl: str


def _subscription_payload(subscription: Optional[Subscription]) -> Optional[Dict[str, Any]]:
    if subscription is None:
        return None
    return {
        "plan": subscription.plan.value,
        "status": subscription.status.value,
        "currentPeriodStart": subscription.current_period_start,
        "currentPeriodEnd": subscription.current_period_end,
        "cancelAtPeriodEnd": subscription.cancel_at_period_end,
    }


@router.get("/plans")
def get_plans():
    """Public plan catalog (no auth)."""
    return {"success": True, "plans": list_plans()}


@router.get("/status")
def get_status(user_id: str = Depends(get_current_user_id)):
    return billing_service.get_subscription_status(user_id)


@router.post("/checkout", response_model=CheckoutResponse)
def create_checkout(body: PlanRequest, user_id: str = Depends(get_current_user_id)):
    """
    Create a Stripe checkout session for a paid plan.

    Errors:
        400: Unknown plan
        409: Already subscribed (use change-plan)
        502: Stripe API error
        503: Billing disabled
    """
    result = billing_service.start_checkout(user_id, body.plan_type)
    return {"sessionId": result["session_id"], "redirectUrl": result["redirect_url"]}


@router.post("/cancel")
def cancel(user_id: str = Depends(get_current_user_id)):
    subscription = billing_service.cancel_subscription(user_id)
    return {
        "success": True,
        "message": "Subscription will cancel at period end",
        "subscription": _subscription_payload(subscription),
    }


@router.post("/resume")
def resume(user_id: str = Depends(get_current_user_id)):
    subscription = billing_service.resume_subscription(user_id)
    return {
        "success": True,
        "message": "Subscription resumed",
        "subscription": _subscription_payload(subscription),
    }


@router.post("/change-plan")
def change_plan(body: PlanRequest, user_id: str = Depends(get_current_user_id)):
    """
    Change the active subscription's plan.

    Errors:
        403: Downgrade blocked by current usage (blockedFeatures lists overages)
        409: No active subscription
    """
    result = plan_change_service.change_plan(user_id, body.plan_type)

    if result.status == plan_change_service.DOWNGRADE_BLOCKED:
        raise DowngradeBlockedError(
            plan_change_service.DOWNGRADE_BLOCKED_MESSAGE,
            overages=[o.to_dict() for o in result.overages],
        )

    if result.status == plan_change_service.UNCHANGED:
        message = f"Already on the {result.new_plan.value} plan"
    else:
        message = f"Plan changed from {result.old_plan.value} to {result.new_plan.value}"

    return {
        "success": True,
        "status": result.status,
        "message": message,
        "oldPlan": result.old_plan.value,
        "newPlan": result.new_plan.value,
        "direction": result.direction.value,
        "subscription": _subscription_payload(result.subscription),
    }


@router.get("/change-plan/preview")
def preview_change_plan(
    plan_type: str = Query(..., alias="planType"),
    user_id: str = Depends(get_current_user_id),
):
    """Read-only downgrade admission for the target plan."""
    target = parse_paid_plan(plan_type)
    current = plan_for(user_id)
    check = check_downgrade(user_id, target)
    payload = check.to_dict()
    payload["currentPlan"] = current.value
    payload["direction"] = change_direction(current, target).value
    return payload


@router.get("/billing")
def get_billing(user_id: str = Depends(get_current_user_id)):
    return billing_service.get_billing_overview(user_id)


@router.get("/usage")
def get_usage(user_id: str = Depends(get_current_user_id)):
    return get_usage_stats(user_id)


@router.post("/webhook")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Signature verified against STRIPE_WEBHOOK_SECRET; no bearer token.
    Handler failures return 5xx so Stripe redelivers.
    """
    body = await request.body()
    headers = dict(request.headers)
    try:
        outcome = await run_in_threadpool(process_webhook_event, headers, body)
    except WebhookSignatureInvalid as e:
        raise WebhookSignatureError(str(e))
    return {
        "received": True,
        "eventId": outcome.event_id,
        "duplicate": outcome.duplicate,
    }
