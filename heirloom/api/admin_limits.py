"""
Admin API for the quota table and stored subscriptions.

All routes require an authenticated user with role "admin".
- GET  /api/subscription/admin/limits
- PUT  /api/subscription/admin/limits
- PUT  /api/subscription/admin/limits/bulk
- POST /api/subscription/admin/limits/reset
- GET  /api/subscription/admin/subscriptions
- GET  /api/subscription/admin/subscriptions/{id}
- PUT  /api/subscription/admin/subscriptions/{id}
- GET  /api/subscription/admin/subscriptions/{id}/check-downgrade?planType=
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from heirloom.core.admin_auth import AdminActor, require_admin
from heirloom.core.errors import NotFoundError, ValidationError
from heirloom.features.plan_changes import service as plan_change_service
from heirloom.features.plan_changes.downgrade import check_downgrade
from heirloom.features.quotas import service as quota_service
from heirloom.features.subscriptions import store
from heirloom.features.users.service import get_user
from heirloom.models.plan import PAID_PLANS, change_direction
from heirloom.models.quota import QuotaEntry
from heirloom.models.subscription import Subscription


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/subscription/admin", tags=["admin"])


class LimitUpdate(BaseModel):
    """One quota edit. limitValue is validated by the quota service."""
    model_config = ConfigDict(populate_by_name=True)

    plan_type: Optional[str] = Field(None, alias="planType")
    feature_name: Optional[str] = Field(None, alias="featureName")
    limit_value: Any = Field(None, alias="limitValue")
    limit_type: Optional[str] = Field(None, alias="limitType")

    def as_entry(self) -> Dict[str, Any]:
        return {
            "plan": self.plan_type,
            "feature": self.feature_name,
            "limit": self.limit_value,
            "reset_cadence": self.limit_type,
        }


class BulkLimitUpdate(BaseModel):
    limits: List[LimitUpdate]


class SubscriptionUpdate(BaseModel):
    """Admin edit of a stored subscription; omitted fields are left alone."""
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = None
    plan_type: Optional[str] = Field(None, alias="planType")
    current_period_start: Optional[datetime] = Field(None, alias="currentPeriodStart")
    current_period_end: Optional[datetime] = Field(None, alias="currentPeriodEnd")
    cancel_at_period_end: Optional[bool] = Field(None, alias="cancelAtPeriodEnd")


def _entry_payload(entry: QuotaEntry) -> Dict[str, Any]:
    return {
        "plan_type": entry.plan.value,
        "feature_name": entry.feature.value,
        "limit_value": entry.limit,
        "limit_type": entry.reset_cadence.value,
    }


def _grouped(entries: List[QuotaEntry]) -> Dict[str, Dict[str, Any]]:
    grouped: Dict[str, Dict[str, Any]] = {plan.value: {} for plan in PAID_PLANS}
    for entry in entries:
        grouped.setdefault(entry.plan.value, {})[entry.feature.value] = {
            "limit_value": entry.limit,
            "limit_type": entry.reset_cadence.value,
        }
    return grouped


@router.get("/limits")
def get_all_limits(actor: AdminActor = Depends(require_admin)):
    entries = quota_service.list_all()
    return {
        "success": True,
        "limits": _grouped(entries),
        "raw": [_entry_payload(e) for e in entries],
    }


@router.put("/limits")
def update_limit(body: LimitUpdate, actor: AdminActor = Depends(require_admin)):
    if body.plan_type is None or body.feature_name is None or body.limit_value is None:
        raise ValidationError("Missing required fields: planType, featureName, limitValue")

    entry = quota_service.upsert(
        body.plan_type,
        body.feature_name,
        body.limit_value,
        body.limit_type,
    )
    logger.info(
        "[admin] limit updated",
        extra={
            "actor_id": actor.actor_id,
            "plan": entry.plan.value,
            "feature": entry.feature.value,
            "limit": entry.limit,
        },
    )
    return {
        "success": True,
        "message": "Limit updated successfully",
        "limit": _entry_payload(entry),
    }


@router.put("/limits/bulk")
def update_limits_bulk(body: BulkLimitUpdate, actor: AdminActor = Depends(require_admin)):
    if not body.limits:
        raise ValidationError("limits must be a non-empty array")

    updated, errors = quota_service.upsert_many([item.as_entry() for item in body.limits])
    logger.info(
        "[admin] limits bulk updated",
        extra={"actor_id": actor.actor_id, "updated": len(updated), "failed": len(errors)},
    )
    return {
        "success": True,
        "message": f"Updated {len(updated)} limit(s)",
        "updated": [_entry_payload(e) for e in updated],
        "errors": [
            {
                "planType": err["entry"].get("plan"),
                "featureName": err["entry"].get("feature"),
                "error": err["error"],
                "code": err["code"],
            }
            for err in errors
        ],
    }


@router.post("/limits/reset")
def reset_limits(actor: AdminActor = Depends(require_admin)):
    entries = quota_service.reset_to_defaults()
    logger.warning("[admin] limits reset to defaults", extra={"actor_id": actor.actor_id})
    return {
        "success": True,
        "message": "Limits reset to defaults",
        "limits": _grouped(entries),
    }


def _subscription_row(s: Subscription) -> Dict[str, Any]:
    return {
        "id": s.id,
        "userId": s.user_id,
        "stripeSubscriptionId": s.stripe_subscription_id,
        "stripeCustomerId": s.stripe_customer_id,
        "plan": s.plan.value,
        "status": s.status.value,
        "currentPeriodStart": s.current_period_start,
        "currentPeriodEnd": s.current_period_end,
        "cancelAtPeriodEnd": s.cancel_at_period_end,
        "canceledAt": s.canceled_at,
        "createdAt": s.created_at,
        "updatedAt": s.updated_at,
    }


def _require_subscription(subscription_id: int) -> Subscription:
    subscription = store.get_by_id(subscription_id)
    if not subscription:
        raise NotFoundError("Subscription not found")
    return subscription


@router.get("/subscriptions")
def list_subscriptions(
    status: Optional[str] = Query(None),
    plan: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_admin),
):
    rows = store.list_subscriptions(status=status, plan=plan, limit=limit, offset=offset)
    return {
        "success": True,
        "subscriptions": [_subscription_row(s) for s in rows],
        "limit": limit,
        "offset": offset,
    }


@router.get("/subscriptions/{subscription_id}")
def get_subscription(subscription_id: int, actor: AdminActor = Depends(require_admin)):
    subscription = _require_subscription(subscription_id)
    owner = get_user(subscription.user_id)
    payload = _subscription_row(subscription)
    payload["user"] = (
        {"userId": owner.user_id, "email": owner.email, "role": owner.role}
        if owner else None
    )
    return {"success": True, "subscription": payload}


@router.put("/subscriptions/{subscription_id}")
def update_subscription(
    subscription_id: int,
    body: SubscriptionUpdate,
    actor: AdminActor = Depends(require_admin),
):
    """
    Edit status, plan, period or cancel flag of a stored subscription.

    Errors:
        400: Invalid status, plan or period
        403: Downgrade blocked by the owner's usage (blockedFeatures, needsCleanup)
        404: Unknown subscription
    """
    updated = plan_change_service.admin_update_subscription(
        subscription_id,
        actor_id=actor.actor_id,
        status=body.status,
        plan=body.plan_type,
        current_period_start=body.current_period_start,
        current_period_end=body.current_period_end,
        cancel_at_period_end=body.cancel_at_period_end,
    )
    return {"success": True, "subscription": _subscription_row(updated)}


@router.get("/subscriptions/{subscription_id}/check-downgrade")
def check_subscription_downgrade(
    subscription_id: int,
    plan_type: str = Query(..., alias="planType"),
    actor: AdminActor = Depends(require_admin),
):
    """Read-only downgrade admission for the subscription's owner."""
    target = quota_service.parse_paid_plan(plan_type)
    subscription = _require_subscription(subscription_id)
    check = check_downgrade(subscription.user_id, target)
    return {
        "success": True,
        "subscriptionId": subscription.id,
        "currentPlan": subscription.plan.value,
        "direction": change_direction(subscription.plan, target).value,
        **check.to_dict(),
    }
