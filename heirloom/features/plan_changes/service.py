"""
Plan change coordinator.

change_plan(user_id, new_plan):
1. Require an active subscription
2. Same plan -> unchanged
3. Direction by plan rank
4. Downgrades pass downgrade admission first; blocked -> no gateway call
5. Swap the Stripe line item (prorated)
6. Mirror the returned subscription into the store
7. Annotate current-period usage records (best effort, idempotent)
8. Emit plan.changed

admin_update_subscription(subscription_id, ...) is the operator override: it
edits the stored row directly, with the same downgrade admission and usage
annotation but no gateway call.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Union
from uuid import uuid4
import logging

from heirloom.core.errors import DowngradeBlockedError, NoActiveSubscriptionError, NotFoundError
from heirloom.core.logging import log_event
from heirloom.features.billing import service as billing_service
from heirloom.features.plan_changes.downgrade import Overage, check_downgrade
from heirloom.features.quotas.service import parse_paid_plan
from heirloom.features.subscriptions import store
from heirloom.features.usage.service import annotate_plan_change
from heirloom.models.plan import ChangeDirection, Plan, change_direction
from heirloom.models.subscription import Subscription


logger = logging.getLogger(__name__)

CHANGED = "changed"
UNCHANGED = "unchanged"
DOWNGRADE_BLOCKED = "downgrade_blocked"

DOWNGRADE_BLOCKED_MESSAGE = (
    "Current usage exceeds the limits of the selected plan. "
    "Reduce usage of the listed features before downgrading."
)


@dataclass(frozen=True)
class ChangeResult:
    status: str
    old_plan: Plan
    new_plan: Plan
    direction: ChangeDirection
    subscription: Optional[Subscription] = None
    overages: List[Overage] = field(default_factory=list)
    change_key: Optional[str] = None


def change_plan(user_id: str, new_plan: Union[str, Plan]) -> ChangeResult:
    """
    Move the user's active subscription to `new_plan`.

    Raises:
        UnknownPlanError: new_plan is not a paid plan
        NoActiveSubscriptionError: the user has nothing to change
        BillingProviderError: Stripe rejected the change (store untouched)
    """
    target = parse_paid_plan(new_plan)
    subscription = store.get_active(user_id)
    if not subscription:
        raise NoActiveSubscriptionError("No active subscription to change", status_code=409)

    current = subscription.plan
    direction = change_direction(current, target)
    if current == target:
        return ChangeResult(
            status=UNCHANGED,
            old_plan=current,
            new_plan=target,
            direction=direction,
            subscription=subscription,
        )

    if direction == ChangeDirection.DOWNGRADE:
        check = check_downgrade(user_id, target)
        if not check.allowed:
            logger.warning(
                "[plan_changes] downgrade blocked",
                extra={
                    "user_id": user_id,
                    "from_plan": current.value,
                    "to_plan": target.value,
                    "blocked_features": [o.feature.value for o in check.overages],
                },
            )
            return ChangeResult(
                status=DOWNGRADE_BLOCKED,
                old_plan=current,
                new_plan=target,
                direction=direction,
                subscription=subscription,
                overages=check.overages,
            )

    provider = billing_service.require_provider()
    price_id = billing_service.get_price_for_plan(target)
    payload = provider.change_line_item(subscription.stripe_subscription_id, price_id)

    updated = store.upsert_by_provider_id(
        billing_service.subscription_state_from_payload(payload, user_id, plan=target)
    )

    change_key = uuid4().hex
    try:
        annotate_plan_change(user_id, current, target, change_key=change_key)
    except Exception:
        # The subscription already changed; the annotation is audit only
        logger.exception(
            "[plan_changes] usage annotation failed",
            extra={"user_id": user_id, "change_key": change_key},
        )

    log_event(
        "info",
        "plan.changed",
        user_id=user_id,
        event_type="plan.changed",
        extra={
            "from_plan": current.value,
            "to_plan": target.value,
            "direction": direction.value,
            "change_key": change_key,
        },
    )
    return ChangeResult(
        status=CHANGED,
        old_plan=current,
        new_plan=target,
        direction=direction,
        subscription=updated,
        change_key=change_key,
    )


def admin_update_subscription(
    subscription_id: int,
    *,
    actor_id: str,
    status: Optional[str] = None,
    plan: Optional[str] = None,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
) -> Subscription:
    """
    Operator override of a stored subscription (no Stripe call).

    A plan change to a lower tier passes downgrade admission against the
    owner's current usage first; usage records are annotated afterwards.

    Raises:
        NotFoundError: no row with that id
        ValidationError: invalid status, plan or period
        DowngradeBlockedError: usage exceeds the target plan's limits
    """
    subscription = store.get_by_id(subscription_id)
    if not subscription:
        raise NotFoundError("Subscription not found")

    new_status = store.parse_status(status) if status is not None else None
    target = parse_paid_plan(plan) if plan is not None else None
    old_plan = subscription.plan
    plan_changed = target is not None and target != old_plan

    if plan_changed and change_direction(old_plan, target) == ChangeDirection.DOWNGRADE:
        check = check_downgrade(subscription.user_id, target)
        if not check.allowed:
            logger.warning(
                "[plan_changes] admin downgrade blocked",
                extra={
                    "actor_id": actor_id,
                    "subscription_id": subscription_id,
                    "blocked_features": [o.feature.value for o in check.overages],
                },
            )
            raise DowngradeBlockedError(
                DOWNGRADE_BLOCKED_MESSAGE,
                overages=[o.to_dict() for o in check.overages],
            )

    updated = store.apply_local_update(
        subscription_id,
        status=new_status,
        plan=target,
        current_period_start=current_period_start,
        current_period_end=current_period_end,
        cancel_at_period_end=cancel_at_period_end,
    )

    if plan_changed:
        change_key = uuid4().hex
        try:
            annotate_plan_change(subscription.user_id, old_plan, target, change_key=change_key)
        except Exception:
            logger.exception(
                "[plan_changes] usage annotation failed",
                extra={"user_id": subscription.user_id, "change_key": change_key},
            )
        log_event(
            "info",
            "plan.changed",
            user_id=subscription.user_id,
            event_type="plan.changed",
            extra={
                "from_plan": old_plan.value,
                "to_plan": target.value,
                "source": "admin",
                "actor_id": actor_id,
                "change_key": change_key,
            },
        )

    logger.info(
        "[plan_changes] subscription updated by admin",
        extra={"actor_id": actor_id, "subscription_id": subscription_id},
    )
    return updated
