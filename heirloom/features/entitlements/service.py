"""
heirloom/features/entitlements/service.py

Entitlement resolution and admission for gated features.

Handles:
- plan_for: the plan a user is entitled to right now
- check_limit: allow/deny one more consumption, as a verdict value
- require_feature / gated_feature: helpers for gated endpoints

check_limit never raises. Anything unexpected is logged and returned as an
AdmissionError verdict, which denies (fail closed).
"""

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Union
import logging

from heirloom.core.errors import FeatureAccessDenied
from heirloom.features.quotas.service import get_limit, parse_feature
from heirloom.features.subscriptions import store
from heirloom.features.usage.service import get_usage, record_usage
from heirloom.models.plan import Feature, Plan, UNLIMITED


logger = logging.getLogger(__name__)


class DenialReason(str, Enum):
    SUBSCRIPTION_REQUIRED = "subscription_required"
    LIMIT_REACHED = "limit_reached"


SUBSCRIPTION_REQUIRED_MESSAGE = "Subscription required to use this feature"


@dataclass(frozen=True)
class Allowed:
    plan: Plan
    feature: Feature
    limit: int
    current_usage: int
    remaining: Union[int, str]

    allowed = True
    reason = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED


@dataclass(frozen=True)
class NeedsSubscription:
    feature: Optional[Feature] = None
    plan: Plan = Plan.FREE
    message: str = SUBSCRIPTION_REQUIRED_MESSAGE

    allowed = False
    reason = DenialReason.SUBSCRIPTION_REQUIRED.value


@dataclass(frozen=True)
class LimitReached:
    plan: Plan
    feature: Feature
    limit: int
    current_usage: int
    message: str

    allowed = False
    reason = DenialReason.LIMIT_REACHED.value
    remaining = 0


@dataclass(frozen=True)
class AdmissionError:
    """Admission could not be decided; treated as a denial."""
    error: str
    feature: Optional[str] = None
    message: str = SUBSCRIPTION_REQUIRED_MESSAGE

    allowed = False
    reason = DenialReason.SUBSCRIPTION_REQUIRED.value


Verdict = Union[Allowed, NeedsSubscription, LimitReached, AdmissionError]


def plan_for(user_id: str) -> Plan:
    """
    Resolve the user's effective plan from their most recent subscription.

    No subscription, or one that is not active/trialing, means free.
    cancel_at_period_end does not matter until Stripe ends the subscription.
    """
    subscription = store.get_latest(user_id)
    if subscription is None or not subscription.is_live:
        return Plan.FREE
    return subscription.plan


def limit_reached_message(feature: Feature, limit: int) -> str:
    return f"You have reached your {feature.label} limit ({limit}). Upgrade your plan to continue."


def check_limit(user_id: str, feature: Union[str, Feature]) -> Verdict:
    """Decide whether the user may consume one more unit of `feature`."""
    try:
        feature = parse_feature(feature)
        plan = plan_for(user_id)

        if plan == Plan.FREE:
            logger.info(
                "[admission] subscription required",
                extra={"user_id": user_id, "feature": feature.value},
            )
            return NeedsSubscription(feature=feature)

        limit = get_limit(plan, feature)
        current_usage = get_usage(user_id, feature)

        if limit == UNLIMITED:
            return Allowed(
                plan=plan,
                feature=feature,
                limit=limit,
                current_usage=current_usage,
                remaining="unlimited",
            )

        if current_usage < limit:
            return Allowed(
                plan=plan,
                feature=feature,
                limit=limit,
                current_usage=current_usage,
                remaining=limit - current_usage,
            )

        logger.warning(
            "[admission] limit reached",
            extra={
                "user_id": user_id,
                "plan": plan.value,
                "feature": feature.value,
                "limit": limit,
                "current_usage": current_usage,
            },
        )
        return LimitReached(
            plan=plan,
            feature=feature,
            limit=limit,
            current_usage=current_usage,
            message=limit_reached_message(feature, limit),
        )
    except Exception as e:
        logger.exception(
            "[admission] check failed, denying",
            extra={"user_id": user_id, "feature": str(getattr(feature, "value", feature))},
        )
        return AdmissionError(error=str(e), feature=str(getattr(feature, "value", feature)))


def denial_details(verdict: Verdict) -> Dict[str, Any]:
    """Numeric context carried on a denial response."""
    details: Dict[str, Any] = {"reason": verdict.reason}
    if isinstance(verdict, LimitReached):
        details.update(
            {
                "limit": verdict.limit,
                "current_usage": verdict.current_usage,
                "remaining": 0,
                "plan": verdict.plan.value,
            }
        )
    elif isinstance(verdict, NeedsSubscription):
        details["plan"] = verdict.plan.value
    feature = getattr(verdict, "feature", None)
    if feature is not None:
        details["feature"] = getattr(feature, "value", feature)
    return details


def require_feature(user_id: str, feature: Union[str, Feature]) -> Allowed:
    """
    Admission for a gated endpoint.

    Raises:
        FeatureAccessDenied: 403 carrying reason, message and the numeric context
    """
    verdict = check_limit(user_id, feature)
    if verdict.allowed:
        return verdict

    details = denial_details(verdict)
    raise FeatureAccessDenied(
        verdict.message,
        reason=verdict.reason,
        extra=details,
    )


@contextmanager
def gated_feature(
    user_id: str,
    feature: Union[str, Feature],
    metadata: Optional[Dict[str, Any]] = None,
) -> Iterator[Allowed]:
    """
    Check, perform, record.

    Usage:
        with gated_feature(user_id, "interview_sessions", {"interview_id": iid}):
            start_interview(...)

    Usage is recorded only when the block completes without an exception.
    """
    verdict = require_feature(user_id, feature)
    yield verdict
    record_usage(user_id, verdict.feature, metadata=metadata)
