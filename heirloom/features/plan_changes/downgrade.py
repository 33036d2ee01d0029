"""
Downgrade admission.

A downgrade is blocked while current-period usage of any feature exceeds
the target plan's limit. Read-only; safe to call repeatedly as a preview.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from heirloom.features.quotas.service import get_limits_for_plan, parse_plan
from heirloom.features.usage.service import get_period_usage
from heirloom.models.plan import Feature, Plan, UNLIMITED


@dataclass(frozen=True)
class Overage:
    feature: Feature
    current_usage: int
    new_limit: int
    overage: int
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature": self.feature.value,
            "currentUsage": self.current_usage,
            "newLimit": self.new_limit,
            "overage": self.overage,
            "message": self.message,
        }


@dataclass(frozen=True)
class DowngradeCheck:
    target_plan: Plan
    overages: List[Overage] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return not self.overages

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "targetPlan": self.target_plan.value,
            "overages": [o.to_dict() for o in self.overages],
        }


def overage_message(feature: Feature, current_usage: int, new_limit: int) -> str:
    return (
        f"You have used {current_usage} {feature.label} this month but the new plan "
        f"allows {new_limit}. Remove {current_usage - new_limit} before downgrading."
    )


def check_downgrade(
    user_id: str,
    target_plan: Union[str, Plan],
    now: Optional[datetime] = None,
) -> DowngradeCheck:
    target = parse_plan(target_plan)
    limits = get_limits_for_plan(target)
    usage = get_period_usage(user_id, now=now)

    overages = []
    for feature in Feature:
        new_limit = limits[feature]
        if new_limit == UNLIMITED:
            continue
        current = usage[feature]
        if current > new_limit:
            overages.append(
                Overage(
                    feature=feature,
                    current_usage=current,
                    new_limit=new_limit,
                    overage=current - new_limit,
                    message=overage_message(feature, current, new_limit),
                )
            )
    return DowngradeCheck(target_plan=target, overages=overages)
