"""
heirloom/features/plans/catalog.py

Public plan catalog. Informational only: prices are charged by Stripe and
limits come from the quota table.
"""

from typing import Any, Dict, List

from heirloom.features.quotas.service import get_limits_for_plan
from heirloom.models.plan import Feature, Plan, PAID_PLANS, UNLIMITED


PLAN_CATALOG: Dict[Plan, Dict[str, Any]] = {
    Plan.PERSONAL: {
        "name": "Personal",
        "price": 9.99,
        "currency": "AUD",
        "highlights": [
            "Basic AI chat + memory",
            "Basic storage package",
            "Standard support",
        ],
    },
    Plan.PREMIUM: {
        "name": "Premium",
        "price": 24.99,
        "currency": "AUD",
        "highlights": [
            "Everything in Personal",
            "Full memory graph",
            "Advanced AI features",
            "Priority processing",
            "Larger storage",
        ],
    },
    Plan.ULTIMATE: {
        "name": "Ultimate",
        "price": 44.99,
        "currency": "AUD",
        "highlights": [
            "Everything in Premium",
            "Highest priority GPU queue",
            "Full access to all features",
            "Maximum storage",
            "Future premium modules included",
        ],
    },
}


def _limit_line(feature: Feature, limit: int) -> str:
    if limit == UNLIMITED:
        return f"Unlimited {feature.label}"
    return f"{limit} {feature.label} per month"


def list_plans() -> Dict[str, Dict[str, Any]]:
    """Paid plans keyed by plan id, with feature bullets and current limits."""
    plans: Dict[str, Dict[str, Any]] = {}
    for plan in PAID_PLANS:
        entry = PLAN_CATALOG[plan]
        limits = get_limits_for_plan(plan)
        limit_lines: List[str] = [_limit_line(feature, limits[feature]) for feature in Feature]
        plans[plan.value] = {
            "name": entry["name"],
            "price": entry["price"],
            "currency": entry["currency"],
            "features": list(entry["highlights"]) + limit_lines,
            "limits": {feature.value: limits[feature] for feature in Feature},
        }
    return plans
