"""
heirloom/models/plan.py

Plans and gated features.

Plans are capability tiers sold through Stripe. `free` is implicit: a user
with no live subscription is on `free` and it never appears in the quota
table or in Stripe.
"""

from enum import Enum
from typing import Dict, Tuple


UNLIMITED = -1
MAX_LIMIT = 1_000_000


class Plan(str, Enum):
    FREE = "free"
    PERSONAL = "personal"
    PREMIUM = "premium"
    ULTIMATE = "ultimate"


class Feature(str, Enum):
    VOICE_CLONES = "voice_clones"
    AVATAR_GENERATIONS = "avatar_generations"
    MEMORY_GRAPH_OPERATIONS = "memory_graph_operations"
    INTERVIEW_SESSIONS = "interview_sessions"
    MULTIMEDIA_UPLOADS = "multimedia_uploads"

    @property
    def label(self) -> str:
        return FEATURE_LABELS[self]


class ResetCadence(str, Enum):
    MONTHLY = "monthly"
    TOTAL = "total"


class ChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"


FEATURE_LABELS: Dict[Feature, str] = {
    Feature.VOICE_CLONES: "voice clones",
    Feature.AVATAR_GENERATIONS: "avatar generations",
    Feature.MEMORY_GRAPH_OPERATIONS: "memory graph operations",
    Feature.INTERVIEW_SESSIONS: "interview sessions",
    Feature.MULTIMEDIA_UPLOADS: "multimedia uploads",
}

# Paid plans, lowest tier first
PAID_PLANS: Tuple[Plan, ...] = (Plan.PERSONAL, Plan.PREMIUM, Plan.ULTIMATE)

PLAN_RANK: Dict[Plan, int] = {
    Plan.FREE: 0,
    Plan.PERSONAL: 1,
    Plan.PREMIUM: 2,
    Plan.ULTIMATE: 3,
}


def change_direction(old_plan: Plan, new_plan: Plan) -> ChangeDirection:
    """Classify a move between plans by rank."""
    old_rank = PLAN_RANK[Plan(old_plan)]
    new_rank = PLAN_RANK[Plan(new_plan)]
    if new_rank > old_rank:
        return ChangeDirection.UPGRADE
    if new_rank < old_rank:
        return ChangeDirection.DOWNGRADE
    return ChangeDirection.LATERAL


def is_unlimited(limit: int) -> bool:
    return limit == UNLIMITED
