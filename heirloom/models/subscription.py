"""
heirloom/models/subscription.py

Subscription models mirrored from Stripe.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict

from heirloom.models.plan import Plan


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    INACTIVE = "inactive"


# Statuses that grant the subscription's plan
LIVE_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})


class Subscription(BaseModel):
    """A stored subscription row."""
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: str
    plan: Plan
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_STATUSES


class SubscriptionState(BaseModel):
    """Desired state for an upsert keyed by stripe_subscription_id."""
    model_config = ConfigDict(frozen=True)

    user_id: str
    stripe_subscription_id: str
    plan: Plan
    status: SubscriptionStatus
    stripe_customer_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    provider_snapshot: Optional[Dict[str, Any]] = None
