from datetime import datetime
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict

from heirloom.models.plan import Plan, Feature


class Period(BaseModel):
    """A billing period: first and last instant of a UTC calendar month."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


class UsageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    feature: Feature
    period_start: datetime
    period_end: datetime
    count: int
    meta: Dict[str, Any] = {}
    updated_at: Optional[datetime] = None


class FeatureUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int
    current_usage: int
    remaining: Union[int, str]
    unlimited: bool
    percent: int


class UsageStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan: Plan
    period_start: datetime
    period_end: datetime
    features: Dict[str, FeatureUsage]
