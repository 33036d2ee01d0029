"""
heirloom/models/quota.py

QuotaEntry: the limit a plan grants for one feature.
"""

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

from heirloom.models.plan import Plan, Feature, ResetCadence, UNLIMITED


class QuotaEntry(BaseModel):
    """
    One row of the quota table.

    - limit: non-negative count per period, or -1 for unlimited
    - reset_cadence: monthly (per calendar month) or total (lifetime)
    """
    model_config = ConfigDict(frozen=True)

    plan: Plan
    feature: Feature
    limit: int
    reset_cadence: ResetCadence = ResetCadence.MONTHLY
    updated_at: Optional[datetime] = None

    @property
    def unlimited(self) -> bool:
        return self.limit == UNLIMITED
