"""
heirloom/features/usage/period.py

Billing period clock. Usage periods are UTC calendar months, independent of
the subscription's Stripe billing cycle.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional

from heirloom.models.usage import Period


def _to_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def current_period(now: Optional[datetime] = None) -> Period:
    """
    Return the UTC calendar month containing `now`.

    start is the first instant of the month, end the last microsecond.
    Naive datetimes are treated as UTC.
    """
    moment = _to_utc(now) if now is not None else datetime.now(timezone.utc)
    start = moment.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return Period(start=start, end=next_start - timedelta(microseconds=1))


def next_period(period: Period) -> Period:
    return current_period(period.end + timedelta(microseconds=1))
