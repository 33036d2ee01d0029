"""
heirloom/features/usage/service.py

Usage ledger service.

Handles:
- Per (user, feature, period) counters with locked increments
- Refunds for undone operations (clamped at zero)
- Usage stats against the user's current plan
- Plan change audit trail on current-period records
"""

from datetime import datetime
from typing import Dict, Optional, Any, Union
import logging
import math
from sqlalchemy import select, insert, update, case
from sqlalchemy.exc import IntegrityError

from heirloom.core.database import get_db_session, usage_records, utc_now, as_utc
from heirloom.core.errors import QuotaExceededError
from heirloom.features.quotas.service import parse_feature, parse_plan, get_limits_for_plan
from heirloom.features.usage.period import current_period
from heirloom.models.plan import Feature, Plan, UNLIMITED
from heirloom.models.usage import FeatureUsage, Period, UsageRecord, UsageStats


logger = logging.getLogger(__name__)

# Consumed sessions stay consumed even if the interview is later discarded
NON_REFUNDABLE_FEATURES = frozenset({Feature.INTERVIEW_SESSIONS})

PLAN_CHANGES_KEY = "plan_changes"


def _row_to_record(row) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        feature=Feature(row.feature),
        period_start=as_utc(row.period_start),
        period_end=as_utc(row.period_end),
        count=row.count,
        meta=dict(row.meta or {}),
        updated_at=as_utc(row.updated_at),
    )


def _record_clause(user_id: str, feature: Feature, period: Period):
    return (
        usage_records.c.user_id == user_id,
        usage_records.c.feature == feature.value,
        usage_records.c.period_start == period.start,
    )


def _merge_meta(existing: Optional[Dict[str, Any]], incoming: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    merged = dict(existing or {})
    if incoming:
        for key, value in incoming.items():
            if key == PLAN_CHANGES_KEY:
                continue
            merged[key] = value
    return merged


def get_usage(user_id: str, feature: Union[str, Feature], now: Optional[datetime] = None) -> int:
    """Current-period count for (user, feature); 0 when no record exists."""
    feature = parse_feature(feature)
    period = current_period(now)
    with get_db_session() as session:
        row = session.execute(
            select(usage_records.c.count).where(*_record_clause(user_id, feature, period))
        ).first()
    return row.count if row else 0


def get_period_usage(user_id: str, now: Optional[datetime] = None) -> Dict[Feature, int]:
    """Current-period counts for every feature (missing records count as 0)."""
    period = current_period(now)
    with get_db_session() as session:
        rows = session.execute(
            select(usage_records.c.feature, usage_records.c.count).where(
                usage_records.c.user_id == user_id,
                usage_records.c.period_start == period.start,
            )
        ).all()
    counts = {row.feature: row.count for row in rows}
    return {feature: counts.get(feature.value, 0) for feature in Feature}


def get_record(user_id: str, feature: Union[str, Feature], now: Optional[datetime] = None) -> Optional[UsageRecord]:
    feature = parse_feature(feature)
    period = current_period(now)
    with get_db_session() as session:
        row = session.execute(
            select(usage_records).where(*_record_clause(user_id, feature, period))
        ).first()
    return _row_to_record(row) if row else None


def record_usage(
    user_id: str,
    feature: Union[str, Feature],
    metadata: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    max_allowed: Optional[int] = None,
) -> UsageRecord:
    """
    Increment the current-period counter for (user, feature) by one.

    The row is locked for the read-modify-write; a concurrent first insert
    surfaces as a unique violation and is retried as an update. Metadata is
    merged into the record; the plan change trail is never overwritten.

    With max_allowed set, the increment only happens while count < max_allowed
    and QuotaExceededError is raised otherwise.
    """
    feature = parse_feature(feature)
    period = current_period(now)
    try:
        record = _increment(user_id, feature, period, metadata, max_allowed)
    except IntegrityError:
        record = _increment(user_id, feature, period, metadata, max_allowed)

    logger.info(
        "[usage] recorded",
        extra={"user_id": user_id, "feature": feature.value, "count": record.count},
    )
    return record


def _increment(
    user_id: str,
    feature: Feature,
    period: Period,
    metadata: Optional[Dict[str, Any]],
    max_allowed: Optional[int],
) -> UsageRecord:
    now = utc_now()
    with get_db_session() as session:
        existing = session.execute(
            select(usage_records)
            .where(*_record_clause(user_id, feature, period))
            .with_for_update()
        ).first()

        if existing is None:
            if max_allowed is not None and max_allowed <= 0:
                raise QuotaExceededError(
                    f"Limit reached for {feature.label}",
                    extra={"feature": feature.value, "limit": max_allowed, "current_usage": 0},
                )
            session.execute(
                insert(usage_records).values(
                    user_id=user_id,
                    feature=feature.value,
                    period_start=period.start,
                    period_end=period.end,
                    count=1,
                    meta=_merge_meta(None, metadata),
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            stmt = update(usage_records).where(usage_records.c.id == existing.id)
            if max_allowed is not None:
                stmt = stmt.where(usage_records.c.count < max_allowed)
            result = session.execute(
                stmt.values(
                    count=usage_records.c.count + 1,
                    meta=_merge_meta(existing.meta, metadata),
                    updated_at=now,
                )
            )
            if result.rowcount == 0:
                raise QuotaExceededError(
                    f"Limit reached for {feature.label}",
                    extra={
                        "feature": feature.value,
                        "limit": max_allowed,
                        "current_usage": existing.count,
                    },
                )

        row = session.execute(
            select(usage_records).where(*_record_clause(user_id, feature, period))
        ).first()
        return _row_to_record(row)


def refund_usage(
    user_id: str,
    feature: Union[str, Feature],
    now: Optional[datetime] = None,
) -> Optional[UsageRecord]:
    """
    Decrement the current-period counter by one, never below zero.

    Never creates a record. Non-refundable features are left untouched.
    """
    feature = parse_feature(feature)
    if feature in NON_REFUNDABLE_FEATURES:
        logger.info(
            "[usage] refund skipped for non-refundable feature",
            extra={"user_id": user_id, "feature": feature.value},
        )
        return None

    period = current_period(now)
    with get_db_session() as session:
        result = session.execute(
            update(usage_records)
            .where(*_record_clause(user_id, feature, period))
            .values(
                count=case((usage_records.c.count > 0, usage_records.c.count - 1), else_=0),
                updated_at=utc_now(),
            )
        )
        if result.rowcount == 0:
            return None
        row = session.execute(
            select(usage_records).where(*_record_clause(user_id, feature, period))
        ).first()
        record = _row_to_record(row)

    logger.info(
        "[usage] refunded",
        extra={"user_id": user_id, "feature": feature.value, "count": record.count},
    )
    return record


def feature_usage(limit: int, usage: int) -> FeatureUsage:
    if limit == UNLIMITED:
        return FeatureUsage(
            limit=limit,
            current_usage=usage,
            remaining="unlimited",
            unlimited=True,
            percent=0,
        )
    if limit == 0:
        percent = 100 if usage > 0 else 0
    else:
        percent = min(100, math.floor(usage * 100 / limit + 0.5))
    return FeatureUsage(
        limit=limit,
        current_usage=usage,
        remaining=max(0, limit - usage),
        unlimited=False,
        percent=percent,
    )


def get_usage_stats(user_id: str, now: Optional[datetime] = None) -> UsageStats:
    """Limits, usage and remaining headroom for every feature on the user's plan."""
    from heirloom.features.entitlements.service import plan_for

    plan = plan_for(user_id)
    period = current_period(now)
    limits = get_limits_for_plan(plan)
    usage = get_period_usage(user_id, now=now)
    return UsageStats(
        plan=plan,
        period_start=period.start,
        period_end=period.end,
        features={
            feature.value: feature_usage(limits[feature], usage[feature])
            for feature in Feature
        },
    )


def annotate_plan_change(
    user_id: str,
    old_plan: Union[str, Plan],
    new_plan: Union[str, Plan],
    change_key: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Append a plan change entry to every current-period record of the user.

    Counts are untouched and no records are created. An entry carrying the
    same change_key is not appended twice.

    Returns:
        Number of records annotated
    """
    old_plan = parse_plan(old_plan)
    new_plan = parse_plan(new_plan)
    period = current_period(now)
    changed_at = utc_now().isoformat()
    new_limits = get_limits_for_plan(new_plan)
    annotated = 0

    with get_db_session() as session:
        rows = session.execute(
            select(usage_records)
            .where(
                usage_records.c.user_id == user_id,
                usage_records.c.period_start == period.start,
            )
            .with_for_update()
        ).all()

        for row in rows:
            meta = dict(row.meta or {})
            trail = list(meta.get(PLAN_CHANGES_KEY) or [])
            if change_key and any(entry.get("change_key") == change_key for entry in trail):
                continue
            trail.append(
                {
                    "from": old_plan.value,
                    "to": new_plan.value,
                    "changed_at": changed_at,
                    "usage_at_change": row.count,
                    "new_limit": new_limits[Feature(row.feature)],
                    "change_key": change_key,
                }
            )
            meta[PLAN_CHANGES_KEY] = trail
            session.execute(
                update(usage_records)
                .where(usage_records.c.id == row.id)
                .values(meta=meta, updated_at=utc_now())
            )
            annotated += 1

    return annotated
