"""
heirloom/features/quotas/service.py

Quota table service.

Handles:
- Default quota seeding (personal, premium, ultimate)
- Limit lookup per (plan, feature); free resolves to 0
- Admin edits (single, bulk, reset to defaults)
- Boundary parsing of plan/feature strings
"""

from typing import Dict, List, Optional, Tuple, Union, Any
import logging
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from heirloom.core.config import settings
from heirloom.core.database import get_db_session, quota_entries, utc_now, as_utc
from heirloom.core.errors import InvalidQuotaError, UnknownFeatureError, UnknownPlanError
from heirloom.models.plan import (
    Plan,
    Feature,
    ResetCadence,
    PAID_PLANS,
    PLAN_RANK,
    UNLIMITED,
    MAX_LIMIT,
)
from heirloom.models.quota import QuotaEntry


logger = logging.getLogger(__name__)


# Default quotas per paid plan (-1 = unlimited)
DEFAULT_QUOTAS: Dict[Plan, Dict[Feature, int]] = {
    Plan.PERSONAL: {
        Feature.VOICE_CLONES: 1,
        Feature.AVATAR_GENERATIONS: 1,
        Feature.MEMORY_GRAPH_OPERATIONS: 1,
        Feature.INTERVIEW_SESSIONS: 1,
        Feature.MULTIMEDIA_UPLOADS: 1,
    },
    Plan.PREMIUM: {
        Feature.VOICE_CLONES: 20,
        Feature.AVATAR_GENERATIONS: 20,
        Feature.MEMORY_GRAPH_OPERATIONS: 200,
        Feature.INTERVIEW_SESSIONS: 50,
        Feature.MULTIMEDIA_UPLOADS: 100,
    },
    Plan.ULTIMATE: {
        Feature.VOICE_CLONES: UNLIMITED,
        Feature.AVATAR_GENERATIONS: UNLIMITED,
        Feature.MEMORY_GRAPH_OPERATIONS: UNLIMITED,
        Feature.INTERVIEW_SESSIONS: UNLIMITED,
        Feature.MULTIMEDIA_UPLOADS: UNLIMITED,
    },
}


def parse_plan(value: Union[str, Plan]) -> Plan:
    if isinstance(value, Plan):
        return value
    try:
        return Plan(str(value).strip().lower())
    except ValueError:
        raise UnknownPlanError(f"Unknown plan: {value}")


def parse_paid_plan(value: Union[str, Plan]) -> Plan:
    plan = parse_plan(value)
    if plan not in PAID_PLANS:
        raise UnknownPlanError(f"Plan {plan.value} has no quotas or price")
    return plan


def parse_feature(value: Union[str, Feature]) -> Feature:
    if isinstance(value, Feature):
        return value
    try:
        return Feature(str(value).strip())
    except ValueError:
        raise UnknownFeatureError(f"Unknown feature: {value}")


def validate_limit(limit: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(limit, bool) or not isinstance(limit, int):
        raise InvalidQuotaError(f"Limit must be an integer, got {limit!r}")
    if limit < UNLIMITED or limit > MAX_LIMIT:
        raise InvalidQuotaError(f"Limit must be between {UNLIMITED} and {MAX_LIMIT}")
    return limit


def default_limit(plan: Plan, feature: Feature) -> int:
    if plan == Plan.FREE:
        return 0
    return DEFAULT_QUOTAS[plan][feature]


def _row_to_entry(row) -> QuotaEntry:
    return QuotaEntry(
        plan=Plan(row.plan),
        feature=Feature(row.feature),
        limit=row.limit_value,
        reset_cadence=ResetCadence(row.reset_cadence),
        updated_at=as_utc(row.updated_at),
    )


def seed_quotas(overwrite: Optional[bool] = None) -> int:
    """
    Seed default quotas into database (idempotent).

    Missing rows are created. When `overwrite` is true (QUOTA_SEED_OVERWRITE,
    default on) existing rows are rewritten with the defaults too, so admin
    edits do not survive a restart.

    Returns:
        Number of rows inserted or rewritten
    """
    if overwrite is None:
        overwrite = settings.QUOTA_SEED_OVERWRITE

    changed = 0
    now = utc_now()
    with get_db_session() as session:
        for plan, limits in DEFAULT_QUOTAS.items():
            for feature, limit in limits.items():
                existing = session.execute(
                    select(quota_entries).where(
                        quota_entries.c.plan == plan.value,
                        quota_entries.c.feature == feature.value,
                    )
                ).first()

                if not existing:
                    session.execute(
                        insert(quota_entries).values(
                            plan=plan.value,
                            feature=feature.value,
                            limit_value=limit,
                            reset_cadence=ResetCadence.MONTHLY.value,
                            created_at=now,
                            updated_at=now,
                        )
                    )
                    changed += 1
                elif overwrite and (
                    existing.limit_value != limit
                    or existing.reset_cadence != ResetCadence.MONTHLY.value
                ):
                    session.execute(
                        update(quota_entries)
                        .where(quota_entries.c.id == existing.id)
                        .values(
                            limit_value=limit,
                            reset_cadence=ResetCadence.MONTHLY.value,
                            updated_at=now,
                        )
                    )
                    changed += 1

    logger.info("[quotas] seeded", extra={"rows_changed": changed, "overwrite": overwrite})
    return changed


def get_limit(plan: Union[str, Plan], feature: Union[str, Feature]) -> int:
    """
    Resolve the limit for (plan, feature).

    free short-circuits to 0 without a table read. A paid plan whose row is
    missing falls back to the seeded default.
    """
    plan = parse_plan(plan)
    feature = parse_feature(feature)
    if plan == Plan.FREE:
        return 0

    with get_db_session() as session:
        row = session.execute(
            select(quota_entries.c.limit_value).where(
                quota_entries.c.plan == plan.value,
                quota_entries.c.feature == feature.value,
            )
        ).first()

    if row is None:
        fallback = default_limit(plan, feature)
        logger.warning(
            "[quotas] missing quota row, using default",
            extra={"plan": plan.value, "feature": feature.value, "limit": fallback},
        )
        return fallback
    return row.limit_value


def get_limits_for_plan(plan: Union[str, Plan]) -> Dict[Feature, int]:
    plan = parse_plan(plan)
    if plan == Plan.FREE:
        return {feature: 0 for feature in Feature}

    with get_db_session() as session:
        rows = session.execute(
            select(quota_entries).where(quota_entries.c.plan == plan.value)
        ).all()

    stored = {row.feature: row.limit_value for row in rows}
    return {
        feature: stored.get(feature.value, default_limit(plan, feature))
        for feature in Feature
    }


def list_all() -> List[QuotaEntry]:
    """All quota rows ordered by plan rank then feature."""
    with get_db_session() as session:
        rows = session.execute(select(quota_entries)).all()

    entries = [_row_to_entry(row) for row in rows if row.plan in Plan._value2member_map_]
    entries.sort(key=lambda e: (PLAN_RANK[e.plan], e.feature.value))
    return entries


def upsert(
    plan: Union[str, Plan],
    feature: Union[str, Feature],
    limit: int,
    reset_cadence: Optional[Union[str, ResetCadence]] = None,
) -> QuotaEntry:
    """
    Set the limit for (plan, feature), creating the row if needed.

    Raises:
        UnknownPlanError: plan is not a paid plan
        UnknownFeatureError: feature is not known
        InvalidQuotaError: limit outside [-1, 1_000_000] or bad cadence
    """
    plan = parse_paid_plan(plan)
    feature = parse_feature(feature)
    limit = validate_limit(limit)
    cadence = None
    if reset_cadence is not None:
        try:
            cadence = ResetCadence(reset_cadence)
        except ValueError:
            raise InvalidQuotaError(f"Unknown reset cadence: {reset_cadence}")

    now = utc_now()
    try:
        _write_entry(plan, feature, limit, cadence, now)
    except IntegrityError:
        # Lost an insert race; the row exists now
        _write_entry(plan, feature, limit, cadence, now)

    logger.info(
        "[quotas] limit updated",
        extra={"plan": plan.value, "feature": feature.value, "limit": limit},
    )
    with get_db_session() as session:
        row = session.execute(
            select(quota_entries).where(
                quota_entries.c.plan == plan.value,
                quota_entries.c.feature == feature.value,
            )
        ).first()
    return _row_to_entry(row)


def _write_entry(plan: Plan, feature: Feature, limit: int, cadence: Optional[ResetCadence], now) -> None:
    with get_db_session() as session:
        existing = session.execute(
            select(quota_entries)
            .where(
                quota_entries.c.plan == plan.value,
                quota_entries.c.feature == feature.value,
            )
            .with_for_update()
        ).first()

        if existing:
            values = {"limit_value": limit, "updated_at": now}
            if cadence is not None:
                values["reset_cadence"] = cadence.value
            session.execute(
                update(quota_entries).where(quota_entries.c.id == existing.id).values(**values)
            )
        else:
            session.execute(
                insert(quota_entries).values(
                    plan=plan.value,
                    feature=feature.value,
                    limit_value=limit,
                    reset_cadence=(cadence or ResetCadence.MONTHLY).value,
                    created_at=now,
                    updated_at=now,
                )
            )


def upsert_many(entries: List[Dict[str, Any]]) -> Tuple[List[QuotaEntry], List[Dict[str, Any]]]:
    """
    Apply several quota edits. Each entry is independent; failures are
    collected as {entry, error, code} instead of raised.
    """
    updated: List[QuotaEntry] = []
    errors: List[Dict[str, Any]] = []
    for entry in entries:
        try:
            updated.append(
                upsert(
                    entry.get("plan"),
                    entry.get("feature"),
                    entry.get("limit"),
                    entry.get("reset_cadence"),
                )
            )
        except (InvalidQuotaError, UnknownPlanError, UnknownFeatureError) as e:
            errors.append({"entry": entry, "error": e.message, "code": e.code})
    return updated, errors


def reset_to_defaults() -> List[QuotaEntry]:
    """Overwrite every quota row with its seeded default."""
    seed_quotas(overwrite=True)
    logger.info("[quotas] reset to defaults")
    return list_all()
