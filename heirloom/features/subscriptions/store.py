"""
heirloom/features/subscriptions/store.py

Subscription store: the local mirror of Stripe subscriptions.

Rows are keyed by stripe_subscription_id. Writes come from the webhook
ingestor and from user-initiated lifecycle calls that mirror the gateway
response. A user has at most one active/trialing row at a time.
"""

from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Union
import logging
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from heirloom.core.database import get_db_session, subscriptions, utc_now, as_utc
from heirloom.core.errors import ValidationError
from heirloom.models.plan import Plan
from heirloom.models.subscription import (
    LIVE_STATUSES,
    Subscription,
    SubscriptionState,
    SubscriptionStatus,
)


logger = logging.getLogger(__name__)

S = SubscriptionStatus

# Transitions Stripe is expected to drive. The store mirrors the provider and
# only logs an unexpected transition.
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.INCOMPLETE: frozenset({S.ACTIVE, S.TRIALING, S.INCOMPLETE_EXPIRED, S.CANCELED}),
    S.TRIALING: frozenset({S.ACTIVE, S.PAST_DUE, S.CANCELED, S.INACTIVE}),
    S.ACTIVE: frozenset({S.PAST_DUE, S.CANCELED, S.INACTIVE}),
    S.PAST_DUE: frozenset({S.ACTIVE, S.UNPAID, S.CANCELED}),
    S.UNPAID: frozenset({S.ACTIVE, S.CANCELED}),
    S.INACTIVE: frozenset({S.ACTIVE, S.TRIALING, S.CANCELED}),
    S.CANCELED: frozenset(),
    S.INCOMPLETE_EXPIRED: frozenset(),
}


def coerce_status(value: Optional[Union[str, SubscriptionStatus]]) -> SubscriptionStatus:
    """Map a provider status onto the closed set; unknown values become inactive."""
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(str(value))
    except ValueError:
        logger.warning("[subscriptions] unknown status coerced to inactive", extra={"raw_status": value})
        return SubscriptionStatus.INACTIVE


def is_expected_transition(old: SubscriptionStatus, new: SubscriptionStatus) -> bool:
    return old == new or new in ALLOWED_TRANSITIONS.get(old, frozenset())


def _row_to_subscription(row) -> Subscription:
    return Subscription(
        id=row.id,
        user_id=row.user_id,
        stripe_customer_id=row.stripe_customer_id,
        stripe_subscription_id=row.stripe_subscription_id,
        plan=Plan(row.plan),
        status=coerce_status(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        canceled_at=as_utc(row.canceled_at),
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
    )


def get_latest(user_id: str) -> Optional[Subscription]:
    """Most recently created subscription row for the user, any status."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
            .limit(1)
        ).first()
    return _row_to_subscription(row) if row else None


def get_active(user_id: str) -> Optional[Subscription]:
    """The user's active/trialing subscription, if any."""
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions)
            .where(
                subscriptions.c.user_id == user_id,
                subscriptions.c.status.in_([s.value for s in LIVE_STATUSES]),
            )
            .order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
            .limit(1)
        ).first()
    return _row_to_subscription(row) if row else None


def get_by_provider_id(stripe_subscription_id: str) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(
            select(subscriptions).where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
        ).first()
    return _row_to_subscription(row) if row else None


def get_by_id(subscription_id: int) -> Optional[Subscription]:
    with get_db_session() as session:
        row = session.execute(select(subscriptions).where(subscriptions.c.id == subscription_id)).first()
    return _row_to_subscription(row) if row else None


def parse_status(value: Union[str, SubscriptionStatus]) -> SubscriptionStatus:
    """Strict counterpart of coerce_status for operator input."""
    if isinstance(value, SubscriptionStatus):
        return value
    try:
        return SubscriptionStatus(str(value).strip())
    except ValueError:
        raise ValidationError(f"Invalid status: {value}", code="invalid_status")


def apply_local_update(
    subscription_id: int,
    *,
    status: Optional[SubscriptionStatus] = None,
    plan: Optional[Plan] = None,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
) -> Optional[Subscription]:
    """
    Overwrite the given fields of one row without going through Stripe.

    Omitted (None) fields keep their stored value. Making the row live
    demotes the user's other live rows, as upserts do.

    Returns None when the row does not exist.
    """
    now = utc_now()
    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions).where(subscriptions.c.id == subscription_id).with_for_update()
        ).first()
        if not existing:
            return None

        _validate_period(
            current_period_start or existing.current_period_start,
            current_period_end or existing.current_period_end,
        )
        values: Dict[str, Any] = {"updated_at": now}
        if status is not None:
            values["status"] = status.value
        if plan is not None:
            values["plan"] = plan.value
        if current_period_start is not None:
            values["current_period_start"] = current_period_start
        if current_period_end is not None:
            values["current_period_end"] = current_period_end
        if cancel_at_period_end is not None:
            values["cancel_at_period_end"] = cancel_at_period_end
        session.execute(update(subscriptions).where(subscriptions.c.id == subscription_id).values(**values))

        if status in LIVE_STATUSES:
            _demote_other_live(session, existing.user_id, existing.stripe_subscription_id, now)
    return get_by_id(subscription_id)


def _validate_period(start: Optional[datetime], end: Optional[datetime]) -> None:
    if start is not None and end is not None and as_utc(start) > as_utc(end):
        raise ValidationError("current_period_start must not be after current_period_end")


def upsert_by_provider_id(state: SubscriptionState) -> Subscription:
    """
    Create or update the row for state.stripe_subscription_id.

    - Null period timestamps never overwrite stored values.
    - A live (active/trialing) row demotes the user's other live rows.
    - Idempotent: applying the same state twice leaves the same row.

    Raises:
        ValidationError: period start after period end
    """
    _validate_period(state.current_period_start, state.current_period_end)
    try:
        _write_state(state)
    except IntegrityError:
        # Concurrent first insert for the same stripe_subscription_id
        _write_state(state)

    stored = get_by_provider_id(state.stripe_subscription_id)
    logger.info(
        "[subscriptions] upserted",
        extra={
            "user_id": stored.user_id,
            "stripe_subscription_id": stored.stripe_subscription_id,
            "plan": stored.plan.value,
            "status": stored.status.value,
        },
    )
    return stored


def _same_value(stored: Any, incoming: Any) -> bool:
    if isinstance(stored, datetime) and isinstance(incoming, datetime):
        return as_utc(stored) == as_utc(incoming)
    return stored == incoming


def _write_state(state: SubscriptionState) -> None:
    now = utc_now()
    status = coerce_status(state.status)
    with get_db_session() as session:
        existing = session.execute(
            select(subscriptions)
            .where(subscriptions.c.stripe_subscription_id == state.stripe_subscription_id)
            .with_for_update()
        ).first()

        if existing:
            old_status = coerce_status(existing.status)
            if not is_expected_transition(old_status, status):
                logger.warning(
                    "[subscriptions] unexpected status transition",
                    extra={
                        "stripe_subscription_id": state.stripe_subscription_id,
                        "from_status": old_status.value,
                        "to_status": status.value,
                    },
                )
            period_start = state.current_period_start or existing.current_period_start
            period_end = state.current_period_end or existing.current_period_end
            _validate_period(period_start, period_end)

            values = {
                "user_id": state.user_id,
                "plan": state.plan.value,
                "status": status.value,
                "current_period_start": period_start,
                "current_period_end": period_end,
                "cancel_at_period_end": state.cancel_at_period_end,
                "canceled_at": state.canceled_at or existing.canceled_at,
            }
            if state.stripe_customer_id:
                values["stripe_customer_id"] = state.stripe_customer_id
            if state.provider_snapshot is not None:
                values["provider_snapshot"] = state.provider_snapshot
            changed = {
                key: value for key, value in values.items()
                if not _same_value(getattr(existing, key), value)
            }
            # Replaying an identical state leaves the row (and updated_at) untouched
            if changed:
                session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.id == existing.id)
                    .values(updated_at=now, **changed)
                )
        else:
            session.execute(
                insert(subscriptions).values(
                    user_id=state.user_id,
                    stripe_customer_id=state.stripe_customer_id,
                    stripe_subscription_id=state.stripe_subscription_id,
                    plan=state.plan.value,
                    status=status.value,
                    current_period_start=state.current_period_start,
                    current_period_end=state.current_period_end,
                    cancel_at_period_end=state.cancel_at_period_end,
                    canceled_at=state.canceled_at,
                    provider_snapshot=state.provider_snapshot,
                    created_at=now,
                    updated_at=now,
                )
            )

        if status in LIVE_STATUSES:
            _demote_other_live(session, state.user_id, state.stripe_subscription_id, now)


def _demote_other_live(session, user_id: str, keep_stripe_id: str, now: datetime) -> None:
    demoted = session.execute(
        update(subscriptions)
        .where(
            subscriptions.c.user_id == user_id,
            subscriptions.c.stripe_subscription_id != keep_stripe_id,
            subscriptions.c.status.in_([s.value for s in LIVE_STATUSES]),
        )
        .values(status=SubscriptionStatus.INACTIVE.value, updated_at=now)
    )
    if demoted.rowcount:
        logger.info(
            "[subscriptions] demoted older live subscriptions",
            extra={"user_id": user_id, "demoted": demoted.rowcount},
        )


def mark_canceled(stripe_subscription_id: str, when: Optional[datetime] = None) -> Optional[Subscription]:
    """Set status canceled, canceled_at and clear cancel_at_period_end."""
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
            .values(
                status=SubscriptionStatus.CANCELED.value,
                canceled_at=when or utc_now(),
                cancel_at_period_end=False,
                updated_at=utc_now(),
            )
        )
        if result.rowcount == 0:
            logger.warning(
                "[subscriptions] cancel for unknown subscription",
                extra={"stripe_subscription_id": stripe_subscription_id},
            )
            return None
    return get_by_provider_id(stripe_subscription_id)


def set_status(stripe_subscription_id: str, status: Union[str, SubscriptionStatus]) -> Optional[Subscription]:
    status = coerce_status(status)
    with get_db_session() as session:
        result = session.execute(
            update(subscriptions)
            .where(subscriptions.c.stripe_subscription_id == stripe_subscription_id)
            .values(status=status.value, updated_at=utc_now())
        )
        if result.rowcount == 0:
            return None
    return get_by_provider_id(stripe_subscription_id)


def list_subscriptions(
    status: Optional[Union[str, SubscriptionStatus]] = None,
    plan: Optional[Union[str, Plan]] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Subscription]:
    """Admin listing, newest first."""
    query = select(subscriptions)
    try:
        if status:
            query = query.where(subscriptions.c.status == SubscriptionStatus(status).value)
        if plan:
            query = query.where(subscriptions.c.plan == Plan(plan).value)
    except ValueError as e:
        raise ValidationError(str(e))
    query = (
        query.order_by(subscriptions.c.created_at.desc(), subscriptions.c.id.desc())
        .limit(max(1, min(limit, 200)))
        .offset(max(0, offset))
    )
    with get_db_session() as session:
        rows = session.execute(query).all()
    return [_row_to_subscription(row) for row in rows]
