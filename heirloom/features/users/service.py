"""
User domain service.
- get_user(user_id)
- get_or_create_user(user_id, email=None)
- find_user_by_customer(stripe_customer_id)
- link_stripe_customer(user_id, stripe_customer_id)
"""

from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from heirloom.core.database import get_db_session, users as app_users, utc_now, as_utc
from heirloom.core.errors import ConflictError, NotFoundError
from heirloom.models.user import User


def _row_to_user(row) -> User:
    return User(
        user_id=row.user_id,
        created_at=as_utc(row.created_at),
        email=row.email,
        role=row.role or "user",
        stripe_customer_id=row.stripe_customer_id,
    )


def get_user(user_id: str) -> Optional[User]:
    with get_db_session() as session:
        row = session.execute(select(app_users).where(app_users.c.user_id == user_id)).first()
        if not row:
            return None
        return _row_to_user(row)


def get_or_create_user(user_id: str, email: Optional[str] = None) -> User:
    existing = get_user(user_id)
    if existing:
        return existing

    now = utc_now()
    try:
        with get_db_session() as session:
            session.execute(
                insert(app_users).values(
                    user_id=user_id,
                    email=email,
                    role="user",
                    created_at=now,
                )
            )
    except IntegrityError:
        # Concurrent first request for the same user
        existing = get_user(user_id)
        if existing:
            return existing
        raise

    return User(user_id=user_id, created_at=now, email=email, role="user")


def find_user_by_customer(stripe_customer_id: str) -> Optional[User]:
    if not stripe_customer_id:
        return None
    with get_db_session() as session:
        row = session.execute(
            select(app_users).where(app_users.c.stripe_customer_id == stripe_customer_id)
        ).first()
        return _row_to_user(row) if row else None


def link_stripe_customer(user_id: str, stripe_customer_id: str) -> User:
    """Attach a Stripe customer id to a user. Set once, immutable afterwards."""
    try:
        with get_db_session() as session:
            row = session.execute(
                select(app_users).where(app_users.c.user_id == user_id).with_for_update()
            ).first()
            if not row:
                raise NotFoundError(f"User {user_id} not found")
            if row.stripe_customer_id:
                if row.stripe_customer_id != stripe_customer_id:
                    raise ConflictError("User is already linked to a different billing customer")
                return _row_to_user(row)
            session.execute(
                update(app_users)
                .where(app_users.c.user_id == user_id)
                .values(stripe_customer_id=stripe_customer_id)
            )
    except IntegrityError:
        # Customer id already belongs to another user
        raise ConflictError("Billing customer is already linked to a different user")
    return get_user(user_id)


def set_role(user_id: str, role: str) -> User:
    get_or_create_user(user_id)
    with get_db_session() as session:
        session.execute(update(app_users).where(app_users.c.user_id == user_id).values(role=role))
    return get_user(user_id)
