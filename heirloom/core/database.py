"""
Storage for the subscription core.

Engine and session lifecycle live here alongside the five tables the core
owns: app_users, quota_entries, subscriptions, usage_records and
billing_events. PostgreSQL in deployment, SQLite in tests.
"""
from datetime import datetime, timezone
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, select
from sqlalchemy.orm import sessionmaker
import logging
import os

from heirloom.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

# PostgreSQL pool
POOL_OPTIONS = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine = None
_session_factory = None


def utc_now() -> datetime:
    """Timezone-aware UTC now for column defaults."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store (SQLite drops tzinfo)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL so a test run never touches real data."""
    return (
        os.getenv("TEST_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or settings.DATABASE_URL
    )


def init_engine(database_url: Optional[str] = None):
    global _engine, _session_factory

    url = database_url or get_database_url()
    if not url:
        raise ValueError("No database configured: set DATABASE_URL (or TEST_DATABASE_URL in tests)")

    if url.startswith("sqlite"):
        # Sync endpoints run in a threadpool
        engine = create_engine(url, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(url, **POOL_OPTIONS)

    _engine = engine
    _session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    logger.debug("Database engine initialised (%s)", engine.dialect.name)
    return engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-reads the database URL."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


def get_engine():
    return _engine if _engine is not None else init_engine()


@contextmanager
def get_db_session():
    """Unit of work: commit when the block exits cleanly, roll back otherwise."""
    if _session_factory is None:
        init_engine()
    session = _session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    metadata.create_all(bind=get_engine())


def reset_database():
    """Drop and recreate every table. Tests only."""
    engine = get_engine()
    metadata.drop_all(bind=engine)
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False
    return True


# Users table. Owned by the auth domain; the core only writes stripe_customer_id.
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('role', String(50), nullable=False, default='user'),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Quota table: (plan, feature) -> limit. -1 encodes unlimited.
quota_entries = Table(
    'quota_entries',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('plan', String(50), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('limit_value', Integer, nullable=False, default=0),
    Column('reset_cadence', String(20), nullable=False, default='monthly'),
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('updated_at', DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False),
    UniqueConstraint('plan', 'feature', name='uq_quota_entries_plan_feature'),
    Index('idx_quota_entries_plan', 'plan'),
    Index('idx_quota_entries_feature', 'feature'),
)

# Subscriptions mirrored from Stripe
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=False),
    Column('plan', String(50), nullable=False),
    Column('status', String(50), nullable=False, default='inactive'),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, default=False),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('provider_snapshot', JSON, nullable=True),  # last Stripe payload
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('updated_at', DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False),
    UniqueConstraint('stripe_subscription_id', name='uq_subscriptions_stripe_id'),
    Index('idx_subscriptions_user_created', 'user_id', 'created_at'),
    Index('idx_subscriptions_customer', 'stripe_customer_id'),
    Index('idx_subscriptions_plan', 'plan'),
    Index('idx_subscriptions_status', 'status'),
)

# Usage ledger: one row per (user, feature, period)
usage_records = Table(
    'usage_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('feature', String(100), nullable=False),
    Column('period_start', DateTime(timezone=True), nullable=False),
    Column('period_end', DateTime(timezone=True), nullable=False),
    Column('count', Integer, nullable=False, default=0),
    Column('meta', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('updated_at', DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False),
    UniqueConstraint('user_id', 'feature', 'period_start', name='uq_usage_records_user_feature_period'),
    Index('idx_usage_records_user', 'user_id'),
    Index('idx_usage_records_feature', 'feature'),
    Index('idx_usage_records_period_start', 'period_start'),
    Index('idx_usage_records_period_end', 'period_end'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('received_at', DateTime(timezone=True), default=utc_now, nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, default=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('attempts', Integer, nullable=False, default=0),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_event_type', 'event_type'),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)
