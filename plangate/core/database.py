"""
Engine, transactions and table definitions.

Tables: app_users and projects (read by the default collaborators),
subscriptions (one row per account) and billing_events (the webhook ledger).
Postgres in production, SQLite for tests and local runs.
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import (
    create_engine,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Numeric,
    Index,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from plangate.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Postgres pool; SQLite (tests, local runs) uses the default pool
POSTGRES_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 3600,
    "pool_pre_ping": True,
}
SQLITE_BUSY_TIMEOUT = 30

_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL from the environment wins over settings.DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """(Re)build the engine and session factory, disposing any previous engine."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured (environment or .env)")

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # Request handlers and deploy workers share connections across threads
        options = {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}
    else:
        options = dict(POSTGRES_POOL)
    _engine = create_engine(url, **options)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    logger.info("Database engine ready (%s)", _engine.dialect.name)
    return _engine


def get_engine():
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    One transaction: committed when the block exits cleanly, rolled back when
    it raises.

        with get_db_session() as session:
            session.execute(...)
    """
    session = get_session_factory()()
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


def check_connection() -> bool:
    """True when a trivial SELECT succeeds; failures are logged, not raised."""
    try:
        with get_engine().connect() as conn:
            conn.execute(select(1))
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False
    return True


# Account directory used to name provider customers
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True),
    Column('display_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_email', 'email'),
)

# Projects owned by accounts; only counted here, never mutated
projects = Table(
    'projects',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('owner_id', String(100), nullable=False),
    Column('name', String(200), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_projects_owner_id', 'owner_id'),
)

# One subscription row per account
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('account_id', String(100), nullable=False),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('stripe_price_id', String(100), nullable=True),
    Column('plan', String(50), nullable=False, server_default='free'),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('billing_interval', String(20), nullable=True),
    Column('currency', String(3), nullable=False, server_default='usd'),
    Column('amount', Numeric(10, 2), nullable=False, server_default='0'),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='false'),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('trial_start', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    # Entitlement snapshot (-1 = unlimited)
    Column('max_projects', Integer, nullable=False, server_default='1'),
    Column('max_deployments', Integer, nullable=False, server_default='50'),
    Column('max_deployments_per_month', Integer, nullable=False, server_default='10'),
    Column('max_github_accounts', Integer, nullable=False, server_default='2'),
    Column('custom_domain_enabled', Boolean, nullable=False, server_default='false'),
    Column('priority_support', Boolean, nullable=False, server_default='false'),
    Column('analytics_enabled', Boolean, nullable=False, server_default='false'),
    # Usage counters
    Column('deployments_this_month', Integer, nullable=False, server_default='0'),
    Column('total_deployments_used', Integer, nullable=False, server_default='0'),
    Column('deployment_count_reset_at', DateTime(timezone=True), nullable=True),
    Column('metadata', JSON, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('account_id', name='uq_subscriptions_account_id'),
    Index('idx_subscriptions_stripe_customer_id', 'stripe_customer_id'),
    Index('idx_subscriptions_stripe_subscription_id', 'stripe_subscription_id'),
    Index('idx_subscriptions_status', 'status'),
)

# Webhook ledger (provider event id is the dedupe key)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default='false'),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_event_type', 'event_type'),
    Index('idx_billing_events_received_at', 'received_at'),
    Index('idx_billing_events_processed', 'processed'),
)
