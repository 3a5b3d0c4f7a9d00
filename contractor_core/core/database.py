"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for the identity, OTP and billing core
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Numeric, Index, ForeignKey, UniqueConstraint, text
from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging
import os

from contractor_core.core.config import settings
from contractor_core.core.errors import OperationTimeoutError


logger = logging.getLogger("contractor_core")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 10
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# Postgres SQLSTATE for a statement cancelled by statement_timeout
QUERY_CANCELED = "57014"

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # SQLite serialises writers itself; wait for the lock instead of failing fast
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            connect_args={"options": f"-c statement_timeout={settings.DB_STATEMENT_TIMEOUT_MS}"},
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


def is_statement_timeout(error: BaseException) -> bool:
    """True when a DBAPI error is a cancelled statement or a pool checkout timeout."""
    if isinstance(error, sa_exc.TimeoutError):
        return True
    orig = getattr(error, "orig", None)
    return getattr(orig, "pgcode", None) == QUERY_CANCELED


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()

    Pool exhaustion and statement timeouts surface as OperationTimeoutError.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except (sa_exc.TimeoutError, sa_exc.OperationalError) as e:
        session.rollback()
        if is_statement_timeout(e):
            raise OperationTimeoutError("Datastore operation timed out") from e
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Verified identities (one per phone number)
contractor_identities = Table(
    'contractor_identities',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('phone', String(20), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('phone', name='uq_contractor_identities_phone'),
)

# Outstanding one-time codes
otp_challenges = Table(
    'otp_challenges',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('phone', String(20), nullable=False),
    Column('code', String(12), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('expires_at', DateTime(timezone=True), nullable=False, index=True),
    Column('consumed', Boolean, nullable=False, server_default='0'),
    Column('consumed_at', DateTime(timezone=True), nullable=True),
    Column('verified_at', DateTime(timezone=True), nullable=True),
    Column('attempts', Integer, nullable=False, server_default='0'),
    Column('send_count', Integer, nullable=False, server_default='0'),
    Column('expiry_reported', Boolean, nullable=False, server_default='0'),
    # Latest challenge per phone and rate-limit window counts
    Index('idx_otp_challenges_phone_created', 'phone', 'created_at'),
)

# At most one outstanding (unconsumed) challenge per phone, enforced by storage
Index(
    'uq_otp_challenges_phone_outstanding',
    otp_challenges.c.phone,
    unique=True,
    postgresql_where=text('consumed = false'),
    sqlite_where=text('consumed = 0'),
)

# OTP lifecycle analytics (best-effort sink)
otp_analytics_events = Table(
    'otp_analytics_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('phone', String(20), nullable=False, index=True),
    Column('event_type', String(50), nullable=False, index=True),
    Column('event_data', JSON, nullable=True),
    Column('contractor_id', String(36), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_otp_analytics_type_created', 'event_type', 'created_at'),
)

# Contractor profiles (exactly one per identity)
contractor_profiles = Table(
    'contractor_profiles',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('identity_id', String(36), ForeignKey('contractor_identities.id'), nullable=False),
    Column('contact_phone', String(20), nullable=False),
    Column('company_name', Text, nullable=True),
    Column('tier', String(20), nullable=False, server_default='base'),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('onboarding_completed', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('identity_id', name='uq_contractor_profiles_identity'),
    UniqueConstraint('stripe_customer_id', name='uq_contractor_profiles_stripe_customer'),
)

# Subscription state mirrored from Stripe (one per billing customer)
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('profile_id', String(36), ForeignKey('contractor_profiles.id'), nullable=False, index=True),
    Column('external_customer_id', String(100), nullable=False),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('status', String(50), nullable=False),  # active, trialing, past_due, canceled, unpaid
    Column('tier', String(20), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default='0'),
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('external_customer_id', name='uq_subscriptions_external_customer'),
)

# Financial transactions (append-only)
transactions = Table(
    'transactions',
    metadata,
    Column('id', String(36), primary_key=True),
    Column('profile_id', String(36), ForeignKey('contractor_profiles.id'), nullable=False, index=True),
    Column('amount', Numeric(12, 2), nullable=False),
    Column('currency', String(3), nullable=False, server_default='usd'),
    Column('type', String(50), nullable=False),
    Column('status', String(50), nullable=False),
    Column('external_charge_id', String(100), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('external_charge_id', name='uq_transactions_external_charge'),
)

# Billing events (webhook ledger and idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=True),  # SHA256 of the raw body
    Column('outcome', String(30), nullable=True),
    Column('processed', Boolean, nullable=False, server_default='0', index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
