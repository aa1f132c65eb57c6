"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- The single storage-unavailable error surfaced to callers
- Table definitions for the entitlement and billing subsystem
"""
import logging
from typing import Any, Dict, Iterable, Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import (
    create_engine, event, false, insert, MetaData, Table, Column, Integer, String, DateTime, Date,
    Boolean, Text, Index, ForeignKey, UniqueConstraint, PrimaryKeyConstraint,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from assetgate.core.config import settings
from assetgate.core.errors import StorageUnavailableError


logger = logging.getLogger("assetgate")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from drivers that drop tzinfo."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings.

    Under ENV=test, TEST_DATABASE_URL takes precedence when set.
    """
    if settings.ENV.lower() == "test" and settings.TEST_DATABASE_URL:
        return settings.TEST_DATABASE_URL

    return settings.DATABASE_URL


def _configure_sqlite(engine) -> None:
    """Take the write lock at BEGIN so busy waits apply to every writer."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise StorageUnavailableError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if url.startswith("sqlite"):
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _configure_sqlite(_engine)
    else:
        # Create engine with connection pooling
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            connect_args={"connect_timeout": settings.DATABASE_CONNECT_TIMEOUT},
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
    """Dispose the current engine (tests switch databases between cases)."""
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


def _is_connectivity_error(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig).lower() if exc.orig is not None else ""
        # Lock contention and missing tables are not outages
        return "locked" not in message and "no such table" not in message
    return False


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Commits on success, rolls back on error. Connectivity failures are
    re-raised as StorageUnavailableError; callers never fall back to
    fabricated data.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except DBAPIError as exc:
        session.rollback()
        if _is_connectivity_error(exc):
            logger.error("storage.unavailable", extra={"error_message": str(exc.orig)})
            raise StorageUnavailableError(f"Database unavailable: {exc.orig}") from exc
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def insert_ignore(session: Session, table: Table, values: Dict[str, Any], conflict_columns: Iterable[str]) -> bool:
    """
    INSERT that silently does nothing when the row already exists.

    Returns True if a row was inserted.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
        return session.execute(stmt).rowcount == 1
    if dialect == "sqlite":
        stmt = sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=list(conflict_columns))
        return session.execute(stmt).rowcount == 1

    try:
        with session.begin_nested():
            session.execute(insert(table).values(**values))
        return True
    except IntegrityError:
        return False


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


# Users table (read-only to this service; owned by the auth service)
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True, unique=True),
    Column('display_name', Text, nullable=True),
    Column('role', String(20), nullable=False, server_default='USER'),  # USER | ADMIN
    Column('is_active', Boolean, nullable=False, default=True),
    Column('token_version', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Asset catalog (read-mostly; only download_count is written here)
assets = Table(
    'assets',
    metadata,
    Column('asset_id', String(100), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('description', Text, nullable=True),
    Column('thumbnail', Text, nullable=True),
    Column('file_key', Text, nullable=False),
    Column('is_active', Boolean, nullable=False, default=True),
    Column('download_count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Plans table (price -> plan directory)
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(50), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('daily_download_limit', Integer, nullable=False),
    Column('provider_price_id', String(100), nullable=True, unique=True),
    Column('billing_cycle', String(20), nullable=False, server_default='MONTHLY'),  # WEEKLY | MONTHLY | YEARLY
    Column('is_active', Boolean, nullable=False, default=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_plans_provider_price_id', 'provider_price_id'),
)

# Billing customers (user <-> Stripe customer)
billing_customers = Table(
    'billing_customers',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, unique=True),
    Column('provider_customer_id', String(100), nullable=False, unique=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_customers_provider_id', 'provider_customer_id'),
)

# Subscriptions. status is the pair (kind, provider_status):
# kind='manual' -> provider_status NULL; kind='managed' -> provider_status set.
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('plan_id', String(50), ForeignKey('plans.plan_id'), nullable=False),
    Column('provider_subscription_id', String(100), nullable=True, unique=True),
    Column('provider_customer_id', String(100), nullable=True),
    Column('kind', String(20), nullable=False),
    Column('provider_status', String(50), nullable=True),
    Column('is_active', Boolean, nullable=False, server_default=false()),
    Column('current_period_start', DateTime(timezone=True), nullable=True),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('start_date', DateTime(timezone=True), nullable=False),
    Column('end_date', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # Composite index for the active-subscription lookup
    Index('idx_subscriptions_user_active', 'user_id', 'is_active'),
    Index('idx_subscriptions_provider_id', 'provider_subscription_id'),
)

# Download events (append-only)
usage_records = Table(
    'usage_records',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('asset_id', String(100), nullable=False),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    Column('ip_address', String(64), nullable=True),
    Column('user_agent', Text, nullable=True),
    # Composite index for daily counts: (user_id, occurred_at)
    Index('idx_usage_records_user_occurred', 'user_id', 'occurred_at'),
    Index('idx_usage_records_asset', 'asset_id'),
    Index('idx_usage_records_occurred_at', 'occurred_at'),
)

# Per-(user, quota day) counter backing the atomic bounded increment
daily_usage_counters = Table(
    'daily_usage_counters',
    metadata,
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False),
    Column('day', Date, nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    PrimaryKeyConstraint('user_id', 'day', name='pk_daily_usage_counters'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of the raw body
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('claimed_at', DateTime(timezone=True), nullable=True),  # held while a delivery is applying it
    Column('outcome', String(50), nullable=True),  # applied | skipped | ignored
    Column('error', Text, nullable=True),
    UniqueConstraint('provider_event_id', name='uq_billing_events_provider_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
