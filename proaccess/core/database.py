"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Table definitions for entitlements, the idempotency ledger and the payment log
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import event, create_engine, MetaData, Table, Column, Integer, String, DateTime, Text, Index, CheckConstraint, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import logging

from proaccess.core.config import settings

logger = logging.getLogger("proaccess")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# SQLite busy timeout; concurrent writers wait on the ledger row instead of failing
SQLITE_BUSY_TIMEOUT = 30

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings.

    TEST_DATABASE_URL, when set, takes precedence.
    """
    if settings.TEST_DATABASE_URL:
        return settings.TEST_DATABASE_URL

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
        # Used by tests and local development
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
        _install_sqlite_transactions(_engine)
    else:
        _engine = create_engine(
            url,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def _install_sqlite_transactions(engine) -> None:
    """
    Let SQLAlchemy own BEGIN on pysqlite so SAVEPOINTs nest inside the
    outer transaction. BEGIN IMMEDIATE takes the write lock up front, so
    concurrent writers queue on the busy timeout instead of deadlocking.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


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


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)
            session.commit()
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
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


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


# Entitlement records, one per user
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('entitlement_state', String(20), nullable=False, server_default='free'),
    Column('provider_customer_id', String(100), nullable=True, index=True),
    Column('pro_since', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint("entitlement_state IN ('free', 'pro')", name='ck_app_users_entitlement_state'),
    Index('idx_users_entitlement_state', 'entitlement_state'),
)

# Idempotency ledger: the primary key is the only cross-request synchronization point
idempotency_ledger = Table(
    'idempotency_ledger',
    metadata,
    Column('idempotency_key', String(255), primary_key=True),
    Column('source', String(20), nullable=False),  # webhook | verify
    Column('provider_event_id', String(255), nullable=True),
    Column('resulting_state', String(20), nullable=True),
    Column('processed_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_idempotency_ledger_processed_at', 'processed_at'),
)

# Payment log (append-only audit trail)
payment_log = Table(
    'payment_log',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('idempotency_key', String(255), nullable=False, unique=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('amount', Integer, nullable=True),  # minor units
    Column('currency', String(10), nullable=True),
    Column('provider_status', String(50), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_payment_log_user_created', 'user_id', 'created_at'),
)

# Maintenance sweep runs
reconcile_job_runs = Table(
    'reconcile_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
