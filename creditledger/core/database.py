"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support
- Ledger table definitions
"""
from typing import Optional
from contextlib import contextmanager
import logging
from sqlalchemy import create_engine, event, MetaData, Table, Column, Integer, String, DateTime, JSON, Text, Index, ForeignKey, UniqueConstraint, CheckConstraint, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from creditledger.core.config import settings


logger = logging.getLogger("creditledger")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

# SQLite busy timeout (seconds) so concurrent writers wait instead of failing
SQLITE_BUSY_TIMEOUT = 30

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


def _install_sqlite_locking(engine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    pysqlite defers BEGIN until the first write, so a reader that later
    writes must upgrade its lock and SQLite fails that upgrade with
    "database is locked" instead of waiting. Taking the write lock up front
    makes concurrent writers queue on the busy timeout.
    """

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
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    connect_args = {}
    if url.startswith("sqlite"):
        # Sessions are shared across the FastAPI threadpool and worker threads
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}

    # Create engine with connection pooling
    _engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        connect_args=connect_args,
        echo=False,  # Set to True for SQL query logging
    )
    if url.startswith("sqlite"):
        _install_sqlite_locking(_engine)

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


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

    Commits when the block exits cleanly, rolls back and re-raises otherwise.

    Usage:
        with get_db_session() as session:
            session.execute(...)
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


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, ValueError) as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Subscription grants: one row per purchased (or free) plan period.
# Per-feature totals are fixed at issuance; only the *_used columns move.
subscription_grants = Table(
    'subscription_grants',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan_id', String(50), nullable=False),
    Column('status', String(20), nullable=False, server_default='active'),  # active, expired, revoked
    Column('start_time', DateTime(timezone=True), nullable=False),
    Column('end_time', DateTime(timezone=True), nullable=False),
    Column('optimizations_total', Integer, nullable=False, server_default='0'),
    Column('optimizations_used', Integer, nullable=False, server_default='0'),
    Column('score_checks_total', Integer, nullable=False, server_default='0'),
    Column('score_checks_used', Integer, nullable=False, server_default='0'),
    Column('guided_builds_total', Integer, nullable=False, server_default='0'),
    Column('guided_builds_used', Integer, nullable=False, server_default='0'),
    Column('linkedin_messages_total', Integer, nullable=False, server_default='0'),
    Column('linkedin_messages_used', Integer, nullable=False, server_default='0'),
    Column('purchase_transaction_id', Integer, ForeignKey('purchase_transactions.id'), nullable=True, index=True),
    Column('free_trial_user_id', String(100), nullable=True),  # set only on the free-trial grant
    Column('revoked_reason', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    UniqueConstraint('free_trial_user_id', name='uq_subscription_grants_free_trial_user'),
    CheckConstraint('optimizations_used >= 0 AND optimizations_used <= optimizations_total', name='ck_grants_optimizations'),
    CheckConstraint('score_checks_used >= 0 AND score_checks_used <= score_checks_total', name='ck_grants_score_checks'),
    CheckConstraint('guided_builds_used >= 0 AND guided_builds_used <= guided_builds_total', name='ck_grants_guided_builds'),
    CheckConstraint('linkedin_messages_used >= 0 AND linkedin_messages_used <= linkedin_messages_total', name='ck_grants_linkedin_messages'),
    Index('idx_subscription_grants_user_status', 'user_id', 'status'),
    Index('idx_subscription_grants_start_time', 'start_time'),
)

# Add-on credits: a single-feature pack consumed before any subscription grant.
addon_credits = Table(
    'addon_credits',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('feature', String(50), nullable=False),
    Column('addon_id', String(100), nullable=True),  # catalog id, null for compensation credits
    Column('quantity_purchased', Integer, nullable=False),
    Column('quantity_remaining', Integer, nullable=False),
    Column('purchased_at', DateTime(timezone=True), nullable=False),
    Column('purchase_transaction_id', Integer, ForeignKey('purchase_transactions.id'), nullable=True, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    CheckConstraint('quantity_purchased > 0', name='ck_addon_credits_purchased_positive'),
    CheckConstraint('quantity_remaining >= 0 AND quantity_remaining <= quantity_purchased', name='ck_addon_credits_remaining_range'),
    Index('idx_addon_credits_user_feature', 'user_id', 'feature'),
    Index('idx_addon_credits_purchased_at', 'purchased_at'),
)

# Append-only purchase records; provider_transaction_id is the idempotency key.
purchase_transactions = Table(
    'purchase_transactions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_transaction_id', String(200), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('purchase_type', String(30), nullable=False),  # plan, addon_only, plan_with_addons, free_trial, compensation
    Column('plan_id', String(50), nullable=True),
    Column('addon_selections', JSON, nullable=True),
    Column('coupon_code', String(100), nullable=True),
    Column('amount', Integer, nullable=False, server_default='0'),  # minor currency units
    Column('discount_amount', Integer, nullable=False, server_default='0'),
    Column('final_amount', Integer, nullable=False, server_default='0'),
    Column('currency', String(10), nullable=False),
    Column('status', String(20), nullable=False, server_default='success'),  # success, rejected
    Column('rejection_reason', String(30), nullable=True),  # IssueStatus value when status is rejected
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider_transaction_id', name='uq_purchase_transactions_provider_txn'),
    Index('idx_purchase_transactions_user_coupon', 'user_id', 'coupon_code'),
)

# Captured payments whose grant write failed; drained by the reconcile worker.
grant_reconciliation_queue = Table(
    'grant_reconciliation_queue',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('provider_transaction_id', String(200), nullable=False),
    Column('user_id', String(100), nullable=False, index=True),
    Column('payload_json', JSON, nullable=False),
    Column('last_error', Text, nullable=True),
    Column('attempt_count', Integer, nullable=False, server_default='0'),
    Column('status', String(20), nullable=False, server_default='pending'),  # pending, processing, succeeded, failed, rejected
    Column('next_attempt_at', DateTime(timezone=True), nullable=True),
    Column('locked_at', DateTime(timezone=True), nullable=True),
    Column('lock_owner', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('provider_transaction_id', name='uq_grant_reconciliation_provider_txn'),
    Index('idx_grant_reconciliation_status_next', 'status', 'next_attempt_at'),
)

# Ledger audit log (admin and system actions)
ledger_audit = Table(
    'ledger_audit',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('actor', String(100), nullable=False),  # "system_job", "admin_key", ...
    Column('action', String(100), nullable=False),
    Column('target_user_id', String(100), nullable=True),
    Column('target_resource', String(200), nullable=True),
    Column('payload_json', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_ledger_audit_actor', 'actor'),
    Index('idx_ledger_audit_action', 'action'),
    Index('idx_ledger_audit_user_id', 'target_user_id'),
    Index('idx_ledger_audit_created_at', 'created_at'),
)

# Scheduled job runs
ledger_job_runs = Table(
    'ledger_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
