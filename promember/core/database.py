"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (PostgreSQL) and SQLite for tests
- Table definitions for memberships, quota counters and diagnostics
"""
from typing import Optional, Callable
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, false
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
import os

from promember.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return os.getenv("DATABASE_URL") or settings.DATABASE_URL


def build_engine(url: str):
    """Create an engine for `url`; SQLite gets a thread-shareable connection."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


def build_session_factory(engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory: Callable[[], Session]):
    """
    Transactional scope around a series of operations.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine)


# Membership records, one per user
memberships = Table(
    'memberships',
    metadata,
    Column('user_id', String(128), primary_key=True),
    Column('member', Boolean, nullable=False, default=False, server_default=false()),
    Column('subscription_type', String(20), nullable=True),  # 'Monthly', 'Lifetime' or NULL
    Column('subscription_id', String(255), nullable=True, index=True),
    Column('customer_id', String(255), nullable=True, unique=True),
    Column('cancel_at', DateTime(timezone=True), nullable=True),
    Column('cancel_time', DateTime(timezone=True), nullable=True),
    Column('resume_time', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False, default='inactive', server_default='inactive'),
    Column('manual_claim_sync_required', Boolean, nullable=False, default=False, server_default=false()),
    Column('admin', Boolean, nullable=False, default=False, server_default=false()),
    Column('last_event_at', Integer, nullable=True),  # provider event `created` watermark
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    # Expiry sweep predicate: subscription_type = 'Monthly' AND cancel_at <= now
    Index('idx_memberships_type_cancel_at', 'subscription_type', 'cancel_at'),
    Index('idx_memberships_manual_sync', 'manual_claim_sync_required'),
)

# Sliding-window counters, one per (limiter, qualifier)
rate_limit_counters = Table(
    'rate_limit_counters',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('limiter_name', String(100), nullable=False),
    Column('qualifier', String(255), nullable=False),
    Column('calls', JSON, nullable=False),
    Column('version', Integer, nullable=False, default=0, server_default='0'),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('limiter_name', 'qualifier', name='uq_rate_limit_counters_name_qualifier'),
)

# Rejection diagnostics (best-effort)
rate_limit_logs = Table(
    'rate_limit_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('limiter_name', String(100), nullable=False, index=True),
    Column('qualifier', String(255), nullable=False),
    Column('qualifier_kind', String(20), nullable=False),  # 'user' | 'ip'
    Column('user_id', String(128), nullable=True),
    Column('ip', String(100), nullable=True),
    Column('path', String(500), nullable=True),
    Column('user_agent', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False, index=True),
)

# Deduplicated error log
error_logs = Table(
    'error_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('dedupe_key', String(64), nullable=False),  # sha256(function_name + message)
    Column('function_name', String(200), nullable=False),
    Column('message', Text, nullable=False),
    Column('stack', Text, nullable=True),
    Column('severity', String(20), nullable=False),  # 'low' | 'error' | 'critical'
    Column('bucket', String(20), nullable=False),  # 'payment' | 'generic'
    Column('human_message', Text, nullable=True),
    Column('context', JSON, nullable=True),
    Column('occurrences', Integer, nullable=False, default=1, server_default='1'),
    Column('first_seen', DateTime(timezone=True), nullable=False),
    Column('last_seen', DateTime(timezone=True), nullable=False),
    Index('idx_error_logs_dedupe_first_seen', 'dedupe_key', 'first_seen'),
    Index('idx_error_logs_bucket', 'bucket'),
)

# Billing events (webhook idempotency)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 hash of raw body
    Column('processed', Boolean, nullable=False, default=False, server_default=false()),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('outcome', String(30), nullable=True),
    Column('error', Text, nullable=True),
    Column('attempts', Integer, nullable=False, default=1, server_default='1'),
    UniqueConstraint('stripe_event_id', name='uq_billing_events_stripe_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
