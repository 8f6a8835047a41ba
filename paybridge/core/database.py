"""
Database engine, sessions and billing tables.

Tables are SQLAlchemy Core objects on one MetaData. Concurrency guards live
in the schema: partial unique indexes allow one live subscription per
company and one live transaction per payment intent, and payment_logs
holds each processor event id at most once.
"""
from typing import Optional
from contextlib import contextmanager
from datetime import timezone
import logging
import os

from sqlalchemy import (
    create_engine,
    event,
    MetaData,
    Table,
    Column,
    Integer,
    String,
    DateTime,
    Boolean,
    JSON,
    Text,
    Index,
    ForeignKey,
    UniqueConstraint,
    false,
    true,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func
from sqlalchemy.types import TypeDecorator

from paybridge.core.config import settings


logger = logging.getLogger("paybridge")

metadata = MetaData()

POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins over DATABASE_URL."""
    return os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or settings.DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def init_engine(database_url: Optional[str] = None):
    """Create the engine and session factory; SQLite gets one shared connection."""
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if url.startswith("sqlite"):
        # In-memory databases only exist on the connection that created them
        _engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
        event.listen(_engine, "connect", _enable_sqlite_foreign_keys)
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
        )

    _SessionLocal = sessionmaker(autoflush=False, bind=_engine)
    return _engine


def dispose_engine() -> None:
    """Drop the current engine so the next call re-initializes it."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


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
    One unit of work: commits on clean exit, rolls back and re-raises otherwise.

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


@contextmanager
def session_scope(session: Optional[Session] = None):
    """Reuse the caller's session, or open a committing one."""
    if session is not None:
        yield session
        return
    with get_db_session() as own:
        yield own


def create_all_tables():
    metadata.create_all(bind=get_engine())


def check_connection() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except (SQLAlchemyError, ValueError) as e:
        logger.warning(f"Database connection check failed: {e}")
        return False


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp that always reads back as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
            if dialect.name == "sqlite":
                value = value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


# Plan catalog
plans = Table(
    'plans',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('name', String(100), nullable=False),
    Column('description', Text, nullable=True),
    Column('price', Integer, nullable=False),  # minor units
    Column('currency', String(3), nullable=False, server_default='usd'),
    Column('max_workspaces', Integer, nullable=False, server_default='-1'),
    Column('max_sheets', Integer, nullable=False, server_default='-1'),
    Column('max_members', Integer, nullable=False, server_default='-1'),
    Column('max_viewers', Integer, nullable=False, server_default='-1'),
    Column('max_tasks', Integer, nullable=False, server_default='-1'),
    Column('sort_order', Integer, nullable=False, server_default='0'),
    Column('external_product_id', String(100), nullable=True),
    Column('external_price_id', String(100), nullable=True, index=True),
    Column('is_active', Boolean, nullable=False, server_default=true()),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
    Column('updated_at', UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False),
)

companies = Table(
    'companies',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('plan_id', String(64), ForeignKey('plans.id'), nullable=True),
    Column('external_customer_id', String(100), nullable=True, unique=True),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
)

# Users and roles are owned by the account service; billing only reads them
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('first_name', String(100), nullable=True),
    Column('last_name', String(100), nullable=True),
    Column('selected_role_id', String(64), nullable=True),
)

user_roles = Table(
    'user_roles',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('company_id', String(64), ForeignKey('companies.id'), nullable=False, index=True),
    Column('role_type', String(20), nullable=False),  # AUTHOR | MEMBER | VIEWER
    Column('access', String(20), nullable=False, server_default='FULL'),
)

# Resource counts published by the workspace service
company_usage = Table(
    'company_usage',
    metadata,
    Column('company_id', String(64), ForeignKey('companies.id'), primary_key=True),
    Column('resource', String(32), primary_key=True),  # workspaces | sheets | tasks
    Column('used', Integer, nullable=False, server_default='0'),
    Column('updated_at', UTCDateTime, server_default=func.now(), nullable=False),
)

company_subscriptions = Table(
    'company_subscriptions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('company_id', String(64), ForeignKey('companies.id'), nullable=False, index=True),
    Column('plan_id', String(64), ForeignKey('plans.id'), nullable=False),
    Column('start_date', UTCDateTime, nullable=False),
    Column('end_date', UTCDateTime, nullable=False, index=True),
    Column('is_expired', Boolean, nullable=False, server_default=false()),
    Column('cancel_at_period_end', Boolean, nullable=False, server_default=false()),
    Column('is_trial', Boolean, nullable=False, server_default=false()),
    Column('external_subscription_id', String(100), nullable=True, unique=True),
    Column('external_item_id', String(100), nullable=True),
    Column('last_event_at', UTCDateTime, nullable=True),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
    Column('updated_at', UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False),
)

# At most one non-expired subscription per company
Index(
    'uq_company_subscriptions_live',
    company_subscriptions.c.company_id,
    unique=True,
    postgresql_where=company_subscriptions.c.is_expired == false(),
    sqlite_where=company_subscriptions.c.is_expired == false(),
)

transactions = Table(
    'transactions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('company_id', String(64), ForeignKey('companies.id'), nullable=False, index=True),
    Column('user_id', String(100), nullable=True),
    Column('plan_id', String(64), ForeignKey('plans.id'), nullable=True),
    Column('subscription_id', String(64), ForeignKey('company_subscriptions.id'), nullable=True),
    Column('amount', Integer, nullable=False),
    Column('currency', String(3), nullable=False),
    Column('status', String(20), nullable=False, index=True),  # PENDING | SUCCEEDED | FAILED
    Column('payment_type', String(40), nullable=False),
    Column('external_payment_intent_id', String(100), nullable=True, index=True),
    Column('failure_code', String(100), nullable=True),
    Column('created_at', UTCDateTime, server_default=func.now(), nullable=False),
    Column('updated_at', UTCDateTime, server_default=func.now(), onupdate=func.now(), nullable=False),
)

# One live (non-failed) transaction per payment intent; failures are history
Index(
    'uq_transactions_live_intent',
    transactions.c.external_payment_intent_id,
    unique=True,
    postgresql_where=transactions.c.status != 'FAILED',
    sqlite_where=transactions.c.status != 'FAILED',
)

# Append-only audit trail, doubles as the webhook idempotency ledger
payment_logs = Table(
    'payment_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event', String(60), nullable=False, index=True),
    Column('company_id', String(64), nullable=True, index=True),
    Column('user_id', String(100), nullable=True),
    Column('transaction_id', String(64), nullable=True),
    Column('subscription_id', String(64), nullable=True),
    Column('plan_id', String(64), nullable=True),
    Column('amount', Integer, nullable=True),
    Column('currency', String(3), nullable=True),
    Column('status', String(30), nullable=True),
    Column('error_code', String(100), nullable=True),
    Column('error_message', Text, nullable=True),
    Column('external_event_id', String(100), nullable=True),
    Column('external_event_type', String(100), nullable=True),
    Column('event_created_at', UTCDateTime, nullable=True),
    Column('details', JSON, nullable=True),
    Column('timestamp', UTCDateTime, server_default=func.now(), nullable=False),
    UniqueConstraint('external_event_id', name='uq_payment_logs_external_event_id'),
    Index('idx_payment_logs_timestamp', 'timestamp'),
)
