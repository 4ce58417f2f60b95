import logging
import time
from contextlib import contextmanager

from fastapi import HTTPException, status
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from config import (
    DATABASE_URL as _CONFIGURED_DATABASE_URL,
    DB_MAX_OVERFLOW,
    DB_POOL_RECYCLE_SECONDS,
    DB_POOL_SIZE,
    DB_POOL_TIMEOUT_SECONDS,
    SLOW_DB_QUERY_THRESHOLD_MS,
    TESTING,
)

logger = logging.getLogger(__name__)

DATABASE_URL = _CONFIGURED_DATABASE_URL

if not DATABASE_URL:
    if TESTING:
        # In testing environment, use SQLite in-memory database as fallback
        DATABASE_URL = "sqlite:///:memory:"
    else:
        raise ValueError("DATABASE_URL environment variable is not set")

# If using Heroku-style URLs, convert postgres:// and pin the pg8000 driver
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)
if DATABASE_URL.startswith("postgresql://"):
    DATABASE_URL = DATABASE_URL.replace("postgresql://", "postgresql+pg8000://", 1)

if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_timeout=DB_POOL_TIMEOUT_SECONDS,
        pool_pre_ping=True,
        echo=False,
        pool_recycle=DB_POOL_RECYCLE_SECONDS,
    )

# Create SessionLocal class
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create Base class
Base = declarative_base()


def install_slow_query_logging(_engine, threshold_ms: float = SLOW_DB_QUERY_THRESHOLD_MS):
    if threshold_ms <= 0:
        return

    slow_logger = logging.getLogger("db.slow_query")

    @event.listens_for(_engine, "before_cursor_execute")
    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.perf_counter()

    @event.listens_for(_engine, "after_cursor_execute")
    def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        start = getattr(context, "_query_start_time", None)
        if start is None:
            return
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        if elapsed_ms < threshold_ms:
            return

        stmt = " ".join(str(statement).split())
        if len(stmt) > 500:
            stmt = stmt[:500] + "..."
        params_repr = repr(parameters)
        if len(params_repr) > 500:
            params_repr = params_repr[:500] + "..."

        slow_logger.warning(
            "SLOW_DB_QUERY | ms=%.1f | stmt=%s | params=%s",
            elapsed_ms,
            stmt,
            params_repr,
        )


install_slow_query_logging(engine)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """Context manager for database sessions"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(db: Session, *, action: str = "complete the operation"):
    """Scoped unit of work: commit on success, roll back on any failure.

    HTTPExceptions raised inside the block propagate unchanged after the
    rollback. Anything else is logged and reported as a generic 500 so that
    driver and constraint details never reach the client.
    """
    try:
        yield db
        db.commit()
    except HTTPException:
        db.rollback()
        raise
    except Exception as exc:
        db.rollback()
        logger.error(f"Transaction aborted while trying to {action}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action}",
        )


def create_tables():
    """Create all tables"""
    import models  # noqa: F401  registers mappers on Base

    Base.metadata.create_all(bind=engine)
