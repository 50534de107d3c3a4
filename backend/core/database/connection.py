"""
Database connection and session management.

The process entry point calls init_db() once and passes the returned session
factory to every component that needs database access.
"""
from contextlib import contextmanager
from typing import Iterator, Optional
import logging
import time

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, DBAPIError
from sqlalchemy.orm import sessionmaker, Session

from .models import Base

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Convert postgres:// to postgresql:// (some hosts still hand out the old scheme)."""
    if database_url.startswith('postgres://'):
        return database_url.replace('postgres://', 'postgresql://', 1)
    return database_url


def create_db_engine(database_url: str, pool_size: int = 5, max_overflow: int = 10) -> Engine:
    """Create an engine with settings appropriate for the backend."""
    database_url = normalize_database_url(database_url)
    if database_url.startswith('sqlite'):
        return create_engine(database_url)
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=3600,
        connect_args={'connect_timeout': 10},
    )


def init_db(
    database_url: str,
    max_retries: int = 3,
    retry_delay: float = 1.0,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> sessionmaker:
    """
    Initialize the engine and session factory with retry logic.

    Args:
        database_url: SQLAlchemy URL
        max_retries: Number of connection attempts
        retry_delay: Seconds to wait between retries (grows linearly)

    Returns:
        Session factory bound to the new engine

    Raises:
        RuntimeError: If connection fails after all retries
    """
    if not database_url:
        raise RuntimeError("DATABASE_URL not set")

    for attempt in range(max_retries):
        try:
            engine = create_db_engine(database_url, pool_size=pool_size, max_overflow=max_overflow)

            # Test connection
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))

            logger.info(f"Database initialized: {database_url.split('@')[1] if '@' in database_url else 'local'}")
            return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        except (OperationalError, DBAPIError) as e:
            logger.warning(f"Database connection attempt {attempt + 1}/{max_retries} failed: {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (attempt + 1))
            else:
                logger.error(f"Database initialization failed after {max_retries} attempts")
                raise RuntimeError(f"Failed to connect to database: {e}") from e

    raise RuntimeError("Failed to connect to database")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Iterator[Session]:
    """
    Transactional scope: commit on success, rollback on error, always close.

    Usage:
        with session_scope(session_factory) as db:
            db.add(obj)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_tables(engine: Optional[Engine]):
    """
    Create all tables in the database.
    Only use for initial setup and tests.
    """
    if engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")

    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
