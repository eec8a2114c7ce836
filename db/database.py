"""
Database connection and session management for the photo stock pipeline.

Provides:
- Engine creation from DATABASE_URL or the DB_* variables
- Session factory with context manager support
- Table creation and connection verification
"""

import logging
import os
import threading
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url
from sqlalchemy.orm import Session, sessionmaker

from db.models import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# ────────────────────────────────────────────────────────────────────────────────
# Configuration
# ────────────────────────────────────────────────────────────────────────────────

def get_database_url() -> str:
    """
    Resolve the database URL.

    DATABASE_URL wins when set; otherwise a PostgreSQL URL is built
    from DB_HOST, DB_PORT, DB_NAME, DB_USER and DB_PASSWORD.

    Returns:
        Connection string in SQLAlchemy format.

    Raises:
        ValueError: If neither DATABASE_URL nor DB_PASSWORD is set.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    host = os.getenv("DB_HOST", "localhost")
    port = os.getenv("DB_PORT", "5432")
    name = os.getenv("DB_NAME", "photo_stock")
    user = os.getenv("DB_USER", "postgres")
    password = os.getenv("DB_PASSWORD")

    if not password:
        raise ValueError(
            "DB_PASSWORD (or DATABASE_URL) environment variable is required. "
            "Please set it in your .env file."
        )

    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


def get_engine_settings(database_url: str) -> dict:
    """
    Get engine keyword arguments for the given database.

    SQLite is shared between scheduler threads, so it gets a busy timeout
    instead of pool sizing.

    Args:
        database_url: Connection string the engine will use.

    Returns:
        Dictionary of create_engine keyword arguments.
    """
    if make_url(database_url).get_backend_name() == "sqlite":
        return {
            "connect_args": {
                "check_same_thread": False,
                "timeout": int(os.getenv("DB_BUSY_TIMEOUT", "30")),
            },
        }

    return {
        "pool_size": int(os.getenv("DB_POOL_SIZE", "5")),
        "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "10")),
        "pool_pre_ping": True,  # Verify connections before use
        "pool_recycle": 3600,   # Recycle connections after 1 hour
    }


# ────────────────────────────────────────────────────────────────────────────────
# Engine and Session Management
# ────────────────────────────────────────────────────────────────────────────────

# Created lazily; scheduler threads may race for the first session
_engine: Engine | None = None
_session_factory: sessionmaker | None = None
_engine_lock = threading.Lock()


def get_engine() -> Engine:
    """
    Get or create the shared SQLAlchemy engine.

    Returns:
        Configured SQLAlchemy Engine instance.
    """
    global _engine

    with _engine_lock:
        if _engine is None:
            database_url = get_database_url()
            _engine = create_engine(database_url, echo=False, **get_engine_settings(database_url))
            logger.info(f"Engine created for {_engine.url.render_as_string(hide_password=True)}")
        return _engine


def get_session() -> Session:
    """
    Open a session bound to the shared engine.

    Objects stay usable after commit (expire_on_commit=False) because
    repositories hand them to other threads. Prefer session_scope().

    Returns:
        New SQLAlchemy Session instance.
    """
    global _session_factory

    engine = get_engine()
    with _engine_lock:
        if _session_factory is None or _session_factory.kw.get("bind") is not engine:
            _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        factory = _session_factory
    return factory()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """
    Transactional scope: commit on success, roll back on any exception.

    Yields:
        SQLAlchemy Session instance.

    Example:
        with session_scope() as session:
            batch = session.get(Batch, batch_id)
            batch.status = BatchStatus.QUEUED
    """
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.debug(f"Session rolled back: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()


# ────────────────────────────────────────────────────────────────────────────────
# Database Initialization
# ────────────────────────────────────────────────────────────────────────────────

def init_db() -> bool:
    """
    Initialize database by creating all tables.

    Returns:
        True if successful, False otherwise.
    """
    try:
        engine = get_engine()
        logger.info("Creating database tables...")
        Base.metadata.create_all(engine)
        logger.info("Database tables created successfully!")
        return True
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        return False


def drop_db() -> bool:
    """
    Drop all pipeline tables.

    Returns:
        True if successful, False otherwise.
    """
    try:
        engine = get_engine()
        logger.warning("Dropping all database tables...")
        Base.metadata.drop_all(engine)
        return True
    except Exception as e:
        logger.error(f"Failed to drop tables: {e}")
        return False


def verify_connection() -> bool:
    """
    Verify database connection is working.

    Returns:
        True if connection successful, False otherwise.
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection verified successfully!")
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False


def get_db_info() -> dict:
    """
    Get database connection information (for debugging).

    Returns:
        Dictionary with connection details (password masked).
    """
    url = make_url(get_database_url())
    return {
        "backend": url.get_backend_name(),
        "host": url.host,
        "port": url.port,
        "database": url.database,
        "user": url.username,
    }


# ────────────────────────────────────────────────────────────────────────────────
# Cleanup
# ────────────────────────────────────────────────────────────────────────────────

def dispose_engine() -> None:
    """
    Dispose of the engine and close all pooled connections.

    The next session re-reads the configuration, which lets tests and
    short-lived CLI runs switch databases.
    """
    global _engine, _session_factory

    with _engine_lock:
        engine, _engine, _session_factory = _engine, None, None

    if engine is not None:
        engine.dispose()
        logger.debug("Database engine disposed")
