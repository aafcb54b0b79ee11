"""
SOLE RESPONSIBILITY: Manages the database engine and session creation.
Contains no application logic.
"""

import logging
import time
from typing import Optional

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlalchemy.exc import OperationalError

from .config import APP_DIR, get_config

logger = logging.getLogger(__name__)

# Database file path
db_path = APP_DIR / "taskpilot.db"

_engine: Optional[Engine] = None


def get_database_url() -> str:
    """Resolve database URL: DATABASE_URL / config wins over the default SQLite file."""
    url = get_config().database.url
    if url:
        return url
    APP_DIR.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


def get_engine() -> Engine:
    """
    Lazily create the process-wide engine.
    SQLite uses NullPool: fresh connection per session, never a shared StaticPool.
    """
    global _engine
    if _engine is None:
        url = get_database_url()
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args = {
                "check_same_thread": False,  # SQLite thread safety
                "timeout": 30,  # 30 second timeout for locks
            }
        _engine = create_engine(
            url,
            echo=get_config().database.echo,
            poolclass=NullPool,
            connect_args=connect_args,
        )
    return _engine


def create_db_and_tables():
    """Initialize database schema. Called once at server startup."""
    SQLModel.metadata.create_all(get_engine())
    logger.info("Database schema ready")


def get_session():
    """
    Dependency provider for database sessions with retry logic.
    Implements context manager pattern for FastAPI dependency injection.
    Ensures sessions are always closed after use and handles connection drops.
    """
    max_retries = 3
    retry_delay = 0.5
    engine = get_engine()

    for attempt in range(max_retries):
        try:
            with Session(engine) as session:
                # Test connection is alive
                session.execute(text("SELECT 1"))
                yield session
                return
        except OperationalError as e:
            logger.warning(f"Database connection failed (attempt {attempt + 1}/{max_retries}): {e}")
            if attempt < max_retries - 1:
                time.sleep(retry_delay * (2**attempt))  # Exponential backoff
                engine.dispose()
            else:
                logger.error("Database connection failed after all retries")
                raise
