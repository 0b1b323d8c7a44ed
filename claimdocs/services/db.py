"""
SQLAlchemy session and engine setup for PostgreSQL
Used only by the advisory-lock backend; the engine is created on first use so
single-process deployments never need a database driver.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from claimdocs.config import settings

# Load .env file
load_dotenv()

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Create the engine lazily from DATABASE_URL (environment wins over settings)"""
    global _engine
    if _engine is None:
        database_url = os.getenv("DATABASE_URL", settings.database_url)
        _engine = create_engine(
            database_url,
            pool_size=2,  # Lock sessions are short-lived and few
            max_overflow=4,
            pool_pre_ping=True,
            connect_args={
                "connect_timeout": settings.db_connect_timeout,
                "options": "-c statement_timeout=30000"  # 30 second statement timeout
            },
            future=True,
        )
        event.listen(_engine, "connect", _set_postgresql_settings)
        logger.info("Database engine created for advisory locking")
    return _engine


def SessionLocal() -> Session:
    """Session factory bound to the lazily-created engine"""
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=get_engine(),
            expire_on_commit=False,
        )
    return _session_factory()


def _set_postgresql_settings(dbapi_conn, connection_record):
    """Connection-level timeouts for every new PostgreSQL connection"""
    try:
        with dbapi_conn.cursor() as cursor:
            cursor.execute("SET idle_in_transaction_session_timeout = '60s'")
        logger.debug("PostgreSQL connection settings configured")
    except Exception as e:
        logger.warning(f"Failed to configure PostgreSQL connection settings: {e}")

