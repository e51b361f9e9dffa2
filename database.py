"""
Database Configuration and Session Management
=============================================

Engine and session factory for the reconciliation store.
"""

import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from config import Config
from models import Base

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL

    In-memory SQLite shares one connection across threads so that work
    offloaded with asyncio.to_thread sees the same database.
    """
    url = database_url or Config.DATABASE_URL
    echo = Config.DATABASE_ECHO if echo is None else echo

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,    # Validate connections before use
        pool_recycle=3600,
        pool_timeout=30,
        echo=echo,
        connect_args={"application_name": "p2p_auto_release"},
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Create all reconciliation tables (no-op for existing tables)"""
    Base.metadata.create_all(bind=engine)
    logger.info("✅ DATABASE_TABLES_READY: reconciliation schema created")


@contextmanager
def managed_session(session_factory: sessionmaker) -> Iterator[Session]:
    """Sync context manager for database sessions"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Database session error: {e}")
        raise
    finally:
        session.close()
