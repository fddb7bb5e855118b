"""
Database Module

This module handles database connections and provides session management.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from github_activity_sync.models import Base

logger = logging.getLogger(__name__)

# Cache for database engines
_engines = {}


def get_engine(database_url):
    """
    Get or create a database engine for the given URL.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Engine instance
    """
    if database_url not in _engines:
        _engines[database_url] = create_engine(
            database_url,
            echo=False,
            connect_args={"check_same_thread": False}
            if "sqlite" in database_url
            else {},
        )
    return _engines[database_url]


def init_db(engine):
    """Create all tables that do not exist yet."""
    with engine.begin() as conn:
        Base.metadata.create_all(bind=conn)
    logger.info(f"Database schema initialized at {engine.url!r}")


@contextmanager
def get_sync_session(engine):
    """
    Get a database session for the given engine.

    Args:
        engine: SQLAlchemy Engine instance

    Yields:
        Session instance
    """
    SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@contextmanager
def session_scope(engine):
    """
    Run a unit of work in a single transaction.

    Commits when the block exits normally and rolls back on any error.
    """
    with get_sync_session(engine) as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
