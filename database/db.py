"""
Database connection utilities.

Provides:
- Database engine creation
- Session management (FastAPI dependency and context manager)
- Table creation helpers for development and tests
"""

import os
from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator, Iterator
import logging

from database.models import Base

logger = logging.getLogger(__name__)

# Get database URL from environment
DATABASE_URL = os.getenv("DATABASE_URL")

if not DATABASE_URL:
    DATABASE_URL = "sqlite:///./tipping.db"
    logger.warning("DATABASE_URL not set, falling back to local SQLite (tipping.db)")


def build_engine(url: str) -> Engine:
    """
    Create an engine for `url`.

    pool_pre_ping=True: Check connection health before using
    SQLite connections are shared across FastAPI worker threads.
    """
    kwargs = {"pool_pre_ping": True, "echo": False}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def build_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autoflush=False
    )


engine = build_engine(DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI routes to get database session.

    Usage in FastAPI:
        @router.get("/payouts/{payout_id}")
        def get_payout(payout_id: int, db: Session = Depends(get_db)):
            ...

    Benefits:
    - Automatic commit on success
    - Automatic rollback on exception
    - Ensures connection is closed
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker = None) -> Iterator[Session]:
    """Same commit/rollback/close contract as get_db(), for Celery tasks."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(f"Database error: {e}")
        raise
    finally:
        db.close()


def create_tables(bind: Engine = None):
    """
    Create all tables in database.

    WARNING: Only use in development!
    Production should use Alembic migrations.
    """
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")


def drop_tables(bind: Engine = None):
    """
    Drop all tables in database.

    WARNING: DESTRUCTIVE! Only use in testing.
    """
    Base.metadata.drop_all(bind=bind or engine)
    logger.warning("All database tables dropped")
