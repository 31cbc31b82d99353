"""
Session management for the dispatch database.

The session factory binds to the engine lazily, when the first session is
opened, never at import time.
"""

from collections.abc import Callable, Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session, sessionmaker

from db.engine import get_engine

_SessionFactory = sessionmaker(autocommit=False, autoflush=False)


def SessionLocal() -> Session:
    _SessionFactory.configure(bind=get_engine())
    return _SessionFactory()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding a session that is always closed."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(session_factory: Callable[[], Session] = SessionLocal) -> Generator[Session, None, None]:
    """
    One unit of work: commit on success, rollback on any exception.

    Usage:
        with transaction() as db:
            reserve_credits(db, account_id, 5)
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
