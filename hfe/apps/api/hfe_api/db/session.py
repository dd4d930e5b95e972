"""Database session management."""

from functools import lru_cache
from typing import Generator

from sqlalchemy.orm import Session, sessionmaker

from hfe_api.db.engine import build_engine, build_sessionmaker


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    """Session factory bound to the process-wide engine (built on first use)."""
    return build_sessionmaker(build_engine())


def get_db() -> Generator[Session, None, None]:
    """
    Get database session.

    Yields:
        Session: SQLAlchemy session
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()
