"""Pytest configuration and fixtures for worker tests."""

import sys
from pathlib import Path

# Add API and worker paths for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "api"))
sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hfe_api.db.models import Base


@pytest.fixture(scope="function")
def session_factory() -> sessionmaker:
    """In-memory SQLite sessionmaker; every session shares one connection."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=True, bind=engine)
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()
