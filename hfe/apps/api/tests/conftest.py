"""Pytest configuration and fixtures."""

import sys
from pathlib import Path
# Inject sys.path for reliable pytest imports
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))  # => .../apps/api

import os

# Plain-text logs under pytest; set before hfe_api.main is imported
os.environ.setdefault("HFE_JSON_LOGS", "false")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from hfe_api.auth.session_auth import AuthenticatedUser, get_current_user
from hfe_api.db.models import Base
from hfe_api.db.session import get_db
from hfe_api.main import app

from billing_fixtures import TEST_USER_EMAIL, TEST_USER_ID, FakeStripeClient


@pytest.fixture(scope="function")
def db_engine():
    """In-memory SQLite shared across threads (TestClient runs sync routes in a pool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture(scope="function")
def session_factory(db_engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=True, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Session:
    """Create a fresh database session for each test."""
    session = session_factory()
    try:
        yield session
        session.rollback()
    finally:
        session.close()


@pytest.fixture
def fake_stripe() -> FakeStripeClient:
    return FakeStripeClient()


@pytest.fixture
def price_allow_list(monkeypatch):
    """Allow-list holding exactly price_monthly and price_lifetime."""
    monkeypatch.delenv("STRIPE_PRICE_ID_SANDBOX", raising=False)
    monkeypatch.delenv("STRIPE_PRICE_ID_PROD", raising=False)
    monkeypatch.setenv("STRIPE_ALLOWED_PRICE_IDS", "price_monthly,price_lifetime")


@pytest.fixture
def anon_client(db_session: Session):
    """TestClient with the db override only (real session auth)."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close - conftest will handle it

    app.dependency_overrides[get_db] = override_get_db
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()


@pytest.fixture
def test_client(anon_client: TestClient, fake_stripe: FakeStripeClient, monkeypatch):
    """TestClient authenticated as TEST_USER_ID with the fake Stripe client."""
    app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(
        user_id=TEST_USER_ID, email=TEST_USER_EMAIL
    )
    for module in ("checkout", "subscription", "account"):
        monkeypatch.setattr(f"hfe_api.routers.{module}.get_stripe_client", lambda: fake_stripe)
    yield anon_client
