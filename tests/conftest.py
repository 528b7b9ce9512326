"""
Shared fixtures: an in-memory SQLite database, a temporary blob store and
API users with tokens, wired into the FastAPI app through dependency
overrides.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from safety_gateway.clients.blob_store import LocalBlobStore, get_blob_store
from safety_gateway.core.security import rate_limit_storage
from safety_gateway.db.session import get_db, Base
from safety_gateway.schemas.user import UserCreate
from safety_gateway.services.user_service import create_user

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite://"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    """Override database dependency for testing."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def database():
    """Fresh schema for every test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def reset_rate_limits():
    rate_limit_storage.clear()
    yield
    rate_limit_storage.clear()


@pytest.fixture
def db_session():
    """Create database session for testing."""
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory():
    return TestingSessionLocal


@pytest.fixture
def blob_store(tmp_path):
    store = LocalBlobStore(str(tmp_path / "blobs"), signing_key="test-signing-key")
    app.dependency_overrides[get_blob_store] = lambda: store
    yield store
    app.dependency_overrides.pop(get_blob_store, None)


@pytest.fixture
def client(blob_store):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def user(db_session):
    return create_user(db_session, UserCreate(name="Test User", email="test@example.com", requests_limit=5))


@pytest.fixture
def other_user(db_session):
    return create_user(db_session, UserCreate(name="Other User", email="other@example.com", requests_limit=5))


@pytest.fixture
def auth_headers(user):
    return {"Authorization": f"Bearer {user.api_token}"}
