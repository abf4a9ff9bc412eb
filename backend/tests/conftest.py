"""
Test configuration and fixtures for the collaboration API tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (identity token generation)
- Common fixtures for users and teams
"""

import os
import sys
import logging
import tempfile
from datetime import timedelta
from typing import Generator, Dict

# Configure the app before it is imported
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("IDENTITY_SECRET", "test-identity-secret")
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="collab-uploads-"))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import Base, get_db
from main import app
import models
from auth.security import create_identity_token

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

    # Create engine with SQLite in-memory
    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Replace PostgreSQL-specific types with SQLite-compatible types
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()

    # Create all tables
    Base.metadata.create_all(bind=engine)

    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        # Drop all tables after test
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def test_db(session_factory: sessionmaker) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def client(test_db: Session, session_factory: sessionmaker, monkeypatch) -> TestClient:
    """
    Create FastAPI test client with database dependency override.

    The client is used as a context manager so startup binds the real-time hub.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # The WebSocket endpoint opens its own sessions
    monkeypatch.setattr("routes.realtime.SessionLocal", session_factory)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(db: Session, uid: str, name: str, email: str, role: str = "user",
              status: str = "active") -> models.User:
    user = models.User(id=uid, name=name, email=email, role=role, status=status)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def admin_user(test_db: Session) -> models.User:
    """
    Create a global admin user for testing.
    """
    return make_user(test_db, "uid-admin", "Admin User", "admin@test.com", role="admin")


@pytest.fixture(scope="function")
def regular_user(test_db: Session) -> models.User:
    """
    Create a regular user for testing.
    """
    return make_user(test_db, "uid-regular", "Regular User", "user@test.com")


@pytest.fixture(scope="function")
def another_user(test_db: Session) -> models.User:
    """
    Create another user for testing multi-user scenarios.
    """
    return make_user(test_db, "uid-another", "Another User", "another@test.com")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create an identity token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        Signed identity token string
    """
    logger.debug(f"Creating identity token for user {user.id}")
    return create_identity_token(user.id, user.email, name=user.name, expires_delta=expires_delta)


def bearer(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def auth_headers(admin_user: models.User) -> Dict[str, str]:
    """
    Create authorization headers with admin token.
    """
    return bearer(admin_user)


@pytest.fixture(scope="function")
def user_auth_headers(regular_user: models.User) -> Dict[str, str]:
    """
    Create authorization headers for regular user.
    """
    return bearer(regular_user)


@pytest.fixture(scope="function")
def another_user_auth_headers(another_user: models.User) -> Dict[str, str]:
    """
    Create authorization headers for another user.
    """
    return bearer(another_user)


@pytest.fixture(scope="function")
def team(test_db: Session, regular_user: models.User) -> models.Team:
    """
    Create a test team owned by the regular user.
    """
    logger.debug("Creating test team")
    team = models.Team(
        name="Test Team",
        description="A team for testing",
        owner_id=regular_user.id
    )
    test_db.add(team)
    test_db.commit()
    test_db.refresh(team)

    test_db.add(models.TeamMember(team_id=team.id, user_id=regular_user.id, role=models.TeamRole.owner))
    test_db.commit()

    logger.info(f"Created test team with ID: {team.id}")
    return team


def add_member(db: Session, team: models.Team, user: models.User,
               role: models.TeamRole = models.TeamRole.member) -> models.TeamMember:
    member = models.TeamMember(team_id=team.id, user_id=user.id, role=role)
    db.add(member)
    db.commit()
    return member
