"""
Test configuration and fixtures for Kanban backend tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, projects, collaborators and tasks
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict

# Settings are read at import time, so the environment has to be prepared
# before any application module is imported.
TEST_ENCRYPTION_KEY = "0123456789abcdef" * 4
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = TEST_ENCRYPTION_KEY
os.environ["ENCRYPTION_KDF_ITERATIONS"] = "1000"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-kanban-tests")

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
from auth.security import create_access_token
from encryption import EncryptionCodec, PROJECT_FIELDS, TASK_FIELDS

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    This ensures test isolation and fast execution.
    """
    logger.debug("Creating test database")

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

    Base.metadata.create_all(bind=engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    db = TestingSessionLocal()

    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def client(test_db: Session) -> TestClient:
    """
    Create FastAPI test client with database dependency override.

    Entering the client runs the startup hook, so every test gets a fresh
    rate limiter.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def codec() -> EncryptionCodec:
    """Codec built from the same key the application uses in tests."""
    return EncryptionCodec.from_hex(TEST_ENCRYPTION_KEY, kdf_iterations=1000)


def make_user(db: Session, name: str, email: str, external_auth_id: str) -> models.User:
    user = models.User(name=name, email=email, external_auth_id=external_auth_id)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {email} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def owner_user(test_db: Session) -> models.User:
    return make_user(test_db, "Olivia Owner", "owner@test.com", "auth0|owner")


@pytest.fixture(scope="function")
def editor_user(test_db: Session) -> models.User:
    return make_user(test_db, "Eddie Editor", "editor@test.com", "auth0|editor")


@pytest.fixture(scope="function")
def viewer_user(test_db: Session) -> models.User:
    return make_user(test_db, "Vera Viewer", "viewer@test.com", "auth0|viewer")


@pytest.fixture(scope="function")
def outsider_user(test_db: Session) -> models.User:
    return make_user(test_db, "Oscar Outsider", "outsider@test.com", "auth0|outsider")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create a bearer token for a user, as the identity provider would.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": user.external_auth_id,
        "email": user.email,
    }
    return create_access_token(token_data, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def owner_headers(owner_user: models.User) -> Dict[str, str]:
    return auth_headers_for(owner_user)


@pytest.fixture(scope="function")
def editor_headers(editor_user: models.User) -> Dict[str, str]:
    return auth_headers_for(editor_user)


@pytest.fixture(scope="function")
def viewer_headers(viewer_user: models.User) -> Dict[str, str]:
    return auth_headers_for(viewer_user)


@pytest.fixture(scope="function")
def outsider_headers(outsider_user: models.User) -> Dict[str, str]:
    return auth_headers_for(outsider_user)


@pytest.fixture(scope="function")
def project(test_db: Session, owner_user: models.User, codec: EncryptionCodec) -> models.Project:
    """
    Create a project owned by owner_user, with encrypted name/description.
    """
    logger.debug("Creating test project")
    project = models.Project(owner_user_id=owner_user.id)
    PROJECT_FIELDS.store(project, {"name": "Launch Board", "description": "Release planning"}, codec)
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)
    logger.info(f"Created test project with ID: {project.id}")
    return project


def add_collaborator(db: Session, project: models.Project, user: models.User, role: str) -> models.ProjectCollaborator:
    collaborator = models.ProjectCollaborator(
        project_id=project.id,
        user_id=user.id,
        role=models.CollaboratorRole(role),
    )
    db.add(collaborator)
    db.commit()
    db.refresh(collaborator)
    return collaborator


@pytest.fixture(scope="function")
def team_project(
    test_db: Session,
    project: models.Project,
    editor_user: models.User,
    viewer_user: models.User,
) -> models.Project:
    """The test project with editor_user as editor and viewer_user as viewer."""
    add_collaborator(test_db, project, editor_user, "editor")
    add_collaborator(test_db, project, viewer_user, "viewer")
    return project


def make_task(
    db: Session,
    project: models.Project,
    codec: EncryptionCodec,
    title: str,
    position: int = 0,
    description: str = None,
    **values,
) -> models.Task:
    task = models.Task(project_id=project.id, position=position, version=1, **values)
    TASK_FIELDS.store(task, {"title": title, "description": description}, codec)
    db.add(task)
    db.commit()
    db.refresh(task)
    return task


@pytest.fixture(scope="function")
def task(test_db: Session, team_project: models.Project, codec: EncryptionCodec) -> models.Task:
    """A task at version 1 in the team project."""
    return make_task(test_db, team_project, codec, "Write release notes", description="Draft for v2")
