"""
Test configuration and fixtures for TaskFlow API tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Common fixtures for users, workspaces, projects, and tasks
- A recording emitter that captures realtime events
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict, List, Optional

os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")

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
from realtime import get_emitter
from auth.security import hash_password, create_access_token

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


# ============== Realtime recording ==============

class RecordingEmitter:
    """Stands in for RealtimeEmitter and keeps every emitted event."""

    def __init__(self):
        self.events: List[tuple] = []

    def emit_task(self, event_type, task_id, payload=None):
        self.events.append(("task", event_type.value, task_id, payload or {}))

    def emit_notification(self, event_type, user_id, notification_id=None, payload=None):
        self.events.append(("notification", event_type.value, user_id, payload or {}))

    def types(self) -> List[str]:
        return [event[1] for event in self.events]

    def for_task(self, task_id: int) -> List[str]:
        return [event[1] for event in self.events if event[0] == "task" and event[2] == task_id]


@pytest.fixture(scope="function")
def recorded_events(client: TestClient) -> RecordingEmitter:
    """
    Route every emit_* call made by handlers into a RecordingEmitter.

    Depends on client so the override is installed after the database one
    and cleared together with it.
    """
    recorder = RecordingEmitter()
    app.dependency_overrides[get_emitter] = lambda: recorder
    return recorder


# ============== Users ==============

def create_user(db: Session, name: str, email: str, password: str = "password123", is_active: bool = True) -> models.User:
    user = models.User(
        name=name,
        email=email,
        password_hash=hash_password(password),
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {email} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def owner_user(test_db: Session) -> models.User:
    """User who creates the workspaces, projects and tasks under test."""
    return create_user(test_db, "Owner User", "owner@test.com")


@pytest.fixture(scope="function")
def collaborator_user(test_db: Session) -> models.User:
    """Second user, given memberships, assignments or shares per test."""
    return create_user(test_db, "Collaborator User", "collaborator@test.com")


@pytest.fixture(scope="function")
def outsider_user(test_db: Session) -> models.User:
    """User with no grant on anything."""
    return create_user(test_db, "Outsider User", "outsider@test.com")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "email": user.email
    }
    return create_access_token(token_data, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def owner_headers(owner_user: models.User) -> Dict[str, str]:
    return auth_headers_for(owner_user)


@pytest.fixture(scope="function")
def collaborator_headers(collaborator_user: models.User) -> Dict[str, str]:
    return auth_headers_for(collaborator_user)


@pytest.fixture(scope="function")
def outsider_headers(outsider_user: models.User) -> Dict[str, str]:
    return auth_headers_for(outsider_user)


# ============== Containers ==============

def add_member(db: Session, container, user: models.User, role: models.Role):
    """Add a workspace or project membership directly in the database."""
    if isinstance(container, models.Workspace):
        membership = models.WorkspaceMember(workspace_id=container.id, user_id=user.id, role=role)
    else:
        membership = models.ProjectMember(project_id=container.id, user_id=user.id, role=role)
    db.add(membership)
    db.commit()
    db.refresh(membership)
    return membership


@pytest.fixture(scope="function")
def workspace(test_db: Session, owner_user: models.User) -> models.Workspace:
    """
    Create a test workspace with owner_user as owner.
    """
    logger.debug("Creating test workspace")
    workspace = models.Workspace(name="Test Workspace", owner_id=owner_user.id)
    test_db.add(workspace)
    test_db.commit()
    test_db.refresh(workspace)

    add_member(test_db, workspace, owner_user, models.Role.owner)

    logger.info(f"Created test workspace with ID: {workspace.id}")
    return workspace


@pytest.fixture(scope="function")
def project(test_db: Session, owner_user: models.User) -> models.Project:
    """
    Create a test project with owner_user as owner.
    """
    logger.debug("Creating test project")
    project = models.Project(name="Test Project", description="A project for testing", owner_id=owner_user.id)
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    add_member(test_db, project, owner_user, models.Role.owner)

    logger.info(f"Created test project with ID: {project.id}")
    return project


# ============== Tasks ==============

def create_task(
    db: Session,
    creator: models.User,
    title: str = "Test Task",
    workspace: Optional[models.Workspace] = None,
    project: Optional[models.Project] = None,
    **fields,
) -> models.Task:
    """Insert a task directly, bypassing the API."""
    task = models.Task(
        user_id=creator.id,
        workspace_id=workspace.id if workspace else None,
        project_id=project.id if project else None,
        title=title,
        **fields,
    )
    db.add(task)
    db.commit()
    db.refresh(task)
    logger.info(f"Created task '{title}' with ID: {task.id}")
    return task


def share_task(db: Session, task: models.Task, user: models.User, permission: models.SharePermission):
    share = models.TaskShare(task_id=task.id, user_id=user.id, permission=permission)
    db.add(share)
    db.commit()
    db.refresh(task)
    return share


@pytest.fixture(scope="function")
def personal_task(test_db: Session, owner_user: models.User) -> models.Task:
    return create_task(test_db, owner_user, title="Personal Task")
