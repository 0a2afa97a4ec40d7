"""
Test configuration and fixtures for TeamTrack tests.

Provides:
- Test database with SQLite in-memory for speed
- FastAPI test client with database dependency override
- Authentication helpers (JWT token generation)
- Service instances bound to the test session
- Common fixtures for users and a project with a creator and a staff member
"""

import os
import logging
from datetime import timedelta
from typing import Dict, Generator

# Must be set before the application modules read them at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from teamtrack import models
from teamtrack.auth.security import create_access_token, hash_password
from teamtrack.database import Base, get_db
from teamtrack.main import app
from teamtrack.services import (
    ActivityService,
    IdentityService,
    ParticipantService,
    ProjectService,
    TaskService,
)

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def test_db() -> Generator[Session, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.
    """
    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
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


def make_user(db: Session, username: str, password: str = "password123") -> models.User:
    user = models.User(
        username=username,
        email=f"{username}@test.com",
        password_hash=hash_password(password),
        avatar_url=f"https://avatars.test/{username}.png",
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {username} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def creator_user(test_db: Session) -> models.User:
    return make_user(test_db, "alice")


@pytest.fixture(scope="function")
def staff_user(test_db: Session) -> models.User:
    return make_user(test_db, "bob")


@pytest.fixture(scope="function")
def outsider_user(test_db: Session) -> models.User:
    """A user that is not a participant of any project."""
    return make_user(test_db, "carol")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.
    """
    return create_access_token({"sub": str(user.id), "email": user.email}, expires_delta)


def auth_headers_for(user: models.User) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_auth_token(user)}"}


@pytest.fixture(scope="function")
def creator_headers(creator_user: models.User) -> Dict[str, str]:
    return auth_headers_for(creator_user)


@pytest.fixture(scope="function")
def staff_headers(staff_user: models.User) -> Dict[str, str]:
    return auth_headers_for(staff_user)


@pytest.fixture(scope="function")
def outsider_headers(outsider_user: models.User) -> Dict[str, str]:
    return auth_headers_for(outsider_user)


# ============== Services ==============


@pytest.fixture(scope="function")
def activity_service(test_db: Session) -> ActivityService:
    return ActivityService(test_db)


@pytest.fixture(scope="function")
def identity_service(test_db: Session) -> IdentityService:
    return IdentityService(test_db)


@pytest.fixture(scope="function")
def participant_service(test_db: Session) -> ParticipantService:
    return ParticipantService(test_db)


@pytest.fixture(scope="function")
def project_service(test_db: Session) -> ProjectService:
    return ProjectService(test_db)


@pytest.fixture(scope="function")
def task_service(test_db: Session) -> TaskService:
    return TaskService(test_db)


@pytest.fixture(scope="function")
def project(
    project_service: ProjectService,
    creator_user: models.User,
    staff_user: models.User,
) -> models.Project:
    """
    Project created by alice (leader, creator) with bob as staff.
    """
    return project_service.create_project(
        creator_user.id,
        {
            "title": "Apollo",
            "description": "Moon landing",
            "key": "APOLLO",
            "participants": [staff_user.id],
        },
    )


@pytest.fixture(scope="function")
def other_project(project_service: ProjectService, creator_user: models.User) -> models.Project:
    return project_service.create_project(
        creator_user.id,
        {"title": "Gemini", "description": "", "key": "GEMINI", "participants": []},
    )


@pytest.fixture(scope="function")
def root_task(task_service: TaskService, project: models.Project, creator_user: models.User) -> models.Task:
    return task_service.create_root_task(project.id, creator_user.id, {"title": "Launch vehicle"})
