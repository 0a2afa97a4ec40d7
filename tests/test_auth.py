"""
Tests for registration, login, token refresh and the bearer-token dependency.
"""

import logging
from datetime import timedelta

from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from teamtrack import models
from teamtrack.auth.security import create_refresh_token, hash_password, verify_password, verify_token
from tests.conftest import create_auth_token

logger = logging.getLogger(__name__)


def test_password_hashing():
    hashed = hash_password("correct horse")

    assert hashed != "correct horse"
    assert verify_password("correct horse", hashed)
    assert not verify_password("wrong horse", hashed)


def test_verify_token_checks_type(creator_user: models.User):
    refresh = create_refresh_token({"sub": str(creator_user.id)})

    assert verify_token(refresh, expected_type="refresh")["sub"] == str(creator_user.id)
    assert verify_token(refresh, expected_type="access") is None
    assert verify_token("not-a-jwt") is None


def test_register_and_login(client: TestClient, test_db: Session):
    response = client.post(
        "/api/auth/register",
        json={"username": "dave", "email": "dave@test.com", "password": "supersecret"},
    )
    assert response.status_code == 201, response.json()
    body = response.json()
    assert body["username"] == "dave"
    assert body["verify"] == "unverified"
    assert "password_hash" not in body

    response = client.post("/api/auth/login", json={"email": "dave@test.com", "password": "supersecret"})
    assert response.status_code == 200, response.json()
    token = response.json()["access_token"]
    assert "refresh_token" in response.cookies

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["email"] == "dave@test.com"

    user = test_db.query(models.User).filter(models.User.email == "dave@test.com").one()
    assert user.last_login_at is not None
    logger.info("✓ Register, login and /me work end to end")


def test_register_duplicate_email(client: TestClient, creator_user: models.User):
    response = client.post(
        "/api/auth/register",
        json={"username": "alice2", "email": creator_user.email, "password": "supersecret"},
    )
    assert response.status_code == 400


def test_register_duplicate_username(client: TestClient, creator_user: models.User):
    response = client.post(
        "/api/auth/register",
        json={"username": creator_user.username, "email": "other@test.com", "password": "supersecret"},
    )
    assert response.status_code == 400


def test_login_wrong_password(client: TestClient, creator_user: models.User):
    response = client.post("/api/auth/login", json={"email": creator_user.email, "password": "nope-nope"})
    assert response.status_code == 401


def test_login_inactive_user(client: TestClient, test_db: Session, creator_user: models.User):
    creator_user.is_active = False
    test_db.commit()

    response = client.post("/api/auth/login", json={"email": creator_user.email, "password": "password123"})
    assert response.status_code == 403


def test_refresh_issues_new_access_token(client: TestClient, creator_user: models.User):
    login = client.post("/api/auth/login", json={"email": creator_user.email, "password": "password123"})
    assert login.status_code == 200

    response = client.post("/api/auth/refresh")
    assert response.status_code == 200, response.json()
    payload = verify_token(response.json()["access_token"], expected_type="access")
    assert payload["sub"] == str(creator_user.id)


def test_refresh_without_cookie(client: TestClient):
    response = client.post("/api/auth/refresh")
    assert response.status_code == 401


def test_protected_route_requires_token(client: TestClient):
    assert client.get("/api/projects").status_code == 401
    assert client.get("/api/projects", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_expired_token_rejected(client: TestClient, creator_user: models.User):
    token = create_auth_token(creator_user, expires_delta=timedelta(seconds=-1))

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_inactive_user_token_rejected(client: TestClient, test_db: Session, creator_user: models.User):
    token = create_auth_token(creator_user)
    creator_user.is_active = False
    test_db.commit()

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 403
