"""
Tests for authentication endpoints (/api/auth).

Tests cover:
- Registration (email normalized, duplicates rejected)
- Login with valid and invalid credentials, inactive users
- Token handling in get_current_user
"""

import logging
from datetime import timedelta
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from tests.conftest import create_auth_token, create_user

logger = logging.getLogger(__name__)


# ============== Registration Tests ==============


def test_register_and_login(client: TestClient):
    registered = client.post(
        "/api/auth/register",
        json={"name": "New User", "email": "New.User@Test.com", "password": "longenough"},
    )

    assert registered.status_code == 201, f"Expected 201, got {registered.status_code}: {registered.json()}"
    assert registered.json()["email"] == "new.user@test.com"

    login = client.post("/api/auth/login", json={"email": "new.user@test.com", "password": "longenough"})
    assert login.status_code == 200, f"Expected 200, got {login.status_code}: {login.json()}"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {login.json()['access_token']}"})
    assert me.status_code == 200
    assert me.json()["name"] == "New User"
    logger.info("✓ Register, login and /me round trip")


def test_register_duplicate_email(client: TestClient, owner_user: models.User):
    response = client.post(
        "/api/auth/register",
        json={"name": "Again", "email": owner_user.email, "password": "longenough"},
    )

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"


def test_login_wrong_password(client: TestClient, owner_user: models.User):
    response = client.post("/api/auth/login", json={"email": owner_user.email, "password": "wrong-password"})

    assert response.status_code == 401


def test_login_inactive_user(client: TestClient, test_db: Session):
    create_user(test_db, "Inactive", "inactive@test.com", password="password123", is_active=False)

    response = client.post("/api/auth/login", json={"email": "inactive@test.com", "password": "password123"})

    assert response.status_code == 403


# ============== Token Tests ==============


def test_expired_token_rejected(client: TestClient, owner_user: models.User):
    token = create_auth_token(owner_user, expires_delta=timedelta(minutes=-1))

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401, f"Expected 401, got {response.status_code}: {response.json()}"


def test_token_for_deleted_user_rejected(client: TestClient, test_db: Session, owner_user: models.User):
    token = create_auth_token(owner_user)
    test_db.delete(owner_user)
    test_db.commit()

    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_inactive_user_token_forbidden(client: TestClient, test_db: Session, owner_user: models.User):
    token = create_auth_token(owner_user)
    owner_user.is_active = False
    test_db.commit()

    response = client.get("/api/tasks", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 403
