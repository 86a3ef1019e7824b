"""
Tests for notification endpoints (/api/notifications).

Tests cover:
- Listing own notifications with the unread count
- Marking one or all notifications as read, with per-user events
- Other users' notifications stay invisible
"""

import logging
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from time_utils import utc_now

logger = logging.getLogger(__name__)


def create_notification(db: Session, user: models.User, title: str = "Task due soon", read: bool = False) -> models.Notification:
    notification = models.Notification(
        user_id=user.id,
        type="due_soon",
        title=title,
        message=f"{title} is due within 24 hours",
        read_at=utc_now() if read else None,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


# ============== Listing Tests ==============


def test_list_notifications_with_unread_count(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    collaborator_user: models.User,
    owner_headers: dict
):
    create_notification(test_db, owner_user, "First", read=True)
    create_notification(test_db, owner_user, "Second")
    create_notification(test_db, collaborator_user, "Not yours")

    response = client.get("/api/notifications", headers=owner_headers)
    unread = client.get("/api/notifications?unread_only=true", headers=owner_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert [item["title"] for item in response.json()["items"]] == ["Second", "First"]
    assert response.json()["unread_count"] == 1
    assert [item["title"] for item in unread.json()["items"]] == ["Second"]
    logger.info("✓ Notifications listed with unread count")


# ============== Read State Tests ==============


def test_mark_notification_read(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    owner_headers: dict,
    recorded_events
):
    notification = create_notification(test_db, owner_user)

    response = client.post(f"/api/notifications/{notification.id}/read", headers=owner_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["read_at"] is not None
    assert recorded_events.events == [("notification", "notification.read", owner_user.id, {})]
    assert client.get("/api/notifications", headers=owner_headers).json()["unread_count"] == 0


def test_cannot_read_someone_elses_notification(
    client: TestClient,
    test_db: Session,
    collaborator_user: models.User,
    owner_headers: dict
):
    notification = create_notification(test_db, collaborator_user)

    response = client.post(f"/api/notifications/{notification.id}/read", headers=owner_headers)

    assert response.status_code == 404, f"Expected 404, got {response.status_code}: {response.json()}"
    test_db.refresh(notification)
    assert notification.read_at is None


def test_mark_all_read(
    client: TestClient,
    test_db: Session,
    owner_user: models.User,
    collaborator_user: models.User,
    owner_headers: dict,
    recorded_events
):
    create_notification(test_db, owner_user, "One")
    create_notification(test_db, owner_user, "Two")
    others = create_notification(test_db, collaborator_user, "Theirs")

    response = client.post("/api/notifications/read-all", headers=owner_headers)

    assert response.status_code == 204, f"Expected 204, got {response.status_code}"
    assert client.get("/api/notifications", headers=owner_headers).json()["unread_count"] == 0
    test_db.refresh(others)
    assert others.read_at is None
    assert recorded_events.types() == ["notification.read_all"]
