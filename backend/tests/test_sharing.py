"""
Tests for per-task sharing (/api/tasks/{id}/shares and shared_with on update).

Tests cover:
- Viewer shares are read-only, editor shares can write
- Promotion and demotion upsert the same entry
- Only the creator of a personal task manages shares
- Container tasks cannot be shared
"""

import logging
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from tests.conftest import auth_headers_for, create_task, share_task

logger = logging.getLogger(__name__)


# ============== Share Management Tests ==============


def test_share_then_promote_and_demote(
    client: TestClient,
    test_db: Session,
    personal_task: models.Task,
    collaborator_user: models.User,
    owner_headers: dict,
    recorded_events
):
    """Sharing twice with the same user changes the permission in place."""
    collaborator_headers = auth_headers_for(collaborator_user)

    response = client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": collaborator_user.email, "permission": "viewer"},
        headers=owner_headers
    )
    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["permission"] == "viewer"

    assert client.get(f"/api/tasks/{personal_task.id}", headers=collaborator_headers).status_code == 200
    denied = client.put(f"/api/tasks/{personal_task.id}", json={"title": "Edited"}, headers=collaborator_headers)
    assert denied.status_code == 403, f"Expected 403, got {denied.status_code}: {denied.json()}"

    promoted = client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": collaborator_user.email, "permission": "editor"},
        headers=owner_headers
    )
    assert promoted.json()["permission"] == "editor"
    assert test_db.query(models.TaskShare).filter(models.TaskShare.task_id == personal_task.id).count() == 1

    edited = client.put(f"/api/tasks/{personal_task.id}", json={"title": "Edited"}, headers=collaborator_headers)
    assert edited.status_code == 200, f"Expected 200, got {edited.status_code}: {edited.json()}"

    client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": collaborator_user.email, "permission": "viewer"},
        headers=owner_headers
    )
    demoted = client.put(f"/api/tasks/{personal_task.id}", json={"title": "Again"}, headers=collaborator_headers)
    assert demoted.status_code == 403

    assert recorded_events.for_task(personal_task.id).count("task.updated") == 4  # three share upserts and one edit
    logger.info("✓ Share promotion and demotion applied in place")


def test_list_shares(
    client: TestClient,
    test_db: Session,
    personal_task: models.Task,
    collaborator_user: models.User,
    owner_headers: dict
):
    share_task(test_db, personal_task, collaborator_user, models.SharePermission.editor)

    response = client.get(f"/api/tasks/{personal_task.id}/shares", headers=owner_headers)

    assert response.status_code == 200
    assert response.json() == [{
        "user_id": collaborator_user.id,
        "permission": "editor",
        "user": {"id": collaborator_user.id, "name": collaborator_user.name, "email": collaborator_user.email},
    }]


def test_share_with_owner_rejected(
    client: TestClient,
    personal_task: models.Task,
    owner_user: models.User,
    owner_headers: dict
):
    response = client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": owner_user.email, "permission": "editor"},
        headers=owner_headers
    )

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"


def test_share_with_unknown_email(client: TestClient, personal_task: models.Task, owner_headers: dict):
    response = client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": "nobody@test.com"},
        headers=owner_headers
    )

    assert response.status_code == 404


def test_share_container_task_rejected(
    client: TestClient,
    test_db: Session,
    workspace: models.Workspace,
    owner_user: models.User,
    collaborator_user: models.User,
    owner_headers: dict
):
    task = create_task(test_db, owner_user, workspace=workspace)

    response = client.post(
        f"/api/tasks/{task.id}/shares",
        json={"email": collaborator_user.email},
        headers=owner_headers
    )

    assert response.status_code == 400, f"Expected 400, got {response.status_code}: {response.json()}"


def test_non_creator_cannot_manage_shares(
    client: TestClient,
    test_db: Session,
    personal_task: models.Task,
    collaborator_user: models.User,
    outsider_user: models.User,
    outsider_headers: dict
):
    """A reader who is not the creator gets 403, a non-reader gets 404."""
    share_task(test_db, personal_task, collaborator_user, models.SharePermission.editor)

    editor_response = client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": outsider_user.email},
        headers=auth_headers_for(collaborator_user)
    )
    outsider_response = client.post(
        f"/api/tasks/{personal_task.id}/shares",
        json={"email": outsider_user.email},
        headers=outsider_headers
    )

    assert editor_response.status_code == 403, f"Expected 403, got {editor_response.status_code}: {editor_response.json()}"
    assert outsider_response.status_code == 404


def test_editor_cannot_replace_shared_with(
    client: TestClient,
    test_db: Session,
    personal_task: models.Task,
    collaborator_user: models.User
):
    share_task(test_db, personal_task, collaborator_user, models.SharePermission.editor)

    response = client.put(
        f"/api/tasks/{personal_task.id}",
        json={"shared_with": []},
        headers=auth_headers_for(collaborator_user)
    )

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"


def test_unshare(
    client: TestClient,
    test_db: Session,
    personal_task: models.Task,
    collaborator_user: models.User,
    owner_headers: dict
):
    share_task(test_db, personal_task, collaborator_user, models.SharePermission.viewer)

    response = client.delete(f"/api/tasks/{personal_task.id}/shares/{collaborator_user.id}", headers=owner_headers)
    again = client.delete(f"/api/tasks/{personal_task.id}/shares/{collaborator_user.id}", headers=owner_headers)

    assert response.status_code == 204, f"Expected 204, got {response.status_code}"
    assert again.status_code == 404
    assert client.get(f"/api/tasks/{personal_task.id}", headers=auth_headers_for(collaborator_user)).status_code == 404
    logger.info("✓ Unshared user loses read access")


def test_replace_shares_through_update(
    client: TestClient,
    personal_task: models.Task,
    collaborator_user: models.User,
    outsider_user: models.User,
    owner_headers: dict
):
    response = client.put(
        f"/api/tasks/{personal_task.id}",
        json={"shared_with": [
            {"user_id": collaborator_user.id, "permission": "editor"},
            {"user_id": outsider_user.id, "permission": "viewer"},
        ]},
        headers=owner_headers
    )

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    entries = {entry["user_id"]: entry["permission"] for entry in response.json()["shared_with"]}
    assert entries == {collaborator_user.id: "editor", outsider_user.id: "viewer"}

    narrowed = client.put(
        f"/api/tasks/{personal_task.id}",
        json={"shared_with": [{"user_id": outsider_user.id, "permission": "editor"}]},
        headers=owner_headers
    )
    entries = {entry["user_id"]: entry["permission"] for entry in narrowed.json()["shared_with"]}
    assert entries == {outsider_user.id: "editor"}


def test_create_task_with_repeated_share_entry(
    client: TestClient,
    test_db: Session,
    collaborator_user: models.User,
    owner_headers: dict
):
    """Share entries are keyed by user; the last entry for a user wins."""
    response = client.post(
        "/api/tasks",
        json={"title": "Shared twice", "shared_with": [
            {"user_id": collaborator_user.id, "permission": "viewer"},
            {"user_id": collaborator_user.id, "permission": "editor"},
        ]},
        headers=owner_headers
    )

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    assert [(entry["user_id"], entry["permission"]) for entry in response.json()["shared_with"]] == [
        (collaborator_user.id, "editor"),
    ]
    assert test_db.query(models.TaskShare).count() == 1
