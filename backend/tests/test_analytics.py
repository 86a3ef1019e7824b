"""
Tests for the analytics summary endpoint (/api/analytics/summary).

Tests cover:
- Totals and completion rate over the tasks the user created
- Overdue trend, weekly and monthly series shapes and counts
- Workspace filter gated by membership
"""

import logging
from datetime import timedelta
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import models
from time_utils import utc_now
from tests.conftest import auth_headers_for, create_task

logger = logging.getLogger(__name__)


def seed_tasks(db: Session, owner: models.User, other: models.User, workspace: models.Workspace):
    now = utc_now()
    create_task(db, owner, title="Shipped", status=models.TaskStatus.done, completed_at=now)
    create_task(db, owner, title="Late", due_date=now - timedelta(days=1))
    create_task(db, owner, title="Someday")
    create_task(db, owner, title="Team work", workspace=workspace)
    create_task(db, other, title="Not mine", due_date=now - timedelta(days=1))


# ============== Summary Tests ==============


def test_summary_totals(
    client: TestClient,
    test_db: Session,
    workspace: models.Workspace,
    owner_user: models.User,
    collaborator_user: models.User,
    owner_headers: dict
):
    seed_tasks(test_db, owner_user, collaborator_user, workspace)

    response = client.get("/api/analytics/summary", headers=owner_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    summary = response.json()
    assert summary["totals"] == {"total": 4, "done": 1, "overdue": 1, "active": 3}
    assert summary["completion_rate"] == 25
    logger.info("✓ Analytics totals computed")


def test_summary_series(
    client: TestClient,
    test_db: Session,
    workspace: models.Workspace,
    owner_user: models.User,
    collaborator_user: models.User,
    owner_headers: dict
):
    seed_tasks(test_db, owner_user, collaborator_user, workspace)
    today = utc_now().date()

    summary = client.get("/api/analytics/summary", headers=owner_headers).json()

    trend = summary["overdue_trend"]
    assert len(trend) == 14
    assert trend[-1]["date"] == today.isoformat()
    assert {point["date"]: point["count"] for point in trend if point["count"]} == {
        (today - timedelta(days=1)).isoformat(): 1,
    }

    weekly = summary["productivity_weekly"]
    assert len(weekly) == 8
    assert weekly[-1]["week_start"] == (today - timedelta(days=today.weekday())).isoformat()
    assert (weekly[-1]["created"], weekly[-1]["completed"]) == (4, 1)
    assert sum(week["created"] for week in weekly) == 4

    monthly = summary["productivity_monthly"]
    assert [len(monthly), monthly[-1]["month"]] == [6, today.strftime("%Y-%m")]
    assert (monthly[-1]["created"], monthly[-1]["completed"]) == (4, 1)


def test_summary_without_tasks(client: TestClient, owner_headers: dict):
    summary = client.get("/api/analytics/summary", headers=owner_headers).json()

    assert summary["totals"] == {"total": 0, "done": 0, "overdue": 0, "active": 0}
    assert summary["completion_rate"] == 0
    assert all(point["count"] == 0 for point in summary["overdue_trend"])


# ============== Workspace Filter Tests ==============


def test_summary_for_workspace(
    client: TestClient,
    test_db: Session,
    workspace: models.Workspace,
    owner_user: models.User,
    collaborator_user: models.User,
    owner_headers: dict
):
    seed_tasks(test_db, owner_user, collaborator_user, workspace)

    response = client.get(f"/api/analytics/summary?workspace_id={workspace.id}", headers=owner_headers)

    assert response.status_code == 200, f"Expected 200, got {response.status_code}: {response.json()}"
    assert response.json()["totals"] == {"total": 1, "done": 0, "overdue": 0, "active": 1}


def test_summary_for_workspace_requires_membership(
    client: TestClient,
    workspace: models.Workspace,
    outsider_user: models.User
):
    response = client.get(
        f"/api/analytics/summary?workspace_id={workspace.id}",
        headers=auth_headers_for(outsider_user)
    )

    assert response.status_code == 403, f"Expected 403, got {response.status_code}: {response.json()}"


def test_summary_for_missing_workspace(client: TestClient, owner_headers: dict):
    response = client.get("/api/analytics/summary?workspace_id=9999", headers=owner_headers)

    assert response.status_code == 404
