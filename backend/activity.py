"""
Append-only activity log for task and membership changes.

record_activity runs after the primary mutation has been committed and
before the response is returned. A failure here is logged and swallowed:
the mutation is the source of truth, the log entry is a side effect.
"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)


def record_activity(
    db: Session,
    task_id: Optional[int],
    scope: models.TaskScope,
    actor_id: int,
    action: models.ActivityAction,
    details: Optional[dict[str, Any]] = None,
) -> Optional[models.TaskActivity]:
    """
    Append an activity record.

    Args:
        db: Database session
        task_id: ID of the task (None for membership actions)
        scope: Container of the task or membership
        actor_id: ID of the user who performed the action
        action: Kind of change
        details: Action-specific JSON-serializable payload

    Returns:
        The stored TaskActivity, or None if writing it failed
    """
    logger.debug(f"Recording activity: action={action.value}, task_id={task_id}, actor_id={actor_id}")

    entry = models.TaskActivity(
        task_id=task_id,
        project_id=scope.id if isinstance(scope, models.ProjectScope) else None,
        workspace_id=scope.id if isinstance(scope, models.WorkspaceScope) else None,
        actor_id=actor_id,
        action=action.value,
        details=details or {},
    )

    try:
        db.add(entry)
        db.commit()
        db.refresh(entry)
    except SQLAlchemyError:
        logger.exception(f"Failed to record {action.value} activity for task {task_id}")
        db.rollback()
        return None

    logger.debug(f"Activity recorded: id={entry.id}, action={action.value}")
    return entry


def list_task_activity(db: Session, task_id: int, limit: int = 100) -> list[models.TaskActivity]:
    """Newest-first activity of one task."""
    return (
        db.query(models.TaskActivity)
        .filter(models.TaskActivity.task_id == task_id)
        .order_by(models.TaskActivity.created_at.desc(), models.TaskActivity.id.desc())
        .limit(limit)
        .all()
    )
