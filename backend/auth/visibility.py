"""
Task visibility resolution.

Combines four independent grant sources to decide what a user may do with a
task:
1. Creator (task.user_id)
2. Assignee (task_assignees row)
3. Per-task share (task_shares row, personal tasks only)
4. Role in the task's workspace or project

Read access is the OR of all four. Write access depends on the container:
container tasks are governed by the container role alone, personal tasks by
creator, assignee or an editor share.
"""

import logging
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from errors import Forbidden, NotFound, ValidationFailed
from models import (
    PersonalScope, ProjectMember, SharePermission, Task, TaskAssignee, TaskScope,
    TaskShare, WorkspaceMember,
)
from auth.permissions import (
    can_read, can_write, get_container_or_404, readable_container_ids, role_of,
)

logger = logging.getLogger(__name__)


# ============== Individual grants ==============

def is_creator(task: Task, user_id: int) -> bool:
    return task.user_id == user_id


def is_assignee(task: Task, user_id: int) -> bool:
    return any(assignee.user_id == user_id for assignee in task.assignees)


def share_permission(task: Task, user_id: int) -> Optional[SharePermission]:
    """Permission of the user's share entry on this task, if any."""
    for share in task.shares:
        if share.user_id == user_id:
            return share.permission
    return None


# ============== Decisions ==============

def can_read_task(db: Session, task: Task, user_id: int) -> bool:
    """Check read access as the union of all grant sources."""
    if is_creator(task, user_id) or is_assignee(task, user_id):
        return True
    if share_permission(task, user_id) is not None:
        return True

    scope = task.scope
    if isinstance(scope, PersonalScope):
        return False
    return can_read(role_of(db, scope, user_id))


def can_write_task(db: Session, task: Task, user_id: int) -> bool:
    """
    Check write access to a task.

    Container tasks: only the container role counts. Shares and assignment
    never unlock writes on workspace/project tasks.
    Personal tasks: creator, any assignee, or an editor share.
    """
    scope = task.scope
    if not isinstance(scope, PersonalScope):
        return can_write(role_of(db, scope, user_id))

    return (
        is_creator(task, user_id)
        or is_assignee(task, user_id)
        or share_permission(task, user_id) == SharePermission.editor
    )


def can_delete_task(db: Session, task: Task, user_id: int) -> bool:
    """Container tasks follow container write; personal tasks only their creator."""
    scope = task.scope
    if not isinstance(scope, PersonalScope):
        return can_write(role_of(db, scope, user_id))
    return is_creator(task, user_id)


def task_visibility_filter(user_id: int):
    """
    Build the listing filter for tasks visible to a user.

    Equivalent to can_read_task for every row, but expressed as a single SQL
    disjunction so sorting and pagination happen in the database.

    Example:
        >>> query = db.query(Task).filter(task_visibility_filter(user.id))
    """
    return or_(
        Task.user_id == user_id,
        Task.assignees.any(TaskAssignee.user_id == user_id),
        Task.shares.any(TaskShare.user_id == user_id),
        Task.project_id.in_(
            readable_container_ids(ProjectMember, ProjectMember.project_id, user_id)
        ),
        Task.workspace_id.in_(
            readable_container_ids(WorkspaceMember, WorkspaceMember.workspace_id, user_id)
        ),
    )


# ============== Guards used by route handlers ==============

def load_readable_task(db: Session, task_id: int, user_id: int) -> Task:
    """
    Load a task the user may read.

    Raises:
        NotFound: 404 both when the task is missing and when the user has no
            grant on it, so existence is never confirmed to outsiders
    """
    task = db.get(Task, task_id)
    if task is None:
        logger.info(f"Task {task_id} not found")
        raise NotFound("Task not found")

    if not can_read_task(db, task, user_id):
        logger.info(f"User {user_id} has no grant on task {task_id}, returning 404")
        raise NotFound("Task not found")

    return task


def require_task_write(db: Session, task: Task, user_id: int) -> None:
    if not can_write_task(db, task, user_id):
        logger.info(f"User {user_id} denied write on task {task.id}")
        raise Forbidden()


def require_task_delete(db: Session, task: Task, user_id: int) -> None:
    if not can_delete_task(db, task, user_id):
        logger.info(f"User {user_id} denied delete on task {task.id}")
        raise Forbidden()


def require_share_management(task: Task, user_id: int) -> None:
    """
    Only the creator of a personal task may add, change, or remove shares.

    Raises:
        ValidationFailed: 400 for workspace/project tasks (use memberships)
        Forbidden: 403 for anyone but the creator
    """
    scope = task.scope
    if not isinstance(scope, PersonalScope):
        kind = "project" if task.project_id is not None else "workspace"
        raise ValidationFailed(f"Use {kind} members for {kind} tasks")
    if not is_creator(task, user_id):
        logger.info(f"User {user_id} tried to manage shares of task {task.id}")
        raise Forbidden("Only the task owner can manage sharing")


def require_scope_change(db: Session, task: Task, new_scope: TaskScope, user_id: int) -> None:
    """
    Authorize moving a task into another container.

    Write on the current container is checked by require_task_write; this
    adds write on the destination. Runs before any field is assigned so a
    denial leaves the task untouched.
    """
    if new_scope == task.scope or isinstance(new_scope, PersonalScope):
        return

    get_container_or_404(db, new_scope)
    if not can_write(role_of(db, new_scope, user_id)):
        logger.info(f"User {user_id} cannot move task {task.id} into {new_scope}")
        raise Forbidden()
