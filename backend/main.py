from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session, joinedload
from sqlalchemy import and_, asc, case, desc, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from typing import List, Literal, Optional
from datetime import timedelta
import logging
import math
import os
import secrets
import uuid

from database import get_db, init_db
import models
import schemas
from activity import record_activity, list_task_activity
from errors import Conflict, Forbidden, Gone, NotFound, ValidationFailed
from realtime import (
    ConnectionManager, NotificationEventType, RealtimeEmitter, TaskEventType,
    get_emitter, router as realtime_router,
)
from time_utils import add_months, advance_due_date, ensure_aware, is_expired, utc_now
from auth.routes import router as auth_router
from auth.dependencies import get_current_user
from auth.permissions import (
    can_manage_members, can_read, can_write, membership_table, require_container_permission,
)
from auth.visibility import (
    is_assignee, is_creator, load_readable_task, require_scope_change, require_share_management,
    require_task_delete, require_task_write, task_visibility_filter,
)

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10
MAX_PAGE_SIZE = 50


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Migrations own the production schema
    if os.environ.get("DB_AUTO_CREATE") == "1":
        init_db()
    await app.state.emitter.start()
    yield
    await app.state.emitter.stop()


app = FastAPI(
    title="TaskFlow API",
    description="Multi-tenant task management with workspaces, projects, sharing and live updates",
    version="1.0.0",
    lifespan=lifespan,
)

# Realtime fan-out, injected into handlers through get_emitter
app.state.connections = ConnectionManager()
app.state.emitter = RealtimeEmitter(app.state.connections)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(realtime_router)


@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Helper Functions ==============

def commit_or_conflict(db: Session, detail: str = "Conflict") -> None:
    """
    Commit, mapping unique-constraint violations to 409.

    Any other integrity error (NOT NULL, foreign key, check) is bad input
    and becomes a 400.
    """
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        message = str(e.orig).lower()
        if "unique constraint" in message or "duplicate key" in message:
            logger.info(f"Unique violation on commit, returning 409: {e.orig}")
            raise Conflict(detail)
        logger.info(f"Integrity error on commit, returning 400: {e.orig}")
        raise ValidationFailed("Invalid data")


def scope_or_400(workspace_id: Optional[int], project_id: Optional[int]) -> models.TaskScope:
    try:
        return models.scope_from_ids(workspace_id, project_id)
    except ValueError as e:
        raise ValidationFailed(str(e))


def get_user_by_email_or_404(db: Session, email: str) -> models.User:
    user = db.query(models.User).filter(models.User.email == email.lower()).first()
    if not user:
        logger.info(f"No user with email {email}")
        raise NotFound("User not found")
    return user


def require_users_exist(db: Session, user_ids: List[int]) -> None:
    """Reject assignee/share lists that reference unknown users."""
    wanted = set(user_ids)
    if not wanted:
        return
    found = {row.id for row in db.query(models.User.id).filter(models.User.id.in_(wanted)).all()}
    missing = sorted(wanted - found)
    if missing:
        logger.info(f"Unknown user ids referenced: {missing}")
        raise ValidationFailed(f"Unknown user ids: {missing}")


def require_shares_valid(task_owner_id: int, scope: models.TaskScope, entries: list) -> None:
    if entries and not isinstance(scope, models.PersonalScope):
        raise ValidationFailed("Only personal tasks can be shared")
    if any(entry["user_id"] == task_owner_id for entry in entries):
        raise ValidationFailed("Cannot share a task with its owner")


def sync_assignees(task: models.Task, assignee_ids: List[int]) -> None:
    """
    Make task.assignees match assignee_ids, touching only the difference.

    Rows for users that stay assigned are kept so the unit of work never
    inserts a (task, user) pair that is still pending deletion.
    """
    wanted = list(dict.fromkeys(assignee_ids))
    for assignee in list(task.assignees):
        if assignee.user_id not in wanted:
            task.assignees.remove(assignee)
    current = set(task.assignee_ids)
    for user_id in wanted:
        if user_id not in current:
            task.assignees.append(models.TaskAssignee(user_id=user_id))


def sync_shares(task: models.Task, entries: List[dict]) -> None:
    """Same as sync_assignees for share entries; permissions change in place."""
    wanted = {entry["user_id"]: entry["permission"] for entry in entries}
    for share in list(task.shares):
        if share.user_id not in wanted:
            task.shares.remove(share)
        else:
            share.permission = wanted.pop(share.user_id)
    for user_id, permission in wanted.items():
        task.shares.append(models.TaskShare(user_id=user_id, permission=permission))


def completed_at_for(status_value: models.TaskStatus, previous):
    if status_value == models.TaskStatus.done:
        return previous or utc_now()
    return None


def synthesize_recurring_task(
    db: Session,
    task: models.Task,
    actor_id: int,
    emitter: RealtimeEmitter,
) -> Optional[models.Task]:
    """
    Create the successor of a recurring task that was just completed.

    Runs after the completing update has been committed. A failure is logged
    and leaves the completed task as it is.
    """
    base = ensure_aware(task.due_date) or utc_now()
    logger.debug(
        f"Synthesizing successor of task {task.id}: {task.recurrence_frequency.value} "
        f"x{task.recurrence_interval} from {base}"
    )

    try:
        successor = models.Task(
            user_id=task.user_id,
            workspace_id=task.workspace_id,
            project_id=task.project_id,
            title=task.title,
            description=task.description,
            status=models.TaskStatus.todo,
            priority=task.priority,
            due_date=advance_due_date(base, task.recurrence_frequency.value, task.recurrence_interval),
            completed_at=None,
            subtasks=[{**subtask, "done": False} for subtask in task.subtasks or []],
            linked_resource=task.linked_resource,
            recurrence_frequency=task.recurrence_frequency,
            recurrence_interval=task.recurrence_interval,
            assignees=[models.TaskAssignee(user_id=user_id) for user_id in task.assignee_ids],
        )
        db.add(successor)
        db.commit()
        db.refresh(successor)
    except (SQLAlchemyError, ValueError):
        logger.exception(f"Failed to create recurring successor for task {task.id}")
        db.rollback()
        return None

    record_activity(
        db, successor.id, successor.scope, actor_id,
        models.ActivityAction.task_created_recurring,
        {"parent_task_id": task.id},
    )
    emitter.emit_task(TaskEventType.task_created, successor.id, {"actor_id": actor_id, "recurring": True})

    logger.info(f"Recurring task {successor.id} created from task {task.id}, due {successor.due_date}")
    return successor


# ============== Membership helpers (workspaces and projects) ==============

def list_container_members(db: Session, container: models.ContainerScope, user_id: int):
    require_container_permission(db, container, user_id, can_read)

    model, container_column = membership_table(container)
    return (
        db.query(model)
        .options(joinedload(model.user))
        .filter(container_column == container.id)
        .order_by(model.id)
        .all()
    )


def get_membership_or_404(db: Session, container: models.ContainerScope, user_id: int):
    model, container_column = membership_table(container)
    membership = db.query(model).filter(container_column == container.id, model.user_id == user_id).first()
    if not membership:
        raise NotFound("Member not found")
    return membership


def change_member_role(
    db: Session,
    container: models.ContainerScope,
    target_user_id: int,
    new_role: models.Role,
    actor: models.User,
):
    require_container_permission(db, container, actor.id, can_manage_members)

    membership = get_membership_or_404(db, container, target_user_id)
    if membership.role == models.Role.owner:
        logger.info(f"User {actor.id} tried to change the owner's role in {container}")
        raise Forbidden("The owner's role cannot be changed")

    previous_role = membership.role
    if previous_role == new_role:
        return membership

    membership.role = new_role
    db.commit()
    db.refresh(membership)

    record_activity(
        db, None, container, actor.id,
        models.ActivityAction.member_role_changed,
        {"user_id": target_user_id, "from": previous_role.value, "to": new_role.value},
    )

    logger.info(f"User {target_user_id} role in {container} changed {previous_role.value} -> {new_role.value}")
    return membership


def remove_member(db: Session, container: models.ContainerScope, target_user_id: int, actor: models.User) -> None:
    require_container_permission(db, container, actor.id, can_manage_members)

    membership = get_membership_or_404(db, container, target_user_id)
    if membership.role == models.Role.owner:
        logger.info(f"User {actor.id} tried to remove the owner of {container}")
        raise Forbidden("The owner cannot be removed")

    db.delete(membership)
    db.commit()
    logger.info(f"User {target_user_id} removed from {container} by user {actor.id}")


# ============== Workspaces ==============

@app.get("/api/workspaces", response_model=List[schemas.WorkspaceWithRole])
def list_workspaces(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List workspaces the current user belongs to, with their role in each."""
    rows = (
        db.query(models.Workspace, models.WorkspaceMember.role)
        .join(models.WorkspaceMember, models.WorkspaceMember.workspace_id == models.Workspace.id)
        .filter(models.WorkspaceMember.user_id == current_user.id)
        .order_by(models.Workspace.id)
        .all()
    )

    logger.info(f"User {current_user.id} retrieved {len(rows)} workspaces")
    return [
        {
            "id": workspace.id,
            "name": workspace.name,
            "owner_id": workspace.owner_id,
            "created_at": workspace.created_at,
            "updated_at": workspace.updated_at,
            "role": role,
        }
        for workspace, role in rows
    ]


@app.post("/api/workspaces", response_model=schemas.Workspace, status_code=status.HTTP_201_CREATED)
def create_workspace(
    workspace: schemas.WorkspaceCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a workspace; the creator becomes its owner in the same transaction."""
    logger.debug(f"User {current_user.id} creating workspace: {workspace.name}")

    db_workspace = models.Workspace(name=workspace.name, owner_id=current_user.id)
    db.add(db_workspace)
    db.flush()  # Get workspace ID without committing

    db.add(models.WorkspaceMember(
        workspace_id=db_workspace.id,
        user_id=current_user.id,
        role=models.Role.owner,
    ))
    db.commit()
    db.refresh(db_workspace)

    logger.info(f"Workspace created: {db_workspace.name} (ID: {db_workspace.id}) by user {current_user.id}")
    return db_workspace


@app.post("/api/workspaces/invites/accept", response_model=schemas.Member)
def accept_workspace_invite(
    payload: schemas.InviteAccept,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Accept a pending workspace invite.

    Expired invites are marked expired and answered with 410. An invite
    addressed to another email is rejected with 403 and left untouched.
    """
    invite = (
        db.query(models.WorkspaceInvite)
        .filter(
            models.WorkspaceInvite.token == payload.token,
            models.WorkspaceInvite.status == models.InviteStatus.pending,
        )
        .first()
    )
    if not invite:
        raise NotFound("Invite not found")

    if is_expired(invite.expires_at):
        invite.status = models.InviteStatus.expired
        db.commit()
        logger.info(f"Invite {invite.id} expired, refusing acceptance by user {current_user.id}")
        raise Gone("Invite expired")

    if invite.email != current_user.email.lower():
        logger.info(f"Invite {invite.id} addressed to another email, refusing user {current_user.id}")
        raise Forbidden("Invite email mismatch")

    scope = models.WorkspaceScope(invite.workspace_id)
    membership = (
        db.query(models.WorkspaceMember)
        .filter(
            models.WorkspaceMember.workspace_id == invite.workspace_id,
            models.WorkspaceMember.user_id == current_user.id,
        )
        .first()
    )
    if membership is None:
        membership = models.WorkspaceMember(
            workspace_id=invite.workspace_id,
            user_id=current_user.id,
            role=invite.role,
            invited_by=invite.invited_by,
        )
        db.add(membership)
    elif membership.role != models.Role.owner:
        membership.role = invite.role

    invite.status = models.InviteStatus.accepted
    invite.accepted_by = current_user.id
    commit_or_conflict(db, "Membership changed concurrently, retry")
    db.refresh(membership)

    record_activity(
        db, None, scope, current_user.id,
        models.ActivityAction.member_added,
        {"user_id": current_user.id, "role": membership.role.value, "invite_id": invite.id},
    )

    logger.info(f"User {current_user.id} joined workspace {invite.workspace_id} as {membership.role.value}")
    return membership


@app.get("/api/workspaces/{workspace_id}/members", response_model=List[schemas.Member])
def list_workspace_members(
    workspace_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List members of a workspace (requires any role)."""
    return list_container_members(db, models.WorkspaceScope(workspace_id), current_user.id)


@app.put("/api/workspaces/{workspace_id}/members/{user_id}", response_model=schemas.Member)
def update_workspace_member(
    workspace_id: int,
    user_id: int,
    update: schemas.MemberRoleUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Change a member's role (requires admin or owner)."""
    return change_member_role(db, models.WorkspaceScope(workspace_id), user_id, update.role.to_role(), current_user)


@app.delete("/api/workspaces/{workspace_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_workspace_member(
    workspace_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove a member (requires admin or owner; the owner cannot be removed)."""
    remove_member(db, models.WorkspaceScope(workspace_id), user_id, current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/api/workspaces/{workspace_id}/invites", response_model=List[schemas.Invite])
def list_workspace_invites(
    workspace_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List invites of a workspace, newest first (requires admin or owner)."""
    require_container_permission(db, models.WorkspaceScope(workspace_id), current_user.id, can_manage_members)

    return (
        db.query(models.WorkspaceInvite)
        .filter(models.WorkspaceInvite.workspace_id == workspace_id)
        .order_by(models.WorkspaceInvite.id.desc())
        .all()
    )


@app.post("/api/workspaces/{workspace_id}/invites", response_model=schemas.Invite, status_code=status.HTTP_201_CREATED)
def create_workspace_invite(
    workspace_id: int,
    invite: schemas.InviteCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Invite an email address to a workspace (requires admin or owner).

    A pending invite for the same email is refreshed in place with a new
    token, role and expiry instead of being duplicated.
    """
    scope = models.WorkspaceScope(workspace_id)
    require_container_permission(db, scope, current_user.id, can_manage_members)

    email = invite.email.lower()
    logger.debug(f"User {current_user.id} inviting {email} to workspace {workspace_id}")

    already_member = (
        db.query(models.WorkspaceMember)
        .join(models.User, models.User.id == models.WorkspaceMember.user_id)
        .filter(models.WorkspaceMember.workspace_id == workspace_id, models.User.email == email)
        .first()
    )
    if already_member:
        raise Conflict("User is already a member of this workspace")

    db_invite = (
        db.query(models.WorkspaceInvite)
        .filter(
            models.WorkspaceInvite.workspace_id == workspace_id,
            models.WorkspaceInvite.email == email,
            models.WorkspaceInvite.status == models.InviteStatus.pending,
        )
        .first()
    )
    if db_invite is None:
        db_invite = models.WorkspaceInvite(workspace_id=workspace_id, email=email)
        db.add(db_invite)

    db_invite.role = invite.role.to_role()
    db_invite.token = secrets.token_urlsafe(32)
    db_invite.invited_by = current_user.id
    db_invite.expires_at = utc_now() + timedelta(days=invite.expires_in_days)

    commit_or_conflict(db, "A pending invite for this email already exists")
    db.refresh(db_invite)

    logger.info(f"Invite {db_invite.id} for {email} to workspace {workspace_id} expires {db_invite.expires_at}")
    return db_invite


@app.delete("/api/workspaces/{workspace_id}/invites/{invite_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_workspace_invite(
    workspace_id: int,
    invite_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Revoke a pending invite (requires admin or owner)."""
    require_container_permission(db, models.WorkspaceScope(workspace_id), current_user.id, can_manage_members)

    invite = (
        db.query(models.WorkspaceInvite)
        .filter(models.WorkspaceInvite.id == invite_id, models.WorkspaceInvite.workspace_id == workspace_id)
        .first()
    )
    if not invite:
        raise NotFound("Invite not found")
    if invite.status != models.InviteStatus.pending:
        raise Conflict(f"Invite is already {invite.status.value}")

    invite.status = models.InviteStatus.revoked
    db.commit()

    logger.info(f"Invite {invite_id} revoked by user {current_user.id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Projects ==============

@app.get("/api/projects", response_model=List[schemas.ProjectWithRole])
def list_projects(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List projects the current user belongs to, with their role in each."""
    rows = (
        db.query(models.Project, models.ProjectMember.role)
        .join(models.ProjectMember, models.ProjectMember.project_id == models.Project.id)
        .filter(models.ProjectMember.user_id == current_user.id)
        .order_by(models.Project.id)
        .all()
    )

    logger.info(f"User {current_user.id} retrieved {len(rows)} projects")
    return [
        {
            "id": project.id,
            "name": project.name,
            "description": project.description,
            "owner_id": project.owner_id,
            "created_at": project.created_at,
            "updated_at": project.updated_at,
            "role": role,
        }
        for project, role in rows
    ]


@app.post("/api/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Create a project; the creator becomes its owner in the same transaction."""
    logger.debug(f"User {current_user.id} creating project: {project.name}")

    db_project = models.Project(
        name=project.name,
        description=project.description or "",
        owner_id=current_user.id,
    )
    db.add(db_project)
    db.flush()  # Get project ID without committing

    db.add(models.ProjectMember(
        project_id=db_project.id,
        user_id=current_user.id,
        role=models.Role.owner,
    ))
    db.commit()
    db.refresh(db_project)

    logger.info(f"Project created: {db_project.name} (ID: {db_project.id}) by user {current_user.id}")
    return db_project


@app.get("/api/projects/{project_id}/members", response_model=List[schemas.Member])
def list_project_members(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List members of a project (requires any role)."""
    return list_container_members(db, models.ProjectScope(project_id), current_user.id)


@app.post("/api/projects/{project_id}/members", response_model=schemas.Member, status_code=status.HTTP_201_CREATED)
def add_project_member(
    project_id: int,
    member_data: schemas.MemberAdd,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Add a registered user to a project by email (requires admin or owner)."""
    scope = models.ProjectScope(project_id)
    require_container_permission(db, scope, current_user.id, can_manage_members)

    user_to_add = get_user_by_email_or_404(db, member_data.email)

    existing = (
        db.query(models.ProjectMember)
        .filter(models.ProjectMember.project_id == project_id, models.ProjectMember.user_id == user_to_add.id)
        .first()
    )
    if existing:
        raise Conflict("User is already a member of this project")

    membership = models.ProjectMember(
        project_id=project_id,
        user_id=user_to_add.id,
        role=member_data.role.to_role(),
        invited_by=current_user.id,
    )
    db.add(membership)
    commit_or_conflict(db, "User is already a member of this project")
    db.refresh(membership)

    record_activity(
        db, None, scope, current_user.id,
        models.ActivityAction.member_added,
        {"user_id": user_to_add.id, "role": membership.role.value},
    )

    logger.info(f"User {user_to_add.id} added to project {project_id} with role {membership.role.value}")
    return membership


@app.put("/api/projects/{project_id}/members/{user_id}", response_model=schemas.Member)
def update_project_member(
    project_id: int,
    user_id: int,
    update: schemas.MemberRoleUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Change a member's role (requires admin or owner)."""
    return change_member_role(db, models.ProjectScope(project_id), user_id, update.role.to_role(), current_user)


@app.delete("/api/projects/{project_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project_member(
    project_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Remove a member (requires admin or owner; the owner cannot be removed)."""
    remove_member(db, models.ProjectScope(project_id), user_id, current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Tasks ==============

PRIORITY_ORDER = case(
    (models.Task.priority == models.TaskPriority.low, 0),
    (models.Task.priority == models.TaskPriority.medium, 1),
    (models.Task.priority == models.TaskPriority.high, 2),
    else_=1,
)

SORT_COLUMNS = {
    "created_at": models.Task.created_at,
    "due_date": models.Task.due_date,
    "priority": PRIORITY_ORDER,
    "title": models.Task.title,
    "status": models.Task.status,
}


@app.get("/api/tasks", response_model=schemas.TaskPage)
def list_tasks(
    current_user: models.User = Depends(get_current_user),
    workspace_id: Optional[int] = Query(None),
    project_id: Optional[int] = Query(None),
    assigned_to: Optional[Literal["me"]] = Query(None),
    status: Optional[models.TaskStatus] = Query(None),
    priority: Optional[models.TaskPriority] = Query(None),
    search: Optional[str] = Query(None, max_length=120, description="Case-insensitive match on title or description"),
    sort_by: Literal["created_at", "due_date", "priority", "title", "status"] = Query("created_at"),
    sort_order: Literal["asc", "desc"] = Query("desc"),
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    db: Session = Depends(get_db)
):
    """
    List tasks visible to the current user.

    Visibility, filters, sorting and pagination are all evaluated by the
    database. Filtering on a workspace or project the user has no role in
    is rejected with 403.
    """
    logger.debug(
        f"User {current_user.id} listing tasks: workspace={workspace_id}, project={project_id}, "
        f"assigned_to={assigned_to}, status={status}, priority={priority}, search={search}, "
        f"sort={sort_by} {sort_order}, page={page}/{page_size}"
    )

    query = db.query(models.Task).filter(task_visibility_filter(current_user.id))

    if workspace_id is not None:
        require_container_permission(db, models.WorkspaceScope(workspace_id), current_user.id, can_read)
        query = query.filter(models.Task.workspace_id == workspace_id)
    if project_id is not None:
        require_container_permission(db, models.ProjectScope(project_id), current_user.id, can_read)
        query = query.filter(models.Task.project_id == project_id)
    if assigned_to == "me":
        query = query.filter(models.Task.assignees.any(models.TaskAssignee.user_id == current_user.id))
    if status:
        query = query.filter(models.Task.status == status)
    if priority:
        query = query.filter(models.Task.priority == priority)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(models.Task.title.ilike(pattern), models.Task.description.ilike(pattern)))

    total = query.count()

    direction = asc if sort_order == "asc" else desc
    order_clauses = [direction(SORT_COLUMNS[sort_by])]
    if sort_by != "created_at":
        order_clauses.append(desc(models.Task.created_at))
    # Tiebreaker for deterministic pagination
    order_clauses.append(desc(models.Task.id))

    tasks = (
        query.order_by(*order_clauses)
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )

    total_pages = max(1, math.ceil(total / page_size))
    logger.info(f"list_tasks returned {len(tasks)} of {total} tasks for user {current_user.id}")
    return {
        "items": tasks,
        "pagination": {
            "page": page,
            "page_size": page_size,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


@app.get("/api/tasks/export", response_model=schemas.TaskExport)
def export_tasks(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Export every task visible to the current user as JSON."""
    tasks = (
        db.query(models.Task)
        .filter(task_visibility_filter(current_user.id))
        .order_by(models.Task.created_at.desc(), models.Task.id.desc())
        .all()
    )

    logger.info(f"User {current_user.id} exported {len(tasks)} tasks")
    return {"exported_at": utc_now(), "count": len(tasks), "items": tasks}


@app.post("/api/tasks", response_model=schemas.Task, status_code=status.HTTP_201_CREATED)
def create_task(
    task: schemas.TaskCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Create a task: personal, or in a workspace/project where the user can write."""
    logger.info(f"User {current_user.id} creating task: {task.title}")

    scope = scope_or_400(task.workspace_id, task.project_id)
    if not isinstance(scope, models.PersonalScope):
        require_container_permission(db, scope, current_user.id, can_write)

    # Keyed by user: a repeated entry overrides the earlier one
    shares = [
        {"user_id": user_id, "permission": permission}
        for user_id, permission in {entry.user_id: entry.permission for entry in task.shared_with}.items()
    ]
    require_shares_valid(current_user.id, scope, shares)
    require_users_exist(db, task.assignee_ids + [entry["user_id"] for entry in shares])

    db_task = models.Task(
        user_id=current_user.id,  # Always the authenticated user
        workspace_id=task.workspace_id,
        project_id=task.project_id,
        title=task.title,
        description=task.description,
        status=task.status,
        priority=task.priority,
        due_date=task.due_date,
        completed_at=completed_at_for(task.status, None),
        subtasks=[subtask.model_dump() for subtask in task.subtasks],
        linked_resource=task.linked_resource.model_dump() if task.linked_resource else None,
        recurrence_frequency=task.recurrence.frequency,
        recurrence_interval=task.recurrence.interval,
        assignees=[models.TaskAssignee(user_id=user_id) for user_id in dict.fromkeys(task.assignee_ids)],
        shares=[models.TaskShare(user_id=entry["user_id"], permission=entry["permission"]) for entry in shares],
    )
    db.add(db_task)
    commit_or_conflict(db)
    db.refresh(db_task)

    record_activity(
        db, db_task.id, scope, current_user.id,
        models.ActivityAction.task_created,
        {"title": db_task.title},
    )
    emitter.emit_task(TaskEventType.task_created, db_task.id, {"actor_id": current_user.id})

    logger.info(f"Task created successfully: id={db_task.id}")
    return db_task


@app.get("/api/tasks/{task_id}", response_model=schemas.Task)
def get_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get a task (404 unless the user has some grant on it)."""
    logger.debug(f"User {current_user.id} requesting task {task_id}")
    return load_readable_task(db, task_id, current_user.id)


@app.put("/api/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """
    Update a task.

    Every authorization check (task write, destination container write,
    share management) runs before the first field is assigned, and the
    update is committed once. Completing a recurring task creates its
    successor afterwards.
    """
    logger.debug(f"User {current_user.id} updating task {task_id}")

    task = load_readable_task(db, task_id, current_user.id)
    require_task_write(db, task, current_user.id)

    payload = task_update.model_dump(exclude_unset=True)
    updated_fields = sorted(payload)

    new_scope = task.scope
    if "workspace_id" in payload or "project_id" in payload:
        new_scope = scope_or_400(
            payload.get("workspace_id", task.workspace_id),
            payload.get("project_id", task.project_id),
        )
        require_scope_change(db, task, new_scope, current_user.id)

    if "shared_with" in payload:
        if not is_creator(task, current_user.id):
            logger.info(f"User {current_user.id} tried to replace shares of task {task_id}")
            raise Forbidden("Only the task owner can manage sharing")
        require_shares_valid(task.user_id, new_scope, payload["shared_with"])

    referenced_users = list(payload.get("assignee_ids") or [])
    referenced_users += [entry["user_id"] for entry in payload.get("shared_with") or []]
    require_users_exist(db, referenced_users)

    # Authorized: apply the update
    previous_status = task.status

    if "workspace_id" in payload or "project_id" in payload:
        task.workspace_id = payload.get("workspace_id", task.workspace_id)
        task.project_id = payload.get("project_id", task.project_id)
        if not isinstance(new_scope, models.PersonalScope) and "shared_with" not in payload:
            # Shares only exist on personal tasks
            sync_shares(task, [])

    for key in ("title", "description", "priority", "due_date", "linked_resource", "subtasks"):
        if key in payload:
            setattr(task, key, payload[key])

    if "status" in payload:
        task.status = payload["status"]
        task.completed_at = completed_at_for(payload["status"], task.completed_at)

    if "recurrence" in payload:
        recurrence = payload["recurrence"]
        if recurrence.get("frequency") is not None:
            task.recurrence_frequency = recurrence["frequency"]
        if recurrence.get("interval") is not None:
            task.recurrence_interval = recurrence["interval"]

    if "assignee_ids" in payload:
        sync_assignees(task, payload["assignee_ids"])

    if "shared_with" in payload:
        sync_shares(task, payload["shared_with"])

    commit_or_conflict(db)
    db.refresh(task)

    if (
        previous_status != models.TaskStatus.done
        and task.status == models.TaskStatus.done
        and task.recurrence_frequency != models.RecurrenceFrequency.none
    ):
        synthesize_recurring_task(db, task, current_user.id, emitter)

    assigned = "assignee_ids" in payload
    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_assigned if assigned else models.ActivityAction.task_updated,
        {"updated_fields": updated_fields},
    )
    emitter.emit_task(
        TaskEventType.assignment_updated if assigned else TaskEventType.task_updated,
        task.id,
        {"actor_id": current_user.id, "updated_fields": updated_fields},
    )

    logger.info(f"Task {task_id} updated by user {current_user.id}: {updated_fields}")
    db.refresh(task)
    return task


@app.delete("/api/tasks/{task_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_task(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Delete a task (container write, or the creator for personal tasks)."""
    logger.debug(f"User {current_user.id} deleting task {task_id}")

    task = load_readable_task(db, task_id, current_user.id)
    require_task_delete(db, task, current_user.id)

    scope, title = task.scope, task.title
    db.delete(task)
    db.commit()

    record_activity(
        db, task_id, scope, current_user.id,
        models.ActivityAction.task_deleted,
        {"title": title},
    )
    emitter.emit_task(TaskEventType.task_deleted, task_id, {"actor_id": current_user.id})

    logger.info(f"Task {task_id} deleted by user {current_user.id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Task Sharing ==============

@app.get("/api/tasks/{task_id}/shares", response_model=List[schemas.Share])
def list_task_shares(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List who a task is shared with."""
    task = load_readable_task(db, task_id, current_user.id)
    return (
        db.query(models.TaskShare)
        .options(joinedload(models.TaskShare.user))
        .filter(models.TaskShare.task_id == task.id)
        .order_by(models.TaskShare.id)
        .all()
    )


@app.post("/api/tasks/{task_id}/shares", response_model=schemas.Share)
def share_task(
    task_id: int,
    share: schemas.ShareCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """
    Share a personal task with a user by email, or change their permission.

    Sharing again with the same user updates the permission in place.
    """
    task = load_readable_task(db, task_id, current_user.id)
    require_share_management(task, current_user.id)

    target = get_user_by_email_or_404(db, share.email)
    if target.id == task.user_id:
        raise ValidationFailed("Cannot share a task with its owner")

    db_share = (
        db.query(models.TaskShare)
        .filter(models.TaskShare.task_id == task.id, models.TaskShare.user_id == target.id)
        .first()
    )
    if db_share is None:
        db_share = models.TaskShare(task_id=task.id, user_id=target.id)
        db.add(db_share)
    db_share.permission = share.permission

    commit_or_conflict(db, "Task is already shared with this user")
    db.refresh(db_share)

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_updated,
        {"updated_fields": ["shared_with"], "user_id": target.id, "permission": share.permission.value},
    )
    emitter.emit_task(
        TaskEventType.task_updated, task.id,
        {"actor_id": current_user.id, "updated_fields": ["shared_with"]},
    )

    logger.info(f"Task {task.id} shared with user {target.id} as {share.permission.value}")
    return db_share


@app.delete("/api/tasks/{task_id}/shares/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def unshare_task(
    task_id: int,
    user_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Remove a user's share entry from a personal task."""
    task = load_readable_task(db, task_id, current_user.id)
    require_share_management(task, current_user.id)

    db_share = (
        db.query(models.TaskShare)
        .filter(models.TaskShare.task_id == task.id, models.TaskShare.user_id == user_id)
        .first()
    )
    if not db_share:
        raise NotFound("Share not found")

    db.delete(db_share)
    db.commit()

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_updated,
        {"updated_fields": ["shared_with"], "removed_user_id": user_id},
    )
    emitter.emit_task(
        TaskEventType.task_updated, task.id,
        {"actor_id": current_user.id, "updated_fields": ["shared_with"]},
    )

    logger.info(f"Share of task {task.id} for user {user_id} removed")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Comments & Activity ==============

@app.get("/api/tasks/{task_id}/comments", response_model=schemas.CommentList)
def list_comments(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List comments of a task, newest first."""
    task = load_readable_task(db, task_id, current_user.id)

    comments = (
        db.query(models.TaskComment)
        .options(joinedload(models.TaskComment.author))
        .filter(models.TaskComment.task_id == task.id)
        .order_by(models.TaskComment.created_at.desc(), models.TaskComment.id.desc())
        .all()
    )
    return {"items": comments}


@app.post("/api/tasks/{task_id}/comments", response_model=schemas.Comment, status_code=status.HTTP_201_CREATED)
def create_comment(
    task_id: int,
    comment: schemas.CommentCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """
    Comment on a task.

    Anyone who can read a personal task may comment on it; workspace and
    project tasks require write access to the container.
    """
    task = load_readable_task(db, task_id, current_user.id)
    if not isinstance(task.scope, models.PersonalScope):
        require_task_write(db, task, current_user.id)

    db_comment = models.TaskComment(
        task_id=task.id,
        project_id=task.project_id,
        author_id=current_user.id,  # Force current user as author
        body=comment.body,
    )
    db.add(db_comment)
    db.commit()
    db.refresh(db_comment)

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.comment_added,
        {"comment_id": db_comment.id, "body_preview": comment.body[:80]},
    )
    emitter.emit_task(TaskEventType.comment_created, task.id, {"actor_id": current_user.id})
    emitter.emit_task(TaskEventType.activity_created, task.id, {"actor_id": current_user.id})

    logger.info(f"Comment {db_comment.id} added to task {task.id} by user {current_user.id}")
    return db_comment


@app.get("/api/tasks/{task_id}/activity", response_model=schemas.ActivityList)
def list_activity(
    task_id: int,
    limit: int = Query(100, ge=1, le=500),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Activity feed of a task, newest first."""
    task = load_readable_task(db, task_id, current_user.id)
    return {"items": list_task_activity(db, task.id, limit)}


# ============== Assignment ==============

@app.post("/api/tasks/{task_id}/assign-me", response_model=schemas.Task)
def assign_task_to_me(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Add the current user to a task's assignees (requires write access)."""
    task = load_readable_task(db, task_id, current_user.id)
    require_task_write(db, task, current_user.id)

    if is_assignee(task, current_user.id):
        logger.debug(f"User {current_user.id} already assigned to task {task_id}")
        return task

    task.assignees.append(models.TaskAssignee(user_id=current_user.id))
    commit_or_conflict(db, "Already assigned")
    db.refresh(task)

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_assigned,
        {"assignee_id": current_user.id},
    )
    emitter.emit_task(TaskEventType.assignment_updated, task.id, {"assignee_id": current_user.id})
    emitter.emit_task(TaskEventType.activity_created, task.id, {"actor_id": current_user.id})

    logger.info(f"User {current_user.id} assigned themselves to task {task_id}")
    db.refresh(task)
    return task


@app.delete("/api/tasks/{task_id}/assign-me", response_model=schemas.Task)
def unassign_task_from_me(
    task_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Remove the current user from a task's assignees."""
    task = load_readable_task(db, task_id, current_user.id)

    if not is_assignee(task, current_user.id):
        return task

    sync_assignees(task, [user_id for user_id in task.assignee_ids if user_id != current_user.id])
    db.commit()
    db.refresh(task)

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_assigned,
        {"removed_assignee_id": current_user.id},
    )
    emitter.emit_task(TaskEventType.assignment_updated, task.id, {"assignee_id": current_user.id})

    logger.info(f"User {current_user.id} unassigned themselves from task {task_id}")
    db.refresh(task)
    return task


# ============== Attachments ==============

@app.post("/api/tasks/{task_id}/attachments", response_model=schemas.Attachment, status_code=status.HTTP_201_CREATED)
def add_attachment(
    task_id: int,
    attachment: schemas.AttachmentCreate,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Link an already-stored file to a task."""
    task = load_readable_task(db, task_id, current_user.id)
    require_task_write(db, task, current_user.id)

    descriptor = attachment.model_dump()
    descriptor["id"] = descriptor["id"] or uuid.uuid4().hex
    descriptor["created_at"] = utc_now().isoformat()

    if any(existing.get("id") == descriptor["id"] for existing in task.attachments or []):
        raise Conflict("Attachment id already exists on this task")

    # Reassign so the JSON column is marked dirty
    task.attachments = [*(task.attachments or []), descriptor]
    db.commit()

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_updated,
        {"updated_fields": ["attachments"], "attachment_id": descriptor["id"]},
    )
    emitter.emit_task(
        TaskEventType.task_updated, task.id,
        {"actor_id": current_user.id, "updated_fields": ["attachments"]},
    )

    logger.info(f"Attachment {descriptor['id']} linked to task {task.id}")
    return descriptor


@app.delete("/api/tasks/{task_id}/attachments/{attachment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_attachment(
    task_id: int,
    attachment_id: str,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Unlink an attachment from a task. Removing the stored file is the storage layer's job."""
    task = load_readable_task(db, task_id, current_user.id)
    require_task_write(db, task, current_user.id)

    attachments = task.attachments or []
    remaining = [item for item in attachments if item.get("id") != attachment_id]
    if len(remaining) == len(attachments):
        raise NotFound("Attachment not found")

    task.attachments = remaining
    db.commit()

    record_activity(
        db, task.id, task.scope, current_user.id,
        models.ActivityAction.task_updated,
        {"updated_fields": ["attachments"], "attachment_id": attachment_id},
    )
    emitter.emit_task(
        TaskEventType.task_updated, task.id,
        {"actor_id": current_user.id, "updated_fields": ["attachments"]},
    )

    logger.info(f"Attachment {attachment_id} unlinked from task {task.id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Notifications ==============

@app.get("/api/notifications", response_model=schemas.NotificationList)
def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(30, ge=1, le=100),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """List the current user's notifications, newest first, with the unread count."""
    query = db.query(models.Notification).filter(models.Notification.user_id == current_user.id)
    unread_count = query.filter(models.Notification.read_at.is_(None)).count()

    if unread_only:
        query = query.filter(models.Notification.read_at.is_(None))
    items = (
        query.order_by(models.Notification.created_at.desc(), models.Notification.id.desc())
        .limit(limit)
        .all()
    )
    return {"items": items, "unread_count": unread_count}


@app.post("/api/notifications/read-all", status_code=status.HTTP_204_NO_CONTENT)
def mark_all_notifications_read(
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Mark every unread notification of the current user as read."""
    updated = (
        db.query(models.Notification)
        .filter(models.Notification.user_id == current_user.id, models.Notification.read_at.is_(None))
        .update({models.Notification.read_at: utc_now()}, synchronize_session=False)
    )
    db.commit()

    emitter.emit_notification(NotificationEventType.notification_read_all, current_user.id)

    logger.info(f"User {current_user.id} marked {updated} notifications read")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.post("/api/notifications/{notification_id}/read", response_model=schemas.Notification)
def mark_notification_read(
    notification_id: int,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """Mark one of the current user's notifications as read."""
    notification = (
        db.query(models.Notification)
        .filter(models.Notification.id == notification_id, models.Notification.user_id == current_user.id)
        .first()
    )
    if not notification:
        raise NotFound("Notification not found")

    if notification.read_at is None:
        notification.read_at = utc_now()
        db.commit()
        db.refresh(notification)

    emitter.emit_notification(
        NotificationEventType.notification_read, current_user.id, notification_id=notification.id,
    )
    return notification


# ============== Analytics ==============

OVERDUE_TREND_DAYS = 14
PRODUCTIVITY_WEEKS = 8
PRODUCTIVITY_MONTHS = 6


def count_in_ranges(query, column, ranges) -> List[int]:
    """Count the query's rows whose column falls in each [start, end) range, in one round trip."""
    totals = query.with_entities(*[
        func.coalesce(func.sum(case((and_(column >= start, column < end), 1), else_=0)), 0)
        for start, end in ranges
    ]).one()
    return [int(total) for total in totals]


@app.get("/api/analytics/summary", response_model=schemas.AnalyticsSummary)
def analytics_summary(
    workspace_id: Optional[int] = Query(None),
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Completion and overdue figures for the tasks the current user created.

    With workspace_id only that workspace's tasks are counted, and the user
    needs a role in it. Day, week (Monday) and month boundaries are UTC.
    """
    logger.debug(f"User {current_user.id} requesting analytics summary: workspace={workspace_id}")

    if workspace_id is not None:
        require_container_permission(db, models.WorkspaceScope(workspace_id), current_user.id, can_read)

    query = db.query(models.Task).filter(models.Task.user_id == current_user.id)
    if workspace_id is not None:
        query = query.filter(models.Task.workspace_id == workspace_id)
    open_tasks = query.filter(models.Task.status != models.TaskStatus.done)

    now = utc_now()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)

    total = query.count()
    done = query.filter(models.Task.status == models.TaskStatus.done).count()
    overdue = open_tasks.filter(models.Task.due_date < now).count()

    # Open tasks that fell overdue on each of the last days, bucketed by due date
    days = [today - timedelta(days=offset) for offset in range(OVERDUE_TREND_DAYS - 1, -1, -1)]
    overdue_counts = count_in_ranges(
        open_tasks.filter(models.Task.due_date <= now),
        models.Task.due_date,
        [(day, day + timedelta(days=1)) for day in days],
    )

    this_week = today - timedelta(days=today.weekday())
    weeks = [this_week - timedelta(weeks=offset) for offset in range(PRODUCTIVITY_WEEKS - 1, -1, -1)]
    this_month = today.replace(day=1)
    months = [add_months(this_month, -offset) for offset in range(PRODUCTIVITY_MONTHS - 1, -1, -1)]

    ranges = [(week, week + timedelta(weeks=1)) for week in weeks]
    ranges += [(month, add_months(month, 1)) for month in months]
    created = count_in_ranges(query, models.Task.created_at, ranges)
    completed = count_in_ranges(query, models.Task.completed_at, ranges)

    logger.info(f"Analytics for user {current_user.id}: {total} tasks, {done} done, {overdue} overdue")
    return {
        "totals": {"total": total, "done": done, "overdue": overdue, "active": max(0, total - done)},
        "completion_rate": round(done / total * 100) if total else 0,
        "overdue_trend": [
            {"date": day.date().isoformat(), "count": count}
            for day, count in zip(days, overdue_counts)
        ],
        "productivity_weekly": [
            {"week_start": week.date().isoformat(), "created": created[i], "completed": completed[i]}
            for i, week in enumerate(weeks)
        ],
        "productivity_monthly": [
            {
                "month": month.strftime("%Y-%m"),
                "created": created[len(weeks) + i],
                "completed": completed[len(weeks) + i],
            }
            for i, month in enumerate(months)
        ],
    }


# ============== Integrations ==============

# Fields an import overwrites on an already-imported task
IMPORTED_FIELDS = [
    "description", "due_date", "linked_resource", "priority", "source_list_id",
    "source_list_title", "status", "title",
]

@app.post("/api/integrations/import", response_model=schemas.ImportResult)
def import_tasks(
    request: schemas.ImportRequest,
    current_user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    emitter: RealtimeEmitter = Depends(get_emitter)
):
    """
    Import already-mapped tasks from an external provider as personal tasks.

    Keyed by (user, provider, external id): importing the same external task
    again updates the existing task instead of creating a duplicate.
    """
    logger.info(
        f"User {current_user.id} importing {len(request.tasks)} tasks from "
        f"{request.provider} list {request.list_id}"
    )

    created: List[models.Task] = []
    updated: List[models.Task] = []
    for item in request.tasks:
        fields = {
            "title": item.title,
            "description": item.description,
            "status": item.status,
            "priority": item.priority,
            "due_date": item.due_date,
            "linked_resource": item.linked_resource.model_dump() if item.linked_resource else None,
            "source_list_id": request.list_id,
            "source_list_title": request.list_title,
        }

        task = (
            db.query(models.Task)
            .filter(
                models.Task.user_id == current_user.id,
                models.Task.source_provider == request.provider,
                models.Task.source_task_id == item.external_id,
            )
            .first()
        )
        if task is None:
            task = models.Task(
                user_id=current_user.id,
                source_provider=request.provider,
                source_task_id=item.external_id,
                completed_at=completed_at_for(item.status, None),
                **fields,
            )
            db.add(task)
            created.append(task)
        else:
            for key, value in fields.items():
                setattr(task, key, value)
            task.completed_at = completed_at_for(item.status, task.completed_at)
            if task not in updated and task not in created:
                updated.append(task)
        # Flush so a repeated external id later in the same payload finds this row
        db.flush()

    commit_or_conflict(db, "Import raced with another import of the same tasks, retry")

    for task in created:
        record_activity(
            db, task.id, task.scope, current_user.id,
            models.ActivityAction.task_created,
            {"title": task.title, "source": request.provider},
        )
        emitter.emit_task(TaskEventType.task_created, task.id, {"actor_id": current_user.id})
    for task in updated:
        record_activity(
            db, task.id, task.scope, current_user.id,
            models.ActivityAction.task_updated,
            {"updated_fields": IMPORTED_FIELDS, "source": request.provider},
        )
        emitter.emit_task(TaskEventType.task_updated, task.id, {"actor_id": current_user.id})

    logger.info(f"Import finished for user {current_user.id}: {len(created)} created, {len(updated)} updated")
    return {
        "imported": len(request.tasks),
        "created": len(created),
        "updated": len(updated),
        "list_id": request.list_id,
        "list_title": request.list_title,
    }
