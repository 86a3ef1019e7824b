from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint, event, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import JSONB
import enum
from database import Base


class Role(str, enum.Enum):
    """Container role. Declaration order is the privilege order (lowest first)."""
    viewer = "viewer"
    member = "member"
    admin = "admin"
    owner = "owner"

    @property
    def rank(self) -> int:
        return list(Role).index(self)


class SharePermission(str, enum.Enum):
    viewer = "viewer"
    editor = "editor"


class InviteStatus(str, enum.Enum):
    pending = "pending"
    accepted = "accepted"
    expired = "expired"
    revoked = "revoked"


class TaskStatus(str, enum.Enum):
    todo = "todo"
    in_progress = "in_progress"
    done = "done"


class TaskPriority(str, enum.Enum):
    low = "low"
    medium = "medium"
    high = "high"


class RecurrenceFrequency(str, enum.Enum):
    none = "none"
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class ActivityAction(str, enum.Enum):
    task_created = "task_created"
    task_created_recurring = "task_created_recurring"
    task_updated = "task_updated"
    task_deleted = "task_deleted"
    task_assigned = "task_assigned"
    comment_added = "comment_added"
    member_added = "member_added"
    member_role_changed = "member_role_changed"


# ============== Task container variants ==============

@dataclass(frozen=True)
class PersonalScope:
    """Task owned by its creator only, outside any container."""


@dataclass(frozen=True)
class ProjectScope:
    id: int


@dataclass(frozen=True)
class WorkspaceScope:
    id: int


TaskScope = Union[PersonalScope, ProjectScope, WorkspaceScope]
ContainerScope = Union[ProjectScope, WorkspaceScope]


def scope_from_ids(workspace_id: Optional[int], project_id: Optional[int]) -> TaskScope:
    """
    Build the tagged container variant from the two nullable columns.

    Raises:
        ValueError: If both ids are set
    """
    if workspace_id is not None and project_id is not None:
        raise ValueError("A task cannot belong to both a workspace and a project")
    if project_id is not None:
        return ProjectScope(project_id)
    if workspace_id is not None:
        return WorkspaceScope(workspace_id)
    return PersonalScope()


# ============== Identity and containers ==============

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Workspace(Base):
    __tablename__ = "workspaces"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    members = relationship("WorkspaceMember", back_populates="workspace", cascade="all, delete-orphan")
    invites = relationship("WorkspaceInvite", back_populates="workspace", cascade="all, delete-orphan")


class WorkspaceMember(Base):
    __tablename__ = "workspace_members"
    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_members_workspace_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(Role, name="member_role", native_enum=False, length=20), nullable=False, default=Role.member)
    invited_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    workspace = relationship("Workspace", back_populates="members")
    user = relationship("User", foreign_keys=[user_id])


class WorkspaceInvite(Base):
    __tablename__ = "workspace_invites"
    __table_args__ = (
        # One pending invite per (workspace, email); accepted/expired/revoked rows are history
        Index(
            "uq_workspace_invites_pending",
            "workspace_id",
            "email",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    role = Column(Enum(Role, name="member_role", native_enum=False, length=20), nullable=False, default=Role.member)
    token = Column(String(64), unique=True, nullable=False)
    status = Column(
        Enum(InviteStatus, name="invite_status", native_enum=False, length=20),
        nullable=False,
        default=InviteStatus.pending,
    )
    invited_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    accepted_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    workspace = relationship("Workspace", back_populates="invites")


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(Text, default="")
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    members = relationship("ProjectMember", back_populates="project", cascade="all, delete-orphan")


class ProjectMember(Base):
    __tablename__ = "project_members"
    __table_args__ = (
        UniqueConstraint("project_id", "user_id", name="uq_project_members_project_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(Role, name="member_role", native_enum=False, length=20), nullable=False, default=Role.member)
    invited_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    project = relationship("Project", back_populates="members")
    user = relationship("User", foreign_keys=[user_id])


# ============== Tasks ==============

class Task(Base):
    __tablename__ = "tasks"
    __table_args__ = (
        CheckConstraint(
            "workspace_id IS NULL OR project_id IS NULL",
            name="ck_tasks_single_container",
        ),
        # Import idempotence: one task per (user, provider, external id)
        UniqueConstraint("user_id", "source_provider", "source_task_id", name="uq_tasks_user_source"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    workspace_id = Column(Integer, ForeignKey("workspaces.id", ondelete="CASCADE"), nullable=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=True, index=True)
    title = Column(String(120), nullable=False)
    description = Column(Text, nullable=False, default="")
    status = Column(
        Enum(TaskStatus, name="task_status", native_enum=False, length=20),
        nullable=False,
        default=TaskStatus.todo,
        index=True,
    )
    priority = Column(
        Enum(TaskPriority, name="task_priority", native_enum=False, length=20),
        nullable=False,
        default=TaskPriority.medium,
        index=True,
    )
    due_date = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Ordered list of {"id", "title", "done"}
    subtasks = Column(JSONB, nullable=False, default=list)
    # Descriptors of already-stored files
    attachments = Column(JSONB, nullable=False, default=list)
    linked_resource = Column(JSONB, nullable=True)

    recurrence_frequency = Column(
        Enum(RecurrenceFrequency, name="recurrence_frequency", native_enum=False, length=20),
        nullable=False,
        default=RecurrenceFrequency.none,
    )
    recurrence_interval = Column(Integer, nullable=False, default=1)

    source_provider = Column(String(50), nullable=True)
    source_list_id = Column(String(255), nullable=True)
    source_list_title = Column(String(255), nullable=True)
    source_task_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    assignees = relationship("TaskAssignee", back_populates="task", cascade="all, delete-orphan")
    shares = relationship("TaskShare", back_populates="task", cascade="all, delete-orphan")
    comments = relationship("TaskComment", back_populates="task", cascade="all, delete-orphan")

    @property
    def scope(self) -> TaskScope:
        return scope_from_ids(self.workspace_id, self.project_id)

    @property
    def assignee_ids(self) -> list[int]:
        return [assignee.user_id for assignee in self.assignees]

    @property
    def shared_with(self) -> list["TaskShare"]:
        return list(self.shares)

    @property
    def recurrence(self) -> dict:
        return {
            "frequency": self.recurrence_frequency,
            "interval": self.recurrence_interval,
        }

    @property
    def source(self) -> Optional[dict]:
        if not self.source_provider:
            return None
        return {
            "provider": self.source_provider,
            "list_id": self.source_list_id,
            "list_title": self.source_list_title,
            "task_id": self.source_task_id,
        }

    @property
    def progress_percent(self) -> int:
        subtasks = self.subtasks or []
        if not subtasks:
            return 0
        done = sum(1 for subtask in subtasks if subtask.get("done"))
        return round(done * 100 / len(subtasks))


class TaskAssignee(Base):
    __tablename__ = "task_assignees"
    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_assignees_task_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    task = relationship("Task", back_populates="assignees")


class TaskShare(Base):
    __tablename__ = "task_shares"
    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_shares_task_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    permission = Column(
        Enum(SharePermission, name="share_permission", native_enum=False, length=20),
        nullable=False,
        default=SharePermission.viewer,
    )

    task = relationship("Task", back_populates="shares")
    user = relationship("User")


class TaskComment(Base):
    __tablename__ = "task_comments"

    id = Column(Integer, primary_key=True, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(Integer, nullable=True)
    author_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    body = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    task = relationship("Task", back_populates="comments")
    author = relationship("User")


class TaskActivity(Base):
    __tablename__ = "task_activities"

    id = Column(Integer, primary_key=True, index=True)
    # No foreign key: task_deleted rows outlive the task they describe.
    # Membership actions carry no task at all.
    task_id = Column(Integer, nullable=True, index=True)
    project_id = Column(Integer, nullable=True, index=True)
    workspace_id = Column(Integer, nullable=True, index=True)
    actor_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))

    # action stored as VARCHAR(50); ActivityAction validates known values
    action = Column(String(50), nullable=False)
    details = Column(JSONB, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    actor = relationship("User")


class ActivityLogImmutable(Exception):
    """Raised when code tries to modify or delete an activity row."""


@event.listens_for(TaskActivity, "before_update")
def _refuse_activity_update(mapper, connection, target):
    raise ActivityLogImmutable(f"TaskActivity {target.id} is append-only")


@event.listens_for(TaskActivity, "before_delete")
def _refuse_activity_delete(mapper, connection, target):
    raise ActivityLogImmutable(f"TaskActivity {target.id} is append-only")


# ============== Notifications ==============

class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_user_read", "user_id", "read_at"),
        UniqueConstraint("user_id", "type", "task_id", "due_at", name="uq_notifications_reminder"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    task_id = Column(Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    type = Column(String(50), nullable=False, default="due_soon")
    title = Column(String(200), nullable=False)
    message = Column(Text, nullable=False)
    due_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    # Email delivery state, driven by the reminder job
    emailed_at = Column(DateTime(timezone=True), nullable=True)
    email_attempt_count = Column(Integer, nullable=False, default=0)
    next_email_attempt_at = Column(DateTime(timezone=True), nullable=True)
    last_email_error = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
