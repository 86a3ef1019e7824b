from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from enum import Enum
import os

from models import (
    InviteStatus, RecurrenceFrequency, Role, SharePermission, TaskPriority, TaskStatus,
)

INVITE_DEFAULT_EXPIRY_DAYS = int(os.environ.get("INVITE_DEFAULT_EXPIRY_DAYS", "7"))


class AssignableRole(str, Enum):
    """Roles that can be granted to a member. Owner is only ever set at creation."""
    admin = "admin"
    member = "member"
    viewer = "viewer"

    def to_role(self) -> Role:
        return Role(self.value)


# User schemas
class UserBrief(BaseModel):
    id: int
    name: str
    email: str

    class Config:
        from_attributes = True


# Workspace schemas
class WorkspaceCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)


class Workspace(BaseModel):
    id: int
    name: str
    owner_id: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WorkspaceWithRole(Workspace):
    role: Role


# Membership schemas (shared by workspaces and projects)
class Member(BaseModel):
    id: int
    user_id: int
    role: Role
    invited_by: Optional[int] = None
    user: Optional[UserBrief] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MemberAdd(BaseModel):
    email: EmailStr
    role: AssignableRole = AssignableRole.member


class MemberRoleUpdate(BaseModel):
    role: AssignableRole


# Invite schemas
class InviteCreate(BaseModel):
    email: EmailStr
    role: AssignableRole = AssignableRole.member
    expires_in_days: int = Field(INVITE_DEFAULT_EXPIRY_DAYS, ge=1, le=30)


class InviteAccept(BaseModel):
    token: str = Field(..., min_length=20, max_length=200)


class Invite(BaseModel):
    id: int
    workspace_id: int
    email: str
    role: Role
    token: str
    status: InviteStatus
    invited_by: Optional[int] = None
    accepted_by: Optional[int] = None
    expires_at: datetime
    created_at: datetime

    class Config:
        from_attributes = True


# Project schemas
class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = Field("", max_length=500)


class Project(BaseModel):
    id: int
    name: str
    description: Optional[str] = None
    owner_id: int
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectWithRole(Project):
    role: Role


# Task component schemas
class Subtask(BaseModel):
    id: str = Field(..., min_length=1, max_length=80)
    title: str = Field(..., min_length=1, max_length=200)
    done: bool = False


class LinkedResource(BaseModel):
    title: Optional[str] = Field("", max_length=120)
    url: Optional[str] = Field("", max_length=500)

    @field_validator("url")
    @classmethod
    def url_must_be_http(cls, value: Optional[str]) -> Optional[str]:
        if value and not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


class Recurrence(BaseModel):
    frequency: RecurrenceFrequency = RecurrenceFrequency.none
    interval: int = Field(1, ge=1, le=365)


class RecurrenceUpdate(BaseModel):
    frequency: Optional[RecurrenceFrequency] = None
    interval: Optional[int] = Field(None, ge=1, le=365)


class ShareEntry(BaseModel):
    user_id: int
    permission: SharePermission = SharePermission.viewer


class TaskSource(BaseModel):
    provider: str
    list_id: Optional[str] = None
    list_title: Optional[str] = None
    task_id: str


class Attachment(BaseModel):
    id: str
    name: str
    url: str
    mime_type: str
    size: int
    provider: str = "local"
    storage_key: str
    created_at: Optional[str] = None  # ISO datetime string


class AttachmentCreate(BaseModel):
    """Descriptor of a file the storage layer has already persisted."""
    id: Optional[str] = Field(None, min_length=1, max_length=80)
    name: str = Field(..., min_length=1, max_length=300)
    url: str = Field(..., min_length=1, max_length=2000)
    mime_type: str = Field(..., min_length=1, max_length=120)
    size: int = Field(..., ge=0)
    provider: Literal["local", "s3", "cloudinary"] = "local"
    storage_key: str = Field(..., min_length=1, max_length=1500)


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=120)
    description: str = Field("", max_length=1000)
    status: TaskStatus = TaskStatus.todo
    priority: TaskPriority = TaskPriority.medium
    due_date: Optional[datetime] = None


class TaskCreate(TaskBase):
    workspace_id: Optional[int] = None
    project_id: Optional[int] = None
    assignee_ids: List[int] = Field(default_factory=list, max_length=20)
    subtasks: List[Subtask] = Field(default_factory=list, max_length=100)
    shared_with: List[ShareEntry] = Field(default_factory=list, max_length=50)
    recurrence: Recurrence = Field(default_factory=Recurrence)
    linked_resource: Optional[LinkedResource] = None

    @model_validator(mode="after")
    def single_container(self):
        if self.workspace_id is not None and self.project_id is not None:
            raise ValueError("A task cannot belong to both a workspace and a project")
        return self


class TaskUpdate(BaseModel):
    workspace_id: Optional[int] = None
    project_id: Optional[int] = None
    assignee_ids: Optional[List[int]] = Field(None, max_length=20)
    title: Optional[str] = Field(None, min_length=1, max_length=120)
    description: Optional[str] = Field(None, max_length=1000)
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    due_date: Optional[datetime] = None
    subtasks: Optional[List[Subtask]] = Field(None, max_length=100)
    shared_with: Optional[List[ShareEntry]] = Field(None, max_length=50)
    recurrence: Optional[RecurrenceUpdate] = None
    linked_resource: Optional[LinkedResource] = None

    @model_validator(mode="after")
    def validate_update(self):
        if not self.model_fields_set:
            raise ValueError("At least one field is required")
        if self.workspace_id is not None and self.project_id is not None:
            raise ValueError("A task cannot belong to both a workspace and a project")
        for field in (
            "title", "description", "status", "priority", "assignee_ids", "subtasks", "shared_with", "recurrence",
        ):
            if field in self.model_fields_set and getattr(self, field) is None:
                raise ValueError(f"{field} cannot be null")
        return self


class Share(BaseModel):
    user_id: int
    permission: SharePermission
    user: Optional[UserBrief] = None

    class Config:
        from_attributes = True


class ShareCreate(BaseModel):
    email: EmailStr
    permission: SharePermission = SharePermission.viewer


class Task(TaskBase):
    id: int
    user_id: int
    workspace_id: Optional[int] = None
    project_id: Optional[int] = None
    completed_at: Optional[datetime] = None
    assignee_ids: List[int] = []
    shared_with: List[Share] = []
    subtasks: List[Subtask] = []
    attachments: List[Attachment] = []
    recurrence: Recurrence
    linked_resource: Optional[LinkedResource] = None
    source: Optional[TaskSource] = None
    progress_percent: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool


class TaskPage(BaseModel):
    items: List[Task]
    pagination: Pagination


class TaskExport(BaseModel):
    exported_at: datetime
    count: int
    items: List[Task]


# Comment schemas
class CommentCreate(BaseModel):
    body: str = Field(..., min_length=1, max_length=1200)


class Comment(BaseModel):
    id: int
    task_id: int
    project_id: Optional[int] = None
    author_id: Optional[int] = None
    author: Optional[UserBrief] = None
    body: str
    created_at: datetime

    class Config:
        from_attributes = True


class CommentList(BaseModel):
    items: List[Comment]


# Activity schemas
class Activity(BaseModel):
    id: int
    task_id: Optional[int] = None
    project_id: Optional[int] = None
    workspace_id: Optional[int] = None
    actor_id: Optional[int] = None
    actor: Optional[UserBrief] = None
    action: str
    details: Dict[str, Any] = {}
    created_at: datetime

    class Config:
        from_attributes = True


class ActivityList(BaseModel):
    items: List[Activity]


# Notification schemas
class Notification(BaseModel):
    id: int
    user_id: int
    task_id: Optional[int] = None
    type: str
    title: str
    message: str
    due_at: Optional[datetime] = None
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationList(BaseModel):
    items: List[Notification]
    unread_count: int


# Import schemas
class ImportedTask(BaseModel):
    """A task already mapped from the external provider's format."""
    external_id: str = Field(..., min_length=1, max_length=255)
    title: str = Field(..., min_length=1, max_length=120)
    description: str = Field("", max_length=1000)
    status: TaskStatus = TaskStatus.todo
    priority: TaskPriority = TaskPriority.medium
    due_date: Optional[datetime] = None
    linked_resource: Optional[LinkedResource] = None


class ImportRequest(BaseModel):
    provider: Literal["microsoft_todo"] = "microsoft_todo"
    list_id: str = Field(..., min_length=1, max_length=255)
    list_title: Optional[str] = Field(None, max_length=120)
    tasks: List[ImportedTask] = Field(..., max_length=100)


class ImportResult(BaseModel):
    imported: int
    created: int
    updated: int
    list_id: str
    list_title: Optional[str] = None


# Analytics schemas
class AnalyticsTotals(BaseModel):
    total: int
    done: int
    overdue: int
    active: int


class OverduePoint(BaseModel):
    date: str  # YYYY-MM-DD
    count: int


class WeeklyProductivity(BaseModel):
    week_start: str  # YYYY-MM-DD, a Monday
    created: int
    completed: int


class MonthlyProductivity(BaseModel):
    month: str  # YYYY-MM
    created: int
    completed: int


class AnalyticsSummary(BaseModel):
    totals: AnalyticsTotals
    completion_rate: int
    overdue_trend: List[OverduePoint]
    productivity_weekly: List[WeeklyProductivity]
    productivity_monthly: List[MonthlyProductivity]
