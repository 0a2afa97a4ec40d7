from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional

from teamtrack.models import (
    ActivityAction,
    ActivityEntity,
    AttachmentType,
    ParticipantRole,
    ParticipantStatus,
    TaskPriority,
    TaskStatus,
    TaskType,
)


# User schemas
class UserSummary(BaseModel):
    id: Optional[int] = None
    username: str
    email: str
    avatar_url: str = ""


# Participant schemas
class ParticipantAdd(BaseModel):
    user_id: int
    role: ParticipantRole = ParticipantRole.staff


class ParticipantRoleUpdate(BaseModel):
    role: ParticipantRole


class Participant(BaseModel):
    user_id: int
    project_id: int
    role: ParticipantRole
    status: ParticipantStatus
    joined_at: Optional[datetime] = None
    username: str
    email: str
    avatar_url: str = ""


class ParticipantRemoved(BaseModel):
    project_id: int
    user_id: int


# Attachment schemas
class AttachmentCreate(BaseModel):
    attachment_type: AttachmentType
    file_url: str = Field(..., min_length=1, max_length=1024)


class Attachment(BaseModel):
    id: int
    attachment_type: AttachmentType
    file_url: str
    created_at: Optional[datetime] = None


# Activity schemas
class Activity(BaseModel):
    id: int
    project_id: int
    entity: ActivityEntity
    entity_id: Optional[int] = None
    action: ActivityAction
    modified_by: Dict[str, Any]
    changes: Dict[str, Dict[str, Any]]
    detail: str
    created_at: datetime

    class Config:
        from_attributes = True


# Task schemas
class TaskBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field("", max_length=5000)
    assignee_id: Optional[int] = None
    priority: TaskPriority = TaskPriority.medium
    progress: int = Field(0, ge=0, le=100)
    due_date: Optional[datetime] = None


class TaskCreate(TaskBase):
    type: TaskType = TaskType.task


class SubtaskCreate(TaskBase):
    type: Optional[TaskType] = None


class TaskUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=5000)
    type: Optional[TaskType] = None
    assignee_id: Optional[int] = None
    status: Optional[TaskStatus] = None
    priority: Optional[TaskPriority] = None
    progress: Optional[int] = Field(None, ge=0, le=100)
    due_date: Optional[datetime] = None
    # Accepted only so that attempts to change them are rejected explicitly
    creator: Optional[Any] = None
    creator_id: Optional[int] = None
    project_id: Optional[int] = None
    parent_task_id: Optional[int] = None


class TaskSummary(BaseModel):
    id: int
    title: str
    type: TaskType
    status: TaskStatus
    progress: int
    level: int


class Task(BaseModel):
    id: int
    title: str
    description: str
    project_id: int
    creator_id: Optional[int] = None
    creator: Optional[UserSummary] = None
    assignee_id: Optional[int] = None
    assignee: Optional[UserSummary] = None
    type: TaskType
    status: TaskStatus
    priority: TaskPriority
    progress: int
    due_date: Optional[datetime] = None
    parent_task_id: Optional[int] = None
    ancestors: List[int] = []
    level: int
    has_children: bool
    child_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TaskListItem(Task):
    parent: Optional[TaskSummary] = None


class TaskDetail(TaskListItem):
    ancestor_tasks: List[TaskSummary] = []
    subtasks: List[TaskSummary] = []


class ProjectTask(BaseModel):
    id: int
    title: str
    type: TaskType
    status: TaskStatus
    priority: TaskPriority
    progress: int
    assignee_id: Optional[int] = None
    parent_task_id: Optional[int] = None
    level: int
    due_date: Optional[datetime] = None


class TaskDeleteResult(BaseModel):
    task_id: int
    cascade_deleted_count: int


# Project schemas
class ProjectBase(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field("", max_length=1000)
    key: str = Field(..., min_length=1, max_length=100)


class ProjectCreate(ProjectBase):
    participants: List[int] = []


class ProjectUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=1000)
    key: Optional[str] = Field(None, min_length=1, max_length=100)


class Project(ProjectBase):
    id: int
    creator_id: Optional[int] = None
    has_been_modified: bool
    revision_history: List[Dict[str, Any]] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ProjectDetail(Project):
    creator: Optional[UserSummary] = None
    participants: List[Participant] = []
    tasks: List[ProjectTask] = []
    attachments: List[Attachment] = []


class ParticipatingProject(BaseModel):
    id: int
    title: str
    description: str
    key: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    role: ParticipantRole
    creator: Optional[UserSummary] = None
    leader: Optional[UserSummary] = None


class ProjectDeleteResult(BaseModel):
    project_id: int
    task_count: int
    attachment_count: int
    participant_count: int
    log_count: int
