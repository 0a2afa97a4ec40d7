from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
import enum

from teamtrack.database import Base
from teamtrack.time_utils import utc_now


def _enum_column(enum_cls, name):
    # Persist the human-readable values ("To Do") rather than member names
    return Enum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class TaskType(str, enum.Enum):
    task = "Task"
    subtask = "Subtask"
    bug = "Bug"
    epic = "Epic"
    story = "Story"


class TaskStatus(str, enum.Enum):
    todo = "To Do"
    in_progress = "In Progress"
    completed = "Completed"


class TaskPriority(str, enum.Enum):
    low = "Low"
    medium = "Medium"
    high = "High"
    urgent = "Urgent"


class ParticipantRole(str, enum.Enum):
    leader = "leader"
    staff = "staff"


class ParticipantStatus(str, enum.Enum):
    active = "active"
    left = "left"
    banned = "banned"


class UserVerifyStatus(str, enum.Enum):
    unverified = "unverified"
    verified = "verified"


class AttachmentType(str, enum.Enum):
    image = "image"
    video = "video"
    audio = "audio"
    document = "document"


class ActivityEntity(str, enum.Enum):
    project = "project"
    task = "task"
    participant = "participant"
    attachment = "attachment"


class ActivityAction(str, enum.Enum):
    create = "CREATE"
    update = "UPDATE"
    delete = "DELETE"
    add = "ADD"
    remove = "REMOVE"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255))
    avatar_url = Column(String(512), nullable=False, default="")
    verify = Column(_enum_column(UserVerifyStatus, "user_verify_status"), nullable=False, default=UserVerifyStatus.unverified)
    role = Column(_enum_column(ParticipantRole, "user_role"), nullable=False, default=ParticipantRole.staff)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)
    last_login_at = Column(DateTime(timezone=True), nullable=True)


class Project(Base):
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    key = Column(String(100), unique=True, nullable=False)
    creator_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    has_been_modified = Column(Boolean, nullable=False, default=False)

    # Append-only list of {modified_at, modified_by, changes, description}
    revision_history = Column(JSON, nullable=False, default=list)

    deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now)


class Participant(Base):
    __tablename__ = "participants"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_participant_project_user"),)

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(_enum_column(ParticipantRole, "participant_role"), nullable=False, default=ParticipantRole.staff)
    status = Column(_enum_column(ParticipantStatus, "participant_status"), nullable=False, default=ParticipantStatus.active)
    joined_at = Column(DateTime(timezone=True), default=utc_now)
    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    creator_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"))
    assignee_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    type = Column(_enum_column(TaskType, "task_type"), nullable=False, default=TaskType.task)
    status = Column(_enum_column(TaskStatus, "task_status"), nullable=False, default=TaskStatus.todo)
    priority = Column(_enum_column(TaskPriority, "task_priority"), nullable=False, default=TaskPriority.medium)
    progress = Column(Integer, nullable=False, default=0)
    due_date = Column(DateTime(timezone=True), nullable=True)

    # Hierarchy: ancestors is root-first and always len(ancestors) == level
    parent_task_id = Column(Integer, ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True, index=True)
    ancestors = Column(JSON, nullable=False, default=list)
    level = Column(Integer, nullable=False, default=0)

    # Denormalized cache of non-deleted direct children
    has_children = Column(Boolean, nullable=False, default=False)
    child_count = Column(Integer, nullable=False, default=0)

    deleted = Column(Boolean, nullable=False, default=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now)


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(Integer, primary_key=True, index=True)
    attachment_type = Column(_enum_column(AttachmentType, "attachment_type"), nullable=False)
    file_url = Column(String(1024), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)


class ProjectAttachment(Base):
    __tablename__ = "project_attachments"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    attachment_id = Column(Integer, ForeignKey("attachments.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    entity = Column(_enum_column(ActivityEntity, "activity_entity"), nullable=False)
    entity_id = Column(Integer, nullable=True)
    action = Column(_enum_column(ActivityAction, "activity_action"), nullable=False)

    # Snapshot of the actor at write time: {id, username, email, avatar_url}
    modified_by = Column(JSON, nullable=False, default=dict)
    changes = Column(JSON, nullable=False, default=dict)
    detail = Column(Text, nullable=False, default="")

    deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
