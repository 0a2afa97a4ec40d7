"""
Project lifecycle: creation with initial membership, audited partial updates,
aggregated reads and the cascading soft delete.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from teamtrack import models
from teamtrack.diffs import describe_changes, diff_project
from teamtrack.errors import ConflictError, InternalError, NotFoundError, ValidationError
from teamtrack.services.activity import ActivityService
from teamtrack.services.identity import IdentityService, summarize_user
from teamtrack.services.participants import LEADER_OR_CREATOR, ParticipantService, participant_view
from teamtrack.time_utils import utc_now

logger = logging.getLogger(__name__)


def _task_summary(task: models.Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "type": task.type,
        "status": task.status,
        "priority": task.priority,
        "progress": task.progress,
        "assignee_id": task.assignee_id,
        "parent_task_id": task.parent_task_id,
        "level": task.level,
        "due_date": task.due_date,
    }


class ProjectService:
    """Create, read, update and cascade-delete projects."""

    def __init__(
        self,
        db: Session,
        activity: Optional[ActivityService] = None,
        identity: Optional[IdentityService] = None,
        participants: Optional[ParticipantService] = None,
    ) -> None:
        self.db = db
        self.activity = activity or ActivityService(db)
        self.identity = identity or IdentityService(db)
        self.participants = participants or ParticipantService(db, self.activity, self.identity)

    def _ensure_key_available(self, key: str, exclude_project_id: Optional[int] = None) -> None:
        query = self.db.query(models.Project).filter(models.Project.key == key)
        if exclude_project_id is not None:
            query = query.filter(models.Project.id != exclude_project_id)
        if query.first() is not None:
            logger.info(f"Project key '{key}' is already taken")
            raise ConflictError("Project key already exists", {"key": key})

    # ============== Create ==============

    def create_project(self, creator_id: int, data: Dict[str, Any]) -> models.Project:
        """
        Create a project and its initial participants.

        The creator is always a participant with role leader; every other
        listed user joins as staff.

        Args:
            creator_id: Authenticated user creating the project
            data: title, description, key and an optional list of participant user ids

        Raises:
            ConflictError: key already used by another project
            NotFoundError: creator or a listed participant does not exist
        """
        key = data["key"]
        logger.debug(f"User {creator_id} creating project with key '{key}'")

        self._ensure_key_available(key)

        member_ids: List[int] = [creator_id]
        for user_id in data.get("participants") or []:
            if user_id not in member_ids:
                member_ids.append(user_id)

        users = self.identity.users_by_id(member_ids)
        missing = [user_id for user_id in member_ids if user_id not in users]
        if missing:
            logger.info(f"Cannot create project, unknown users: {missing}")
            raise NotFoundError("User not found", {"user_ids": missing})

        project = models.Project(
            title=data["title"],
            description=data.get("description") or "",
            key=key,
            creator_id=creator_id,
            revision_history=[],
        )
        self.db.add(project)
        self.db.flush()

        joined_at = utc_now()
        self.db.add_all(
            [
                models.Participant(
                    project_id=project.id,
                    user_id=user_id,
                    role=models.ParticipantRole.leader if user_id == creator_id else models.ParticipantRole.staff,
                    status=models.ParticipantStatus.active,
                    joined_at=joined_at,
                )
                for user_id in member_ids
            ]
        )

        self.db.commit()
        self.db.refresh(project)
        logger.debug(f"Added {len(member_ids)} participants to project {project.id}")

        self.activity.log_activity(
            project_id=project.id,
            entity=models.ActivityEntity.project,
            action=models.ActivityAction.create,
            modified_by=summarize_user(users[creator_id]),
            changes={"project_id": {"from": None, "to": project.id}},
            detail=f"created project {project.title}",
            entity_id=project.id,
        )

        logger.info(f"Project created: {project.title} (ID: {project.id}) by user {creator_id}")
        return project

    # ============== Update ==============

    def update_project(self, project_id: int, updater_id: int, changes: Dict[str, Any]) -> models.Project:
        """
        Apply a partial update and record it in the revision history.

        Only fields whose value actually changes are recorded. An update that
        changes nothing writes nothing.

        Raises:
            NotFoundError: project or updater missing
            ForbiddenError: updater is not a leader or the creator
            ConflictError: new key already used by another project
        """
        logger.debug(f"User {updater_id} updating project {project_id}: {sorted(changes)}")
        project = self.participants.get_project(project_id)

        updater = self.identity.get_user(updater_id)
        if updater is None:
            raise NotFoundError("User not found", {"user_id": updater_id})

        self.participants.check_project_permissions(project_id, updater_id, LEADER_OR_CREATOR)

        nulled = [field for field in ("title", "key") if field in changes and changes[field] is None]
        if nulled:
            raise ValidationError("Field cannot be empty", {"fields": nulled})
        if "description" in changes and changes["description"] is None:
            changes = {**changes, "description": ""}

        diff = diff_project(project, changes)
        if not diff:
            logger.debug(f"No effective changes for project {project_id}")
            return project

        if "key" in diff:
            self._ensure_key_available(diff["key"]["to"], exclude_project_id=project_id)

        for field in diff:
            setattr(project, field, changes[field])

        now = utc_now()
        modified_by = summarize_user(updater)
        description = "; ".join(describe_changes(updater.username, diff))

        # JSON columns are only change-tracked on reassignment
        project.revision_history = list(project.revision_history or []) + [
            {
                "modified_at": now.isoformat(),
                "modified_by": modified_by,
                "changes": diff,
                "description": description,
            }
        ]
        project.has_been_modified = True
        project.updated_at = now

        self.db.commit()
        self.db.refresh(project)

        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.project,
            action=models.ActivityAction.update,
            modified_by=modified_by,
            changes=diff,
            detail=description,
            entity_id=project_id,
        )

        logger.info(f"Project {project_id} updated by user {updater_id}: {sorted(diff)}")
        return project

    # ============== Delete ==============

    def delete_project(self, project_id: int, actor_id: int) -> Dict[str, int]:
        """
        Soft-delete a project together with its tasks, attachment links,
        participants and activity entries, in one transaction.

        Returns:
            Per-collection counts of rows that were soft-deleted

        Raises:
            NotFoundError: project missing or already deleted
            ForbiddenError: actor is not a leader or the creator
            InternalError: the project row could not be marked deleted (nothing is kept)
        """
        logger.debug(f"User {actor_id} deleting project {project_id}")
        self.participants.check_project_permissions(project_id, actor_id, LEADER_OR_CREATOR)

        now = utc_now()
        tombstone = {"deleted": True, "deleted_at": now}

        try:
            task_count = (
                self.db.query(models.Task)
                .filter(models.Task.project_id == project_id, models.Task.deleted.is_(False))
                .update(tombstone, synchronize_session=False)
            )
            attachment_count = (
                self.db.query(models.ProjectAttachment)
                .filter(
                    models.ProjectAttachment.project_id == project_id,
                    models.ProjectAttachment.deleted.is_(False),
                )
                .update(tombstone, synchronize_session=False)
            )
            participant_count = (
                self.db.query(models.Participant)
                .filter(models.Participant.project_id == project_id, models.Participant.deleted.is_(False))
                .update(tombstone, synchronize_session=False)
            )
            log_count = (
                self.db.query(models.ActivityLog)
                .filter(models.ActivityLog.project_id == project_id, models.ActivityLog.deleted.is_(False))
                .update(tombstone, synchronize_session=False)
            )
            project_count = (
                self.db.query(models.Project)
                .filter(models.Project.id == project_id, models.Project.deleted.is_(False))
                .update(tombstone, synchronize_session=False)
            )
            if project_count == 0:
                raise InternalError("Failed to delete project", {"project_id": project_id})

            self.db.commit()
        except Exception as e:
            logger.error(f"Deleting project {project_id} failed, rolling back: {e}")
            self.db.rollback()
            raise

        self.db.expire_all()
        logger.info(
            f"Project {project_id} deleted by user {actor_id}: {task_count} tasks, "
            f"{attachment_count} attachments, {participant_count} participants, {log_count} activity entries"
        )
        return {
            "project_id": project_id,
            "task_count": task_count,
            "attachment_count": attachment_count,
            "participant_count": participant_count,
            "log_count": log_count,
        }

    # ============== Attachments ==============

    def attach_file(
        self,
        project_id: int,
        actor_id: int,
        attachment_type: models.AttachmentType,
        file_url: str,
    ) -> Dict[str, Any]:
        """Register an uploaded file against a project."""
        logger.debug(f"User {actor_id} attaching {attachment_type.value} to project {project_id}")
        self.participants.get_project(project_id)

        attachment = models.Attachment(attachment_type=attachment_type, file_url=file_url)
        self.db.add(attachment)
        self.db.flush()

        link = models.ProjectAttachment(project_id=project_id, attachment_id=attachment.id)
        self.db.add(link)
        self.db.commit()
        self.db.refresh(attachment)

        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.attachment,
            action=models.ActivityAction.add,
            modified_by=self.identity.snapshot(actor_id),
            changes={"attachment_id": {"from": None, "to": attachment.id}},
            detail=f"attached {attachment_type.value} {file_url}",
            entity_id=attachment.id,
        )

        logger.info(f"Attachment {attachment.id} added to project {project_id}")
        return {
            "id": attachment.id,
            "attachment_type": attachment.attachment_type,
            "file_url": attachment.file_url,
            "created_at": attachment.created_at,
        }

    # ============== Reads ==============

    def get_project_by_id(self, project_id: int) -> Dict[str, Any]:
        """Project with its participants, tasks and attachments (soft-deleted rows excluded)."""
        project = self.participants.get_project(project_id)

        participants = (
            self.db.query(models.Participant)
            .filter(models.Participant.project_id == project_id, models.Participant.deleted.is_(False))
            .order_by(models.Participant.joined_at.desc(), models.Participant.id.desc())
            .all()
        )
        tasks = (
            self.db.query(models.Task)
            .filter(models.Task.project_id == project_id, models.Task.deleted.is_(False))
            .order_by(models.Task.created_at.desc(), models.Task.id.desc())
            .all()
        )
        attachments = (
            self.db.query(models.Attachment)
            .join(models.ProjectAttachment, models.ProjectAttachment.attachment_id == models.Attachment.id)
            .filter(
                models.ProjectAttachment.project_id == project_id,
                models.ProjectAttachment.deleted.is_(False),
            )
            .order_by(models.ProjectAttachment.created_at.desc(), models.Attachment.id.desc())
            .all()
        )

        users = self.identity.users_by_id([project.creator_id] + [p.user_id for p in participants])
        logger.debug(
            f"Project {project_id}: {len(participants)} participants, {len(tasks)} tasks, "
            f"{len(attachments)} attachments"
        )

        return {
            "id": project.id,
            "title": project.title,
            "description": project.description,
            "key": project.key,
            "creator_id": project.creator_id,
            "creator": summarize_user(users.get(project.creator_id)),
            "has_been_modified": project.has_been_modified,
            "revision_history": project.revision_history or [],
            "created_at": project.created_at,
            "updated_at": project.updated_at,
            "participants": [participant_view(p, users.get(p.user_id)) for p in participants],
            "tasks": [_task_summary(task) for task in tasks],
            "attachments": [
                {
                    "id": attachment.id,
                    "attachment_type": attachment.attachment_type,
                    "file_url": attachment.file_url,
                    "created_at": attachment.created_at,
                }
                for attachment in attachments
            ],
        }

    def get_all_participating_projects(self, user_id: int) -> List[Dict[str, Any]]:
        """Flattened summaries of every live project the user actively participates in."""
        rows = (
            self.db.query(models.Participant, models.Project)
            .join(models.Project, models.Project.id == models.Participant.project_id)
            .filter(
                models.Participant.user_id == user_id,
                models.Participant.status == models.ParticipantStatus.active,
                models.Participant.deleted.is_(False),
                models.Project.deleted.is_(False),
            )
            .order_by(models.Project.created_at.desc(), models.Project.id.desc())
            .all()
        )
        if not rows:
            return []

        project_ids = [project.id for _, project in rows]
        leaders = (
            self.db.query(models.Participant)
            .filter(
                models.Participant.project_id.in_(project_ids),
                models.Participant.role == models.ParticipantRole.leader,
                models.Participant.status == models.ParticipantStatus.active,
                models.Participant.deleted.is_(False),
            )
            .order_by(models.Participant.joined_at.asc(), models.Participant.id.asc())
            .all()
        )
        # Earliest active leader represents the project
        leader_by_project: Dict[int, int] = {}
        for leader in leaders:
            leader_by_project.setdefault(leader.project_id, leader.user_id)

        users = self.identity.users_by_id(
            [project.creator_id for _, project in rows] + list(leader_by_project.values())
        )

        summaries = []
        for participant, project in rows:
            summaries.append(
                {
                    "id": project.id,
                    "title": project.title,
                    "description": project.description,
                    "key": project.key,
                    "created_at": project.created_at,
                    "updated_at": project.updated_at,
                    "role": participant.role,
                    "creator": summarize_user(users.get(project.creator_id)),
                    "leader": summarize_user(users.get(leader_by_project.get(project.id))),
                }
            )

        logger.debug(f"User {user_id} participates in {len(summaries)} projects")
        return summaries
