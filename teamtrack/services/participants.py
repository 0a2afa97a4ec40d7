"""
Project membership and permission gates.

A participant row links a user to a project with a role (leader or staff) and
a status (active, left, banned). Rows are soft-deleted on removal so the audit
trail keeps pointing at real data.

Two gates are exposed to the rest of the application:
- verify_user_project_access: any active participant may read the project
- check_project_permissions: the caller's role must be in an allowed set, where
  the pseudo-role "creator" matches the project's creator
"""

import enum
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from teamtrack import models
from teamtrack.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from teamtrack.services.activity import ActivityService
from teamtrack.services.identity import IdentityService
from teamtrack.time_utils import utc_now

logger = logging.getLogger(__name__)

CREATOR_ROLE = "creator"
LEADER_OR_CREATOR = (models.ParticipantRole.leader.value, CREATOR_ROLE)


def participant_view(participant: models.Participant, user: Optional[models.User]) -> Dict[str, Any]:
    """Merge a participant row with the identity of its user."""
    return {
        "user_id": participant.user_id,
        "project_id": participant.project_id,
        "role": participant.role,
        "status": participant.status,
        "joined_at": participant.joined_at,
        "username": user.username if user else "",
        "email": user.email if user else "",
        "avatar_url": (user.avatar_url or "") if user else "",
    }


class ParticipantService:
    """Membership CRUD and access-control checks for projects."""

    def __init__(
        self,
        db: Session,
        activity: Optional[ActivityService] = None,
        identity: Optional[IdentityService] = None,
    ) -> None:
        self.db = db
        self.activity = activity or ActivityService(db)
        self.identity = identity or IdentityService(db)

    # ============== Lookups ==============

    def get_project(self, project_id: int) -> models.Project:
        """Return a non-deleted project or raise NotFoundError."""
        project = (
            self.db.query(models.Project)
            .filter(models.Project.id == project_id, models.Project.deleted.is_(False))
            .first()
        )
        if project is None:
            logger.info(f"Project {project_id} not found")
            raise NotFoundError("Project not found", {"project_id": project_id})
        return project

    def get_active_participant(self, project_id: int, user_id: int) -> Optional[models.Participant]:
        return (
            self.db.query(models.Participant)
            .filter(
                models.Participant.project_id == project_id,
                models.Participant.user_id == user_id,
                models.Participant.status == models.ParticipantStatus.active,
                models.Participant.deleted.is_(False),
            )
            .first()
        )

    def is_active_participant(self, project_id: int, user_id: int) -> bool:
        return self.get_active_participant(project_id, user_id) is not None

    def _require_active_participant(self, project_id: int, user_id: int) -> models.Participant:
        participant = self.get_active_participant(project_id, user_id)
        if participant is None:
            logger.info(f"No active participant row for user {user_id} in project {project_id}")
            raise NotFoundError(
                "Participant not found",
                {"project_id": project_id, "user_id": user_id},
            )
        return participant

    # ============== Gates ==============

    def verify_user_project_access(self, project_id: int, user_id: int) -> models.Project:
        """
        Require the project to exist and the user to be an active participant.

        Raises:
            NotFoundError: project missing or deleted
            ForbiddenError: user is not an active participant
        """
        logger.debug(f"Verifying access of user {user_id} to project {project_id}")
        project = self.get_project(project_id)

        if not self.is_active_participant(project_id, user_id):
            logger.info(f"User {user_id} is not a participant of project {project_id}")
            raise ForbiddenError("User is not a participant", {"project_id": project_id})

        return project

    def check_project_permissions(
        self, project_id: int, user_id: int, allowed_roles: Iterable[str]
    ) -> models.Participant:
        """
        Require the caller to hold one of `allowed_roles` in the project.

        Args:
            project_id: Project to check
            user_id: Caller
            allowed_roles: Participant roles ('leader', 'staff') and/or 'creator'

        Returns:
            The caller's active participant row

        Raises:
            NotFoundError: project missing or deleted
            ForbiddenError: caller is not an active participant or lacks the role
        """
        roles = {role.value if isinstance(role, enum.Enum) else role for role in allowed_roles}
        logger.debug(
            f"Checking permissions for user {user_id} on project {project_id}, allowed roles: {sorted(roles)}"
        )

        project = self.get_project(project_id)
        participant = self.get_active_participant(project_id, user_id)

        if participant is None:
            logger.info(f"User {user_id} has no active membership in project {project_id}")
            raise ForbiddenError("User is not a participant", {"project_id": project_id})

        if participant.role.value in roles:
            logger.debug(f"User {user_id} has role '{participant.role.value}', permission granted")
            return participant

        if CREATOR_ROLE in roles and project.creator_id == user_id:
            logger.debug(f"User {user_id} is the creator of project {project_id}, permission granted")
            return participant

        logger.info(
            f"User {user_id} has role '{participant.role.value}' in project {project_id}, "
            f"but one of {sorted(roles)} is required"
        )
        raise ForbiddenError(
            "You do not have permission to perform this action",
            {"required_roles": sorted(roles)},
        )

    # ============== Membership CRUD ==============

    def list_participants(self, project_id: int) -> List[Dict[str, Any]]:
        """Active, non-deleted participants with identity, most recently joined first."""
        participants = (
            self.db.query(models.Participant)
            .filter(
                models.Participant.project_id == project_id,
                models.Participant.status == models.ParticipantStatus.active,
                models.Participant.deleted.is_(False),
            )
            .order_by(models.Participant.joined_at.desc(), models.Participant.id.desc())
            .all()
        )
        users = self.identity.users_by_id(p.user_id for p in participants)
        return [participant_view(p, users.get(p.user_id)) for p in participants]

    def add_participant(
        self,
        project_id: int,
        actor_id: int,
        user_id: int,
        role: models.ParticipantRole = models.ParticipantRole.staff,
    ) -> Dict[str, Any]:
        """
        Add a user to a project.

        A soft-deleted or inactive row for the same pair is revived instead of
        inserting a second row.

        Raises:
            NotFoundError: project or user missing
            ForbiddenError: actor is not a leader or the creator
            ConflictError: user is already an active participant
        """
        logger.debug(f"User {actor_id} adding user {user_id} to project {project_id} as {role.value}")
        self.get_project(project_id)
        self.check_project_permissions(project_id, actor_id, LEADER_OR_CREATOR)

        user = self.identity.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": user_id})

        existing = (
            self.db.query(models.Participant)
            .filter(
                models.Participant.project_id == project_id,
                models.Participant.user_id == user_id,
            )
            .first()
        )

        if existing is not None and not existing.deleted and existing.status == models.ParticipantStatus.active:
            logger.info(f"User {user_id} is already a participant of project {project_id}")
            raise ConflictError("Participant already exist", {"user_id": user_id})

        if existing is not None:
            logger.debug(f"Reviving participant row {existing.id}")
            existing.role = role
            existing.status = models.ParticipantStatus.active
            existing.joined_at = utc_now()
            existing.deleted = False
            existing.deleted_at = None
            participant = existing
        else:
            participant = models.Participant(
                project_id=project_id,
                user_id=user_id,
                role=role,
                status=models.ParticipantStatus.active,
                joined_at=utc_now(),
            )
            self.db.add(participant)

        self.db.commit()
        self.db.refresh(participant)

        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.participant,
            action=models.ActivityAction.add,
            modified_by=self.identity.snapshot(actor_id),
            changes={"user_id": {"from": None, "to": user_id}, "role": {"from": None, "to": role.value}},
            detail=f"added {user.username} as {role.value}",
            entity_id=participant.id,
        )

        logger.info(f"User {user_id} added to project {project_id} with role {role.value}")
        return participant_view(participant, user)

    def update_participant_role(
        self,
        project_id: int,
        actor_id: int,
        user_id: int,
        role: models.ParticipantRole,
    ) -> Dict[str, Any]:
        """
        Change the role of an active participant.

        Raises:
            NotFoundError: project missing or the user has no active participant row
            ForbiddenError: actor is not a leader or the creator
        """
        logger.debug(f"User {actor_id} changing role of user {user_id} in project {project_id} to {role.value}")
        self.get_project(project_id)
        self.check_project_permissions(project_id, actor_id, LEADER_OR_CREATOR)
        participant = self._require_active_participant(project_id, user_id)

        old_role = participant.role
        participant.role = role
        self.db.commit()
        self.db.refresh(participant)

        user = self.identity.get_user(user_id)
        changes = {}
        if old_role != role:
            changes["role"] = {"from": old_role.value, "to": role.value}

        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.participant,
            action=models.ActivityAction.update,
            modified_by=self.identity.snapshot(actor_id),
            changes=changes,
            detail=f"changed role of {user.username if user else user_id} to {role.value}",
            entity_id=participant.id,
        )

        logger.info(f"Role of user {user_id} in project {project_id} is now {role.value}")
        return participant_view(participant, user)

    def remove_participant(self, project_id: int, actor_id: int, user_id: int) -> Dict[str, Any]:
        """
        Soft-delete a participant (leave or removal).

        Removing somebody else requires the leader or creator role; any
        participant may remove themselves.

        Raises:
            NotFoundError: project missing or no active participant row for the user
            ForbiddenError: actor may not remove other participants
            ValidationError: target is the project creator
        """
        logger.debug(f"User {actor_id} removing user {user_id} from project {project_id}")
        project = self.get_project(project_id)

        if actor_id != user_id:
            self.check_project_permissions(project_id, actor_id, LEADER_OR_CREATOR)

        participant = self._require_active_participant(project_id, user_id)

        if project.creator_id == user_id:
            logger.info(f"Refusing to remove creator {user_id} from project {project_id}")
            raise ValidationError("The project creator cannot be removed", {"user_id": user_id})

        participant.status = models.ParticipantStatus.left
        participant.deleted = True
        participant.deleted_at = utc_now()
        self.db.commit()

        user = self.identity.get_user(user_id)
        action_detail = "left the project" if actor_id == user_id else f"removed {user.username if user else user_id}"
        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.participant,
            action=models.ActivityAction.remove,
            modified_by=self.identity.snapshot(actor_id),
            changes={"user_id": {"from": user_id, "to": None}},
            detail=action_detail,
            entity_id=participant.id,
        )

        logger.info(f"User {user_id} removed from project {project_id}")
        return {"project_id": project_id, "user_id": user_id}
