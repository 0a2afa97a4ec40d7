"""
Activity log service.

The activity log is an append-only audit trail of mutations to project-scoped
entities. Entries are never updated in normal operation; the soft-delete flag
is only set when the owning project is deleted.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from teamtrack import models

logger = logging.getLogger(__name__)


class ActivityService:
    """Records and reads project activity entries."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def log_activity(
        self,
        project_id: int,
        entity: models.ActivityEntity,
        action: models.ActivityAction,
        modified_by: Dict[str, Any],
        changes: Optional[Dict[str, Dict[str, Any]]] = None,
        detail: str = "",
        entity_id: Optional[int] = None,
        commit: bool = True,
    ) -> models.ActivityLog:
        """
        Append an activity entry.

        Args:
            project_id: Project the mutation belongs to
            entity: Kind of entity that changed
            action: What happened to it
            modified_by: Actor snapshot (see IdentityService.snapshot)
            changes: Map of field -> {"from": old, "to": new}
            detail: Human-readable summary
            entity_id: ID of the changed entity (optional)
            commit: Whether to commit immediately (set False inside a larger unit of work)

        Returns:
            Created ActivityLog instance
        """
        logger.debug(
            f"Logging activity: project={project_id}, entity={entity.value}, "
            f"action={action.value}, entity_id={entity_id}"
        )

        entry = models.ActivityLog(
            project_id=project_id,
            entity=entity,
            entity_id=entity_id,
            action=action,
            modified_by=modified_by,
            changes=changes or {},
            detail=detail,
        )
        self.db.add(entry)
        self.db.flush()

        if commit:
            self.db.commit()
            self.db.refresh(entry)

        return entry

    def get_project_activities(self, project_id: int) -> List[models.ActivityLog]:
        """Return all non-deleted entries for a project, newest first."""
        activities = (
            self.db.query(models.ActivityLog)
            .filter(
                models.ActivityLog.project_id == project_id,
                models.ActivityLog.deleted.is_(False),
            )
            .order_by(models.ActivityLog.created_at.desc(), models.ActivityLog.id.desc())
            .all()
        )
        logger.debug(f"Found {len(activities)} activities for project {project_id}")
        return activities
