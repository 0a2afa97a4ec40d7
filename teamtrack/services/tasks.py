"""
Task hierarchy service.

Tasks form a forest per project. Every task stores its materialized path
(`ancestors`, root first) and its depth (`level`), so subtree and ancestor
queries never need recursive SQL. Parents cache the number of live direct
children (`child_count` / `has_children`) and, once they have children, their
`progress` is derived: it is the rounded mean of the children's progress and
is recomputed bottom-up whenever a descendant changes.

Invariants maintained here:
- level == len(ancestors)
- ancestors == parent.ancestors + [parent.id]
- a task with live children has progress == round_half_up(mean(children))
- has_children <=> child_count > 0 <=> a live child exists
- parent and child share a project, and subtasks never have children
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from teamtrack import models
from teamtrack.diffs import TASK_MUTABLE_FIELDS, describe_changes, diff_task
from teamtrack.errors import ForbiddenError, InternalError, NotFoundError, ValidationError
from teamtrack.services.activity import ActivityService
from teamtrack.services.identity import IdentityService, summarize_user
from teamtrack.services.participants import ParticipantService
from teamtrack.time_utils import utc_now

logger = logging.getLogger(__name__)

# Keys that may never appear in an update payload
IMMUTABLE_TASK_FIELDS = ("creator", "creator_id", "project_id", "parent_task_id")
REQUIRED_TASK_FIELDS = ("title", "type", "status", "priority", "progress")


def mean_progress(values: Iterable[int]) -> int:
    """
    Integer mean of progress values, rounding halves up.

    >>> mean_progress([20, 50, 70])
    47
    >>> mean_progress([25, 50])
    38
    """
    values = list(values)
    if not values:
        raise ValueError("mean_progress() requires at least one value")
    return (2 * sum(values) + len(values)) // (2 * len(values))


def _check_progress(progress: Any) -> None:
    if not isinstance(progress, int) or isinstance(progress, bool) or not 0 <= progress <= 100:
        raise ValidationError("Progress must be an integer between 0 and 100", {"progress": progress})


def _parse_task_type(value: Any) -> models.TaskType:
    try:
        return models.TaskType(value)
    except ValueError:
        raise ValidationError("Unknown task type", {"type": value})


def task_summary(task: Optional[models.Task]) -> Optional[Dict[str, Any]]:
    if task is None:
        return None
    return {
        "id": task.id,
        "title": task.title,
        "type": task.type,
        "status": task.status,
        "progress": task.progress,
        "level": task.level,
    }


def task_view(task: models.Task, users: Dict[int, models.User]) -> Dict[str, Any]:
    """All task columns plus creator/assignee identity."""
    return {
        "id": task.id,
        "title": task.title,
        "description": task.description,
        "project_id": task.project_id,
        "creator_id": task.creator_id,
        "creator": summarize_user(users.get(task.creator_id)),
        "assignee_id": task.assignee_id,
        "assignee": summarize_user(users.get(task.assignee_id)),
        "type": task.type,
        "status": task.status,
        "priority": task.priority,
        "progress": task.progress,
        "due_date": task.due_date,
        "parent_task_id": task.parent_task_id,
        "ancestors": list(task.ancestors or []),
        "level": task.level,
        "has_children": task.has_children,
        "child_count": task.child_count,
        "created_at": task.created_at,
        "updated_at": task.updated_at,
    }


class TaskService:
    """Hierarchical task CRUD with cascading progress maintenance."""

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

    # ============== Helpers ==============

    def _get_live_task(self, task_id: int, project_id: Optional[int] = None) -> models.Task:
        query = self.db.query(models.Task).filter(models.Task.id == task_id, models.Task.deleted.is_(False))
        if project_id is not None:
            query = query.filter(models.Task.project_id == project_id)
        task = query.first()
        if task is None:
            logger.info(f"Task {task_id} not found")
            raise NotFoundError("Task not found", {"task_id": task_id})
        return task

    def _live_children(self, task_id: int) -> List[models.Task]:
        return (
            self.db.query(models.Task)
            .filter(models.Task.parent_task_id == task_id, models.Task.deleted.is_(False))
            .order_by(models.Task.created_at.desc(), models.Task.id.desc())
            .all()
        )

    def _validate_assignee(self, project_id: int, assignee_id: Optional[int]) -> None:
        if assignee_id is None:
            return
        if not self.participants.is_active_participant(project_id, assignee_id):
            logger.info(f"Assignee {assignee_id} is not an active participant of project {project_id}")
            raise ValidationError(
                "Assignee must be an active participant of the project",
                {"assignee_id": assignee_id},
            )

    def _is_leader_or_creator(self, project_id: int, user_id: int) -> bool:
        project = self.participants.get_project(project_id)
        participant = self.participants.get_active_participant(project_id, user_id)
        if participant is None:
            return False
        return project.creator_id == user_id or participant.role == models.ParticipantRole.leader

    def _new_task(self, project_id: int, creator_id: int, data: Dict[str, Any], **hierarchy: Any) -> models.Task:
        progress = data.get("progress")
        progress = 0 if progress is None else progress
        _check_progress(progress)

        task = models.Task(
            title=data["title"],
            description=data.get("description") or "",
            project_id=project_id,
            creator_id=creator_id,
            assignee_id=data.get("assignee_id"),
            priority=data.get("priority") or models.TaskPriority.medium,
            status=models.TaskStatus.todo,
            progress=progress,
            due_date=data.get("due_date"),
            has_children=False,
            child_count=0,
            **hierarchy,
        )
        self.db.add(task)
        self.db.flush()
        return task

    # ============== Create ==============

    def create_root_task(self, project_id: int, creator_id: int, data: Dict[str, Any]) -> models.Task:
        """
        Create a top-level task.

        Raises:
            NotFoundError: project missing or deleted
            ValidationError: type is Subtask or the assignee is not an active participant
        """
        logger.debug(f"User {creator_id} creating root task in project {project_id}")
        self.participants.get_project(project_id)

        task_type = _parse_task_type(data.get("type") or models.TaskType.task)
        if task_type == models.TaskType.subtask:
            raise ValidationError("A root task cannot have type Subtask", {"type": task_type.value})
        self._validate_assignee(project_id, data.get("assignee_id"))

        task = self._new_task(
            project_id,
            creator_id,
            data,
            type=task_type,
            parent_task_id=None,
            ancestors=[],
            level=0,
        )
        self.db.commit()
        self.db.refresh(task)

        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.task,
            action=models.ActivityAction.create,
            modified_by=self.identity.snapshot(creator_id),
            changes={"task_id": {"from": None, "to": task.id}},
            detail=f"created task {task.title}",
            entity_id=task.id,
        )

        logger.info(f"Root task created: {task.title} (ID: {task.id}) in project {project_id}")
        return task

    def create_subtask(
        self, project_id: int, parent_task_id: int, creator_id: int, data: Dict[str, Any]
    ) -> models.Task:
        """
        Create a subtask under an existing task.

        The child is inserted, the parent's child counter is incremented with a
        single UPDATE, and the parent's progress is re-derived so it reflects
        the new child. All three happen in one transaction.

        Raises:
            NotFoundError: project missing or deleted
            ValidationError: parent missing, deleted, in another project or itself
                a Subtask; payload type other than Subtask; invalid assignee
            InternalError: the parent row vanished between validation and update
        """
        logger.debug(f"User {creator_id} creating subtask under task {parent_task_id} in project {project_id}")
        self.participants.get_project(project_id)

        parent = (
            self.db.query(models.Task)
            .filter(models.Task.id == parent_task_id, models.Task.deleted.is_(False))
            .first()
        )
        if parent is None:
            raise ValidationError("Parent task not found", {"parent_task_id": parent_task_id})
        if parent.project_id != project_id:
            logger.info(f"Parent task {parent_task_id} belongs to project {parent.project_id}, not {project_id}")
            raise ValidationError("Parent task must be in the same project", {"parent_task_id": parent_task_id})
        if parent.type == models.TaskType.subtask:
            raise ValidationError("A subtask cannot have subtasks", {"parent_task_id": parent_task_id})

        requested_type = data.get("type")
        if requested_type is not None and _parse_task_type(requested_type) != models.TaskType.subtask:
            raise ValidationError("Subtasks must have type Subtask", {"type": _parse_task_type(requested_type).value})
        self._validate_assignee(project_id, data.get("assignee_id"))

        parent_ancestors = list(parent.ancestors or [])
        task = self._new_task(
            project_id,
            creator_id,
            data,
            type=models.TaskType.subtask,
            parent_task_id=parent.id,
            ancestors=parent_ancestors + [parent.id],
            level=parent.level + 1,
        )

        updated = (
            self.db.query(models.Task)
            .filter(models.Task.id == parent.id)
            .update(
                {
                    models.Task.child_count: models.Task.child_count + 1,
                    models.Task.has_children: True,
                    models.Task.updated_at: utc_now(),
                },
                synchronize_session=False,
            )
        )
        if updated == 0:
            self.db.rollback()
            raise InternalError("Failed to update parent task", {"parent_task_id": parent.id})
        self.db.expire(parent)

        self.propagate_progress(parent.id, commit=False)
        self.db.commit()
        self.db.refresh(task)

        self.activity.log_activity(
            project_id=project_id,
            entity=models.ActivityEntity.task,
            action=models.ActivityAction.create,
            modified_by=self.identity.snapshot(creator_id),
            changes={
                "task_id": {"from": None, "to": task.id},
                "parent_task_id": {"from": None, "to": parent.id},
            },
            detail=f"created subtask {task.title}",
            entity_id=task.id,
        )

        logger.info(f"Subtask created: {task.title} (ID: {task.id}) under task {parent.id}")
        return task

    # ============== Progress propagation ==============

    def propagate_progress(self, parent_task_id: Optional[int], commit: bool = True) -> List[int]:
        """
        Re-derive progress from `parent_task_id` up to its root.

        Each step averages the live direct children of the current task. The
        walk stops at the first task without live children (it keeps the
        progress it has) or at a root.

        Args:
            parent_task_id: First task to recompute
            commit: Whether to commit (set False inside a larger unit of work)

        Returns:
            IDs of the tasks whose progress was recomputed, bottom-up

        Raises:
            InternalError: the parent chain loops back on itself
        """
        updated_ids: List[int] = []
        visited = set()
        current_id = parent_task_id
        max_steps = None

        while current_id is not None:
            if current_id in visited:
                logger.error(f"Cycle detected in task hierarchy at task {current_id}")
                raise InternalError("Task hierarchy contains a cycle", {"task_id": current_id})
            visited.add(current_id)

            current = self.db.query(models.Task).filter(models.Task.id == current_id).first()
            if current is None:
                logger.debug(f"Task {current_id} not found, stopping propagation")
                break

            if max_steps is None:
                max_steps = current.level + 1
            elif len(visited) > max_steps:
                logger.error(f"Propagation from task {parent_task_id} exceeded {max_steps} steps")
                raise InternalError("Task hierarchy is inconsistent", {"task_id": parent_task_id})

            children = self._live_children(current_id)
            if not children:
                logger.debug(f"Task {current_id} has no live children, stopping propagation")
                break

            progress = mean_progress(child.progress for child in children)
            logger.debug(f"Task {current_id} progress {current.progress} -> {progress} from {len(children)} children")
            current.progress = progress
            current.updated_at = utc_now()
            self.db.flush()

            updated_ids.append(current_id)
            current_id = current.parent_task_id

        if commit:
            self.db.commit()
        return updated_ids

    # ============== Update ==============

    def update_task(
        self,
        task_id: int,
        updater_id: int,
        changes: Dict[str, Any],
        project_id: Optional[int] = None,
    ) -> models.Task:
        """
        Apply a partial update to a task.

        Raises:
            NotFoundError: task missing or deleted
            ValidationError: immutable field supplied, type change that breaks
                "Subtask <=> has parent", progress set on a task with children,
                invalid assignee
        """
        logger.debug(f"User {updater_id} updating task {task_id}: {sorted(changes)}")
        task = self._get_live_task(task_id, project_id)

        immutable = [field for field in IMMUTABLE_TASK_FIELDS if field in changes]
        if immutable:
            logger.info(f"Rejected update of immutable fields {immutable} on task {task_id}")
            raise ValidationError("Field cannot be modified", {"fields": immutable})

        nulled = [field for field in REQUIRED_TASK_FIELDS if field in changes and changes[field] is None]
        if nulled:
            raise ValidationError("Field cannot be empty", {"fields": nulled})
        if "description" in changes and changes["description"] is None:
            changes = {**changes, "description": ""}

        if "type" in changes:
            new_type = _parse_task_type(changes["type"])
            if (new_type == models.TaskType.subtask) != (task.parent_task_id is not None):
                raise ValidationError(
                    "Only tasks with a parent can have type Subtask",
                    {"type": new_type.value, "parent_task_id": task.parent_task_id},
                )

        if "progress" in changes:
            _check_progress(changes["progress"])
            if changes["progress"] != task.progress and self._live_children(task.id):
                logger.info(f"Rejected direct progress update on task {task_id}, it has live children")
                raise ValidationError(
                    "Progress of a task with subtasks is derived from its subtasks",
                    {"task_id": task_id},
                )

        if "assignee_id" in changes:
            self._validate_assignee(task.project_id, changes["assignee_id"])

        diff = diff_task(task, changes)
        for field in TASK_MUTABLE_FIELDS:
            if field in changes:
                setattr(task, field, changes[field])
        task.updated_at = utc_now()
        self.db.flush()

        if "progress" in diff and task.parent_task_id is not None:
            self.propagate_progress(task.parent_task_id, commit=False)

        self.db.commit()
        self.db.refresh(task)

        updater = self.identity.snapshot(updater_id)
        self.activity.log_activity(
            project_id=task.project_id,
            entity=models.ActivityEntity.task,
            action=models.ActivityAction.update,
            modified_by=updater,
            changes=diff,
            detail="; ".join(describe_changes(updater["username"] or str(updater_id), diff)),
            entity_id=task.id,
        )

        logger.info(f"Task {task_id} updated by user {updater_id}: {sorted(diff)}")
        return task

    # ============== Delete ==============

    def delete_task(self, task_id: int, acting_user_id: int, project_id: Optional[int] = None) -> Dict[str, int]:
        """
        Soft-delete a task and its whole subtree.

        The parent's child counter is recounted from the remaining live
        children and its progress is re-derived.

        Raises:
            NotFoundError: task missing or deleted
            ForbiddenError: actor is neither the project creator nor an active leader
        """
        logger.debug(f"User {acting_user_id} deleting task {task_id}")
        task = self._get_live_task(task_id, project_id)

        if not self._is_leader_or_creator(task.project_id, acting_user_id):
            logger.info(f"User {acting_user_id} may not delete task {task_id}")
            raise ForbiddenError("Only the project creator or a leader can delete tasks", {"task_id": task_id})

        candidates = (
            self.db.query(models.Task)
            .filter(
                models.Task.project_id == task.project_id,
                models.Task.deleted.is_(False),
                models.Task.level > task.level,
            )
            .all()
        )
        descendants = [candidate for candidate in candidates if task.id in (candidate.ancestors or [])]

        now = utc_now()
        for doomed in [task] + descendants:
            doomed.deleted = True
            doomed.deleted_at = now
            doomed.updated_at = now
        self.db.flush()
        logger.debug(f"Soft-deleted task {task_id} and {len(descendants)} descendants")

        parent_id = task.parent_task_id
        if parent_id is not None:
            parent = self.db.query(models.Task).filter(models.Task.id == parent_id).first()
            if parent is None:
                self.db.rollback()
                raise InternalError("Parent task is missing", {"parent_task_id": parent_id})
            remaining = (
                self.db.query(models.Task)
                .filter(models.Task.parent_task_id == parent_id, models.Task.deleted.is_(False))
                .count()
            )
            parent.child_count = remaining
            parent.has_children = remaining > 0
            parent.updated_at = now
            self.db.flush()
            self.propagate_progress(parent_id, commit=False)

        self.db.commit()

        self.activity.log_activity(
            project_id=task.project_id,
            entity=models.ActivityEntity.task,
            action=models.ActivityAction.delete,
            modified_by=self.identity.snapshot(acting_user_id),
            changes={"task_id": {"from": task.id, "to": None}},
            detail=f"deleted task {task.title}",
            entity_id=task.id,
        )

        logger.info(f"Task {task_id} deleted by user {acting_user_id} ({len(descendants)} descendants)")
        return {"task_id": task.id, "cascade_deleted_count": len(descendants)}

    # ============== Reads ==============

    def get_task_by_id(self, task_id: int, project_id: Optional[int] = None) -> Dict[str, Any]:
        """Task with identity, parent, ancestor chain (root first) and live direct subtasks."""
        task = self._get_live_task(task_id, project_id)

        ancestor_ids = list(task.ancestors or [])
        ancestors_by_id = {}
        if ancestor_ids:
            rows = self.db.query(models.Task).filter(models.Task.id.in_(ancestor_ids)).all()
            ancestors_by_id = {row.id: row for row in rows}

        subtasks = self._live_children(task.id)
        users = self.identity.users_by_id([task.creator_id, task.assignee_id])

        view = task_view(task, users)
        view["parent"] = task_summary(ancestors_by_id.get(task.parent_task_id))
        view["ancestor_tasks"] = [
            task_summary(ancestors_by_id[ancestor_id])
            for ancestor_id in ancestor_ids
            if ancestor_id in ancestors_by_id
        ]
        view["subtasks"] = [task_summary(subtask) for subtask in subtasks]
        return view

    def get_tasks_by_project(self, project_id: int) -> List[Dict[str, Any]]:
        """Live tasks of a project, newest first, with creator, assignee and parent summaries."""
        self.participants.get_project(project_id)
        tasks = (
            self.db.query(models.Task)
            .filter(models.Task.project_id == project_id, models.Task.deleted.is_(False))
            .order_by(models.Task.created_at.desc(), models.Task.id.desc())
            .all()
        )

        tasks_by_id = {task.id: task for task in tasks}
        users = self.identity.users_by_id(
            [task.creator_id for task in tasks] + [task.assignee_id for task in tasks]
        )

        views = []
        for task in tasks:
            view = task_view(task, users)
            view["parent"] = task_summary(tasks_by_id.get(task.parent_task_id))
            views.append(view)

        logger.debug(f"Found {len(views)} tasks in project {project_id}")
        return views

    def get_subtasks(self, task_id: int, project_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Live direct children of a task, newest first."""
        parent = self._get_live_task(task_id, project_id)
        children = self._live_children(parent.id)
        users = self.identity.users_by_id(
            [child.creator_id for child in children] + [child.assignee_id for child in children]
        )
        return [task_view(child, users) for child in children]
