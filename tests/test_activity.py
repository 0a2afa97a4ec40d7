"""
Tests for the activity log and the field diffs that feed it.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from teamtrack import models
from teamtrack.diffs import describe_changes, diff_project, diff_task
from teamtrack.services import ActivityService, IdentityService, TaskService

logger = logging.getLogger(__name__)


# ============== Diffs ==============


def test_diff_only_reports_changed_fields(root_task: models.Task):
    diff = diff_task(
        root_task,
        {
            "title": root_task.title,
            "status": models.TaskStatus.completed,
            "priority": models.TaskPriority.medium,
            "progress": 10,
        },
    )

    assert diff == {
        "status": {"from": "To Do", "to": "Completed"},
        "progress": {"from": 0, "to": 10},
    }


def test_diff_ignores_unknown_fields(project: models.Project):
    assert diff_project(project, {"creator_id": 42, "deleted": True}) == {}


def test_diff_normalizes_datetimes(root_task: models.Task):
    due = datetime(2030, 1, 2, 3, 4, 5, tzinfo=timezone.utc)

    diff = diff_task(root_task, {"due_date": due})

    assert diff == {"due_date": {"from": None, "to": "2030-01-02T03:04:05+00:00"}}


def test_describe_changes():
    sentences = describe_changes(
        "alice",
        {
            "title": {"from": "Old", "to": "New"},
            "description": {"from": "", "to": "Filled in"},
            "assignee_id": {"from": None, "to": 7},
        },
    )

    assert sentences == [
        'alice changed title from "Old" to "New"',
        'alice changed description from "empty" to "Filled in"',
        'alice changed assignee_id from "empty" to "7"',
    ]


# ============== Log ==============


def test_log_activity_appends(activity_service: ActivityService, identity_service: IdentityService, project, creator_user):
    entry = activity_service.log_activity(
        project_id=project.id,
        entity=models.ActivityEntity.task,
        action=models.ActivityAction.delete,
        modified_by=identity_service.snapshot(creator_user.id),
        detail="manual entry",
    )

    assert entry.id is not None
    assert entry.changes == {}
    assert entry.modified_by == {
        "id": creator_user.id,
        "username": "alice",
        "email": "alice@test.com",
        "avatar_url": "https://avatars.test/alice.png",
    }
    assert activity_service.get_project_activities(project.id)[0].id == entry.id


def test_snapshot_of_unknown_user(identity_service: IdentityService):
    assert identity_service.snapshot(404) == {"id": 404, "username": "", "email": "", "avatar_url": ""}


def test_task_update_logs_full_diff(
    task_service: TaskService, activity_service: ActivityService, root_task, creator_user, staff_user
):
    task_service.update_task(
        root_task.id,
        creator_user.id,
        {"title": "Renamed", "assignee_id": staff_user.id, "description": ""},
    )

    entry = activity_service.get_project_activities(root_task.project_id)[0]
    assert entry.entity == models.ActivityEntity.task
    assert entry.action == models.ActivityAction.update
    assert entry.entity_id == root_task.id
    assert entry.changes == {
        "title": {"from": "Launch vehicle", "to": "Renamed"},
        "assignee_id": {"from": None, "to": staff_user.id},
    }
    assert 'alice changed title from "Launch vehicle" to "Renamed"' in entry.detail
    logger.info("✓ Task update logs every changed field")


def test_task_lifecycle_is_logged(
    task_service: TaskService, activity_service: ActivityService, root_task, creator_user
):
    child = task_service.create_subtask(root_task.project_id, root_task.id, creator_user.id, {"title": "Child"})
    task_service.delete_task(child.id, creator_user.id)

    entries = activity_service.get_project_activities(root_task.project_id)
    actions = [(e.entity, e.action) for e in entries]

    assert actions == [
        (models.ActivityEntity.task, models.ActivityAction.delete),
        (models.ActivityEntity.task, models.ActivityAction.create),
        (models.ActivityEntity.task, models.ActivityAction.create),
        (models.ActivityEntity.project, models.ActivityAction.create),
    ]
    assert entries[1].changes == {
        "task_id": {"from": None, "to": child.id},
        "parent_task_id": {"from": None, "to": root_task.id},
    }


def test_activities_exclude_soft_deleted(
    activity_service: ActivityService, test_db: Session, project
):
    entry = activity_service.get_project_activities(project.id)[0]
    entry.deleted = True
    test_db.commit()

    assert activity_service.get_project_activities(project.id) == []
