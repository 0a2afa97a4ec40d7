"""
Tests for the project lifecycle: creation with initial membership, audited
updates, aggregated reads and the cascading soft delete.
"""

import logging

import pytest
from sqlalchemy.orm import Session

from teamtrack import models
from teamtrack.errors import ConflictError, ForbiddenError, NotFoundError
from teamtrack.services import ActivityService, ParticipantService, ProjectService, TaskService

logger = logging.getLogger(__name__)


# ============== Fixtures ==============


@pytest.fixture
def seeded_project(test_db: Session, creator_user: models.User, staff_user: models.User) -> models.Project:
    """
    Project inserted row by row: 2 participants, 5 tasks, 3 activity entries.
    """
    project = models.Project(title="Seeded", description="", key="SEED", creator_id=creator_user.id)
    test_db.add(project)
    test_db.commit()
    test_db.refresh(project)

    test_db.add_all(
        [
            models.Participant(project_id=project.id, user_id=creator_user.id, role=models.ParticipantRole.leader),
            models.Participant(project_id=project.id, user_id=staff_user.id, role=models.ParticipantRole.staff),
        ]
    )
    test_db.add_all(
        [models.Task(title=f"Task {i}", project_id=project.id, creator_id=creator_user.id) for i in range(5)]
    )
    test_db.add_all(
        [
            models.ActivityLog(
                project_id=project.id,
                entity=models.ActivityEntity.task,
                action=models.ActivityAction.create,
                modified_by={"id": creator_user.id},
                changes={},
                detail=f"entry {i}",
            )
            for i in range(3)
        ]
    )
    test_db.commit()
    return project


# ============== Create ==============


def test_create_project_adds_creator_as_leader(project: models.Project, participant_service, creator_user, staff_user):
    participants = {p["user_id"]: p for p in participant_service.list_participants(project.id)}

    assert set(participants) == {creator_user.id, staff_user.id}
    assert participants[creator_user.id]["role"] == models.ParticipantRole.leader
    assert participants[staff_user.id]["role"] == models.ParticipantRole.staff
    assert all(p["status"] == models.ParticipantStatus.active for p in participants.values())
    assert project.creator_id == creator_user.id
    assert project.has_been_modified is False
    assert project.revision_history == []
    logger.info("✓ Creator joins as leader, listed users as staff")


def test_create_project_logs_creation(project: models.Project, activity_service: ActivityService, creator_user):
    entries = activity_service.get_project_activities(project.id)

    assert len(entries) == 1
    assert entries[0].entity == models.ActivityEntity.project
    assert entries[0].action == models.ActivityAction.create
    assert entries[0].modified_by["username"] == creator_user.username


def test_create_project_duplicate_key(project_service: ProjectService, project, creator_user):
    with pytest.raises(ConflictError):
        project_service.create_project(creator_user.id, {"title": "Copy", "key": project.key})


def test_create_project_unknown_participant(project_service: ProjectService, test_db: Session, creator_user):
    with pytest.raises(NotFoundError):
        project_service.create_project(creator_user.id, {"title": "Lonely", "key": "LONELY", "participants": [999]})

    assert test_db.query(models.Project).count() == 0
    assert test_db.query(models.Participant).count() == 0


def test_create_project_ignores_duplicate_participants(
    project_service: ProjectService, participant_service, creator_user, staff_user
):
    project = project_service.create_project(
        creator_user.id,
        {"title": "Dupes", "key": "DUPES", "participants": [staff_user.id, staff_user.id, creator_user.id]},
    )

    assert len(participant_service.list_participants(project.id)) == 2


# ============== Update ==============


def test_update_project_appends_revision(
    project_service: ProjectService, activity_service: ActivityService, project, creator_user
):
    updated = project_service.update_project(project.id, creator_user.id, {"title": "Artemis", "description": ""})

    assert updated.title == "Artemis"
    assert updated.has_been_modified is True
    assert len(updated.revision_history) == 1

    revision = updated.revision_history[0]
    assert revision["changes"] == {
        "title": {"from": "Apollo", "to": "Artemis"},
        "description": {"from": "Moon landing", "to": ""},
    }
    assert revision["modified_by"]["username"] == "alice"
    assert 'alice changed title from "Apollo" to "Artemis"' in revision["description"]

    latest = activity_service.get_project_activities(project.id)[0]
    assert latest.action == models.ActivityAction.update
    assert latest.changes == revision["changes"]
    logger.info("✓ Project update is recorded in revision history and activity log")


def test_update_project_history_accumulates(project_service: ProjectService, project, creator_user):
    project_service.update_project(project.id, creator_user.id, {"title": "Second"})
    updated = project_service.update_project(project.id, creator_user.id, {"title": "Third"})

    assert [r["changes"]["title"]["to"] for r in updated.revision_history] == ["Second", "Third"]


def test_update_project_without_changes_writes_nothing(
    project_service: ProjectService, activity_service: ActivityService, project, creator_user
):
    updated = project_service.update_project(project.id, creator_user.id, {"title": "Apollo"})

    assert updated.has_been_modified is False
    assert updated.revision_history == []
    assert len(activity_service.get_project_activities(project.id)) == 1


def test_update_project_key_conflict(project_service: ProjectService, project, other_project, creator_user):
    with pytest.raises(ConflictError):
        project_service.update_project(project.id, creator_user.id, {"key": other_project.key})


def test_update_project_requires_leader(project_service: ProjectService, project, staff_user):
    with pytest.raises(ForbiddenError):
        project_service.update_project(project.id, staff_user.id, {"title": "Hijacked"})


def test_update_project_unknown_updater(project_service: ProjectService, project):
    with pytest.raises(NotFoundError):
        project_service.update_project(project.id, 999, {"title": "Ghost"})


# ============== Delete ==============


def test_delete_project_cascade_counts(
    project_service: ProjectService,
    participant_service: ParticipantService,
    activity_service: ActivityService,
    test_db: Session,
    seeded_project: models.Project,
    creator_user,
):
    result = project_service.delete_project(seeded_project.id, creator_user.id)

    assert result == {
        "project_id": seeded_project.id,
        "task_count": 5,
        "attachment_count": 0,
        "participant_count": 2,
        "log_count": 3,
    }

    assert test_db.query(models.Task).filter(models.Task.deleted.is_(False)).count() == 0
    assert participant_service.list_participants(seeded_project.id) == []
    assert activity_service.get_project_activities(seeded_project.id) == []
    assert project_service.get_all_participating_projects(creator_user.id) == []
    with pytest.raises(NotFoundError):
        project_service.get_project_by_id(seeded_project.id)
    logger.info("✓ Project delete cascades with exact counts")


def test_delete_project_includes_attachments(
    project_service: ProjectService, task_service: TaskService, project, creator_user
):
    task_service.create_root_task(project.id, creator_user.id, {"title": "Only task"})
    project_service.attach_file(project.id, creator_user.id, models.AttachmentType.document, "https://files.test/a.pdf")

    result = project_service.delete_project(project.id, creator_user.id)

    assert result["task_count"] == 1
    assert result["attachment_count"] == 1
    assert result["participant_count"] == 2
    # CREATE project, CREATE task, ADD attachment
    assert result["log_count"] == 3


def test_delete_project_requires_leader_or_creator(
    project_service: ProjectService, participant_service: ParticipantService, project, creator_user, staff_user
):
    with pytest.raises(ForbiddenError):
        project_service.delete_project(project.id, staff_user.id)

    participant_service.update_participant_role(project.id, creator_user.id, staff_user.id, models.ParticipantRole.leader)
    result = project_service.delete_project(project.id, staff_user.id)
    assert result["project_id"] == project.id


def test_delete_project_twice(project_service: ProjectService, project, creator_user):
    project_service.delete_project(project.id, creator_user.id)

    with pytest.raises(NotFoundError):
        project_service.delete_project(project.id, creator_user.id)


# ============== Reads ==============


def test_get_project_by_id_aggregates(
    project_service: ProjectService, task_service: TaskService, project, creator_user, staff_user
):
    root = task_service.create_root_task(project.id, creator_user.id, {"title": "Root"})
    doomed = task_service.create_root_task(project.id, creator_user.id, {"title": "Doomed"})
    task_service.delete_task(doomed.id, creator_user.id)
    project_service.attach_file(project.id, staff_user.id, models.AttachmentType.image, "https://files.test/x.png")

    view = project_service.get_project_by_id(project.id)

    assert view["key"] == "APOLLO"
    assert view["creator"]["username"] == "alice"
    assert [t["id"] for t in view["tasks"]] == [root.id]
    assert len(view["attachments"]) == 1
    assert view["attachments"][0]["file_url"] == "https://files.test/x.png"
    assert {p["username"] for p in view["participants"]} == {"alice", "bob"}


def test_get_all_participating_projects(
    project_service: ProjectService, participant_service: ParticipantService, project, other_project, creator_user, staff_user
):
    alice_projects = project_service.get_all_participating_projects(creator_user.id)
    assert {p["key"] for p in alice_projects} == {"APOLLO", "GEMINI"}

    bob_projects = project_service.get_all_participating_projects(staff_user.id)
    assert len(bob_projects) == 1
    summary = bob_projects[0]
    assert summary["id"] == project.id
    assert summary["role"] == models.ParticipantRole.staff
    assert summary["creator"]["username"] == "alice"
    assert summary["leader"]["username"] == "alice"

    participant_service.remove_participant(project.id, staff_user.id, staff_user.id)
    assert project_service.get_all_participating_projects(staff_user.id) == []
