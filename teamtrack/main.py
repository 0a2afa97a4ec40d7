from fastapi import Depends, FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List
import logging
import os
import uvicorn

from teamtrack import models, schemas
from teamtrack.auth.dependencies import get_current_user
from teamtrack.auth.routes import router as auth_router
from teamtrack.database import get_db, init_db
from teamtrack.errors import TrackerError
from teamtrack.services import (
    ActivityService,
    ParticipantService,
    ProjectService,
    TaskService,
)

# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
    if origin.strip()
]

app = FastAPI(
    title="TeamTrack API",
    description="Collaborative projects with hierarchical tasks and an audit trail",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)


@app.on_event("startup")
def create_tables():
    init_db()
    logger.info("Database tables ready")


@app.exception_handler(TrackerError)
async def tracker_error_handler(request: Request, exc: TrackerError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    else:
        logger.debug(f"{request.method} {request.url.path} rejected: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "error": exc.kind})


# ============== Service dependencies ==============

def get_activity_service(db: Session = Depends(get_db)) -> ActivityService:
    return ActivityService(db)


def get_participant_service(db: Session = Depends(get_db)) -> ParticipantService:
    return ParticipantService(db)


def get_project_service(db: Session = Depends(get_db)) -> ProjectService:
    return ProjectService(db)


def get_task_service(db: Session = Depends(get_db)) -> TaskService:
    return TaskService(db)


def require_project_access(
    project_id: int,
    current_user: models.User = Depends(get_current_user),
    participants: ParticipantService = Depends(get_participant_service),
) -> models.User:
    """Gate for every project-scoped route: caller must be an active participant."""
    participants.verify_user_project_access(project_id, current_user.id)
    return current_user


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy"}


# ============== Projects ==============

@app.get("/api/projects", response_model=List[schemas.ParticipatingProject])
def list_projects(
    current_user: models.User = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
):
    """List the projects the caller actively participates in."""
    return projects.get_all_participating_projects(current_user.id)


@app.post("/api/projects", response_model=schemas.Project, status_code=status.HTTP_201_CREATED)
def create_project(
    project: schemas.ProjectCreate,
    current_user: models.User = Depends(get_current_user),
    projects: ProjectService = Depends(get_project_service),
):
    """Create a project; the caller becomes its creator and leader."""
    return projects.create_project(current_user.id, project.model_dump())


@app.get("/api/projects/{project_id}", response_model=schemas.ProjectDetail)
def get_project(
    project_id: int,
    current_user: models.User = Depends(require_project_access),
    projects: ProjectService = Depends(get_project_service),
):
    return projects.get_project_by_id(project_id)


@app.patch("/api/projects/{project_id}", response_model=schemas.Project)
def update_project(
    project_id: int,
    project_update: schemas.ProjectUpdate,
    current_user: models.User = Depends(require_project_access),
    projects: ProjectService = Depends(get_project_service),
):
    """Partially update a project (leader or creator)."""
    return projects.update_project(project_id, current_user.id, project_update.model_dump(exclude_unset=True))


@app.delete("/api/projects/{project_id}", response_model=schemas.ProjectDeleteResult)
def delete_project(
    project_id: int,
    current_user: models.User = Depends(require_project_access),
    projects: ProjectService = Depends(get_project_service),
):
    """Soft-delete a project and everything in it (leader or creator)."""
    return projects.delete_project(project_id, current_user.id)


@app.get("/api/projects/{project_id}/activities", response_model=List[schemas.Activity])
def list_project_activities(
    project_id: int,
    current_user: models.User = Depends(require_project_access),
    activity: ActivityService = Depends(get_activity_service),
):
    return activity.get_project_activities(project_id)


@app.post(
    "/api/projects/{project_id}/attachments",
    response_model=schemas.Attachment,
    status_code=status.HTTP_201_CREATED,
)
def attach_file(
    project_id: int,
    attachment: schemas.AttachmentCreate,
    current_user: models.User = Depends(require_project_access),
    projects: ProjectService = Depends(get_project_service),
):
    return projects.attach_file(project_id, current_user.id, attachment.attachment_type, attachment.file_url)


# ============== Participants ==============

@app.get("/api/projects/{project_id}/participants", response_model=List[schemas.Participant])
def list_participants(
    project_id: int,
    current_user: models.User = Depends(require_project_access),
    participants: ParticipantService = Depends(get_participant_service),
):
    return participants.list_participants(project_id)


@app.post(
    "/api/projects/{project_id}/participants",
    response_model=schemas.Participant,
    status_code=status.HTTP_201_CREATED,
)
def add_participant(
    project_id: int,
    participant: schemas.ParticipantAdd,
    current_user: models.User = Depends(require_project_access),
    participants: ParticipantService = Depends(get_participant_service),
):
    """Add a user to the project (leader or creator)."""
    return participants.add_participant(project_id, current_user.id, participant.user_id, participant.role)


@app.patch("/api/projects/{project_id}/participants/{user_id}", response_model=schemas.Participant)
def update_participant_role(
    project_id: int,
    user_id: int,
    role_update: schemas.ParticipantRoleUpdate,
    current_user: models.User = Depends(require_project_access),
    participants: ParticipantService = Depends(get_participant_service),
):
    """Change a participant's role (leader or creator)."""
    return participants.update_participant_role(project_id, current_user.id, user_id, role_update.role)


@app.delete("/api/projects/{project_id}/participants/{user_id}", response_model=schemas.ParticipantRemoved)
def remove_participant(
    project_id: int,
    user_id: int,
    current_user: models.User = Depends(require_project_access),
    participants: ParticipantService = Depends(get_participant_service),
):
    """Remove a participant, or leave the project when user_id is the caller."""
    return participants.remove_participant(project_id, current_user.id, user_id)


# ============== Tasks ==============

@app.post(
    "/api/projects/{project_id}/tasks",
    response_model=schemas.Task,
    status_code=status.HTTP_201_CREATED,
)
def create_task(
    project_id: int,
    task: schemas.TaskCreate,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    """Create a top-level task."""
    return tasks.create_root_task(project_id, current_user.id, task.model_dump())


@app.get("/api/projects/{project_id}/tasks", response_model=List[schemas.TaskListItem])
def list_tasks(
    project_id: int,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    return tasks.get_tasks_by_project(project_id)


@app.get("/api/projects/{project_id}/tasks/{task_id}", response_model=schemas.TaskDetail)
def get_task(
    project_id: int,
    task_id: int,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    return tasks.get_task_by_id(task_id, project_id=project_id)


@app.patch("/api/projects/{project_id}/tasks/{task_id}", response_model=schemas.Task)
def update_task(
    project_id: int,
    task_id: int,
    task_update: schemas.TaskUpdate,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    """Partially update a task; progress changes propagate to its ancestors."""
    changes = task_update.model_dump(exclude_unset=True)
    return tasks.update_task(task_id, current_user.id, changes, project_id=project_id)


@app.delete("/api/projects/{project_id}/tasks/{task_id}", response_model=schemas.TaskDeleteResult)
def delete_task(
    project_id: int,
    task_id: int,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    """Soft-delete a task and its subtree (leader or creator)."""
    return tasks.delete_task(task_id, current_user.id, project_id=project_id)


@app.post(
    "/api/projects/{project_id}/tasks/{task_id}/subtasks",
    response_model=schemas.Task,
    status_code=status.HTTP_201_CREATED,
)
def create_subtask(
    project_id: int,
    task_id: int,
    subtask: schemas.SubtaskCreate,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    return tasks.create_subtask(project_id, task_id, current_user.id, subtask.model_dump())


@app.get("/api/projects/{project_id}/tasks/{task_id}/subtasks", response_model=List[schemas.Task])
def list_subtasks(
    project_id: int,
    task_id: int,
    current_user: models.User = Depends(require_project_access),
    tasks: TaskService = Depends(get_task_service),
):
    return tasks.get_subtasks(task_id, project_id=project_id)


def run():
    """Console entry point: serve the API with uvicorn."""
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "6001"))
    logger.info(f"Starting TeamTrack API on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run()
