"""Domain services. Each service wraps one request-scoped SQLAlchemy session."""

from teamtrack.services.activity import ActivityService
from teamtrack.services.identity import IdentityService
from teamtrack.services.participants import ParticipantService
from teamtrack.services.projects import ProjectService
from teamtrack.services.tasks import TaskService

__all__ = [
    "ActivityService",
    "IdentityService",
    "ParticipantService",
    "ProjectService",
    "TaskService",
]
