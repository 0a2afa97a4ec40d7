"""Error taxonomy raised by the TeamTrack services.

All errors derive from :class:`TrackerError` so the transport layer can map
the whole family to HTTP responses with a single exception handler.

Hierarchy::

    TrackerError
    ├── NotFoundError      (404)
    ├── ForbiddenError     (403)
    ├── ValidationError    (400)
    ├── ConflictError      (409)
    └── InternalError      (500)
"""

from typing import Any, Dict, Optional


class TrackerError(Exception):
    """Base exception for all service-level failures."""

    status_code = 500
    kind = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | details={self.details}"
        return self.message

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r})"


class NotFoundError(TrackerError):
    """Referenced project, task, participant or user is missing or soft-deleted."""

    status_code = 404
    kind = "not_found"


class ForbiddenError(TrackerError):
    """Caller lacks the required role or is not an active participant."""

    status_code = 403
    kind = "forbidden"


class ValidationError(TrackerError):
    """Structurally invalid input, such as a bad subtask parent or an immutable field."""

    status_code = 400
    kind = "validation_error"


class ConflictError(TrackerError):
    """Duplicate unique value (project key, active participant)."""

    status_code = 409
    kind = "conflict"


class InternalError(TrackerError):
    """A write affected no rows after existence was confirmed, or the hierarchy is inconsistent."""

    status_code = 500
    kind = "internal_error"
