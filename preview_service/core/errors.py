"""
Error taxonomy for the preview build service.

Queue and notification errors map to HTTP responses in the API layer.
Worker errors terminate at the top-level job handler, which records them
on the job and the project before cleanup.
"""
from typing import Optional


class PreviewServiceError(Exception):
    """Base class for preview service errors."""
    pass


class JobNotFoundError(PreviewServiceError):
    """Build job does not exist."""
    pass


class ProjectNotFoundError(PreviewServiceError):
    """Project record does not exist."""
    pass


class NotificationNotFoundError(PreviewServiceError):
    """Notification does not exist."""
    pass


class UnauthorizedError(PreviewServiceError):
    """Caller does not own the resource."""
    pass


class InvalidStateError(PreviewServiceError):
    """Operation not allowed in the resource's current state."""
    pass


class WorkerAlreadyRunningError(PreviewServiceError):
    """A worker is already registered for the job."""
    pass


class WorkerNotFoundError(PreviewServiceError):
    """No worker is registered for the job."""
    pass


class BuildValidationError(PreviewServiceError):
    """Project failed validation before any process was spawned."""
    pass


class ArchiveError(PreviewServiceError):
    """Archive could not be fetched or extracted."""
    pass


class PortAllocationError(PreviewServiceError):
    """No free port found."""
    pass


class ReadinessTimeoutError(PreviewServiceError):
    """Preview server never accepted connections within the probe window."""
    pass


class ProcessError(PreviewServiceError):
    """External process failed to start or exited with an error."""

    def __init__(self, message: str, cause: str = "exit_code", stderr: Optional[str] = None):
        super().__init__(message)
        self.cause = cause
        self.stderr = stderr or ""
