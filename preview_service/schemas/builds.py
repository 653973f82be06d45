"""
Pydantic schemas for build queue and notification API requests and responses.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional, List

from pydantic import BaseModel, Field


class BuildJobStatus(str, Enum):
    """Build job status. Terminal: completed, failed, cancelled."""
    PENDING = "pending"
    QUEUED = "queued"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset([
    BuildJobStatus.COMPLETED,
    BuildJobStatus.FAILED,
    BuildJobStatus.CANCELLED,
])


class NotificationType(str, Enum):
    """Notification kinds emitted over a job's lifetime."""
    BUILD_QUEUED = "build_queued"
    BUILD_STARTED = "build_started"
    BUILD_COMPLETED = "build_completed"
    BUILD_FAILED = "build_failed"
    BUILD_CANCELLED = "build_cancelled"


class ProjectBuildStatus(str, Enum):
    """Build status mirrored on the project record."""
    PENDING = "pending"
    BUILDING = "building"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


# --- Build jobs ---
class EnqueueBuildRequest(BaseModel):
    """Request body for POST /builds."""
    project_id: str = Field(..., min_length=1, max_length=64)
    priority: int = Field(default=0, ge=0, le=100)


class EnqueueBuildResponse(BaseModel):
    """Response for POST /builds."""
    job_id: str
    queue_position: int
    message: str


class BuildJobResponse(BaseModel):
    """A build job as seen by its owner."""
    id: str
    project_id: str
    user_id: int
    status: BuildJobStatus
    priority: int
    progress: int
    current_step: Optional[str] = None
    logs: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    allocated_port: Optional[int] = None
    preview_url: Optional[str] = None
    notification_sent: bool = False
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Job counts by status."""
    pending: int = 0
    queued: int = 0
    building: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    total: int = 0


class BuildJobListResponse(BaseModel):
    """Response for GET /builds."""
    jobs: List[BuildJobResponse]
    stats: QueueStats


class QueuePositionResponse(BaseModel):
    job_id: str
    position: int


class RetryJobResponse(BaseModel):
    success: bool = True
    new_job_id: str
    message: str


class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None


class WorkerInfo(BaseModel):
    """An active worker as listed by GET /queue/workers."""
    job_id: str
    status: str
    start_time: datetime
    port: Optional[int] = None


class ProcessingStatus(BaseModel):
    is_processing: bool
    is_running: bool


class QueueHealth(BaseModel):
    """Response for GET /queue/health."""
    stats: QueueStats
    active_workers: int
    processing_status: ProcessingStatus
    connection_count: int
    timestamp: datetime


# --- Notifications ---
class NotificationResponse(BaseModel):
    id: str
    user_id: int
    job_id: str
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    read: bool
    created_at: datetime


class UnreadCountResponse(BaseModel):
    count: int
