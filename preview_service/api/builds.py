"""
Build queue API routes.

Endpoints:
- POST /builds - Enqueue a build for a project
- GET /builds - List the caller's jobs with queue stats
- GET /builds/{job_id} - Get a job
- GET /builds/{job_id}/queue-position - Position among pending jobs
- DELETE /builds/{job_id} - Cancel a job
- POST /builds/{job_id}/retry - Re-enqueue a failed job
- POST /builds/{job_id}/stop - Stop a job's worker and preview server
- GET /queue/stats - Job counts by status
- GET /queue/workers - Active workers
- GET /queue/health - Queue, worker and push channel health
- GET /queue/status - Processor status
- POST /queue/trigger - Run one dispatch tick now

Ownership errors map to 403, missing resources to 404, state conflicts to 409.
"""
import logging

from fastapi import APIRouter, HTTPException, Request

from preview_service.core.build_queue import BuildJob, build_queue
from preview_service.core.build_worker import build_worker
from preview_service.core.errors import (
    InvalidStateError,
    JobNotFoundError,
    PreviewServiceError,
    ProjectNotFoundError,
    UnauthorizedError,
    WorkerNotFoundError,
)
from preview_service.core.notifications import notification_hub
from preview_service.core.projects import project_store
from preview_service.core.queue_processor import queue_processor
from preview_service.core.security import get_user_id
from preview_service.schemas.builds import (
    BuildJobListResponse,
    BuildJobResponse,
    EnqueueBuildRequest,
    EnqueueBuildResponse,
    NotificationType,
    ProcessingStatus,
    QueueHealth,
    QueuePositionResponse,
    QueueStats,
    RetryJobResponse,
    SuccessResponse,
    WorkerInfo,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["builds"])


def to_http_error(e: PreviewServiceError) -> HTTPException:
    """Map a service error to an HTTP error."""
    if isinstance(e, (JobNotFoundError, ProjectNotFoundError, WorkerNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, InvalidStateError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def job_to_response(job: BuildJob) -> BuildJobResponse:
    return BuildJobResponse(
        id=job.id,
        project_id=job.project_id,
        user_id=job.user_id,
        status=job.status,
        priority=job.priority,
        progress=job.progress,
        current_step=job.current_step,
        logs=job.logs,
        error=job.error,
        allocated_port=job.allocated_port,
        preview_url=job.preview_url,
        notification_sent=job.notification_sent,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


def _get_owned_job(job_id: str, user_id: int) -> BuildJob:
    job = build_queue.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.user_id != user_id:
        raise HTTPException(status_code=403, detail="Unauthorized to access this job")
    return job


def _project_name(project_id: str) -> str:
    project = project_store.get(project_id)
    return project.name if project else project_id


# =============================================================================
# Builds
# =============================================================================

@router.post("/builds", status_code=202, response_model=EnqueueBuildResponse)
async def enqueue_build(request: EnqueueBuildRequest, http_request: Request) -> EnqueueBuildResponse:
    """Queue a build of one of the caller's projects."""
    user_id = get_user_id(http_request)

    project = project_store.get(request.project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    if project.owner_id != user_id:
        raise HTTPException(status_code=403, detail="Unauthorized to build this project")

    job_id = build_queue.enqueue(project.id, user_id, request.priority)
    position = build_queue.get_queue_position(job_id)
    notification_hub.create_build_notification(user_id, job_id, NotificationType.BUILD_QUEUED, project.name)

    return EnqueueBuildResponse(
        job_id=job_id,
        queue_position=position,
        message=f"Build queued at position {position}",
    )


@router.get("/builds", response_model=BuildJobListResponse)
async def list_builds(http_request: Request) -> BuildJobListResponse:
    user_id = get_user_id(http_request)
    jobs = build_queue.get_user_jobs(user_id)
    return BuildJobListResponse(
        jobs=[job_to_response(job) for job in jobs],
        stats=QueueStats(**build_queue.get_queue_stats()),
    )


@router.get("/builds/{job_id}", response_model=BuildJobResponse)
async def get_build(job_id: str, http_request: Request) -> BuildJobResponse:
    user_id = get_user_id(http_request)
    return job_to_response(_get_owned_job(job_id, user_id))


@router.get("/builds/{job_id}/queue-position", response_model=QueuePositionResponse)
async def get_build_queue_position(job_id: str, http_request: Request) -> QueuePositionResponse:
    user_id = get_user_id(http_request)
    _get_owned_job(job_id, user_id)
    return QueuePositionResponse(job_id=job_id, position=build_queue.get_queue_position(job_id))


@router.delete("/builds/{job_id}", response_model=SuccessResponse)
async def cancel_build(job_id: str, http_request: Request) -> SuccessResponse:
    """Cancel a job. A running preview server is not stopped; use /stop for that."""
    user_id = get_user_id(http_request)
    try:
        job = build_queue.cancel_job(job_id, user_id)
    except PreviewServiceError as e:
        raise to_http_error(e)

    notification_hub.create_build_notification(
        user_id, job.id, NotificationType.BUILD_CANCELLED, _project_name(job.project_id)
    )
    return SuccessResponse(message="Build cancelled")


@router.post("/builds/{job_id}/retry", response_model=RetryJobResponse)
async def retry_build(job_id: str, http_request: Request) -> RetryJobResponse:
    """Queue a fresh job for a failed one."""
    user_id = get_user_id(http_request)
    try:
        new_job_id = build_queue.retry_job(job_id, user_id)
    except PreviewServiceError as e:
        raise to_http_error(e)

    job = build_queue.get_job(new_job_id)
    notification_hub.create_build_notification(
        user_id, new_job_id, NotificationType.BUILD_QUEUED, _project_name(job.project_id)
    )
    return RetryJobResponse(new_job_id=new_job_id, message="Build re-queued")


@router.post("/builds/{job_id}/stop", response_model=SuccessResponse)
async def stop_build(job_id: str, http_request: Request) -> SuccessResponse:
    """Stop the job's worker and its preview server."""
    user_id = get_user_id(http_request)
    _get_owned_job(job_id, user_id)
    try:
        await build_worker.stop_worker(job_id)
    except PreviewServiceError as e:
        raise to_http_error(e)
    return SuccessResponse(message="Preview server stopped")


# =============================================================================
# Queue
# =============================================================================

@router.get("/queue/stats", response_model=QueueStats)
async def get_queue_stats() -> QueueStats:
    return QueueStats(**build_queue.get_queue_stats())


@router.get("/queue/workers", response_model=list[WorkerInfo])
async def list_workers() -> list[WorkerInfo]:
    return [
        WorkerInfo(job_id=handle.job_id, status=handle.status, start_time=handle.start_time, port=handle.port)
        for handle in build_worker.registry.list()
    ]


@router.get("/queue/health", response_model=QueueHealth)
async def get_queue_health() -> QueueHealth:
    health = queue_processor.get_queue_health()
    return QueueHealth(
        stats=QueueStats(**health["stats"]),
        active_workers=health["active_workers"],
        processing_status=ProcessingStatus(**health["processing_status"]),
        connection_count=health["connection_count"],
        timestamp=health["timestamp"],
    )


@router.get("/queue/status", response_model=ProcessingStatus)
async def get_processing_status() -> ProcessingStatus:
    return ProcessingStatus(**queue_processor.get_processing_status())


@router.post("/queue/trigger", response_model=SuccessResponse)
async def trigger_processing() -> SuccessResponse:
    job_id = await queue_processor.trigger_processing()
    if job_id:
        return SuccessResponse(message=f"Dispatched job {job_id}")
    return SuccessResponse(message="No job dispatched")
