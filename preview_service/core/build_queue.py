"""
Build queue over the persisted job store.

Jobs move pending -> queued -> building -> completed|failed|cancelled.
Terminal jobs are never mutated again: progress/complete/fail calls on them
are ignored, cancel raises InvalidStateError.
Logs only job_id, status, priority - never build output.
"""
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import sessionmaker

from preview_service.core.errors import InvalidStateError, JobNotFoundError, UnauthorizedError
from preview_service.core.metrics import metrics
from preview_service.db.database import SessionLocal
from preview_service.db.models import BuildJob as BuildJobModel
from preview_service.schemas.builds import BuildJobStatus, TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# A lost claim race retries with the next candidate this many times
MAX_CLAIM_ATTEMPTS = 10

_TERMINAL_VALUES = [s.value for s in TERMINAL_STATUSES]


@dataclass
class BuildJob:
    """Represents a build job (in-memory representation)."""
    id: str
    project_id: str
    user_id: int
    status: BuildJobStatus = BuildJobStatus.PENDING
    priority: int = 0
    progress: int = 0
    current_step: Optional[str] = None
    logs: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    allocated_port: Optional[int] = None
    preview_url: Optional[str] = None
    notification_sent: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _model_to_job(model: BuildJobModel) -> BuildJob:
    """Convert SQLAlchemy model to BuildJob dataclass."""
    return BuildJob(
        id=model.id,
        project_id=model.project_id,
        user_id=model.user_id,
        status=BuildJobStatus(model.status),
        priority=model.priority,
        progress=model.progress,
        current_step=model.current_step,
        logs=json.loads(model.logs) if model.logs else None,
        error=model.error,
        allocated_port=model.allocated_port,
        preview_url=model.preview_url,
        notification_sent=bool(model.notification_sent),
        created_at=datetime.fromisoformat(model.created_at),
        started_at=datetime.fromisoformat(model.started_at) if model.started_at else None,
        completed_at=datetime.fromisoformat(model.completed_at) if model.completed_at else None,
    )


class BuildQueue:
    """Persisted priority queue of build jobs."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or SessionLocal
        # Serializes claims within this process; the conditional UPDATE
        # keeps claims exclusive across connections as well.
        self._claim_lock = threading.Lock()

    def enqueue(self, project_id: str, user_id: int, priority: int = 0) -> str:
        """Create a pending job and return its id."""
        job_id = str(uuid.uuid4())
        db = self._session_factory()
        try:
            db.add(BuildJobModel(
                id=job_id,
                project_id=project_id,
                user_id=user_id,
                status=BuildJobStatus.PENDING.value,
                priority=priority or 0,
                progress=0,
                notification_sent=False,
                created_at=_now(),
            ))
            db.commit()
        finally:
            db.close()

        logger.info(f"job_enqueued job_id={job_id} project_id={project_id} priority={priority}")
        metrics.inc("builds_enqueued_total")
        return job_id

    def dequeue(self) -> Optional[BuildJob]:
        """
        Claim the next pending job (priority desc, created_at asc).

        The claim flips the job to queued and stamps started_at; a job is
        returned to at most one caller.
        """
        with self._claim_lock:
            db = self._session_factory()
            try:
                for _ in range(MAX_CLAIM_ATTEMPTS):
                    candidate = (
                        db.query(BuildJobModel.id)
                        .filter(BuildJobModel.status == BuildJobStatus.PENDING.value)
                        .order_by(BuildJobModel.priority.desc(), BuildJobModel.created_at.asc())
                        .first()
                    )
                    if candidate is None:
                        return None

                    claimed = (
                        db.query(BuildJobModel)
                        .filter(
                            BuildJobModel.id == candidate.id,
                            BuildJobModel.status == BuildJobStatus.PENDING.value,
                        )
                        .update(
                            {
                                BuildJobModel.status: BuildJobStatus.QUEUED.value,
                                BuildJobModel.started_at: _now(),
                            },
                            synchronize_session=False,
                        )
                    )
                    db.commit()

                    if claimed == 1:
                        job_model = db.query(BuildJobModel).filter(BuildJobModel.id == candidate.id).first()
                        logger.info(f"job_dequeued job_id={candidate.id}")
                        metrics.inc("builds_dequeued_total")
                        return _model_to_job(job_model)

                    logger.debug(f"job_claim_lost job_id={candidate.id}")
                return None
            finally:
                db.close()

    def get_job(self, job_id: str) -> Optional[BuildJob]:
        """Get a job by ID."""
        db = self._session_factory()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                return None
            return _model_to_job(job_model)
        finally:
            db.close()

    def get_user_jobs(self, user_id: int) -> list[BuildJob]:
        """All jobs owned by a user, newest first."""
        db = self._session_factory()
        try:
            items = (
                db.query(BuildJobModel)
                .filter(BuildJobModel.user_id == user_id)
                .order_by(BuildJobModel.created_at.desc())
                .all()
            )
            return [_model_to_job(item) for item in items]
        finally:
            db.close()

    def _update_active(self, job_id: str, values: dict) -> Optional[BuildJob]:
        """Apply values unless the job is terminal. Returns the job as stored afterwards."""
        db = self._session_factory()
        try:
            updated = (
                db.query(BuildJobModel)
                .filter(
                    BuildJobModel.id == job_id,
                    BuildJobModel.status.notin_(_TERMINAL_VALUES),
                )
                .update(values, synchronize_session=False)
            )
            db.commit()

            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                return None
            if updated == 0:
                logger.warning(f"job_update_ignored job_id={job_id} status={job_model.status}")
            return _model_to_job(job_model)
        finally:
            db.close()

    def update_progress(
        self,
        job_id: str,
        progress: int,
        step: Optional[str] = None,
        logs: Optional[dict[str, Any]] = None,
    ) -> Optional[BuildJob]:
        """Record progress; progress 0 marks the start of real work (status building)."""
        values: dict = {
            BuildJobModel.progress: max(0, min(100, progress)),
            BuildJobModel.current_step: step,
        }
        if logs is not None:
            values[BuildJobModel.logs] = json.dumps(logs)
        if progress == 0:
            values[BuildJobModel.status] = BuildJobStatus.BUILDING.value

        job = self._update_active(job_id, values)
        logger.debug(f"job_progress job_id={job_id} progress={progress}")
        return job

    def complete_job(
        self,
        job_id: str,
        preview_url: str,
        port: int,
        logs: Optional[dict[str, Any]] = None,
    ) -> Optional[BuildJob]:
        """Mark a job completed with its preview URL and port."""
        values: dict = {
            BuildJobModel.status: BuildJobStatus.COMPLETED.value,
            BuildJobModel.progress: 100,
            BuildJobModel.preview_url: preview_url,
            BuildJobModel.allocated_port: port,
            BuildJobModel.completed_at: _now(),
        }
        if logs is not None:
            values[BuildJobModel.logs] = json.dumps(logs)

        job = self._update_active(job_id, values)
        if job and job.status == BuildJobStatus.COMPLETED:
            logger.info(f"job_completed job_id={job_id} port={port}")
            metrics.inc("builds_completed_total")
        return job

    def fail_job(self, job_id: str, error: str, logs: Optional[dict[str, Any]] = None) -> Optional[BuildJob]:
        """Mark a job failed with an error message and optional logs."""
        values: dict = {
            BuildJobModel.status: BuildJobStatus.FAILED.value,
            BuildJobModel.error: error,
            BuildJobModel.completed_at: _now(),
        }
        if logs is not None:
            values[BuildJobModel.logs] = json.dumps(logs)

        job = self._update_active(job_id, values)
        if job and job.status == BuildJobStatus.FAILED:
            # Error text may contain paths; log the type of failure only
            logger.error(f"job_failed job_id={job_id}")
            metrics.inc("builds_failed_total")
        return job

    def cancel_job(self, job_id: str, user_id: int) -> BuildJob:
        """
        Cancel a job owned by user_id.

        Raises:
            JobNotFoundError: job does not exist
            UnauthorizedError: caller is not the owner
            InvalidStateError: job is already terminal

        A worker already running for the job keeps running; stop it separately.
        """
        db = self._session_factory()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                raise JobNotFoundError("Job not found")
            if job_model.user_id != user_id:
                raise UnauthorizedError("Unauthorized to cancel this job")

            cancelled = (
                db.query(BuildJobModel)
                .filter(
                    BuildJobModel.id == job_id,
                    BuildJobModel.status.notin_(_TERMINAL_VALUES),
                )
                .update(
                    {
                        BuildJobModel.status: BuildJobStatus.CANCELLED.value,
                        BuildJobModel.completed_at: _now(),
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            if cancelled == 0:
                raise InvalidStateError(f"Cannot cancel job with status '{job_model.status}'")

            db.refresh(job_model)
            logger.info(f"job_cancelled job_id={job_id} user_id={user_id}")
            metrics.inc("builds_cancelled_total")
            return _model_to_job(job_model)
        finally:
            db.close()

    def retry_job(self, job_id: str, user_id: int) -> str:
        """Enqueue a fresh job for the same project and priority as a failed job."""
        job = self.get_job(job_id)
        if not job:
            raise JobNotFoundError("Job not found")
        if job.user_id != user_id:
            raise UnauthorizedError("Unauthorized to retry this job")
        if job.status != BuildJobStatus.FAILED:
            raise InvalidStateError("Only failed jobs can be retried")

        new_job_id = self.enqueue(job.project_id, user_id, job.priority)
        logger.info(f"job_retried job_id={job_id} new_job_id={new_job_id}")
        return new_job_id

    def mark_notification_sent(self, job_id: str) -> None:
        db = self._session_factory()
        try:
            db.query(BuildJobModel).filter(BuildJobModel.id == job_id).update(
                {BuildJobModel.notification_sent: True}, synchronize_session=False
            )
            db.commit()
        finally:
            db.close()

    def get_queue_position(self, job_id: str) -> int:
        """Pending jobs that would be dequeued before this one, plus one."""
        db = self._session_factory()
        try:
            job_model = db.query(BuildJobModel).filter(BuildJobModel.id == job_id).first()
            if not job_model:
                raise JobNotFoundError("Job not found")

            ahead = (
                db.query(func.count(BuildJobModel.id))
                .filter(
                    BuildJobModel.status == BuildJobStatus.PENDING.value,
                    BuildJobModel.id != job_id,
                    or_(
                        BuildJobModel.priority > job_model.priority,
                        and_(
                            BuildJobModel.priority == job_model.priority,
                            BuildJobModel.created_at < job_model.created_at,
                        ),
                    ),
                )
                .scalar()
            )
            return (ahead or 0) + 1
        finally:
            db.close()

    def get_queue_stats(self) -> dict[str, int]:
        """Job counts by status plus total."""
        db = self._session_factory()
        try:
            rows = (
                db.query(BuildJobModel.status, func.count(BuildJobModel.id))
                .group_by(BuildJobModel.status)
                .all()
            )
        finally:
            db.close()

        stats = {status.value: 0 for status in BuildJobStatus}
        for status, count in rows:
            stats[status] = count
        stats["total"] = sum(count for _, count in rows)
        return stats


# Global build queue instance
build_queue = BuildQueue()
