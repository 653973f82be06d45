"""
In-memory registry of active build workers, keyed by job id.
Single process only; handles do not survive a restart.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from preview_service.core.errors import WorkerAlreadyRunningError
from preview_service.core.process_runner import ManagedProcess

logger = logging.getLogger(__name__)


@dataclass
class WorkerHandle:
    """A worker for one job and, once started, its preview server."""
    job_id: str
    project_id: Optional[str] = None
    process: Optional[ManagedProcess] = None
    status: str = "running"
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    port: Optional[int] = None
    workspace: Optional[Path] = None
    # Task running the build, then the task watching the live server
    task: Optional[asyncio.Task] = None
    watcher: Optional[asyncio.Task] = None


class WorkerRegistry:
    """At most one handle per job id."""

    def __init__(self):
        self._workers: dict[str, WorkerHandle] = {}

    def register(self, handle: WorkerHandle) -> WorkerHandle:
        """
        Add a handle.

        Raises:
            WorkerAlreadyRunningError: a handle already exists for the job
        """
        if handle.job_id in self._workers:
            raise WorkerAlreadyRunningError(f"Worker already running for job {handle.job_id}")
        self._workers[handle.job_id] = handle
        logger.info(f"worker_registered job_id={handle.job_id}")
        return handle

    def get(self, job_id: str) -> Optional[WorkerHandle]:
        return self._workers.get(job_id)

    def remove(self, job_id: str) -> Optional[WorkerHandle]:
        """Drop a handle; removing an absent job is a no-op."""
        handle = self._workers.pop(job_id, None)
        if handle:
            logger.info(f"worker_removed job_id={job_id}")
        return handle

    def list(self) -> list[WorkerHandle]:
        return list(self._workers.values())

    def job_ids(self) -> List[str]:
        return list(self._workers)

    def count(self) -> int:
        return len(self._workers)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._workers


# Global worker registry
worker_registry = WorkerRegistry()
