"""
Queue Processor - polls the build queue and dispatches jobs to the build worker.

Two background loops run on the application's event loop:
- poll: every poll_interval seconds, claim at most one job and start it
- maintenance: every maintenance_interval seconds, purge old read
  notifications, stale push connections and abandoned workspaces

Ticks never overlap. A failing tick is logged; the loop keeps running.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from preview_service.core.build_queue import BuildQueue, build_queue
from preview_service.core.build_worker import BuildWorker, build_worker
from preview_service.core.config import config
from preview_service.core.notifications import NotificationHub, notification_hub
from preview_service.core.realtime import PushChannelRegistry, push_registry
from preview_service.core.workspace import WorkspaceManager, workspace_manager
from preview_service.schemas.builds import BuildJobStatus

logger = logging.getLogger(__name__)

DISPATCH_STEP = "Starting build process"


class QueueProcessor:
    """Single-process scheduler for build jobs."""

    def __init__(
        self,
        queue: Optional[BuildQueue] = None,
        worker: Optional[BuildWorker] = None,
        notifications: Optional[NotificationHub] = None,
        push: Optional[PushChannelRegistry] = None,
        workspaces: Optional[WorkspaceManager] = None,
        poll_interval: Optional[float] = None,
        maintenance_interval: Optional[float] = None,
    ):
        self._queue = queue or build_queue
        self._worker = worker or build_worker
        self._notifications = notifications or notification_hub
        self._push = push or push_registry
        self._workspaces = workspaces or workspace_manager
        self._poll_interval = poll_interval if poll_interval is not None else config.poll_interval
        self._maintenance_interval = (
            maintenance_interval if maintenance_interval is not None else config.maintenance_interval
        )

        self._is_processing = False
        self._poll_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        # Strong references to running builds
        self._build_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the poll and maintenance loops. Calling twice is a no-op."""
        if self.is_running:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())
        logger.info(
            f"queue_processor_started poll_interval={self._poll_interval} "
            f"maintenance_interval={self._maintenance_interval}"
        )

    async def stop(self) -> None:
        """Stop both loops, then every running worker."""
        for task in (self._poll_task, self._maintenance_task):
            if task and not task.done():
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._poll_task, self._maintenance_task) if t),
            return_exceptions=True,
        )
        self._poll_task = None
        self._maintenance_task = None

        stopped = await self._worker.stop_all()
        if self._build_tasks:
            await asyncio.gather(*self._build_tasks, return_exceptions=True)
        logger.info(f"queue_processor_stopped workers_stopped={stopped}")

    async def _poll_loop(self) -> None:
        while True:
            await self.process_next_job()
            await asyncio.sleep(self._poll_interval)

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._maintenance_interval)
            try:
                self.run_maintenance()
            except Exception as e:
                logger.error(f"maintenance_failed error_type={type(e).__name__}", exc_info=True)

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def process_next_job(self) -> Optional[str]:
        """
        Claim and dispatch one job. Returns its id, or None.

        Skips when another tick is still dispatching.
        """
        if self._is_processing:
            return None

        self._is_processing = True
        try:
            job = self._queue.dequeue()
            if not job:
                return None

            logger.info(f"job_dispatch job_id={job.id} priority={job.priority}")
            self._push.send_job_update(job.user_id, job.id, BuildJobStatus.BUILDING, 0, DISPATCH_STEP)

            task = asyncio.create_task(self._run_worker(job.id))
            self._build_tasks.add(task)
            task.add_done_callback(self._build_tasks.discard)
            return job.id
        except Exception as e:
            logger.error(f"job_dispatch_failed error_type={type(e).__name__}", exc_info=True)
            return None
        finally:
            self._is_processing = False

    async def _run_worker(self, job_id: str) -> None:
        try:
            await self._worker.start(job_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"worker_crashed job_id={job_id} error_type={type(e).__name__}", exc_info=True)

    async def trigger_processing(self) -> Optional[str]:
        """Run one dispatch tick now."""
        logger.info("queue_processing_triggered")
        return await self.process_next_job()

    def get_processing_status(self) -> dict:
        return {"is_processing": self._is_processing, "is_running": self.is_running}

    # =========================================================================
    # Maintenance and health
    # =========================================================================

    def run_maintenance(self) -> dict:
        """Purge old read notifications, stale connections and abandoned workspaces."""
        notifications_deleted = self._notifications.cleanup_old()
        connections_removed = self._push.cleanup_stale_connections()
        workspaces_deleted = self._workspaces.cleanup_old_workspaces(
            exclude=self._worker.registry.job_ids()
        )
        logger.info(
            f"maintenance_done notifications={notifications_deleted} "
            f"connections={connections_removed} workspaces={workspaces_deleted}"
        )
        return {
            "notifications_deleted": notifications_deleted,
            "connections_removed": connections_removed,
            "workspaces_deleted": workspaces_deleted,
        }

    def get_queue_health(self) -> dict:
        return {
            "stats": self._queue.get_queue_stats(),
            "active_workers": self._worker.registry.count(),
            "processing_status": self.get_processing_status(),
            "connection_count": self._push.get_connection_count(),
            "timestamp": datetime.now(timezone.utc),
        }


# Global queue processor
queue_processor = QueueProcessor()
