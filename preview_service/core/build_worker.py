"""
Build Worker - runs one build job from archive to live preview server.

Steps:
1. Register a worker handle (one per job)
2. Stage workspace and extract the project archive
3. Detect project type and validate before spawning anything
4. Install dependencies
5. Optional type check (never fatal)
6. Production build (meta framework only)
7. Allocate a port, start the preview server, wait for readiness
8. Smoke test (never fatal), complete the job

Any failure marks the project and job failed, notifies the user, then cleans
up process, port, workspace and handle. The handle of a successful build stays
registered while the preview server runs.

Security:
- No shell=True anywhere
- Install-time lifecycle scripts rejected
- Build output goes to the job log, never to the service log
"""
import asyncio
import logging
import traceback
from typing import Optional

from preview_service.core.archive_store import ArchiveStore, get_archive_store
from preview_service.core.build_queue import BuildJob, BuildQueue, build_queue
from preview_service.core.config import config
from preview_service.core.errors import (
    JobNotFoundError,
    ProcessError,
    ProjectNotFoundError,
    WorkerAlreadyRunningError,
    WorkerNotFoundError,
)
from preview_service.core.metrics import metrics
from preview_service.core.notifications import NotificationHub, notification_hub
from preview_service.core.ports import PortAllocator, port_allocator, smoke_test, wait_for_server_ready
from preview_service.core.process_runner import JobLog, run_command, start_process, stop_managed
from preview_service.core.project_types import ProjectType, detect_project_type, get_strategy
from preview_service.core.projects import ProjectStore, project_store
from preview_service.core.realtime import PushChannelRegistry, push_registry
from preview_service.core.worker_registry import WorkerHandle, WorkerRegistry, worker_registry
from preview_service.core.workspace import WorkspaceManager, extract_archive, summarize_structure, workspace_manager
from preview_service.schemas.builds import BuildJobStatus, NotificationType, ProjectBuildStatus

logger = logging.getLogger(__name__)

# =============================================================================
# Progress steps
# =============================================================================

STEP_PREPARING = (0, "Preparing build environment")
STEP_EXTRACTING = (10, "Extracting project files")
STEP_ANALYZING = (30, "Analyzing project structure")
STEP_INSTALLING = (40, "Installing dependencies")
STEP_TYPE_CHECK = (60, "Running type check")
STEP_BUILDING = (70, "Building project")
STEP_INSTALLED = (85, "Dependencies installed")
STEP_STATIC = (90, "Static project - no build required")
STEP_STARTING = (95, "Starting preview server")
STEP_DONE = (100, "Preview server running")

FAILED_STEP = "Build failed"
CANCELLED_STEP = "Build cancelled"
STOPPED_ERROR = "Build stopped before completion"


class BuildCancelled(Exception):
    """The job was cancelled by its owner while the build was in progress."""
    pass


class BuildWorker:
    """Executes build jobs and owns the preview servers they start."""

    def __init__(
        self,
        queue: Optional[BuildQueue] = None,
        registry: Optional[WorkerRegistry] = None,
        projects: Optional[ProjectStore] = None,
        notifications: Optional[NotificationHub] = None,
        push: Optional[PushChannelRegistry] = None,
        ports: Optional[PortAllocator] = None,
        workspaces: Optional[WorkspaceManager] = None,
        archives: Optional[ArchiveStore] = None,
    ):
        self._queue = queue or build_queue
        self._registry = registry or worker_registry
        self._projects = projects or project_store
        self._notifications = notifications or notification_hub
        self._push = push or push_registry
        self._ports = ports or port_allocator
        self._workspaces = workspaces or workspace_manager
        self._archives = archives or get_archive_store()

    @property
    def registry(self) -> WorkerRegistry:
        return self._registry

    # =========================================================================
    # Entry point
    # =========================================================================

    async def start(self, job_id: str) -> None:
        """
        Run a build job to completion or failure.

        A second start for a job that already has a worker is rejected
        without touching the job.
        """
        job = self._queue.get_job(job_id)
        if not job:
            logger.warning(f"worker_job_missing job_id={job_id}")
            return

        handle = WorkerHandle(job_id=job_id, project_id=job.project_id, task=asyncio.current_task())
        try:
            self._registry.register(handle)
        except WorkerAlreadyRunningError:
            logger.warning(f"worker_already_running job_id={job_id}")
            return

        log = JobLog()
        try:
            await self._process_build(job, handle, log)
        except BuildCancelled:
            logger.info(f"build_cancelled job_id={job_id}")
            await self._cleanup(handle)
            try:
                self._projects.update_build_status(job.project_id, ProjectBuildStatus.STOPPED)
            except ProjectNotFoundError:
                pass
            current = self._queue.get_job(job_id)
            self._push.send_job_update(
                job.user_id,
                job_id,
                BuildJobStatus.CANCELLED,
                current.progress if current else 0,
                CANCELLED_STEP,
            )
        except asyncio.CancelledError:
            logger.warning(f"build_interrupted job_id={job_id}")
            try:
                self._queue.fail_job(job_id, STOPPED_ERROR, log.to_payload())
            except Exception as e:
                logger.error(f"job_fail_record_failed job_id={job_id} error_type={type(e).__name__}")
            finally:
                await self._cleanup(handle)
            raise
        except Exception as e:
            await self._handle_failure(job, handle, log, e)

    # =========================================================================
    # Pipeline
    # =========================================================================

    def _progress(self, job: BuildJob, step: tuple[int, str], log: JobLog) -> None:
        """Persist and push a progress update; raises BuildCancelled if the job was cancelled."""
        progress, message = step
        log.info(message)
        updated = self._queue.update_progress(job.id, progress, message, log.to_payload())
        if updated is None:
            raise JobNotFoundError("Job not found")
        if updated.status == BuildJobStatus.CANCELLED:
            raise BuildCancelled(job.id)
        self._push.send_job_update(job.user_id, job.id, BuildJobStatus.BUILDING, progress, message)

    async def _process_build(self, job: BuildJob, handle: WorkerHandle, log: JobLog) -> None:
        self._progress(job, STEP_PREPARING, log)
        project = self._projects.get(job.project_id)
        if not project:
            raise ProjectNotFoundError(f"Project not found: {job.project_id}")

        self._projects.update_build_status(project.id, ProjectBuildStatus.BUILDING)
        self._notifications.create_build_notification(
            job.user_id, job.id, NotificationType.BUILD_STARTED, project.name
        )
        workspace = self._workspaces.create_workspace(job.id)
        handle.workspace = workspace

        # Extract
        self._progress(job, STEP_EXTRACTING, log)
        content = await self._archives.get_bytes(project.archive_key)
        extraction = await asyncio.to_thread(extract_archive, content, workspace)
        root = extraction.root
        log.info(f"Extracted {extraction.file_count} files")

        # Analyze and validate
        self._progress(job, STEP_ANALYZING, log)
        project_type, manifest = detect_project_type(root)
        strategy = get_strategy(project_type)
        log.info(f"Detected project type: {project_type.value}")
        self._projects.update_analysis(
            project.id,
            project_type.value,
            extraction.file_count,
            extraction.total_size,
            summarize_structure(extraction.files),
        )
        strategy.validate(root, manifest)

        # Install
        install_cmd = strategy.install_command()
        if install_cmd:
            self._progress(job, STEP_INSTALLING, log)
            await run_command(install_cmd, root, log)

        # Type check
        if strategy.check_plan(root, manifest):
            self._progress(job, STEP_TYPE_CHECK, log)
            await self._run_type_check(job, root, strategy, manifest, log)

        # Build
        build_cmd = strategy.build_command()
        if build_cmd:
            self._progress(job, STEP_BUILDING, log)
            await run_command(build_cmd, root, log)
        elif project_type == ProjectType.STATIC:
            self._progress(job, STEP_STATIC, log)
        else:
            self._progress(job, STEP_INSTALLED, log)

        # Serve
        self._progress(job, STEP_STARTING, log)
        port = await self._ports.allocate()
        handle.port = port
        serve = strategy.serve_command(port, config.bind_host, manifest)
        handle.process = await start_process(serve.command, root, log, serve.env)
        await wait_for_server_ready(handle.process, port)

        await smoke_test(f"http://{config.probe_host}:{port}/")

        self._finish(job, project.name, handle, log)

    async def _run_type_check(self, job: BuildJob, root, strategy, manifest, log: JobLog) -> bool:
        """Try each check command until one passes. Never raises for a failing check."""
        plan = strategy.check_plan(root, manifest)
        for check in plan:
            try:
                result = await run_command(check.command, root, log, check=False)
            except ProcessError as e:
                log.info(f"Type check '{check.name}' could not run: {e}")
                continue
            if result.exit_code == 0:
                log.info(f"Type check '{check.name}' passed")
                return True
            if not check.critical:
                log.info(f"Type check '{check.name}' failed (non-critical)")
                return True

        logger.warning(f"type_check_failed job_id={job.id}")
        log.info("Type check failed; continuing")
        return False

    def _finish(self, job: BuildJob, project_name: str, handle: WorkerHandle, log: JobLog) -> None:
        """Record a live preview: job, project, notification, push."""
        progress, message = STEP_DONE
        log.info(message)
        port = handle.port
        preview_url = config.preview_url(port)

        completed = self._queue.complete_job(job.id, preview_url, port, log.to_payload())
        if not completed or completed.status != BuildJobStatus.COMPLETED:
            raise BuildCancelled(job.id)

        self._projects.update_build_status(
            job.project_id,
            ProjectBuildStatus.RUNNING,
            preview_url=preview_url,
            port=port,
            build_output={"lines": log.tail(50), "port": port},
        )
        self._notifications.create_build_notification(
            job.user_id,
            job.id,
            NotificationType.BUILD_COMPLETED,
            project_name,
            action_url=preview_url,
        )
        self._queue.mark_notification_sent(job.id)
        self._push.send_job_update(
            job.user_id, job.id, BuildJobStatus.COMPLETED, progress, message, preview_url=preview_url
        )

        handle.status = "running"
        handle.task = None
        handle.watcher = asyncio.create_task(self._watch_exit(handle))
        logger.info(f"build_completed job_id={job.id} port={port}")

    async def _watch_exit(self, handle: WorkerHandle) -> None:
        """Drop the handle when a preview server exits on its own."""
        exit_code = await handle.process.wait()
        if self._registry.get(handle.job_id) is not handle:
            return

        logger.warning(f"preview_exited job_id={handle.job_id} exit_code={exit_code}")
        handle.status = "stopped"
        self._registry.remove(handle.job_id)
        self._ports.release(handle.port)
        try:
            self._projects.update_build_status(handle.project_id, ProjectBuildStatus.STOPPED)
        except ProjectNotFoundError:
            pass

    # =========================================================================
    # Failure and cleanup
    # =========================================================================

    async def _handle_failure(self, job: BuildJob, handle: WorkerHandle, log: JobLog, exc: Exception) -> None:
        error = str(exc) or type(exc).__name__
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        logger.error(f"build_failed job_id={job.id} error_type={type(exc).__name__}")
        log.info(f"{FAILED_STEP}: {error}")

        payload = log.to_payload()
        payload["error"] = error
        payload["stack"] = stack
        if isinstance(exc, ProcessError):
            payload["cause"] = exc.cause
            if exc.stderr:
                payload["stderr"] = exc.stderr

        project_name = job.project_id
        try:
            project = self._projects.update_build_status(
                job.project_id,
                ProjectBuildStatus.FAILED,
                build_output={"error": error, "stack": stack},
            )
            project_name = project.name
        except ProjectNotFoundError:
            pass
        except Exception as e:
            logger.error(f"project_update_failed job_id={job.id} error_type={type(e).__name__}")

        try:
            self._notifications.create_build_notification(
                job.user_id, job.id, NotificationType.BUILD_FAILED, project_name
            )
            self._queue.mark_notification_sent(job.id)
        except Exception as e:
            logger.error(f"notification_failed job_id={job.id} error_type={type(e).__name__}")

        try:
            self._queue.fail_job(job.id, error, payload)
            self._push.send_job_update(
                job.user_id, job.id, BuildJobStatus.FAILED, 0, FAILED_STEP, error=error
            )
        except Exception as e:
            logger.error(f"job_fail_record_failed job_id={job.id} error_type={type(e).__name__}")
        finally:
            await self._cleanup(handle)

    async def _cleanup(self, handle: WorkerHandle) -> None:
        """Best-effort teardown of everything a worker holds. Never raises."""
        if handle.process is not None:
            try:
                await stop_managed(handle.process)
            except Exception as e:
                logger.error(f"cleanup_process_failed job_id={handle.job_id} error_type={type(e).__name__}")
        self._ports.release(handle.port)
        try:
            self._workspaces.cleanup_workspace(handle.job_id)
        except OSError as e:
            logger.error(f"cleanup_workspace_failed job_id={handle.job_id} error_type={type(e).__name__}")
        handle.status = "stopped"
        self._registry.remove(handle.job_id)

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop_worker(self, job_id: str) -> None:
        """
        Stop a worker and its preview server.

        Raises:
            WorkerNotFoundError: no worker registered for the job
        """
        handle = self._registry.get(job_id)
        if not handle:
            raise WorkerNotFoundError(f"No worker running for job {job_id}")

        if handle.task is not None and not handle.task.done() and handle.task is not asyncio.current_task():
            # Still building: cancelling the build task runs its own cleanup
            handle.task.cancel()
            await asyncio.gather(handle.task, return_exceptions=True)
        else:
            self._registry.remove(job_id)
            if handle.watcher and not handle.watcher.done():
                handle.watcher.cancel()
            await self._cleanup(handle)

        try:
            self._projects.update_build_status(handle.project_id, ProjectBuildStatus.STOPPED)
        except ProjectNotFoundError:
            pass
        metrics.inc("workers_stopped_total")
        logger.info(f"worker_stopped job_id={job_id}")

    async def stop_all(self) -> int:
        """Stop every registered worker. Returns how many were stopped."""
        stopped = 0
        for job_id in self._registry.job_ids():
            try:
                await self.stop_worker(job_id)
                stopped += 1
            except WorkerNotFoundError:
                continue
        return stopped


# Global build worker
build_worker = BuildWorker()
