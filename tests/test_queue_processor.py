"""
Tests for the queue processor.

The build worker is mocked; these tests cover dispatch, overlap
protection, maintenance and lifecycle only.
"""
import asyncio
import os
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from preview_service.core.build_queue import BuildQueue
from preview_service.core.notifications import NotificationHub
from preview_service.core.queue_processor import DISPATCH_STEP, QueueProcessor
from preview_service.core.realtime import PushChannelRegistry
from preview_service.core.worker_registry import WorkerHandle, WorkerRegistry
from preview_service.core.workspace import WorkspaceManager
from preview_service.schemas.builds import BuildJobStatus


@pytest.fixture
def queue(session_factory):
    return BuildQueue(session_factory)


@pytest.fixture
def worker():
    mock = MagicMock()
    mock.start = AsyncMock()
    mock.stop_all = AsyncMock(return_value=0)
    mock.registry = WorkerRegistry()
    return mock


@pytest.fixture
def push():
    mock = MagicMock(spec=PushChannelRegistry)
    mock.cleanup_stale_connections.return_value = 0
    mock.get_connection_count.return_value = 0
    mock.is_user_connected.return_value = False
    return mock


@pytest.fixture
def processor(queue, worker, push, session_factory, tmp_path):
    return QueueProcessor(
        queue=queue,
        worker=worker,
        notifications=NotificationHub(session_factory, push=push),
        push=push,
        workspaces=WorkspaceManager(tmp_path / "builds", retention_hours=1),
        poll_interval=0.05,
        maintenance_interval=60,
    )


async def settle(processor):
    if processor._build_tasks:
        await asyncio.gather(*processor._build_tasks)


# =============================================================================
# Dispatch
# =============================================================================

class TestDispatch:
    """Tests for process_next_job."""

    @pytest.mark.asyncio
    async def test_dispatches_oldest_pending_job(self, processor, queue, worker, push):
        first = queue.enqueue("p1", 1)
        queue.enqueue("p2", 1)

        dispatched = await processor.process_next_job()
        await settle(processor)

        assert dispatched == first
        worker.start.assert_awaited_once_with(first)
        assert queue.get_job(first).status == BuildJobStatus.QUEUED
        push.send_job_update.assert_called_once_with(1, first, BuildJobStatus.BUILDING, 0, DISPATCH_STEP)

    @pytest.mark.asyncio
    async def test_empty_queue(self, processor, worker):
        assert await processor.process_next_job() is None
        worker.start.assert_not_called()

    @pytest.mark.asyncio
    async def test_skips_while_processing(self, processor, queue, worker):
        job_id = queue.enqueue("p1", 1)
        processor._is_processing = True

        assert await processor.process_next_job() is None

        worker.start.assert_not_called()
        assert queue.get_job(job_id).status == BuildJobStatus.PENDING

    @pytest.mark.asyncio
    async def test_dequeue_error_is_logged(self, processor, queue):
        queue.dequeue = MagicMock(side_effect=RuntimeError("database locked"))

        assert await processor.process_next_job() is None
        assert processor.get_processing_status()["is_processing"] is False

    @pytest.mark.asyncio
    async def test_worker_crash_does_not_propagate(self, processor, queue, worker):
        worker.start.side_effect = RuntimeError("boom")
        queue.enqueue("p1", 1)

        await processor.process_next_job()
        await settle(processor)

        assert not processor._build_tasks

    @pytest.mark.asyncio
    async def test_trigger_processing(self, processor, queue, worker):
        job_id = queue.enqueue("p1", 1)

        assert await processor.trigger_processing() == job_id
        await settle(processor)
        worker.start.assert_awaited_once_with(job_id)


# =============================================================================
# Maintenance and health
# =============================================================================

class TestMaintenance:
    """Tests for run_maintenance and get_queue_health."""

    def test_old_workspaces_removed_except_active(self, processor, worker, tmp_path):
        base = tmp_path / "builds"
        old_time = time.time() - 3 * 3600
        for name in ("abandoned", "active"):
            (base / name).mkdir()
            os.utime(base / name, (old_time, old_time))
        (base / "fresh").mkdir()
        worker.registry.register(WorkerHandle(job_id="active"))

        result = processor.run_maintenance()

        assert result == {"notifications_deleted": 0, "connections_removed": 0, "workspaces_deleted": 1}
        assert not (base / "abandoned").exists()
        assert (base / "active").exists()
        assert (base / "fresh").exists()

    def test_queue_health(self, processor, queue, worker, push):
        queue.enqueue("p1", 1)
        worker.registry.register(WorkerHandle(job_id="job-x"))
        push.get_connection_count.return_value = 2

        health = processor.get_queue_health()

        assert health["stats"]["pending"] == 1
        assert health["stats"]["total"] == 1
        assert health["active_workers"] == 1
        assert health["connection_count"] == 2
        assert health["processing_status"] == {"is_processing": False, "is_running": False}


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_poll_loop_dispatches(self, processor, queue, worker):
        job_id = queue.enqueue("p1", 1)

        processor.start()
        processor.start()
        assert processor.is_running

        for _ in range(100):
            if worker.start.await_count:
                break
            await asyncio.sleep(0.01)

        await processor.stop()

        assert not processor.is_running
        worker.start.assert_awaited_once_with(job_id)
        worker.stop_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, processor, worker):
        await processor.stop()
        worker.stop_all.assert_awaited_once()
