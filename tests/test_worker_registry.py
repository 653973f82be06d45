"""
Tests for the worker registry.
"""
import pytest

from preview_service.core.errors import WorkerAlreadyRunningError
from preview_service.core.worker_registry import WorkerHandle, WorkerRegistry


@pytest.fixture
def registry():
    return WorkerRegistry()


def test_register_and_get(registry):
    handle = registry.register(WorkerHandle(job_id="job-1", project_id="p1"))

    assert registry.get("job-1") is handle
    assert "job-1" in registry
    assert registry.count() == 1
    assert registry.job_ids() == ["job-1"]
    assert registry.list() == [handle]


def test_duplicate_register_rejected(registry):
    first = registry.register(WorkerHandle(job_id="job-1"))

    with pytest.raises(WorkerAlreadyRunningError):
        registry.register(WorkerHandle(job_id="job-1"))

    assert registry.get("job-1") is first


def test_remove(registry):
    handle = registry.register(WorkerHandle(job_id="job-1"))

    assert registry.remove("job-1") is handle
    assert registry.remove("job-1") is None
    assert "job-1" not in registry
    assert registry.count() == 0


def test_get_missing(registry):
    assert registry.get("missing") is None
