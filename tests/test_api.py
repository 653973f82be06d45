"""
API endpoint tests.
"""
import itertools
from unittest.mock import AsyncMock, patch

import pytest

from preview_service.core.build_queue import build_queue
from preview_service.core.notifications import notification_hub
from preview_service.core.projects import project_store
from preview_service.schemas.builds import NotificationType

# Each test works as its own user so shared global stores don't leak between tests
_user_ids = itertools.count(1000)


@pytest.fixture
def user_id():
    return next(_user_ids)


@pytest.fixture
def headers(user_id):
    return {"X-API-Key": "test-api-key", "X-User-Id": str(user_id)}


@pytest.fixture
def project(user_id):
    return project_store.create("My Site", owner_id=user_id, archive_key="my-site.zip")


def enqueue(client, headers, project_id):
    response = client.post("/builds", json={"project_id": project_id}, headers=headers)
    assert response.status_code == 202
    return response.json()["job_id"]


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    def test_health_returns_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_root_is_public(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["service"] == "preview-service"


class TestAuthentication:
    """Tests for API key and caller identity."""

    def test_missing_api_key_returns_401(self, client):
        response = client.get("/builds", headers={"X-User-Id": "1"})
        assert response.status_code == 401
        assert response.json()["detail"] == "Invalid API key"

    def test_invalid_api_key_returns_401(self, client):
        response = client.get("/builds", headers={"X-API-Key": "wrong", "X-User-Id": "1"})
        assert response.status_code == 401

    def test_bearer_token_accepted(self, client):
        response = client.get("/builds", headers={"Authorization": "Bearer test-api-key", "X-User-Id": "1"})
        assert response.status_code == 200

    @pytest.mark.parametrize("raw", [None, "", "abc", "0", "-3"])
    def test_missing_or_invalid_user_id_returns_401(self, client, raw):
        headers = {"X-API-Key": "test-api-key"}
        if raw is not None:
            headers["X-User-Id"] = raw
        response = client.get("/builds", headers=headers)
        assert response.status_code == 401
        assert "X-User-Id" in response.json()["detail"]


class TestBuilds:
    """Tests for the build endpoints."""

    def test_enqueue_build(self, client, headers, project, user_id):
        response = client.post("/builds", json={"project_id": project.id}, headers=headers)

        assert response.status_code == 202
        data = response.json()
        assert data["queue_position"] >= 1
        assert "position" in data["message"]

        job = build_queue.get_job(data["job_id"])
        assert job.status == "pending"
        assert job.user_id == user_id

        types = [n.type for n in notification_hub.list(user_id)]
        assert types == [NotificationType.BUILD_QUEUED]

    def test_enqueue_missing_project(self, client, headers):
        response = client.post("/builds", json={"project_id": "missing"}, headers=headers)
        assert response.status_code == 404

    def test_enqueue_other_users_project(self, client, headers):
        other = project_store.create("Theirs", owner_id=next(_user_ids))
        response = client.post("/builds", json={"project_id": other.id}, headers=headers)
        assert response.status_code == 403

    def test_enqueue_rejects_bad_priority(self, client, headers, project):
        response = client.post("/builds", json={"project_id": project.id, "priority": 500}, headers=headers)
        assert response.status_code == 422

    def test_list_builds(self, client, headers, project):
        first = enqueue(client, headers, project.id)
        second = enqueue(client, headers, project.id)

        response = client.get("/builds", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert [job["id"] for job in data["jobs"]] == [second, first]
        assert data["stats"]["total"] >= 2

    def test_get_build(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)

        response = client.get(f"/builds/{job_id}", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == job_id
        assert data["project_id"] == project.id
        assert data["progress"] == 0

    def test_get_build_not_found(self, client, headers):
        assert client.get("/builds/missing", headers=headers).status_code == 404

    def test_get_build_of_other_user(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)
        other = {"X-API-Key": "test-api-key", "X-User-Id": str(next(_user_ids))}

        assert client.get(f"/builds/{job_id}", headers=other).status_code == 403

    def test_queue_position(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)

        response = client.get(f"/builds/{job_id}/queue-position", headers=headers)

        assert response.status_code == 200
        assert response.json()["position"] >= 1

    def test_cancel_build(self, client, headers, project, user_id):
        job_id = enqueue(client, headers, project.id)

        response = client.delete(f"/builds/{job_id}", headers=headers)
        assert response.status_code == 200
        assert response.json()["success"] is True
        assert build_queue.get_job(job_id).status == "cancelled"

        types = [n.type for n in notification_hub.list(user_id)]
        assert NotificationType.BUILD_CANCELLED in types

        # Already terminal
        assert client.delete(f"/builds/{job_id}", headers=headers).status_code == 409

    def test_cancel_other_users_build(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)
        other = {"X-API-Key": "test-api-key", "X-User-Id": str(next(_user_ids))}

        assert client.delete(f"/builds/{job_id}", headers=other).status_code == 403
        assert build_queue.get_job(job_id).status == "pending"

    def test_retry_failed_build(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)
        build_queue.fail_job(job_id, "npm install failed")

        response = client.post(f"/builds/{job_id}/retry", headers=headers)

        assert response.status_code == 200
        new_job_id = response.json()["new_job_id"]
        assert new_job_id != job_id
        new_job = build_queue.get_job(new_job_id)
        assert new_job.status == "pending"
        assert new_job.project_id == project.id

    def test_retry_pending_build_conflicts(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)
        assert client.post(f"/builds/{job_id}/retry", headers=headers).status_code == 409

    def test_stop_without_worker(self, client, headers, project):
        job_id = enqueue(client, headers, project.id)
        assert client.post(f"/builds/{job_id}/stop", headers=headers).status_code == 404


class TestQueue:
    """Tests for the queue endpoints."""

    def test_queue_stats(self, client, headers, project):
        enqueue(client, headers, project.id)

        response = client.get("/queue/stats", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["pending"] >= 1
        assert data["total"] >= data["pending"]

    def test_queue_workers(self, client, headers):
        response = client.get("/queue/workers", headers=headers)
        assert response.status_code == 200
        assert response.json() == []

    def test_queue_health(self, client, headers):
        response = client.get("/queue/health", headers=headers)

        assert response.status_code == 200
        data = response.json()
        assert data["active_workers"] == 0
        assert data["processing_status"] == {"is_processing": False, "is_running": False}
        assert "timestamp" in data

    def test_queue_status(self, client, headers):
        response = client.get("/queue/status", headers=headers)
        assert response.status_code == 200
        assert response.json()["is_running"] is False

    def test_trigger(self, client, headers):
        with patch(
            "preview_service.api.builds.queue_processor.trigger_processing",
            new=AsyncMock(return_value="job-123"),
        ):
            response = client.post("/queue/trigger", headers=headers)

        assert response.status_code == 200
        assert "job-123" in response.json()["message"]


class TestNotifications:
    """Tests for the notification endpoints."""

    def test_list_and_unread_count(self, client, headers, project):
        enqueue(client, headers, project.id)
        enqueue(client, headers, project.id)

        response = client.get("/notifications", headers=headers)
        assert response.status_code == 200
        data = response.json()
        assert len(data) == 2
        assert data[0]["title"] == "Build Queued"
        assert data[0]["read"] is False

        count = client.get("/notifications/unread-count", headers=headers).json()["count"]
        assert count == 2

    def test_mark_read(self, client, headers, project):
        enqueue(client, headers, project.id)
        notification_id = client.get("/notifications", headers=headers).json()[0]["id"]

        response = client.patch(f"/notifications/{notification_id}/read", headers=headers)

        assert response.status_code == 200
        assert response.json()["read"] is True
        assert client.get("/notifications/unread", headers=headers).json() == []

    def test_mark_read_errors(self, client, headers, project):
        enqueue(client, headers, project.id)
        notification_id = client.get("/notifications", headers=headers).json()[0]["id"]
        other = {"X-API-Key": "test-api-key", "X-User-Id": str(next(_user_ids))}

        assert client.patch("/notifications/missing/read", headers=headers).status_code == 404
        assert client.patch(f"/notifications/{notification_id}/read", headers=other).status_code == 403

    def test_mark_all_read(self, client, headers, project):
        enqueue(client, headers, project.id)
        enqueue(client, headers, project.id)

        response = client.patch("/notifications/read-all", headers=headers)

        assert response.status_code == 200
        assert "2" in response.json()["message"]
        assert client.get("/notifications/unread-count", headers=headers).json()["count"] == 0

    def test_delete_notification(self, client, headers, project):
        enqueue(client, headers, project.id)
        notification_id = client.get("/notifications", headers=headers).json()[0]["id"]

        response = client.delete(f"/notifications/{notification_id}", headers=headers)

        assert response.status_code == 200
        assert client.get("/notifications", headers=headers).json() == []

    def test_stream_requires_identity(self, client):
        response = client.get("/notifications/stream", headers={"X-API-Key": "test-api-key"})
        assert response.status_code == 401


class TestMetricsEndpoint:
    """Tests for metrics endpoint."""

    def test_metrics_is_public(self, client):
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "text/plain" in response.headers["content-type"]

    def test_metrics_returns_prometheus_format(self, client, headers, project):
        enqueue(client, headers, project.id)

        content = client.get("/metrics").text

        assert "preview_requests_total" in content
        assert "preview_builds_enqueued_total" in content
        assert "preview_jobs_pending" in content
        assert "preview_active_workers 0" in content
