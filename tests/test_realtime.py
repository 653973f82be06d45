"""
Tests for the push channel registry.
"""
import asyncio
import json
from datetime import datetime, timezone, timedelta
from types import SimpleNamespace

import pytest

from preview_service.core.realtime import PushChannelRegistry, QueueStream, format_event


def drain(stream: QueueStream) -> list[tuple[str, dict]]:
    """Read every buffered event from a stream without blocking."""
    events = []
    while not stream._queue.empty():
        message = stream._queue.get_nowait()
        if not isinstance(message, str):
            break
        event_line, data_line, _, _ = message.split("\n")
        events.append((event_line[len("event: "):], json.loads(data_line[len("data: "):])))
    return events


@pytest.fixture
def registry():
    return PushChannelRegistry(heartbeat_interval=30, stale_seconds=300)


class TestFormat:
    """Tests for the SSE wire format."""

    def test_format_event(self):
        assert format_event("ping", {"timestamp": "t"}) == 'event: ping\ndata: {"timestamp": "t"}\n\n'


class TestConnections:
    """Tests for opening, replacing and removing connections."""

    def test_open_sends_connected(self, registry):
        stream = QueueStream()
        registry.open_connection(5, stream)

        events = drain(stream)

        assert events[0][0] == "connected"
        assert events[0][1]["userId"] == 5
        assert "timestamp" in events[0][1]
        assert registry.is_user_connected(5)
        assert registry.get_connection_count() == 1
        assert registry.get_connected_users() == [5]

    def test_new_connection_replaces_old(self, registry):
        old_stream = QueueStream()
        new_stream = QueueStream()
        old = registry.open_connection(5, old_stream)
        registry.open_connection(5, new_stream)

        assert old_stream.closed
        assert not new_stream.closed
        assert registry.get_connection_count() == 1
        # The old stream's teardown must not drop the replacement
        assert registry.remove_connection(5, old) is False
        assert registry.is_user_connected(5)

    def test_remove_connection(self, registry):
        stream = QueueStream()
        registry.open_connection(5, stream)

        assert registry.remove_connection(5) is True
        assert stream.closed
        assert not registry.is_user_connected(5)
        assert registry.remove_connection(5) is False

    def test_stale_connections_removed(self, registry):
        registry.open_connection(1, QueueStream())
        stale = registry.open_connection(2, QueueStream())
        stale.last_heartbeat = datetime.now(timezone.utc) - timedelta(minutes=10)

        removed = registry.cleanup_stale_connections()

        assert removed == 1
        assert registry.is_user_connected(1)
        assert not registry.is_user_connected(2)


class TestSending:
    """Tests for event delivery."""

    def test_send_without_connection_is_noop(self, registry):
        assert registry.send_job_update(99, "job-1", "building", 10) is False
        assert registry.send_error(99, "boom") is False

    def test_job_update_payload(self, registry):
        stream = QueueStream()
        registry.open_connection(5, stream)
        drain(stream)

        assert registry.send_job_update(5, "job-1", "building", 40, current_step="Installing dependencies")

        event, data = drain(stream)[0]
        assert event == "job_update"
        assert data == {"jobId": "job-1", "status": "building", "progress": 40, "currentStep": "Installing dependencies"}

    def test_notification_payload(self, registry):
        stream = QueueStream()
        registry.open_connection(5, stream)
        drain(stream)
        notification = SimpleNamespace(
            id="n-1",
            type="build_completed",
            title="Build Completed",
            message="ready",
            action_url="http://localhost:4000",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

        registry.send_notification(5, notification)

        event, data = drain(stream)[0]
        assert event == "notification"
        assert data["actionUrl"] == "http://localhost:4000"
        assert data["createdAt"] == "2024-01-01T00:00:00+00:00"

    def test_write_failure_removes_connection(self, registry):
        stream = QueueStream()
        registry.open_connection(5, stream)
        stream.close()

        assert registry.send_error(5, "boom") is False
        assert not registry.is_user_connected(5)

    def test_overflow_removes_connection(self, registry):
        stream = QueueStream(maxsize=2)
        registry.open_connection(5, stream)
        registry.send_error(5, "one")

        assert registry.send_error(5, "two") is False
        assert not registry.is_user_connected(5)

    def test_broadcast(self, registry):
        streams = {user_id: QueueStream() for user_id in (1, 2, 3)}
        for user_id, stream in streams.items():
            registry.open_connection(user_id, stream)
            drain(stream)

        delivered = registry.broadcast_job_update("job-1", "completed", 100, preview_url="http://localhost:4000")

        assert delivered == 3
        for stream in streams.values():
            event, data = drain(stream)[0]
            assert data["previewUrl"] == "http://localhost:4000"

    def test_broadcast_notification(self, registry):
        streams = {user_id: QueueStream() for user_id in (1, 2)}
        for user_id, stream in streams.items():
            registry.open_connection(user_id, stream)
            drain(stream)
        notification = SimpleNamespace(
            id="n-1",
            type="build_queued",
            title="Build Queued",
            message="queued",
            action_url=None,
            created_at="2024-01-01T00:00:00+00:00",
        )

        assert registry.broadcast_notification(notification) == 2

        for stream in streams.values():
            event, data = drain(stream)[0]
            assert event == "notification"
            assert "actionUrl" not in data


class TestHeartbeat:
    """Tests for the heartbeat task."""

    @pytest.mark.asyncio
    async def test_ping_sent_and_heartbeat_updated(self):
        registry = PushChannelRegistry(heartbeat_interval=0.05, stale_seconds=300)
        stream = QueueStream()
        connection = registry.open_connection(5, stream)
        opened_heartbeat = connection.last_heartbeat

        received = []

        async def read():
            async for message in stream:
                received.append(message)
                if message.startswith("event: ping"):
                    return

        await asyncio.wait_for(read(), timeout=2)

        assert received[0].startswith("event: connected")
        assert connection.last_heartbeat >= opened_heartbeat
        registry.remove_connection(5)
        await asyncio.gather(connection.heartbeat_task, return_exceptions=True)
        assert connection.heartbeat_task.done()

    @pytest.mark.asyncio
    async def test_stream_iteration_ends_on_close(self):
        registry = PushChannelRegistry(heartbeat_interval=30, stale_seconds=300)
        stream = QueueStream()
        registry.open_connection(5, stream)
        registry.remove_connection(5)

        messages = [message async for message in stream]

        assert len(messages) == 1
        assert messages[0].startswith("event: connected")
