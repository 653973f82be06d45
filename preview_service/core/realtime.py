"""
Push channel: one live server-sent-events stream per user.

Wire format per event:
    event: <name>\\n
    data: <json>\\n
    \\n

Events: connected, ping, job_update, notification, error.
Delivery is best effort. A user with no open stream gets nothing; a write
failure drops the connection. Persisted notifications are the durable record.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import Any, AsyncIterator, Optional

from preview_service.core.config import config
from preview_service.core.metrics import metrics

logger = logging.getLogger(__name__)

# Events buffered per stream before the client counts as too slow
STREAM_BUFFER_SIZE = 100

_CLOSE = object()


class PushStreamClosed(Exception):
    """Write to a closed or overflowing stream."""
    pass


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_event(event: str, data: dict[str, Any]) -> str:
    """Encode one SSE message."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value is not None}


class QueueStream:
    """Outbound side of one SSE response, fed by the registry and drained by the endpoint."""

    def __init__(self, maxsize: int = STREAM_BUFFER_SIZE):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, message: str) -> None:
        if self._closed:
            raise PushStreamClosed("stream closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise PushStreamClosed("stream buffer full")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            # Reader is gone or far behind; drop the backlog so it sees the close
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CLOSE)

    async def __aiter__(self) -> AsyncIterator[str]:
        while True:
            message = await self._queue.get()
            if message is _CLOSE:
                return
            yield message


@dataclass
class PushConnection:
    """A user's open stream."""
    user_id: int
    stream: QueueStream
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_heartbeat: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    heartbeat_task: Optional[asyncio.Task] = None


class PushChannelRegistry:
    """Open push connections keyed by user id."""

    def __init__(
        self,
        heartbeat_interval: Optional[float] = None,
        stale_seconds: Optional[float] = None,
    ):
        self._connections: dict[int, PushConnection] = {}
        self._heartbeat_interval = (
            heartbeat_interval if heartbeat_interval is not None else config.heartbeat_interval
        )
        self._stale_seconds = stale_seconds if stale_seconds is not None else config.stale_connection_seconds

    # =========================================================================
    # Connections
    # =========================================================================

    def open_connection(self, user_id: int, stream: QueueStream) -> PushConnection:
        """Register a stream for a user, replacing and closing any previous one."""
        if user_id in self._connections:
            logger.info(f"push_connection_replaced user_id={user_id}")
            self.remove_connection(user_id)

        connection = PushConnection(user_id=user_id, stream=stream)
        self._connections[user_id] = connection
        metrics.inc("push_connections_opened_total")
        logger.info(f"push_connected user_id={user_id} connections={len(self._connections)}")

        self._write(user_id, "connected", {"userId": user_id, "timestamp": _timestamp()})

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None and user_id in self._connections:
            connection.heartbeat_task = loop.create_task(self._heartbeat(connection))
        return connection

    def remove_connection(self, user_id: int, connection: Optional[PushConnection] = None) -> bool:
        """
        Close and forget a user's connection.

        With connection given, only that exact connection is removed, so a
        stale stream shutting down does not drop its replacement.
        """
        current = self._connections.get(user_id)
        if current is None or (connection is not None and current is not connection):
            return False

        del self._connections[user_id]
        if current.heartbeat_task and not current.heartbeat_task.done():
            current.heartbeat_task.cancel()
        current.stream.close()
        logger.info(f"push_disconnected user_id={user_id} connections={len(self._connections)}")
        return True

    async def _heartbeat(self, connection: PushConnection) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            if self._connections.get(connection.user_id) is not connection:
                return
            if not self._write(connection.user_id, "ping", {"timestamp": _timestamp()}):
                return
            connection.last_heartbeat = datetime.now(timezone.utc)

    def cleanup_stale_connections(self) -> int:
        """Drop connections whose last heartbeat is older than the stale threshold."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=self._stale_seconds)
        stale = [
            user_id for user_id, connection in self._connections.items()
            if connection.last_heartbeat < cutoff
        ]
        for user_id in stale:
            self.remove_connection(user_id)
        if stale:
            logger.info(f"push_stale_removed count={len(stale)}")
        return len(stale)

    def close_all(self) -> None:
        for user_id in list(self._connections):
            self.remove_connection(user_id)

    def is_user_connected(self, user_id: int) -> bool:
        return user_id in self._connections

    def get_connection_count(self) -> int:
        return len(self._connections)

    def get_connected_users(self) -> list[int]:
        return list(self._connections)

    # =========================================================================
    # Sending
    # =========================================================================

    def _write(self, user_id: int, event: str, data: dict[str, Any]) -> bool:
        """Write one event to a user's stream. False if not delivered."""
        connection = self._connections.get(user_id)
        if connection is None:
            return False
        try:
            connection.stream.write(format_event(event, data))
        except PushStreamClosed:
            logger.warning(f"push_write_failed user_id={user_id} event={event}")
            self.remove_connection(user_id, connection)
            return False
        metrics.inc("push_events_sent_total")
        return True

    @staticmethod
    def _job_update_payload(
        job_id: str,
        status: str,
        progress: int,
        current_step: Optional[str] = None,
        preview_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> dict[str, Any]:
        return _compact({
            "jobId": job_id,
            "status": getattr(status, "value", status),
            "progress": progress,
            "currentStep": current_step,
            "previewUrl": preview_url,
            "error": error,
        })

    @staticmethod
    def _notification_payload(notification: Any) -> dict[str, Any]:
        created_at = notification.created_at
        return _compact({
            "id": notification.id,
            "type": getattr(notification.type, "value", notification.type),
            "title": notification.title,
            "message": notification.message,
            "actionUrl": notification.action_url,
            "createdAt": created_at.isoformat() if isinstance(created_at, datetime) else created_at,
        })

    def send_job_update(
        self,
        user_id: int,
        job_id: str,
        status: str,
        progress: int,
        current_step: Optional[str] = None,
        preview_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        payload = self._job_update_payload(job_id, status, progress, current_step, preview_url, error)
        return self._write(user_id, "job_update", payload)

    def send_notification(self, user_id: int, notification: Any) -> bool:
        return self._write(user_id, "notification", self._notification_payload(notification))

    def send_error(self, user_id: int, message: str) -> bool:
        return self._write(user_id, "error", {"message": message, "timestamp": _timestamp()})

    def broadcast_job_update(
        self,
        job_id: str,
        status: str,
        progress: int,
        current_step: Optional[str] = None,
        preview_url: Optional[str] = None,
        error: Optional[str] = None,
    ) -> int:
        """Send a job update to every connected user. Returns deliveries."""
        payload = self._job_update_payload(job_id, status, progress, current_step, preview_url, error)
        return sum(1 for user_id in list(self._connections) if self._write(user_id, "job_update", payload))

    def broadcast_notification(self, notification: Any) -> int:
        payload = self._notification_payload(notification)
        return sum(1 for user_id in list(self._connections) if self._write(user_id, "notification", payload))


# Global push channel registry
push_registry = PushChannelRegistry()
