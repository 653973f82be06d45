"""
Notification API routes and the live push stream.

Endpoints:
- GET /notifications - Caller's notifications, newest first
- GET /notifications/unread - Unread notifications
- GET /notifications/unread-count - Unread count
- PATCH /notifications/read-all - Mark all read
- PATCH /notifications/{notification_id}/read - Mark one read
- DELETE /notifications/{notification_id} - Delete one
- GET /notifications/stream - Server-Sent Events (connected, ping, job_update, notification, error)
"""
import logging

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from preview_service.core.errors import NotificationNotFoundError, UnauthorizedError
from preview_service.core.notifications import Notification, notification_hub
from preview_service.core.realtime import QueueStream, push_registry
from preview_service.core.security import get_user_id
from preview_service.schemas.builds import NotificationResponse, SuccessResponse, UnreadCountResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def notification_to_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        user_id=notification.user_id,
        job_id=notification.job_id,
        type=notification.type,
        title=notification.title,
        message=notification.message,
        action_url=notification.action_url,
        read=notification.read,
        created_at=notification.created_at,
    )


@router.get("", response_model=list[NotificationResponse])
async def list_notifications(
    http_request: Request,
    limit: int = Query(50, ge=1, le=200),
) -> list[NotificationResponse]:
    user_id = get_user_id(http_request)
    return [notification_to_response(n) for n in notification_hub.list(user_id, limit=limit)]


@router.get("/unread", response_model=list[NotificationResponse])
async def list_unread_notifications(http_request: Request) -> list[NotificationResponse]:
    user_id = get_user_id(http_request)
    return [notification_to_response(n) for n in notification_hub.list_unread(user_id)]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(http_request: Request) -> UnreadCountResponse:
    user_id = get_user_id(http_request)
    return UnreadCountResponse(count=notification_hub.unread_count(user_id))


@router.patch("/read-all", response_model=SuccessResponse)
async def mark_all_read(http_request: Request) -> SuccessResponse:
    user_id = get_user_id(http_request)
    count = notification_hub.mark_all_read(user_id)
    return SuccessResponse(message=f"Marked {count} notifications as read")


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(notification_id: str, http_request: Request) -> NotificationResponse:
    user_id = get_user_id(http_request)
    try:
        notification = notification_hub.mark_read(notification_id, user_id)
    except NotificationNotFoundError:
        raise HTTPException(status_code=404, detail="Notification not found")
    except UnauthorizedError:
        raise HTTPException(status_code=403, detail="Unauthorized to access this notification")
    return notification_to_response(notification)


@router.delete("/{notification_id}", response_model=SuccessResponse)
async def delete_notification(notification_id: str, http_request: Request) -> SuccessResponse:
    user_id = get_user_id(http_request)
    try:
        notification_hub.delete(notification_id, user_id)
    except NotificationNotFoundError:
        raise HTTPException(status_code=404, detail="Notification not found")
    except UnauthorizedError:
        raise HTTPException(status_code=403, detail="Unauthorized to access this notification")
    return SuccessResponse(message="Notification deleted")


@router.get("/stream")
async def stream_notifications(http_request: Request) -> StreamingResponse:
    """
    Live push channel via Server-Sent Events (SSE).

    One stream per user; opening a new one closes the previous stream.
    """
    user_id = get_user_id(http_request)
    stream = QueueStream()
    connection = push_registry.open_connection(user_id, stream)

    async def event_generator():
        """Drain the user's stream until it is closed or the client goes away."""
        try:
            async for message in stream:
                yield message
        finally:
            push_registry.remove_connection(user_id, connection)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
