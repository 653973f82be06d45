"""
Notification hub: persisted per-user notifications about build jobs,
forwarded live over the push channel when the user is connected.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from preview_service.core.config import config
from preview_service.core.errors import NotificationNotFoundError, UnauthorizedError
from preview_service.core.metrics import metrics
from preview_service.core.realtime import PushChannelRegistry, push_registry
from preview_service.db.database import SessionLocal
from preview_service.db.models import Notification as NotificationModel
from preview_service.schemas.builds import NotificationType

logger = logging.getLogger(__name__)

# (title, message template) per notification type
BUILD_NOTIFICATION_TEXT = {
    NotificationType.BUILD_QUEUED: (
        "Build Queued",
        'Your website "{name}" has been queued for building.',
    ),
    NotificationType.BUILD_STARTED: (
        "Build Started",
        'Building your website "{name}"...',
    ),
    NotificationType.BUILD_COMPLETED: (
        "Build Completed",
        'Your website "{name}" is ready to preview!',
    ),
    NotificationType.BUILD_FAILED: (
        "Build Failed",
        'Failed to build your website "{name}". Check the logs for details.',
    ),
    NotificationType.BUILD_CANCELLED: (
        "Build Cancelled",
        'Build for "{name}" was cancelled.',
    ),
}


@dataclass
class Notification:
    """Represents a notification (in-memory representation)."""
    id: str
    user_id: int
    job_id: str
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    read: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def _model_to_notification(model: NotificationModel) -> Notification:
    """Convert SQLAlchemy model to Notification dataclass."""
    return Notification(
        id=model.id,
        user_id=model.user_id,
        job_id=model.job_id,
        type=NotificationType(model.type),
        title=model.title,
        message=model.message,
        action_url=model.action_url,
        read=bool(model.read),
        created_at=datetime.fromisoformat(model.created_at),
    )


class NotificationHub:
    """Create, query and retire notifications."""

    def __init__(
        self,
        session_factory: Optional[sessionmaker] = None,
        push: Optional[PushChannelRegistry] = None,
        retention_days: Optional[int] = None,
    ):
        self._session_factory = session_factory or SessionLocal
        self._push = push or push_registry
        self._retention_days = (
            retention_days if retention_days is not None else config.notification_retention_days
        )

    def create(
        self,
        user_id: int,
        job_id: str,
        type: NotificationType,
        title: str,
        message: str,
        action_url: Optional[str] = None,
    ) -> Notification:
        """Persist a notification and forward it to the user's live stream, if any."""
        notification_id = str(uuid.uuid4())
        db = self._session_factory()
        try:
            model = NotificationModel(
                id=notification_id,
                user_id=user_id,
                job_id=job_id,
                type=NotificationType(type).value,
                title=title,
                message=message,
                action_url=action_url,
                read=False,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            db.add(model)
            db.commit()
            db.refresh(model)
            notification = _model_to_notification(model)
        finally:
            db.close()

        metrics.inc("notifications_created_total")
        logger.info(f"notification_created user_id={user_id} job_id={job_id} type={notification.type.value}")

        if self._push.is_user_connected(user_id):
            self._push.send_notification(user_id, notification)
        return notification

    def create_build_notification(
        self,
        user_id: int,
        job_id: str,
        type: NotificationType,
        project_name: str,
        action_url: Optional[str] = None,
    ) -> Notification:
        """Create a notification with the standard title and message for a build event."""
        title, template = BUILD_NOTIFICATION_TEXT[NotificationType(type)]
        return self.create(
            user_id=user_id,
            job_id=job_id,
            type=type,
            title=title,
            message=template.format(name=project_name),
            action_url=action_url,
        )

    def list(self, user_id: int, limit: int = 50) -> list[Notification]:
        """A user's notifications, newest first."""
        db = self._session_factory()
        try:
            items = (
                db.query(NotificationModel)
                .filter(NotificationModel.user_id == user_id)
                .order_by(NotificationModel.created_at.desc())
                .limit(limit)
                .all()
            )
            return [_model_to_notification(item) for item in items]
        finally:
            db.close()

    def list_unread(self, user_id: int) -> List[Notification]:
        db = self._session_factory()
        try:
            items = (
                db.query(NotificationModel)
                .filter(NotificationModel.user_id == user_id, NotificationModel.read.is_(False))
                .order_by(NotificationModel.created_at.desc())
                .all()
            )
            return [_model_to_notification(item) for item in items]
        finally:
            db.close()

    def unread_count(self, user_id: int) -> int:
        db = self._session_factory()
        try:
            return (
                db.query(NotificationModel)
                .filter(NotificationModel.user_id == user_id, NotificationModel.read.is_(False))
                .count()
            )
        finally:
            db.close()

    def _get_owned(self, db, notification_id: str, user_id: int) -> NotificationModel:
        model = db.query(NotificationModel).filter(NotificationModel.id == notification_id).first()
        if not model:
            raise NotificationNotFoundError("Notification not found")
        if model.user_id != user_id:
            raise UnauthorizedError("Unauthorized to access this notification")
        return model

    def mark_read(self, notification_id: str, user_id: int) -> Notification:
        """
        Mark one notification read.

        Raises:
            NotificationNotFoundError: notification does not exist
            UnauthorizedError: caller is not the owner
        """
        db = self._session_factory()
        try:
            model = self._get_owned(db, notification_id, user_id)
            model.read = True
            db.commit()
            db.refresh(model)
            return _model_to_notification(model)
        finally:
            db.close()

    def mark_all_read(self, user_id: int) -> int:
        """Mark every unread notification of one user read. Returns the count."""
        db = self._session_factory()
        try:
            updated = (
                db.query(NotificationModel)
                .filter(NotificationModel.user_id == user_id, NotificationModel.read.is_(False))
                .update({NotificationModel.read: True}, synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        logger.info(f"notifications_read_all user_id={user_id} count={updated}")
        return updated

    def delete(self, notification_id: str, user_id: int) -> None:
        """Delete one notification owned by the caller."""
        db = self._session_factory()
        try:
            model = self._get_owned(db, notification_id, user_id)
            db.delete(model)
            db.commit()
        finally:
            db.close()
        logger.info(f"notification_deleted user_id={user_id}")

    def cleanup_old(self) -> int:
        """Delete read notifications older than the retention period."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=self._retention_days)).isoformat()
        db = self._session_factory()
        try:
            deleted = (
                db.query(NotificationModel)
                .filter(NotificationModel.read.is_(True), NotificationModel.created_at < cutoff)
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()

        if deleted > 0:
            logger.info(f"cleanup_notifications deleted={deleted}")
        return deleted


# Global notification hub
notification_hub = NotificationHub()
