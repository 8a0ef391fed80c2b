"""
Notification sink for domain owners.

Notifications are stored in the notifications table; delivery to email
or chat channels happens elsewhere.
"""

import logging

from core.database import Database, deserialize_json, get_database, serialize_json
from models.notification import Notification, NotificationType

logger = logging.getLogger(__name__)


class NotificationService:
    """Persist notifications raised by the certificate engine."""

    def __init__(self, db: Database | None = None):
        self.db = db or get_database()

    async def send(self, notification: Notification) -> Notification:
        await self.db.insert(
            "notifications",
            {
                "id": notification.id,
                "user_id": notification.user_id,
                "type": notification.type.value,
                "title": notification.title,
                "message": notification.message,
                "project_id": notification.project_id,
                "project_name": notification.project_name,
                "metadata_json": serialize_json(notification.metadata),
                "created_at": notification.created_at.isoformat(),
            },
        )
        logger.info(f"Notification {notification.type.value} sent to {notification.user_id}: {notification.title}")
        return notification

    async def list_for_user(self, user_id: str, limit: int = 50) -> list[Notification]:
        rows = await self.db.fetch_all(
            "SELECT * FROM notifications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
            (user_id, limit),
        )
        return [
            Notification(
                id=row["id"],
                user_id=row["user_id"],
                type=NotificationType(row["type"]),
                title=row["title"],
                message=row["message"],
                project_id=row.get("project_id"),
                project_name=row.get("project_name"),
                metadata=deserialize_json(row.get("metadata_json")) or {},
                created_at=row["created_at"],
            )
            for row in rows
        ]


# Singleton instance
_notification_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    """Get the global notification service instance."""
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService()
    return _notification_service
