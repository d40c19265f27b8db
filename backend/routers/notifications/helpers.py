from sqlalchemy.ext.asyncio import AsyncSession
from models import Notification, NotificationType
from realtime_chat.connection_manager import manager
from utils.response_helpers import model_to_dict
from typing import Optional, List
import uuid
import logging

logger = logging.getLogger(__name__)


def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    type: NotificationType,
    title: str,
    message: str,
    data: Optional[dict] = None
) -> Notification:
    """
    Stage an in-app notification in the caller's transaction.
    Push it with `push_notifications` once the transaction has committed.
    """
    notification = Notification(
        user_id=user_id,
        type=type.value,
        title=title,
        message=message,
        data=data
    )
    db.add(notification)
    return notification


async def push_notifications(notifications: List[Notification]) -> None:
    """Best-effort socket delivery; offline users read them from the REST listing"""
    for notification in notifications:
        delivered = await manager.send_event(notification.user_id, "notification", model_to_dict(notification))
        if delivered:
            logger.debug(f"Pushed notification {notification.id} to {notification.user_id}")
