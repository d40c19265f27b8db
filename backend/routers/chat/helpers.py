from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from models import Message, User, Notification, NotificationType, utcnow
from realtime_chat.connection_manager import manager
from routers.notifications.helpers import notify, push_notifications
from routers.users.helpers import get_profile_map, display_name
from utils.response_helpers import safe_model_validate
from .schemas import MessageCreate, MessageResponse
from typing import Tuple
import uuid
import logging

logger = logging.getLogger(__name__)

MESSAGE_PREVIEW_LENGTH = 80


def _preview(message: Message) -> str:
    if message.content:
        text = message.content.strip()
        return text if len(text) <= MESSAGE_PREVIEW_LENGTH else text[:MESSAGE_PREVIEW_LENGTH] + "..."
    return "Sent you an image"


async def create_message(
    db: AsyncSession,
    sender_id: uuid.UUID,
    payload: MessageCreate
) -> Tuple[Message, Notification]:
    """
    Persist a direct message and its MESSAGE notification, then commit.
    Shared by the REST send endpoint and the socket `send_message` event.
    """
    if payload.receiver_id == sender_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot message yourself"
        )

    result = await db.execute(
        select(User.id).where(User.id == payload.receiver_id, User.deleted_at.is_(None))
    )
    if result.scalar_one_or_none() is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Receiver not found"
        )

    try:
        message = Message(
            id=uuid.uuid4(),
            sender_id=sender_id,
            receiver_id=payload.receiver_id,
            content=payload.content.strip() if payload.content else None,
            image_url=payload.image_url,
            is_read=False
        )
        db.add(message)

        profiles = await get_profile_map(db, [sender_id])
        sender_name = display_name(profiles.get(sender_id)) or "Someone"
        notification = notify(
            db,
            payload.receiver_id,
            NotificationType.MESSAGE,
            f"New message from {sender_name}",
            _preview(message),
            {"sender_id": str(sender_id), "message_id": str(message.id)}
        )
        await db.commit()

    except Exception as e:
        logger.error(f"Error sending message from {sender_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to send message"
        )

    logger.debug(f"Message {message.id} stored from {sender_id} to {payload.receiver_id}")
    return message, notification


async def deliver_message(message: Message, notification: Notification) -> MessageResponse:
    """Push `new_message` and `notification` to the receiver if online; offline receivers read the stored row"""
    response = safe_model_validate(MessageResponse, message)
    await manager.send_event(message.receiver_id, "new_message", response.model_dump())
    await push_notifications([notification])
    return response


async def mark_message_read(db: AsyncSession, message_id: uuid.UUID, reader_id: uuid.UUID) -> Message:
    """Receiver-only read receipt; the sender gets `message_read` if online"""
    result = await db.execute(
        select(Message).where(
            Message.id == message_id,
            Message.receiver_id == reader_id,
            Message.deleted_at.is_(None)
        )
    )
    message = result.scalar_one_or_none()
    if not message:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found"
        )

    if not message.is_read:
        message.is_read = True
        message.read_at = utcnow()
        await db.commit()

    await manager.send_event(
        message.sender_id,
        "message_read",
        {"message_id": str(message.id), "read_at": message.read_at}
    )
    return message
