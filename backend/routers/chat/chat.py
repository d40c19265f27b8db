from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update, or_, and_
from config import get_db
from models import Message, utcnow
from realtime_chat.connection_manager import manager
from routers.auth.auth import get_current_user
from routers.users.helpers import get_profile_map, user_summary
from utils.response_helpers import ApiResponse, success_response, safe_model_validate, safe_model_validate_list, build_pagination
from .schemas import MessageCreate, MessageResponse, ConversationResponse, ChatPartner, MessageListResponse
from .helpers import create_message, deliver_message, mark_message_read
from typing import List
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat", tags=["Chat"])


@router.get("/conversations", response_model=ApiResponse[List[ConversationResponse]])
async def list_conversations(
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """One entry per chat partner with the latest message and unread count, newest first"""
    user_id = current_user["user_id"]

    result = await db.execute(
        select(Message)
        .where(
            or_(Message.sender_id == user_id, Message.receiver_id == user_id),
            Message.deleted_at.is_(None)
        )
        .order_by(Message.created_at.desc())
    )

    latest = {}
    for message in result.scalars().all():
        partner_id = message.receiver_id if message.sender_id == user_id else message.sender_id
        if partner_id not in latest:
            latest[partner_id] = message

    unread_result = await db.execute(
        select(Message.sender_id, func.count(Message.id))
        .where(
            Message.receiver_id == user_id,
            Message.is_read == False,
            Message.deleted_at.is_(None)
        )
        .group_by(Message.sender_id)
    )
    unread = {sender_id: count for sender_id, count in unread_result.all()}

    profiles = await get_profile_map(db, latest.keys())
    conversations = [
        ConversationResponse(
            partner=ChatPartner(
                **user_summary(partner_id, profiles.get(partner_id)),
                is_online=manager.is_online(partner_id)
            ),
            last_message=safe_model_validate(MessageResponse, message),
            unread_count=unread.get(partner_id, 0)
        )
        for partner_id, message in latest.items()
    ]

    return success_response(conversations)


@router.get("/messages/{partner_id}", response_model=ApiResponse[MessageListResponse])
async def get_messages(
    partner_id: uuid.UUID,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Conversation history with one partner.
    Pages are taken newest first and returned in chronological order.
    Unread messages from the partner are marked read.
    """
    user_id = current_user["user_id"]
    filters = [
        or_(
            and_(Message.sender_id == user_id, Message.receiver_id == partner_id),
            and_(Message.sender_id == partner_id, Message.receiver_id == user_id)
        ),
        Message.deleted_at.is_(None)
    ]

    total_result = await db.execute(select(func.count(Message.id)).where(*filters))
    total = total_result.scalar()

    result = await db.execute(
        select(Message)
        .where(*filters)
        .order_by(Message.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    messages = list(reversed(result.scalars().all()))

    read_at = utcnow()
    await db.execute(
        update(Message)
        .where(
            Message.sender_id == partner_id,
            Message.receiver_id == user_id,
            Message.is_read == False
        )
        .values(is_read=True, read_at=read_at)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    for message in messages:
        if message.receiver_id == user_id and not message.is_read:
            message.is_read = True
            message.read_at = read_at

    return success_response(MessageListResponse(
        messages=safe_model_validate_list(MessageResponse, messages),
        pagination=build_pagination(page, limit, total)
    ))


@router.post("/send", response_model=ApiResponse[MessageResponse], status_code=status.HTTP_201_CREATED)
async def send_message(
    message_data: MessageCreate,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    message, notification = await create_message(db, current_user["user_id"], message_data)
    response = await deliver_message(message, notification)
    return success_response(response, message="Message sent")


@router.patch("/messages/{message_id}/read", response_model=ApiResponse[MessageResponse])
async def read_message(
    message_id: uuid.UUID,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    message = await mark_message_read(db, message_id, current_user["user_id"])
    return success_response(safe_model_validate(MessageResponse, message))
