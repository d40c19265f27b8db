from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, update
from config import get_db
from models import Notification, utcnow
from routers.auth.auth import get_current_user
from utils.response_helpers import ApiResponse, success_response, safe_model_validate, safe_model_validate_list, build_pagination
from .schemas import NotificationResponse, NotificationListResponse
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.get("/", response_model=ApiResponse[NotificationListResponse])
async def list_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = Query(False),
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    filters = [Notification.user_id == current_user["user_id"]]
    if unread_only:
        filters.append(Notification.is_read == False)

    total_result = await db.execute(select(func.count(Notification.id)).where(*filters))
    total = total_result.scalar()

    unread_result = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == current_user["user_id"],
            Notification.is_read == False
        )
    )
    unread_count = unread_result.scalar()

    result = await db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return success_response(NotificationListResponse(
        notifications=safe_model_validate_list(NotificationResponse, result.scalars().all()),
        unread_count=unread_count,
        pagination=build_pagination(page, limit, total)
    ))


@router.patch("/read-all", response_model=ApiResponse[dict])
async def mark_all_read(
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        update(Notification)
        .where(Notification.user_id == current_user["user_id"], Notification.is_read == False)
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return success_response({"updated": result.rowcount}, message="All notifications marked as read")


@router.patch("/{notification_id}/read", response_model=ApiResponse[NotificationResponse])
async def mark_read(
    notification_id: uuid.UUID,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == current_user["user_id"]
        )
    )
    notification = result.scalar_one_or_none()
    if not notification:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found"
        )

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        await db.commit()

    return success_response(safe_model_validate(NotificationResponse, notification))
