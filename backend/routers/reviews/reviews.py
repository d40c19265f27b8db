from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from config import get_db
from models import Review, User, Order, OrderStatus, NotificationType
from routers.auth.auth import get_current_user
from routers.notifications.helpers import notify, push_notifications
from routers.users.helpers import get_profile_map, get_rating_summary, user_summary
from utils.response_helpers import ApiResponse, success_response, safe_model_validate
from .schemas import ReviewCreate, ReviewResponse, ReviewerSummary, UserReviewsResponse
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["Reviews"])


@router.post("/", response_model=ApiResponse[ReviewResponse], status_code=status.HTTP_201_CREATED)
async def create_review(
    review_data: ReviewCreate,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Review another user, optionally tied to a delivered order between the two.
    Reviews stay hidden until an admin approves them.
    """
    reviewer_id = current_user["user_id"]
    if review_data.reviewee_id == reviewer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot review yourself"
        )

    result = await db.execute(
        select(User.id).where(User.id == review_data.reviewee_id, User.deleted_at.is_(None))
    )
    if result.scalar_one_or_none() is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )

    if review_data.order_id:
        order_result = await db.execute(
            select(Order).where(Order.id == review_data.order_id, Order.deleted_at.is_(None))
        )
        order = order_result.scalar_one_or_none()
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found"
            )
        if {reviewer_id, review_data.reviewee_id} != {order.buyer_id, order.seller_id}:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="You can only review the other party of your order"
            )
        if order.status != OrderStatus.DELIVERED.value:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="You can only review delivered orders"
            )
        existing = await db.execute(select(Review.id).where(Review.order_id == order.id))
        if existing.scalar_one_or_none():
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="This order has already been reviewed"
            )

    try:
        review = Review(
            reviewer_id=reviewer_id,
            reviewee_id=review_data.reviewee_id,
            order_id=review_data.order_id,
            rating=review_data.rating,
            comment=review_data.comment,
            is_approved=False
        )
        db.add(review)
        notification = notify(
            db,
            review_data.reviewee_id,
            NotificationType.REVIEW,
            "New Review",
            f"You received a {review_data.rating}-star review",
            {"rating": review_data.rating}
        )
        await db.commit()

    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="This order has already been reviewed"
        )
    except Exception as e:
        logger.error(f"Error creating review: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create review"
        )

    await push_notifications([notification])
    return success_response(safe_model_validate(ReviewResponse, review), message="Review submitted for approval")


@router.get("/user/{user_id}", response_model=ApiResponse[UserReviewsResponse])
async def get_user_reviews(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(Review)
        .where(Review.reviewee_id == user_id, Review.is_approved == True)
        .order_by(Review.created_at.desc())
    )
    reviews = result.scalars().all()

    profiles = await get_profile_map(db, [review.reviewer_id for review in reviews])
    average, count = await get_rating_summary(db, user_id)

    review_list = []
    for review in reviews:
        summary = user_summary(review.reviewer_id, profiles.get(review.reviewer_id))
        review_list.append(safe_model_validate(
            ReviewResponse,
            review,
            reviewer=ReviewerSummary(id=summary["id"], name=summary["name"], avatar_url=summary["avatar_url"])
        ))

    return success_response(UserReviewsResponse(
        reviews=review_list,
        average_rating=average,
        total_reviews=count
    ))
