from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from sqlalchemy.orm import selectinload
from config import get_db
from models import User, Profile, Product
from routers.auth.auth import get_current_user, serialize_user
from routers.auth.schemas import UserResponse, ProfileResponse
from utils.response_helpers import ApiResponse, success_response, safe_model_validate
from utils.storage import storage_helpers
from .schemas import ProfileUpdate, AvatarUploadResponse, PublicProfileResponse
from .helpers import get_rating_summary
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["Users"])


async def _load_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    result = await db.execute(
        select(User)
        .options(selectinload(User.profile))
        .where(User.id == user_id, User.deleted_at.is_(None))
    )
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found"
        )
    return user


@router.get("/me", response_model=ApiResponse[UserResponse])
async def get_me(
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    user = await _load_user(db, current_user["user_id"])
    return success_response(serialize_user(user))


@router.patch("/me/profile", response_model=ApiResponse[ProfileResponse])
async def update_my_profile(
    profile_data: ProfileUpdate,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Update profile fields, creating the profile if the account has none yet"""
    user = await _load_user(db, current_user["user_id"])
    updates = profile_data.model_dump(exclude_unset=True)

    try:
        profile = user.profile
        if profile is None:
            if not updates.get("first_name") or not updates.get("last_name"):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="first_name and last_name are required to create a profile"
                )
            profile = Profile(user_id=user.id)
            db.add(profile)

        for field, value in updates.items():
            setattr(profile, field, value)
        await db.commit()

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error updating profile for {user.id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update profile"
        )

    return success_response(safe_model_validate(ProfileResponse, profile), message="Profile updated")


@router.post("/me/avatar", response_model=ApiResponse[AvatarUploadResponse])
async def upload_avatar(
    file: UploadFile = File(...),
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    user = await _load_user(db, current_user["user_id"])
    if user.profile is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Create your profile before uploading an avatar"
        )

    avatar_url, storage_path = await storage_helpers.upload_image(f"avatars/{user.id}", file)
    previous_path = user.profile.avatar_path

    try:
        user.profile.avatar_url = avatar_url
        user.profile.avatar_path = storage_path
        await db.commit()
    except Exception as e:
        logger.error(f"Error saving avatar for {user.id}: {str(e)}")
        await db.rollback()
        storage_helpers.delete_file(storage_path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update avatar"
        )

    if previous_path:
        storage_helpers.delete_file(previous_path)

    return success_response(AvatarUploadResponse(avatar_url=avatar_url), message="Avatar updated")


@router.get("/{user_id}", response_model=ApiResponse[PublicProfileResponse])
async def get_public_profile(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db)
):
    user = await _load_user(db, user_id)
    average, count = await get_rating_summary(db, user.id)

    product_result = await db.execute(
        select(func.count(Product.id)).where(
            Product.seller_id == user.id,
            Product.is_approved == True,
            Product.deleted_at.is_(None)
        )
    )

    profile = user.profile
    return success_response(PublicProfileResponse(
        id=str(user.id),
        role=user.role,
        is_verified=user.is_verified,
        created_at=user.created_at,
        first_name=profile.first_name if profile else None,
        last_name=profile.last_name if profile else None,
        avatar_url=profile.avatar_url if profile else None,
        bio=profile.bio if profile else None,
        city=profile.city if profile else None,
        region=profile.region if profile else None,
        average_rating=average,
        review_count=count,
        product_count=product_result.scalar()
    ))
