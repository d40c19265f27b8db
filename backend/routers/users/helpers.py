from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from models import Profile, Review
from typing import Dict, Iterable, Optional, Tuple
import uuid
import logging

logger = logging.getLogger(__name__)


def display_name(profile: Optional[Profile]) -> Optional[str]:
    if profile is None:
        return None
    return f"{profile.first_name} {profile.last_name}".strip()


async def get_profile_map(db: AsyncSession, user_ids: Iterable[uuid.UUID]) -> Dict[uuid.UUID, Profile]:
    """Profiles for a batch of users, keyed by user id"""
    ids = {user_id for user_id in user_ids if user_id is not None}
    if not ids:
        return {}
    result = await db.execute(select(Profile).where(Profile.user_id.in_(ids)))
    return {profile.user_id: profile for profile in result.scalars().all()}


def user_summary(user_id: uuid.UUID, profile: Optional[Profile]) -> dict:
    """Compact public identity used inside product, order and chat payloads"""
    return {
        "id": str(user_id),
        "name": display_name(profile),
        "avatar_url": profile.avatar_url if profile else None,
        "city": profile.city if profile else None,
        "region": profile.region if profile else None,
    }


async def get_rating_summary(db: AsyncSession, user_id: uuid.UUID) -> Tuple[Optional[float], int]:
    """Average of approved reviews (rounded to 1 decimal) and their count"""
    result = await db.execute(
        select(func.avg(Review.rating), func.count(Review.id))
        .where(Review.reviewee_id == user_id, Review.is_approved == True)
    )
    average, count = result.one()
    return (round(float(average), 1) if average is not None else None), count
