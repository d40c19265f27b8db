from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from models import AdminLog, ApiKey, Review, Transporter
from utils.response_helpers import convert_uuids_to_strings, safe_model_validate
from .schemas import ApiKeyResponse
from typing import Any, Dict, Iterable, Optional
import uuid
import logging

logger = logging.getLogger(__name__)

MASK_VISIBLE_CHARS = 10


def mask_secret(value: str) -> str:
    return value[:MASK_VISIBLE_CHARS] + "..."


def api_key_response(api_key: ApiKey) -> ApiKeyResponse:
    return safe_model_validate(ApiKeyResponse, api_key, value=mask_secret(api_key.value))


def snapshot(instance: Any, fields: Iterable[str]) -> Dict[str, Any]:
    """Selected attribute values, JSON-ready, for the before/after columns of the admin log"""
    values = {}
    for field in fields:
        value = getattr(instance, field)
        if hasattr(value, "isoformat"):
            value = value.isoformat()
        values[field] = convert_uuids_to_strings(value)
    return values


def log_admin_action(
    db: AsyncSession,
    admin_id: uuid.UUID,
    action: str,
    entity: str,
    entity_id: Any,
    before: Optional[dict] = None,
    after: Optional[dict] = None
) -> AdminLog:
    """Stage an audit row in the caller's transaction"""
    entry = AdminLog(
        admin_id=admin_id,
        action=action,
        entity=entity,
        entity_id=str(entity_id),
        before=before,
        after=after
    )
    db.add(entry)
    logger.info(f"Admin {admin_id} {action} {entity} {entity_id}")
    return entry


async def recompute_transporter_rating(db: AsyncSession, user_id: uuid.UUID) -> None:
    """Reset a transporter's rating to the mean of their approved reviews"""
    result = await db.execute(select(Transporter).where(Transporter.user_id == user_id))
    transporter = result.scalar_one_or_none()
    if transporter is None:
        return

    avg_result = await db.execute(
        select(func.avg(Review.rating)).where(Review.reviewee_id == user_id, Review.is_approved == True)
    )
    average = avg_result.scalar()
    transporter.rating = round(float(average), 2) if average is not None else 0.0
