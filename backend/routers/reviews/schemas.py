from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
import uuid


class ReviewCreate(BaseModel):
    reviewee_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)
    order_id: Optional[uuid.UUID] = None


class ReviewerSummary(BaseModel):
    id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


class ReviewResponse(BaseModel):
    id: str
    reviewer_id: str
    reviewee_id: str
    order_id: Optional[str] = None
    rating: int
    comment: Optional[str] = None
    is_approved: bool
    created_at: datetime
    reviewer: Optional[ReviewerSummary] = None


class UserReviewsResponse(BaseModel):
    reviews: List[ReviewResponse]
    average_rating: Optional[float] = None
    total_reviews: int
