from pydantic import BaseModel, Field
from typing import Optional, List, Dict
from datetime import datetime
from models import UserRole
from utils.response_helpers import Pagination


class UserListItem(BaseModel):
    id: str
    email: str
    role: str
    is_active: bool
    is_suspended: bool
    is_verified: bool
    created_at: datetime
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone_number: Optional[str] = None


class UserListResponse(BaseModel):
    users: List[UserListItem]
    pagination: Pagination


class RoleUpdate(BaseModel):
    role: UserRole


class SuspendUpdate(BaseModel):
    is_suspended: bool
    reason: Optional[str] = Field(None, max_length=500)


class ApprovalUpdate(BaseModel):
    is_approved: bool


class VerificationUpdate(BaseModel):
    is_verified: bool


class AdminReviewResponse(BaseModel):
    id: str
    reviewer_id: str
    reviewee_id: str
    order_id: Optional[str] = None
    rating: int
    comment: Optional[str] = None
    is_approved: bool
    created_at: datetime


class AdminReviewListResponse(BaseModel):
    reviews: List[AdminReviewResponse]
    pagination: Pagination


class AdminTransporterResponse(BaseModel):
    id: str
    user_id: str
    company_name: Optional[str] = None
    license_number: Optional[str] = None
    base_price: float
    rating: float
    is_verified: bool


class RecentOrder(BaseModel):
    id: str
    buyer_id: str
    seller_id: str
    status: str
    total_amount: float
    created_at: datetime


class TopProduct(BaseModel):
    id: str
    title: str
    views: int
    price: float
    seller_id: str


class AnalyticsResponse(BaseModel):
    total_users: int
    total_products: int
    total_orders: int
    total_revenue: float
    orders_by_status: Dict[str, int]
    users_by_role: Dict[str, int]
    recent_orders: List[RecentOrder]
    top_products: List[TopProduct]


class AdminLogResponse(BaseModel):
    id: str
    admin_id: str
    action: str
    entity: str
    entity_id: str
    before: Optional[dict] = None
    after: Optional[dict] = None
    created_at: datetime


class AdminLogListResponse(BaseModel):
    logs: List[AdminLogResponse]
    pagination: Pagination


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    service: str = Field(..., min_length=1, max_length=50)
    key_type: str = Field(..., min_length=1, max_length=30)
    value: str = Field(..., min_length=1)
    description: Optional[str] = None
    is_active: bool = True


class ApiKeyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    value: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    is_active: Optional[bool] = None


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    service: str
    key_type: str
    value: str
    description: Optional[str] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
