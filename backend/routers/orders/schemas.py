from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime
from models import OrderStatus
from utils.response_helpers import Pagination
import uuid


class OrderItemCreate(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(gt=0, le=100000)


class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = Field(min_length=1, max_length=20)
    delivery_address: str = Field(min_length=3, max_length=255)
    delivery_city: str = Field(min_length=1, max_length=100)
    delivery_region: str = Field(min_length=1, max_length=100)
    delivery_lat: Optional[float] = Field(None, ge=-90, le=90)
    delivery_lng: Optional[float] = Field(None, ge=-180, le=180)
    notes: Optional[str] = Field(None, max_length=1000)

    @field_validator("items")
    @classmethod
    def products_must_be_unique(cls, items: List[OrderItemCreate]) -> List[OrderItemCreate]:
        product_ids = [item.product_id for item in items]
        if len(product_ids) != len(set(product_ids)):
            raise ValueError("Each product may appear only once per order")
        return items


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderItemResponse(BaseModel):
    id: str
    product_id: str
    product_title: str
    unit: str
    quantity: int
    price: float
    subtotal: float


class OrderPaymentSummary(BaseModel):
    id: str
    status: str
    method: str
    reference: str
    amount: float
    paid_at: Optional[datetime] = None


class OrderDeliverySummary(BaseModel):
    id: str
    transporter_id: str
    status: str
    fee: float
    distance_km: Optional[float] = None


class PartySummary(BaseModel):
    id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None


class OrderResponse(BaseModel):
    id: str
    buyer_id: str
    seller_id: str
    status: str
    total_amount: float
    delivery_address: str
    delivery_city: str
    delivery_region: str
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    notes: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []
    payment: Optional[OrderPaymentSummary] = None
    delivery: Optional[OrderDeliverySummary] = None
    buyer: Optional[PartySummary] = None
    seller: Optional[PartySummary] = None


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: Pagination
