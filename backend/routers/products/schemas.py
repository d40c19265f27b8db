from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from datetime import datetime
from enum import Enum
from models import ProductCategory
from utils.response_helpers import Pagination
import uuid


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    is_active: Optional[bool] = None

class CategoryResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class ProductSort(str, Enum):
    NEWEST = "newest"
    PRICE_ASC = "price_asc"
    PRICE_DESC = "price_desc"
    POPULAR = "popular"


class ProductCreate(BaseModel):
    title: str = Field(..., min_length=2, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    category: ProductCategory
    category_id: Optional[uuid.UUID] = None
    price: float = Field(..., gt=0)
    quantity: int = Field(..., ge=0)
    unit: str = Field("kg", min_length=1, max_length=30)
    region: Optional[str] = Field(None, max_length=100)
    is_available: bool = True

class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    category: Optional[ProductCategory] = None
    category_id: Optional[uuid.UUID] = None
    price: Optional[float] = Field(None, gt=0)
    quantity: Optional[int] = Field(None, ge=0)
    unit: Optional[str] = Field(None, min_length=1, max_length=30)
    region: Optional[str] = Field(None, max_length=100)
    is_available: Optional[bool] = None

    @model_validator(mode="after")
    def check_not_empty(self):
        if not self.model_fields_set:
            raise ValueError("No fields provided for update")
        return self


class ProductImageResponse(BaseModel):
    id: str
    url: str
    position: int

class SellerSummary(BaseModel):
    id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None
    city: Optional[str] = None
    region: Optional[str] = None

class ProductResponse(BaseModel):
    id: str
    seller_id: str
    title: str
    description: Optional[str] = None
    category: str
    category_id: Optional[str] = None
    price: float
    quantity: int
    unit: str
    region: Optional[str] = None
    is_approved: bool
    is_available: bool
    views: int
    created_at: datetime
    updated_at: datetime
    images: List[ProductImageResponse] = []
    seller: Optional[SellerSummary] = None

class ProductListResponse(BaseModel):
    products: List[ProductResponse]
    pagination: Pagination

