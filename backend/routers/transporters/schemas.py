from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from datetime import datetime
from models import VehicleType, DeliveryStatus
import uuid


class TransporterCreate(BaseModel):
    company_name: Optional[str] = Field(None, max_length=200)
    license_number: Optional[str] = Field(None, max_length=100)
    base_price: float = Field(2.0, gt=0)
    service_regions: Optional[List[str]] = None
    current_lat: Optional[float] = Field(None, ge=-90, le=90)
    current_lng: Optional[float] = Field(None, ge=-180, le=180)


class TransporterUpdate(BaseModel):
    company_name: Optional[str] = Field(None, max_length=200)
    license_number: Optional[str] = Field(None, max_length=100)
    base_price: Optional[float] = Field(None, gt=0)
    service_regions: Optional[List[str]] = None
    current_lat: Optional[float] = Field(None, ge=-90, le=90)
    current_lng: Optional[float] = Field(None, ge=-180, le=180)


class VehicleCreate(BaseModel):
    type: VehicleType
    plate_number: str = Field(..., min_length=2, max_length=30)
    capacity: float = Field(..., gt=0)
    make: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)


class VehicleUpdate(BaseModel):
    type: Optional[VehicleType] = None
    plate_number: Optional[str] = Field(None, min_length=2, max_length=30)
    capacity: Optional[float] = Field(None, gt=0)
    make: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)
    is_active: Optional[bool] = None


class VehicleResponse(BaseModel):
    id: str
    transporter_id: str
    type: str
    plate_number: str
    capacity: float
    make: Optional[str] = None
    model: Optional[str] = None
    is_active: bool
    created_at: datetime


class DeliveryResponse(BaseModel):
    id: str
    order_id: str
    transporter_id: str
    vehicle_id: Optional[str] = None
    status: str
    distance_km: Optional[float] = None
    fee: float
    picked_up_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime


class TransporterResponse(BaseModel):
    id: str
    user_id: str
    company_name: Optional[str] = None
    license_number: Optional[str] = None
    base_price: float
    rating: float
    is_verified: bool
    service_regions: Optional[List[str]] = None
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    created_at: datetime
    name: Optional[str] = None
    vehicles: List[VehicleResponse] = []
    recent_deliveries: List[DeliveryResponse] = []


class AvailableTransporterResponse(TransporterResponse):
    distance_km: Optional[float] = None


class FeeRequest(BaseModel):
    pickup_lat: float = Field(..., ge=-90, le=90)
    pickup_lng: float = Field(..., ge=-180, le=180)
    dropoff_lat: float = Field(..., ge=-90, le=90)
    dropoff_lng: float = Field(..., ge=-180, le=180)
    transporter_id: Optional[uuid.UUID] = None


class FeeResponse(BaseModel):
    distance_km: float
    base_price: float
    fee: float


class DeliveryCreate(BaseModel):
    order_id: uuid.UUID
    vehicle_id: Optional[uuid.UUID] = None


class DeliveryStatusUpdate(BaseModel):
    status: DeliveryStatus

    @model_validator(mode="after")
    def not_assigned(self):
        if self.status == DeliveryStatus.ASSIGNED:
            raise ValueError("status must be PICKED_UP or DELIVERED")
        return self
