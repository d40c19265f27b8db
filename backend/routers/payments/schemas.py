from pydantic import BaseModel, Field, model_validator
from typing import Optional, List
from datetime import datetime
from models import PaymentMethod, MobileMoneyProvider
from utils.response_helpers import Pagination
import uuid


class PaymentInitialize(BaseModel):
    order_id: uuid.UUID
    method: PaymentMethod = PaymentMethod.MOBILE_MONEY
    provider: Optional[MobileMoneyProvider] = None
    phone_number: Optional[str] = Field(None, min_length=9, max_length=20)

    @model_validator(mode="after")
    def mobile_money_needs_provider(self):
        if self.method == PaymentMethod.MOBILE_MONEY and (self.provider is None or not self.phone_number):
            raise ValueError("provider and phone_number are required for mobile money payments")
        return self


class PaymentResponse(BaseModel):
    id: str
    order_id: str
    amount: float
    currency: str
    status: str
    method: str
    provider: Optional[str] = None
    phone_number: Optional[str] = None
    reference: str
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentInitializeResponse(BaseModel):
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None
    reference: str
    payment: PaymentResponse


class PaymentVerifyResponse(BaseModel):
    reference: str
    status: str
    order_id: str
    order_status: str
    payment: PaymentResponse


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False


class PaymentListResponse(BaseModel):
    payments: List[PaymentResponse]
    pagination: Pagination
