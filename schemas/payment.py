from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from models.enums import OrderStatus, PaymentMethod, PaymentStatus
from services.mpesa import normalize_msisdn


class MpesaInitRequest(BaseModel):
    order_id: int
    phone_number: str

    @field_validator("phone_number")
    @classmethod
    def _normalize_phone(cls, value: str) -> str:
        return normalize_msisdn(value)


class MpesaInitResponse(BaseModel):
    checkout_request_id: Optional[str]
    message: str
    order_id: int


class PaystackInitRequest(BaseModel):
    order_id: int
    email: EmailStr


class PaystackInitResponse(BaseModel):
    authorization_url: str
    access_code: Optional[str] = None
    reference: str


class ManualPaymentRequest(BaseModel):
    order_id: int
    reference_number: str = Field(min_length=6, max_length=20)
    sender_name: str = Field(min_length=2, max_length=100)

    @field_validator("reference_number")
    @classmethod
    def _clean_reference(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("sender_name")
    @classmethod
    def _clean_sender(cls, value: str) -> str:
        return value.strip()


class ManualPaymentResponse(BaseModel):
    success: bool = True
    message: str
    payment_id: int


class RejectPaymentRequest(BaseModel):
    reason: Optional[str] = Field(default=None, min_length=5, max_length=500)


class ReviewResponse(BaseModel):
    success: bool
    message: str
    status: PaymentStatus


class PaymentStatusOut(BaseModel):
    payment_id: int
    status: PaymentStatus
    applied: bool


class PaymentOut(BaseModel):
    id: int
    order_id: int
    method: PaymentMethod
    status: PaymentStatus
    amount: float
    currency: str
    external_receipt_id: Optional[str] = None
    manual_reference_number: Optional[str] = None
    manual_sender_name: Optional[str] = None
    push_phone: Optional[str] = None
    redirect_channel: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    paid_at: Optional[datetime] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True


class OrderSummaryOut(BaseModel):
    id: int
    order_number: str
    customer_name: str
    email: str
    phone: Optional[str] = None
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    total: float
    created_at: datetime

    class Config:
        from_attributes = True


class ReceiptOut(BaseModel):
    payment: PaymentOut
    order: OrderSummaryOut
