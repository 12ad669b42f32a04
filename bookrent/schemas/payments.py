from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from bookrent.models.payment import PaymentIntent
from bookrent.models.payment_method import PaymentMethodType


# ---------- methods / rates ----------

class PaymentMethodResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    method_type: str
    display_name: str
    description: Optional[str] = None
    fee_percentage: Decimal
    settlement_currency: str
    requires_conversion: bool
    is_enabled: bool
    admin_only: bool
    sort_order: int


class PaymentMethodUpdate(BaseModel):
    fee_percentage: Optional[Decimal] = None
    is_enabled: Optional[bool] = None


class ConversionRateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    from_currency: str
    to_currency: str
    rate: Decimal
    effective_date: datetime
    source: str
    created_by: Optional[str] = None
    created_at: datetime


class ConversionRateCreate(BaseModel):
    from_currency: str = "EUR"
    to_currency: str = "CHF"
    rate: Optional[Decimal] = None
    effective_date: Optional[datetime] = None
    fetch_from_api: bool = False


# ---------- calculation ----------

class CalculateRequest(BaseModel):
    payment_intent: PaymentIntent
    method_type: str
    amount: Optional[Decimal] = None


class AdminCalculateRequest(CalculateRequest):
    booking_id: str


class CalculationResponse(BaseModel):
    base_amount: Decimal
    currency: str
    payment_intent: str
    method_type: str
    method_display_name: str
    fee_percentage: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    converted_amount: Optional[Decimal] = None
    conversion_rate: Optional[Decimal] = None
    final_currency: str


# ---------- payments ----------

class PaymentCreate(BaseModel):
    booking_id: str
    payment_intent: PaymentIntent
    method_type: str
    amount: Optional[Decimal] = None
    expires_in_hours: Optional[int] = Field(default=None, ge=1)
    note: Optional[str] = None


class PortalPaymentCreate(BaseModel):
    payment_intent: PaymentIntent = PaymentIntent.CLIENT_PAYMENT
    method_type: str = PaymentMethodType.VISA_MASTERCARD.value
    amount: Optional[Decimal] = None


class ProofSubmit(BaseModel):
    proof_url: str


class PaymentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    booking_id: str
    amount: Decimal
    currency: str
    payment_intent: str
    payment_method_type: str
    fee_percentage: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    converted_amount: Optional[Decimal] = None
    conversion_rate_used: Optional[Decimal] = None
    final_currency: str
    payment_link_url: Optional[str] = None
    payment_link_status: str
    payment_link_expires_at: Optional[datetime] = None
    gateway_session_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    proof_url: Optional[str] = None
    note: Optional[str] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    bank_details: Optional[Dict[str, Any]] = None


class ApplyResultResponse(BaseModel):
    payment_id: str
    status: str
    applied: bool
    reason: Optional[str] = None


# ---------- security deposits ----------

class DepositCreate(BaseModel):
    booking_id: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    method_type: str = PaymentMethodType.VISA_MASTERCARD.value
    expires_in_hours: Optional[int] = None


class CaptureRequest(BaseModel):
    amount: Decimal
    reason: str


class DepositResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    booking_id: str
    payment_id: Optional[str] = None
    amount: Decimal
    currency: str
    status: str
    hold_hours: int
    authorized_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    captured_amount: Optional[Decimal] = None
    capture_reason: Optional[str] = None
    created_at: datetime
    payment_link_url: Optional[str] = None
    remaining_amount: Optional[Decimal] = None


# ---------- monitoring ----------

class GatewayEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    source: str
    external_event_id: Optional[str] = None
    reference: Optional[str] = None
    state: Optional[str] = None
    occurred_at: Optional[datetime] = None
    status: str
    error: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None
