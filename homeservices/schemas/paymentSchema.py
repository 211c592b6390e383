from datetime import datetime
from typing import Optional, List, Dict, Any

from beanie import PydanticObjectId
from pydantic import BaseModel, Field, ConfigDict

from homeservices.commonUtils.enumUtils import (
    PaymentType,
    PaymentStatus,
    PaymentMethod,
    GatewayEventType,
)


class PaymentBreakdown(BaseModel):
    service_amount: float = 0
    add_ons_amount: float = 0
    platform_fee: float = 0
    taxes: float = 0
    discount: float = 0
    total: float = 0


class WithdrawalDetails(BaseModel):
    account_details: Dict[str, Any] = Field(default_factory=dict)
    processing_fee: float
    net_amount: float
    estimated_completion: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class RefundDetails(BaseModel):
    refund_payment_code: Optional[str] = None
    refund_amount: float
    reason: Optional[str] = None
    refunded_at: datetime


class GatewayResponse(BaseModel):
    status: Optional[str] = None
    message: Optional[str] = None
    error_code: Optional[str] = None


class PaymentRecord(BaseModel):
    """
    One money-moving event. Created pending/processing, then moves to completed or
    failed exactly once; completed may later become refunded. Never deleted.
    """
    id: Optional[PydanticObjectId] = Field(None, alias="_id")
    payment_code: str

    type: PaymentType
    user_id: PydanticObjectId
    booking_id: Optional[PydanticObjectId] = None

    amount: float  # signed: withdrawals are negative
    currency: str = "EGP"
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING

    external_reference: Optional[str] = None
    breakdown: Optional[PaymentBreakdown] = None
    withdrawal: Optional[WithdrawalDetails] = None
    refund: Optional[RefundDetails] = None
    gateway_response: Optional[GatewayResponse] = None
    webhook_received: bool = False

    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    initiated_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )


# ---------------------------------------------------------------------------
# Orchestrator contracts
# ---------------------------------------------------------------------------

class PaymentRequest(BaseModel):
    purpose: PaymentType
    amount: float = Field(..., gt=0)
    method: PaymentMethod
    user_id: PydanticObjectId
    booking_id: Optional[PydanticObjectId] = None
    currency: str = "EGP"
    details: Dict[str, Any] = Field(default_factory=dict)
    breakdown: Optional[PaymentBreakdown] = None
    description: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PaymentOutcome(BaseModel):
    payment_code: str
    status: PaymentStatus
    reference: Optional[str] = None
    amount: float
    currency: str
    client_secret: Optional[str] = None  # card gateway, for the client SDK
    approval_url: Optional[str] = None  # peer-payment gateway redirect


class GatewayEvent(BaseModel):
    """A gateway callback translated into provider-agnostic terms."""
    type: GatewayEventType
    reference: str
    message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# API schemas
# ---------------------------------------------------------------------------

class ActivationFeeRequest(BaseModel):
    payment_method: PaymentMethod
    payment_details: Dict[str, Any] = Field(default_factory=dict)


class BookingPaymentRequest(BaseModel):
    booking_id: PydanticObjectId
    payment_method: PaymentMethod
    payment_details: Dict[str, Any] = Field(default_factory=dict)


class WithdrawalRequest(BaseModel):
    amount: float = Field(..., gt=0)
    method: PaymentMethod
    account_details: Dict[str, Any] = Field(default_factory=dict)


class WithdrawalResponse(BaseModel):
    payment_code: str
    amount: float
    withdrawal_fee: float
    net_amount: float
    new_balance: float
    estimated_completion: Optional[datetime] = None


class PaymentRead(BaseModel):
    id: str
    payment_code: str
    type: PaymentType
    booking_id: Optional[str] = None
    amount: float
    currency: str
    method: PaymentMethod
    status: PaymentStatus
    external_reference: Optional[str] = None
    breakdown: Optional[PaymentBreakdown] = None
    withdrawal: Optional[WithdrawalDetails] = None
    refund: Optional[RefundDetails] = None
    description: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, payment: PaymentRecord) -> "PaymentRead":
        data = payment.model_dump()
        data.update(
            id=str(payment.id),
            booking_id=str(payment.booking_id) if payment.booking_id else None,
        )
        return cls.model_validate(data)


class PaymentHistoryPage(BaseModel):
    payments: List[PaymentRead]
    page: int
    limit: int
    total: int
    pages: int


class PaymentMethodInfo(BaseModel):
    id: PaymentMethod
    name: str
    name_ar: str
    type: str  # local | international
    icon: str
    enabled: bool = True
