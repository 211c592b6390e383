from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from beanie import PydanticObjectId
from pydantic import BaseModel, Field, ConfigDict, field_validator

from homeservices.commonUtils.enumUtils import (
    BookingAction,
    BookingStatus,
    ConfirmationMethod,
    PaymentMethod,
    PaymentStatus,
    UserRole,
    PAYABLE_METHODS,
)
from homeservices.config.settings import settings

_HHMM = r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$"


class Actor(BaseModel):
    """Who is driving a transition: a stored user, or the in-process system."""
    user_id: Optional[PydanticObjectId] = None
    role: UserRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=UserRole.SYSTEM)


# ---------------------------------------------------------------------------
# Embedded sub-records
# ---------------------------------------------------------------------------

class StatusHistoryEntry(BaseModel):
    from_status: Optional[BookingStatus] = None
    to_status: BookingStatus
    updated_by: Optional[PydanticObjectId] = None
    actor_role: UserRole
    reason: Optional[str] = None
    timestamp: datetime


class ScheduledTime(BaseModel):
    start: str = Field(..., pattern=_HHMM)
    end: Optional[str] = Field(None, pattern=_HHMM)


class Coordinates(BaseModel):
    lat: float
    lng: float


class BookingLocation(BaseModel):
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    governorate: str = Field(..., min_length=1)
    coordinates: Optional[Coordinates] = None
    additional_info: Optional[str] = None  # apartment number, floor, etc.


class AddOn(BaseModel):
    name: str
    price: float = Field(..., ge=0)


class ServiceDetails(BaseModel):
    description: Optional[str] = None
    requirements: List[str] = Field(default_factory=list)
    add_ons: List[AddOn] = Field(default_factory=list)
    estimated_duration: Optional[int] = Field(None, gt=0)  # minutes
    special_instructions: Optional[str] = None


class BookingPricing(BaseModel):
    """Frozen at creation. Never recomputed from live service pricing."""
    service_price: float
    add_ons_price: float = 0
    platform_fee: float
    total_amount: float
    currency: str = "EGP"


class SuggestedTime(BaseModel):
    date: Optional[datetime] = None
    start: Optional[str] = Field(None, pattern=_HHMM)
    end: Optional[str] = Field(None, pattern=_HHMM)


class ProviderResponse(BaseModel):
    accepted: bool
    responded_at: datetime
    message: Optional[str] = None
    suggested_time: Optional[SuggestedTime] = None


class ExecutionRecord(BaseModel):
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    actual_duration: Optional[int] = None  # minutes
    work_photos: List[str] = Field(default_factory=list)
    completion_notes: Optional[str] = None


class BookingPaymentInfo(BaseModel):
    method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PENDING
    payment_code: Optional[str] = None
    external_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    refund_payment_code: Optional[str] = None
    refunded_at: Optional[datetime] = None


class ConfirmationRecord(BaseModel):
    client_confirmed: bool = False
    confirmed_at: Optional[datetime] = None
    auto_confirm_at: Optional[datetime] = None  # completion + 48 hours
    confirmation_method: Optional[ConfirmationMethod] = None


class DisputeResolution(BaseModel):
    resolved_by: Optional[PydanticObjectId] = None
    resolved_at: datetime
    resolution: str
    refund_amount: float = 0
    refund_payment_code: Optional[str] = None


class DisputeRecord(BaseModel):
    is_disputed: bool = False
    disputed_by: Optional[PydanticObjectId] = None
    disputed_at: Optional[datetime] = None
    reason: Optional[str] = None
    description: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)  # URLs to evidence files
    resolution: Optional[DisputeResolution] = None


class LedgerRecord(BaseModel):
    """Wallet movements this booking has already applied."""
    earnings_pending: bool = False  # complete:<id>
    earnings_released: bool = False  # confirm:<id>


class CancellationRecord(BaseModel):
    cancelled_by: Optional[PydanticObjectId] = None
    cancelled_at: datetime
    reason: str
    refund_amount: float = 0
    cancellation_fee: float = 0


# ---------------------------------------------------------------------------
# Aggregate
# ---------------------------------------------------------------------------

class BookingRecord(BaseModel):
    """
    One scheduled engagement between a client and a provider.

    Stored as a single document; every write goes through a version check so
    concurrent writers (client, provider, admin, webhook, scheduler) never
    lose each other's updates.
    """
    id: Optional[PydanticObjectId] = Field(None, alias="_id")
    booking_code: str

    # Parties, immutable after creation
    client_id: PydanticObjectId
    provider_id: PydanticObjectId
    service_id: PydanticObjectId

    scheduled_date: datetime
    scheduled_time: ScheduledTime
    scheduled_at: datetime  # scheduled_date + scheduled_time.start
    location: BookingLocation
    service_details: ServiceDetails = Field(default_factory=ServiceDetails)
    pricing: BookingPricing

    status: BookingStatus = BookingStatus.PENDING
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)

    provider_response: Optional[ProviderResponse] = None
    execution: ExecutionRecord = Field(default_factory=ExecutionRecord)
    payment: BookingPaymentInfo
    confirmation: ConfirmationRecord = Field(default_factory=ConfirmationRecord)
    dispute: DisputeRecord = Field(default_factory=DisputeRecord)
    cancellation: Optional[CancellationRecord] = None
    ledger: LedgerRecord = Field(default_factory=LedgerRecord)

    version: int = 0
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(
        populate_by_name=True,
        from_attributes=True,
    )

    @property
    def earnings_amount(self) -> float:
        """What the provider earns: service plus add-ons, never the platform fee."""
        return round(self.pricing.service_price + self.pricing.add_ons_price, 2)

    def can_be_cancelled(self, now: datetime, window_hours: int = settings.CANCELLATION_WINDOW_HOURS) -> bool:
        if self.status not in (BookingStatus.PENDING, BookingStatus.ACCEPTED):
            return False
        return self.scheduled_at - now > timedelta(hours=window_hours)

    def should_auto_confirm(self, now: datetime) -> bool:
        return (
                self.status == BookingStatus.COMPLETED
                and not self.confirmation.client_confirmed
                and not self.dispute.is_disputed
                and self.confirmation.auto_confirm_at is not None
                and now >= self.confirmation.auto_confirm_at
        )

    def is_party(self, user_id: Optional[PydanticObjectId]) -> bool:
        return user_id is not None and user_id in (self.client_id, self.provider_id)


# ---------------------------------------------------------------------------
# Requests / responses
# ---------------------------------------------------------------------------

class BookingCreate(BaseModel):
    service_id: PydanticObjectId
    scheduled_date: datetime
    scheduled_time: ScheduledTime
    location: BookingLocation
    service_details: ServiceDetails = Field(default_factory=ServiceDetails)
    payment_method: PaymentMethod

    @field_validator("payment_method")
    @classmethod
    def payment_method_is_payable(cls, value: PaymentMethod) -> PaymentMethod:
        if value not in PAYABLE_METHODS:
            raise ValueError(f"Unsupported payment method: {value.value}")
        return value


class AcceptBookingRequest(BaseModel):
    message: Optional[str] = None
    suggested_time: Optional[SuggestedTime] = None


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class CompleteBookingRequest(BaseModel):
    completion_notes: Optional[str] = None
    work_photos: List[str] = Field(default_factory=list)


class DisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    evidence: List[str] = Field(default_factory=list)


class ResolveDisputeRequest(BaseModel):
    resolution: str = Field(..., min_length=1)
    refund_amount: float = Field(0, ge=0)


class BookingRead(BaseModel):
    id: str
    booking_code: str
    client_id: str
    provider_id: str
    service_id: str
    scheduled_at: datetime
    scheduled_time: ScheduledTime
    location: BookingLocation
    service_details: ServiceDetails
    pricing: BookingPricing
    status: BookingStatus
    status_history: List[StatusHistoryEntry]
    provider_response: Optional[ProviderResponse] = None
    execution: ExecutionRecord
    payment: BookingPaymentInfo
    confirmation: ConfirmationRecord
    dispute: DisputeRecord
    cancellation: Optional[CancellationRecord] = None
    created_at: datetime
    updated_at: datetime
    available_actions: List[BookingAction] = []

    @classmethod
    def from_record(cls, booking: BookingRecord) -> "BookingRead":
        data = booking.model_dump()
        data.update(
            id=str(booking.id),
            client_id=str(booking.client_id),
            provider_id=str(booking.provider_id),
            service_id=str(booking.service_id),
        )
        return cls.model_validate(data)


class BookingPage(BaseModel):
    bookings: List[BookingRead]
    page: int
    limit: int
    total: int
    pages: int


class StatusBreakdown(BaseModel):
    status: BookingStatus
    count: int
    total_amount: float


class BookingOverview(BaseModel):
    total_bookings: int
    this_month_bookings: int
    status_breakdown: List[StatusBreakdown]


class BookingEvent(BaseModel):
    """Payload broadcast to a booking room after a persisted change."""
    booking_id: str
    booking_code: str
    status: BookingStatus
    previous_status: Optional[BookingStatus] = None
    data: Dict[str, Any] = Field(default_factory=dict)
