import logging
from math import ceil
from typing import Any, Callable, Dict, Iterable, Optional

from beanie import PydanticObjectId

from homeservices.commonUtils.enumUtils import (
    BookingAction,
    BookingStatus,
    ConfirmationMethod,
    FeeType,
    NotificationTemplate,
    UserRole,
)
from homeservices.commonUtils.exceptions import (
    AlreadyConfirmed,
    DuplicateKey,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from homeservices.commonUtils.timeUtils import Clock, combine_schedule, generate_code, utcnow
from homeservices.config.settings import settings, Settings
from homeservices.crud import bookingStateMachine as machine
from homeservices.crud.bookingSettlement import BookingSettlement, outstanding
from homeservices.crud.ledgerPrimitives import calculate_platform_fee
from homeservices.crud.notificationService import NotificationDispatcher
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.crud.walletLedger import WalletLedger
from homeservices.realtime.connectionRegistry import ConnectionRegistry, booking_room, user_room
from homeservices.repositories.bookingRepository import BookingRepository, BookingQuery, apply_with_retry
from homeservices.repositories.mongoUtils import page_bounds
from homeservices.repositories.serviceRepository import ServiceRepository
from homeservices.repositories.userRepository import UserRepository
from homeservices.schemas.bookingSchema import (
    AcceptBookingRequest,
    Actor,
    BookingCreate,
    BookingEvent,
    BookingOverview,
    BookingPage,
    BookingPaymentInfo,
    BookingPricing,
    BookingRead,
    BookingRecord,
    CompleteBookingRequest,
    StatusBreakdown,
    StatusHistoryEntry,
)

logger = logging.getLogger(__name__)

BOOKING_CODE_PREFIX = "SLH"
MAX_CODE_ATTEMPTS = 5


class BookingService:
    """
    Entry points for every booking transition.

    A transition is validated and applied by the pure functions in
    ``bookingStateMachine`` inside a version-checked write. Money movements,
    broadcasts and notifications happen only after that write has landed; the
    money goes through ``BookingSettlement`` so a failed movement can be finished
    later by repeating the call or by the sweep.
    """

    def __init__(self, bookings: BookingRepository, services: ServiceRepository, users: UserRepository,
                 wallet_ledger: WalletLedger, payments: PaymentOrchestrator,
                 notifier: Optional[NotificationDispatcher] = None,
                 realtime: Optional[ConnectionRegistry] = None,
                 clock: Clock = utcnow, config: Settings = settings,
                 settlement: Optional[BookingSettlement] = None):
        self.bookings = bookings
        self.services = services
        self.users = users
        self.notifier = notifier
        self.realtime = realtime
        self.clock = clock
        self.config = config
        self.settlement = settlement or BookingSettlement(bookings, wallet_ledger, payments, clock=clock)

    # ---------------------------------------------------------------------------#
    # Creation
    # ---------------------------------------------------------------------------#

    async def create(self, actor: Actor, payload: BookingCreate) -> BookingRecord:
        if actor.role != UserRole.CLIENT:
            raise Forbidden("Only clients can create bookings")

        service = await self.services.get(payload.service_id)
        if service is None or not service.is_active or not service.is_approved:
            raise NotFound("Service not found or not available")

        provider = await self.users.get_profile(service.provider_id)
        if provider is None or not provider.is_activated_provider:
            raise ValidationFailed("Service provider is not available for bookings")

        now = self.clock()
        scheduled_at = combine_schedule(payload.scheduled_date, payload.scheduled_time.start)
        if scheduled_at <= now:
            raise ValidationFailed("Scheduled time must be in the future", detail={"scheduled_at": scheduled_at.isoformat()})

        service_price = round(service.pricing.amount, 2)
        add_ons_price = round(sum(add_on.price for add_on in payload.service_details.add_ons), 2)
        platform_fee = calculate_platform_fee(service_price + add_ons_price, FeeType.BOOKING, self.config)
        pricing = BookingPricing(
            service_price=service_price,
            add_ons_price=add_ons_price,
            platform_fee=platform_fee,
            total_amount=round(service_price + add_ons_price + platform_fee, 2),
            currency=service.pricing.currency,
        )

        details = payload.service_details.model_copy()
        if details.estimated_duration is None:
            details.estimated_duration = service.estimated_duration

        booking = None
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            candidate = BookingRecord(
                booking_code=generate_code(BOOKING_CODE_PREFIX),
                client_id=actor.user_id,
                provider_id=service.provider_id,
                service_id=service.id,
                scheduled_date=scheduled_at.replace(hour=0, minute=0),
                scheduled_time=payload.scheduled_time,
                scheduled_at=scheduled_at,
                location=payload.location,
                service_details=details,
                pricing=pricing,
                status=BookingStatus.PENDING,
                status_history=[StatusHistoryEntry(
                    from_status=None,
                    to_status=BookingStatus.PENDING,
                    updated_by=actor.user_id,
                    actor_role=actor.role,
                    reason="Booking created",
                    timestamp=now,
                )],
                payment=BookingPaymentInfo(method=payload.payment_method),
                created_at=now,
                updated_at=now,
            )
            try:
                booking = await self.bookings.insert(candidate)
                break
            except DuplicateKey:
                logger.info(f"Booking code collision on attempt {attempt}, regenerating")
        if booking is None:
            raise DuplicateKey("Could not allocate a unique booking code")

        logger.info(
            f"Booking {booking.booking_code} created by client {actor.user_id} for provider "
            f"{booking.provider_id}: total {pricing.total_amount} {pricing.currency}"
        )
        await self._broadcast(user_room(booking.provider_id), "booking_created", BookingEvent(
            booking_id=str(booking.id),
            booking_code=booking.booking_code,
            status=booking.status,
        ).model_dump(mode="json"))
        self._notify(booking.provider_id, NotificationTemplate.BOOKING_CONFIRMATION, {
            "booking_id": str(booking.id),
            "booking_code": booking.booking_code,
            "service_name": service.name,
            "scheduled_at": scheduled_at.isoformat(),
            "total_amount": pricing.total_amount,
            "currency": pricing.currency,
        })
        return booking

    # ---------------------------------------------------------------------------#
    # Provider transitions
    # ---------------------------------------------------------------------------#

    async def accept(self, booking_id: PydanticObjectId, actor: Actor,
                     request: Optional[AcceptBookingRequest] = None) -> BookingRecord:
        request = request or AcceptBookingRequest()
        now = self.clock()
        before, after = await self._apply(booking_id, lambda booking: machine.accept(
            booking, actor, now, message=request.message, suggested_time=request.suggested_time
        ))
        await self._announce(before, after, recipients=[after.client_id], reason=request.message)
        return after

    async def reject(self, booking_id: PydanticObjectId, actor: Actor, reason: str) -> BookingRecord:
        now = self.clock()
        before, after = await self._apply(booking_id, lambda booking: machine.reject(booking, actor, now, reason))
        await self._announce(before, after, recipients=[after.client_id], reason=reason)
        return after

    async def start(self, booking_id: PydanticObjectId, actor: Actor) -> BookingRecord:
        now = self.clock()
        before, after = await self._apply(booking_id, lambda booking: machine.start(booking, actor, now))
        await self._announce(before, after, recipients=[after.client_id])
        return after

    async def complete(self, booking_id: PydanticObjectId, actor: Actor,
                       request: Optional[CompleteBookingRequest] = None) -> BookingRecord:
        request = request or CompleteBookingRequest()
        now = self.clock()
        before, after = await self._apply(booking_id, lambda booking: machine.complete(
            booking, actor, now,
            completion_notes=request.completion_notes,
            work_photos=request.work_photos,
            auto_confirm_hours=self.config.AUTO_CONFIRM_HOURS,
        ))

        after = await self.settlement.settle(after)
        await self._announce(before, after, recipients=[after.client_id], data={
            "auto_confirm_at": after.confirmation.auto_confirm_at.isoformat(),
        })
        return after

    # ---------------------------------------------------------------------------#
    # Client / system transitions
    # ---------------------------------------------------------------------------#

    async def confirm(self, booking_id: PydanticObjectId, actor: Actor,
                      method: ConfirmationMethod = ConfirmationMethod.MANUAL) -> BookingRecord:
        """
        The single confirmation path, used by clients and by the auto-confirm sweep.
        The version-checked write makes the loser of a confirm race re-read and
        fail with ``AlreadyConfirmed``, so earnings are released once. A booking
        confirmed earlier whose release never landed is settled before that error
        is raised.
        """
        now = self.clock()
        try:
            before, after = await self._apply(booking_id, lambda booking: machine.confirm(booking, actor, now, method))
        except AlreadyConfirmed:
            current = await self.bookings.get(booking_id)
            if current is not None and outstanding(current):
                logger.warning(f"Booking {current.booking_code} was confirmed without its release, settling now")
                await self.settlement.settle(current)
            raise

        after = await self.settlement.settle(after)
        logger.info(f"Booking {after.booking_code} confirmed ({method.value}), {after.earnings_amount} released")
        await self._announce(before, after, recipients=[after.provider_id], data={
            "confirmation_method": method.value,
        }, event="booking_confirmed")
        return after

    async def cancel(self, booking_id: PydanticObjectId, actor: Actor, reason: str) -> BookingRecord:
        """Cancelling again while the refund is still missing issues the refund and returns the booking."""
        now = self.clock()
        try:
            before, after = await self._apply(booking_id, lambda booking: machine.cancel(
                booking, actor, now, reason, window_hours=self.config.CANCELLATION_WINDOW_HOURS
            ))
        except InvalidTransition:
            current = await self.bookings.get(booking_id)
            if current is None or current.status != BookingStatus.CANCELLED or not outstanding(current):
                raise
            machine.authorize(current, actor, BookingAction.CANCEL)
            logger.warning(f"Booking {current.booking_code} was cancelled without its refund, refunding now")
            return await self.settlement.settle(current)

        after = await self.settlement.settle(after)

        recipients = [after.provider_id] if actor.role == UserRole.CLIENT else [after.client_id, after.provider_id]
        await self._announce(before, after, recipients=recipients, reason=reason)
        return after

    # ---------------------------------------------------------------------------#
    # Queries
    # ---------------------------------------------------------------------------#

    async def get(self, booking_id: PydanticObjectId, actor: Actor) -> BookingRecord:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        if actor.role != UserRole.ADMIN and not booking.is_party(actor.user_id):
            raise Forbidden("Access denied")
        return booking

    async def list_for(self, actor: Actor, status: Optional[BookingStatus] = None,
                       page: int = 1, limit: int = 10) -> BookingPage:
        query = self._scope(actor).model_copy(update={"status": status})
        skip, limit = page_bounds(page, limit)
        items, total = await self.bookings.find_page(query, skip, limit)
        return BookingPage(
            bookings=[BookingRead.from_record(item) for item in items],
            page=max(page, 1),
            limit=limit,
            total=total,
            pages=ceil(total / limit) if total else 0,
        )

    async def overview(self, actor: Actor) -> BookingOverview:
        scope = self._scope(actor)
        now = self.clock()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        total = await self.bookings.count(scope)
        this_month = await self.bookings.count(scope.model_copy(update={"created_after": month_start}))
        rows = await self.bookings.status_breakdown(scope)
        return BookingOverview(
            total_bookings=total,
            this_month_bookings=this_month,
            status_breakdown=[StatusBreakdown(**row) for row in rows],
        )

    @staticmethod
    def _scope(actor: Actor) -> BookingQuery:
        if actor.role == UserRole.CLIENT:
            return BookingQuery(client_id=actor.user_id)
        if actor.role == UserRole.PROVIDER:
            return BookingQuery(provider_id=actor.user_id)
        if actor.role == UserRole.ADMIN:
            return BookingQuery()
        raise Forbidden("Access denied")

    # ---------------------------------------------------------------------------#
    # Helpers
    # ---------------------------------------------------------------------------#

    async def _apply(self, booking_id: PydanticObjectId,
                     mutate: Callable[[BookingRecord], BookingRecord]):
        before, after = await apply_with_retry(self.bookings, booking_id, mutate)
        if before.status != after.status:
            logger.info(f"Booking {after.booking_code}: {before.status.value} -> {after.status.value}")
        return before, after

    async def _announce(self, before: BookingRecord, after: BookingRecord, recipients: Iterable[PydanticObjectId],
                        reason: Optional[str] = None, data: Optional[Dict[str, Any]] = None,
                        event: str = "booking_status_changed") -> None:
        payload = BookingEvent(
            booking_id=str(after.id),
            booking_code=after.booking_code,
            status=after.status,
            previous_status=before.status,
            data=data or {},
        ).model_dump(mode="json")
        await self._broadcast(booking_room(after.id), event, payload)

        for user_id in recipients:
            self._notify(user_id, NotificationTemplate.BOOKING_STATUS_UPDATE, {
                "booking_id": str(after.id),
                "booking_code": after.booking_code,
                "status": after.status.value,
                "reason": reason,
            })

    async def _broadcast(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        if self.realtime is None:
            return
        try:
            await self.realtime.broadcast(room, event, payload)
        except Exception as e:
            logger.warning(f"Broadcast of {event} to {room} failed: {e}")

    def _notify(self, user_id: PydanticObjectId, template: NotificationTemplate, data: Dict[str, Any]) -> None:
        if self.notifier is not None:
            self.notifier.notify(user_id, template, data)
