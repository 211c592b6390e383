import logging
from math import ceil
from typing import Optional

from beanie import PydanticObjectId

from homeservices.commonUtils.enumUtils import BookingStatus, NotificationTemplate
from homeservices.commonUtils.exceptions import NotFound
from homeservices.commonUtils.timeUtils import Clock, utcnow
from homeservices.crud import bookingStateMachine as machine
from homeservices.crud.bookingSettlement import BookingSettlement
from homeservices.crud.notificationService import NotificationDispatcher
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator, refund_reference
from homeservices.realtime.connectionRegistry import ConnectionRegistry, booking_room
from homeservices.repositories.bookingRepository import BookingRepository, BookingQuery, apply_with_retry
from homeservices.repositories.mongoUtils import page_bounds
from homeservices.schemas.bookingSchema import (
    Actor,
    BookingEvent,
    BookingPage,
    BookingRead,
    BookingRecord,
    DisputeRequest,
    ResolveDisputeRequest,
)

logger = logging.getLogger(__name__)


class DisputeService:
    """
    Opening and resolving disputes.

    Opening a dispute moves no money: pending earnings stay pending and released
    earnings are not clawed back. A resolution refunds the client the amount the
    admin set and pays the provider the earnings the refund did not cover.
    """

    def __init__(self, bookings: BookingRepository, payments: PaymentOrchestrator, settlement: BookingSettlement,
                 notifier: Optional[NotificationDispatcher] = None,
                 realtime: Optional[ConnectionRegistry] = None,
                 clock: Clock = utcnow):
        self.bookings = bookings
        self.payments = payments
        self.notifier = notifier
        self.realtime = realtime
        self.clock = clock
        self.settlement = settlement

    async def open_dispute(self, booking_id: PydanticObjectId, actor: Actor, request: DisputeRequest) -> BookingRecord:
        now = self.clock()
        before, after = await apply_with_retry(self.bookings, booking_id, lambda booking: machine.dispute(
            booking, actor, now, request.reason, request.description, request.evidence
        ))
        logger.info(f"Booking {after.booking_code} disputed by {actor.user_id}: {request.reason}")

        await self._broadcast(before, after)
        self._notify_parties(after, {"reason": request.reason})
        return after

    async def resolve(self, booking_id: PydanticObjectId, actor: Actor, request: ResolveDisputeRequest) -> BookingRecord:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        # Validate against the current state before any money moves.
        machine.resolve(booking, actor, self.clock(), request.resolution, request.refund_amount)

        refund_code = None
        if request.refund_amount > 0:
            refund = await self.payments.issue_refund(
                booking,
                request.refund_amount,
                reason=f"Dispute resolution: {request.resolution}",
                reference=refund_reference(booking.id),
            )
            refund_code = refund.payment_code

        now = self.clock()
        before, after = await apply_with_retry(self.bookings, booking_id, lambda current: machine.resolve(
            current, actor, now, request.resolution, request.refund_amount, refund_payment_code=refund_code
        ))
        logger.info(
            f"Dispute on booking {after.booking_code} resolved by admin {actor.user_id} "
            f"(refund {request.refund_amount})"
        )
        after = await self.settlement.settle(after)

        await self._broadcast(before, after)
        self._notify_parties(after, {
            "resolution": request.resolution,
            "refund_amount": request.refund_amount,
            "currency": after.pricing.currency,
        })
        return after

    async def list_disputed(self, page: int = 1, limit: int = 10) -> BookingPage:
        skip, limit = page_bounds(page, limit)
        items, total = await self.bookings.find_page(
            BookingQuery(status=BookingStatus.DISPUTED), skip, limit, newest_dispute_first=True
        )
        return BookingPage(
            bookings=[BookingRead.from_record(item) for item in items],
            page=max(page, 1),
            limit=limit,
            total=total,
            pages=ceil(total / limit) if total else 0,
        )

    async def _broadcast(self, before: BookingRecord, after: BookingRecord) -> None:
        if self.realtime is None:
            return
        try:
            await self.realtime.broadcast(booking_room(after.id), "booking_status_changed", BookingEvent(
                booking_id=str(after.id),
                booking_code=after.booking_code,
                status=after.status,
                previous_status=before.status,
            ).model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Broadcast for booking {after.booking_code} failed: {e}")

    def _notify_parties(self, booking: BookingRecord, data: dict) -> None:
        if self.notifier is None:
            return
        payload = {"booking_id": str(booking.id), "booking_code": booking.booking_code, **data}
        for user_id in (booking.client_id, booking.provider_id):
            self.notifier.notify(user_id, NotificationTemplate.DISPUTE_UPDATE, payload)
