import logging
from typing import Awaitable, Callable

from homeservices.commonUtils.enumUtils import BookingStatus, PaymentStatus
from homeservices.commonUtils.timeUtils import Clock, utcnow
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.crud.walletLedger import WalletLedger
from homeservices.repositories.bookingRepository import BookingRepository, apply_with_retry
from homeservices.schemas.bookingSchema import BookingRecord

logger = logging.getLogger(__name__)


def completion_ref(booking_id) -> str:
    return f"complete:{booking_id}"


def confirmation_ref(booking_id) -> str:
    return f"confirm:{booking_id}"


def pending_owed(booking: BookingRecord) -> bool:
    return booking.execution.completed_at is not None and not booking.ledger.earnings_pending


def release_owed(booking: BookingRecord) -> bool:
    return (
            booking.status == BookingStatus.COMPLETED
            and not booking.ledger.earnings_released
            and (booking.confirmation.client_confirmed or booking.dispute.resolution is not None)
    )


def refund_owed(booking: BookingRecord) -> bool:
    return (
            booking.status == BookingStatus.CANCELLED
            and booking.cancellation is not None
            and booking.cancellation.refund_amount > 0
            and booking.payment.refund_payment_code is None
    )


def outstanding(booking: BookingRecord) -> bool:
    """True while a transition this booking went through still owes a money movement."""
    return pending_owed(booking) or release_owed(booking) or refund_owed(booking)


class BookingSettlement:
    """
    Applies the money movements a booking's state calls for.

    The booking write lands first; the movements follow and are recorded on the
    booking's ``ledger`` record (or its refund code) once they land. Wallet
    movements are keyed by reference, refunds by external reference, so calling
    ``settle`` again after a failure finishes the job without paying twice.
    """

    def __init__(self, bookings: BookingRepository, wallet_ledger: WalletLedger, payments: PaymentOrchestrator,
                 clock: Clock = utcnow):
        self.bookings = bookings
        self.wallet_ledger = wallet_ledger
        self.payments = payments
        self.clock = clock

    async def settle(self, booking: BookingRecord) -> BookingRecord:
        if pending_owed(booking):
            await self._move_money(booking, completion_ref(booking.id), lambda: self.wallet_ledger.add_pending_earnings(
                booking.provider_id, booking.earnings_amount, ref=completion_ref(booking.id)
            ))
            booking = await self._mark(booking, earnings_pending=True)

        if release_owed(booking):
            await self._move_money(booking, confirmation_ref(booking.id), lambda: self._release(booking))
            booking = await self._mark(booking, earnings_released=True)

        if refund_owed(booking):
            booking = await self._refund_cancellation(booking)
        return booking

    async def _release(self, booking: BookingRecord):
        ref = confirmation_ref(booking.id)
        if booking.confirmation.client_confirmed:
            return await self.wallet_ledger.confirm_earnings(booking.provider_id, booking.earnings_amount, ref=ref)

        # Resolved dispute: the provider keeps what the refund did not cover.
        held = booking.earnings_amount if booking.ledger.earnings_pending else 0
        payout = round(max(booking.earnings_amount - booking.dispute.resolution.refund_amount, 0), 2)
        if held == 0 and payout == 0:
            return None
        logger.info(f"Booking {booking.booking_code}: dispute settled, {payout} of {booking.earnings_amount} paid out")
        return await self.wallet_ledger.settle_disputed_earnings(booking.provider_id, held, payout, ref=ref)

    async def _refund_cancellation(self, booking: BookingRecord) -> BookingRecord:
        amount = booking.cancellation.refund_amount
        refund = await self.payments.issue_refund(booking, amount, reason=f"Booking cancelled: {booking.cancellation.reason}")
        _, after = await apply_with_retry(self.bookings, booking.id, lambda current: self._record_refund(
            current, refund.payment_code, amount
        ))
        logger.info(f"Booking {booking.booking_code}: cancellation refund {refund.payment_code} of {amount} recorded")
        return after

    def _record_refund(self, booking: BookingRecord, refund_code: str, amount: float) -> BookingRecord:
        updated = booking.model_copy(deep=True)
        if booking.payment.refund_payment_code == refund_code:
            return updated
        updated.payment.refund_payment_code = refund_code
        updated.payment.refunded_at = self.clock()
        if amount >= booking.pricing.total_amount:
            updated.payment.status = PaymentStatus.REFUNDED
        return updated

    async def _mark(self, booking: BookingRecord, **flags) -> BookingRecord:
        def mutate(current: BookingRecord) -> BookingRecord:
            updated = current.model_copy(deep=True)
            updated.ledger = updated.ledger.model_copy(update=flags)
            return updated

        _, after = await apply_with_retry(self.bookings, booking.id, mutate)
        return after

    @staticmethod
    async def _move_money(booking: BookingRecord, ref: str, movement: Callable[[], Awaitable]) -> None:
        try:
            await movement()
        except Exception:
            # The booking write has landed; settling the booking again replays ``ref`` safely.
            logger.critical(
                f"Booking {booking.booking_code} was updated but ledger movement {ref} failed to apply",
                exc_info=True,
            )
            raise
