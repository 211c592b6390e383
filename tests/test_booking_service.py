import asyncio

import pytest
from beanie import PydanticObjectId

from homeservices.commonUtils.enumUtils import (
    BookingStatus,
    ConfirmationMethod,
    NotificationTemplate,
    PaymentStatus,
    PaymentType,
    UserRole,
)
from homeservices.commonUtils.exceptions import (
    AlreadyConfirmed,
    CancellationWindowClosed,
    ConcurrentModification,
    Forbidden,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from homeservices.crud.bookingSettlement import completion_ref, confirmation_ref
from homeservices.schemas.bookingSchema import AcceptBookingRequest, Actor, CompleteBookingRequest


# ---------------------------------------------------------------------------#
# Creation
# ---------------------------------------------------------------------------#

async def test_create_freezes_pricing(market):
    booking = await market.new_booking(price=200, add_on_price=50)

    assert booking.booking_code.startswith("SLH")
    assert booking.status == BookingStatus.PENDING
    assert booking.pricing.service_price == 200
    assert booking.pricing.add_ons_price == 50
    assert booking.pricing.platform_fee == 5
    assert booking.pricing.total_amount == 255
    assert booking.earnings_amount == 250
    assert booking.service_details.estimated_duration == 90
    assert booking.status_history[0].to_status == BookingStatus.PENDING

    # later catalogue price changes do not touch the booking
    market.services.items[booking.service_id].pricing.amount = 999
    stored = await market.bookings.get(booking.id, market.client_actor)
    assert stored.pricing.total_amount == 255


async def test_create_notifies_the_provider(market):
    await market.new_booking()
    assert market.notifier.templates_for(market.provider.id) == [NotificationTemplate.BOOKING_CONFIRMATION]


async def test_only_clients_create_bookings(market):
    service = market.services.add(market.provider.id)
    with pytest.raises(Forbidden):
        await market.bookings.create(market.provider_actor, market.booking_request(service))


async def test_unapproved_service_is_not_bookable(market):
    service = market.services.add(market.provider.id, is_approved=False)
    with pytest.raises(NotFound):
        await market.bookings.create(market.client_actor, market.booking_request(service))


async def test_inactive_provider_is_not_bookable(market):
    newcomer = market.users.add(UserRole.PROVIDER, activated=False)
    service = market.services.add(newcomer.id)
    with pytest.raises(ValidationFailed):
        await market.bookings.create(market.client_actor, market.booking_request(service))


async def test_booking_must_be_in_the_future(market):
    service = market.services.add(market.provider.id)
    with pytest.raises(ValidationFailed):
        await market.bookings.create(market.client_actor, market.booking_request(service, hours_ahead=-1))
    assert market.bookings_repo.items == {}


# ---------------------------------------------------------------------------#
# Lifecycle and ledger
# ---------------------------------------------------------------------------#

async def test_end_to_end_auto_confirmation_releases_earnings(market):
    booking = await market.completed_booking(paid=True)

    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance) == (0, 250)
    assert booking.execution.actual_duration == 95

    market.clock.advance(hours=48)
    result = await market.sweep.run_once()

    assert result.confirmed == 1
    stored = market.bookings_repo.items[booking.id]
    assert stored.confirmation.client_confirmed is True
    assert stored.confirmation.confirmation_method == ConfirmationMethod.AUTO
    assert stored.payment.status == PaymentStatus.COMPLETED

    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance, wallet.total_earnings) == (250, 0, 250)
    assert wallet.applied_refs == [completion_ref(booking.id), confirmation_ref(booking.id)]


async def test_manual_confirmation_releases_earnings(market):
    booking = await market.completed_booking()
    confirmed = await market.bookings.confirm(booking.id, market.client_actor)

    assert confirmed.confirmation.confirmation_method == ConfirmationMethod.MANUAL
    assert market.users.wallet(market.provider.id).balance == 250
    assert NotificationTemplate.BOOKING_STATUS_UPDATE in market.notifier.templates_for(market.provider.id)


async def test_accept_records_provider_message(market):
    booking = await market.new_booking()
    accepted = await market.bookings.accept(booking.id, market.provider_actor, AcceptBookingRequest(message="On my way"))
    assert accepted.status == BookingStatus.ACCEPTED
    assert accepted.provider_response.message == "On my way"
    assert accepted.version == booking.version + 1


async def test_complete_keeps_notes_and_photos(market):
    booking = await market.new_booking()
    await market.bookings.accept(booking.id, market.provider_actor)
    await market.bookings.start(booking.id, market.provider_actor)
    completed = await market.bookings.complete(booking.id, market.provider_actor, CompleteBookingRequest(
        completion_notes="Replaced the valve", work_photos=["https://cdn/after.jpg"],
    ))
    assert completed.execution.completion_notes == "Replaced the valve"
    assert completed.execution.work_photos == ["https://cdn/after.jpg"]


async def test_double_confirmation_credits_once(market):
    booking = await market.completed_booking()
    results = await asyncio.gather(
        market.bookings.confirm(booking.id, market.client_actor),
        market.bookings.confirm(booking.id, market.client_actor),
        return_exceptions=True,
    )

    assert sum(isinstance(result, AlreadyConfirmed) for result in results) == 1
    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance) == (250, 0)


async def test_concurrent_accept_and_reject_leave_one_winner(market):
    booking = await market.new_booking()
    results = await asyncio.gather(
        market.bookings.accept(booking.id, market.provider_actor),
        market.bookings.reject(booking.id, market.provider_actor, "Fully booked"),
        return_exceptions=True,
    )

    assert sum(isinstance(result, InvalidTransition) for result in results) == 1
    stored = market.bookings_repo.items[booking.id]
    assert stored.status in (BookingStatus.ACCEPTED, BookingStatus.REJECTED)
    assert len(stored.status_history) == 2


async def test_replayed_completion_credit_is_ignored(market):
    booking = await market.completed_booking()
    await market.ledger.add_pending_earnings(market.provider.id, 250, ref=completion_ref(booking.id))
    assert market.users.wallet(market.provider.id).pending_balance == 250


async def _refuse_wallet_writes(*args, **kwargs):
    return False


async def test_confirm_again_finishes_a_release_that_failed(market, monkeypatch):
    booking = await market.completed_booking()
    monkeypatch.setattr(market.users, "save_wallet_if_version", _refuse_wallet_writes)

    with pytest.raises(ConcurrentModification):
        await market.bookings.confirm(booking.id, market.client_actor)

    stored = market.bookings_repo.items[booking.id]
    assert stored.confirmation.client_confirmed is True
    assert stored.ledger.earnings_released is False
    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance) == (0, 250)

    monkeypatch.undo()
    with pytest.raises(AlreadyConfirmed):
        await market.bookings.confirm(booking.id, market.client_actor)

    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance, wallet.total_earnings) == (250, 0, 250)
    assert market.bookings_repo.items[booking.id].ledger.earnings_released is True

    with pytest.raises(AlreadyConfirmed):
        await market.bookings.confirm(booking.id, market.client_actor)
    assert market.users.wallet(market.provider.id).balance == 250


async def test_lost_completion_credit_is_restored_before_release(market, monkeypatch):
    booking = await market.new_booking()
    await market.bookings.accept(booking.id, market.provider_actor)
    await market.pay(booking)
    await market.bookings.start(booking.id, market.provider_actor)
    market.clock.advance(minutes=95)
    monkeypatch.setattr(market.users, "save_wallet_if_version", _refuse_wallet_writes)

    with pytest.raises(ConcurrentModification):
        await market.bookings.complete(booking.id, market.provider_actor)

    monkeypatch.undo()
    stored = market.bookings_repo.items[booking.id]
    assert stored.status == BookingStatus.COMPLETED
    assert stored.ledger.earnings_pending is False
    assert market.users.wallet(market.provider.id).pending_balance == 0

    market.clock.advance(hours=48)
    result = await market.sweep.run_once()

    assert (result.confirmed, result.failed) == (1, 0)
    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance, wallet.total_earnings) == (250, 0, 250)
    assert wallet.applied_refs == [completion_ref(booking.id), confirmation_ref(booking.id)]


# ---------------------------------------------------------------------------#
# Cancellation
# ---------------------------------------------------------------------------#

async def test_client_cancels_unpaid_booking(market):
    booking = await market.new_booking(hours_ahead=24)
    cancelled = await market.bookings.cancel(booking.id, market.client_actor, "Change of plans")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancellation.refund_amount == 0
    assert market.payments_repo.of_type(PaymentType.REFUND) == []


async def test_cancel_inside_window_is_refused(market):
    booking = await market.new_booking(hours_ahead=2)
    with pytest.raises(CancellationWindowClosed):
        await market.bookings.cancel(booking.id, market.client_actor, "Too late")


async def test_cancelling_a_paid_booking_refunds_the_client(market):
    booking = await market.new_booking()
    await market.bookings.accept(booking.id, market.provider_actor)
    outcome = await market.pay(booking)

    cancelled = await market.bookings.cancel(booking.id, market.client_actor, "Moved house")

    refunds = market.payments_repo.of_type(PaymentType.REFUND)
    assert len(refunds) == 1
    assert refunds[0].amount == 255
    assert refunds[0].user_id == market.client.id
    assert cancelled.payment.refund_payment_code == refunds[0].payment_code
    assert cancelled.payment.status == PaymentStatus.REFUNDED
    assert market.payments_repo.items[outcome.payment_code].status == PaymentStatus.REFUNDED


async def test_cancel_again_issues_a_refund_that_failed(market, monkeypatch):
    booking = await market.new_booking()
    await market.bookings.accept(booking.id, market.provider_actor)
    outcome = await market.pay(booking)

    async def payments_store_down(payment):
        raise RuntimeError("payments store unavailable")

    monkeypatch.setattr(market.payments_repo, "insert", payments_store_down)
    with pytest.raises(RuntimeError):
        await market.bookings.cancel(booking.id, market.client_actor, "Moved house")

    stored = market.bookings_repo.items[booking.id]
    assert stored.status == BookingStatus.CANCELLED
    assert stored.payment.refund_payment_code is None
    assert market.payments_repo.of_type(PaymentType.REFUND) == []

    monkeypatch.undo()
    cancelled = await market.bookings.cancel(booking.id, market.client_actor, "Moved house")

    (refund,) = market.payments_repo.of_type(PaymentType.REFUND)
    assert refund.amount == 255
    assert refund.user_id == market.client.id
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.payment.refund_payment_code == refund.payment_code
    assert cancelled.payment.status == PaymentStatus.REFUNDED
    assert market.payments_repo.items[outcome.payment_code].status == PaymentStatus.REFUNDED

    # nothing left to finish
    with pytest.raises(InvalidTransition):
        await market.bookings.cancel(booking.id, market.client_actor, "Moved house")
    assert len(market.payments_repo.of_type(PaymentType.REFUND)) == 1


async def test_only_a_party_can_finish_a_failed_cancellation_refund(market, monkeypatch):
    booking = await market.new_booking()
    await market.bookings.accept(booking.id, market.provider_actor)
    await market.pay(booking)

    async def payments_store_down(payment):
        raise RuntimeError("payments store unavailable")

    monkeypatch.setattr(market.payments_repo, "insert", payments_store_down)
    with pytest.raises(RuntimeError):
        await market.bookings.cancel(booking.id, market.client_actor, "Moved house")
    monkeypatch.undo()

    outsider = Actor(user_id=PydanticObjectId(), role=UserRole.CLIENT)
    with pytest.raises(Forbidden):
        await market.bookings.cancel(booking.id, outsider, "Not mine")
    assert market.payments_repo.of_type(PaymentType.REFUND) == []


async def test_admin_force_cancels_inside_window(market):
    booking = await market.new_booking(hours_ahead=1)
    cancelled = await market.bookings.cancel(booking.id, market.admin_actor, "Provider unavailable")
    assert cancelled.status == BookingStatus.CANCELLED
    assert NotificationTemplate.BOOKING_STATUS_UPDATE in market.notifier.templates_for(market.client.id)


# ---------------------------------------------------------------------------#
# Queries
# ---------------------------------------------------------------------------#

async def test_outsiders_cannot_read_a_booking(market):
    booking = await market.new_booking()
    outsider = Actor(user_id=PydanticObjectId(), role=UserRole.CLIENT)
    with pytest.raises(Forbidden):
        await market.bookings.get(booking.id, outsider)
    assert (await market.bookings.get(booking.id, market.admin_actor)).id == booking.id


async def test_missing_booking_is_not_found(market):
    with pytest.raises(NotFound):
        await market.bookings.accept(PydanticObjectId(), market.provider_actor)


async def test_list_is_scoped_to_the_caller(market):
    first = await market.new_booking()
    await market.new_booking()
    await market.bookings.reject(first.id, market.provider_actor, "No")

    page = await market.bookings.list_for(market.client_actor, page=1, limit=10)
    assert page.total == 2
    assert {item.client_id for item in page.bookings} == {str(market.client.id)}

    pending = await market.bookings.list_for(market.provider_actor, status=BookingStatus.PENDING)
    assert pending.total == 1

    stranger = Actor(user_id=PydanticObjectId(), role=UserRole.CLIENT)
    assert (await market.bookings.list_for(stranger)).total == 0


async def test_overview_counts_by_status(market):
    first = await market.new_booking()
    await market.new_booking()
    await market.bookings.accept(first.id, market.provider_actor)

    overview = await market.bookings.overview(market.provider_actor)
    assert overview.total_bookings == 2
    assert overview.this_month_bookings == 2
    breakdown = {row.status: row for row in overview.status_breakdown}
    assert breakdown[BookingStatus.ACCEPTED].count == 1
    assert breakdown[BookingStatus.PENDING].total_amount == 255


async def test_booking_room_receives_status_changes(market):
    class Socket:
        def __init__(self):
            self.messages = []

        async def send_json(self, data, mode="text"):
            self.messages.append(data)

        async def close(self, code=1000, reason=None):
            pass

    booking = await market.new_booking()
    socket = Socket()
    await market.realtime.connect(market.client.id, socket)
    await market.realtime.join(f"booking_{booking.id}", socket)

    await market.bookings.accept(booking.id, market.provider_actor)

    assert socket.messages[-1]["event"] == "booking_status_changed"
    assert socket.messages[-1]["data"]["status"] == "accepted"
    assert socket.messages[-1]["data"]["previous_status"] == "pending"


async def test_sweep_skips_bookings_not_yet_due(market):
    await market.completed_booking()
    market.clock.advance(hours=47)
    result = await market.sweep.run_once()
    assert (result.scanned, result.confirmed) == (0, 0)
    assert market.users.wallet(market.provider.id).balance == 0


async def test_system_actor_cannot_confirm_early_through_the_service(market):
    booking = await market.completed_booking()
    with pytest.raises(InvalidTransition):
        await market.bookings.confirm(booking.id, Actor.system(), ConfirmationMethod.AUTO)
    assert market.bookings_repo.items[booking.id].confirmation.client_confirmed is False
