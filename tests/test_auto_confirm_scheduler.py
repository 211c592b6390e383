import asyncio

import pytest

from homeservices.commonUtils.enumUtils import BookingStatus, PaymentStatus, PaymentType
from homeservices.commonUtils.exceptions import AlreadyConfirmed, ConcurrentModification
from homeservices.crud.bookingSettlement import confirmation_ref
from homeservices.schedulers.auto_confirm_scheduler import AutoConfirmScheduler
from homeservices.schemas.bookingSchema import DisputeRequest


async def test_sweep_races_manual_confirmation_and_credits_once(market):
    booking = await market.completed_booking()
    market.clock.advance(hours=48)

    manual, sweep = await asyncio.gather(
        market.bookings.confirm(booking.id, market.client_actor),
        market.sweep.run_once(),
        return_exceptions=True,
    )

    manual_won = not isinstance(manual, Exception)
    if not manual_won:
        assert isinstance(manual, AlreadyConfirmed)
    assert int(manual_won) + sweep.confirmed == 1
    assert sweep.failed == 0

    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance, wallet.total_earnings) == (250, 0, 250)
    assert wallet.applied_refs.count(confirmation_ref(booking.id)) == 1


async def test_sweep_confirms_every_due_booking(market):
    bookings = [await market.completed_booking() for _ in range(3)]
    market.clock.advance(hours=48)

    result = await market.sweep.run_once()

    assert (result.scanned, result.confirmed, result.skipped, result.failed) == (3, 3, 0, 0)
    assert all(market.bookings_repo.items[b.id].confirmation.client_confirmed for b in bookings)
    assert market.users.wallet(market.provider.id).balance == 750


async def test_sweep_ignores_disputed_bookings(market):
    booking = await market.completed_booking()
    await market.disputes.open_dispute(booking.id, market.client_actor, _dispute_request())
    market.clock.advance(hours=48)

    result = await market.sweep.run_once()

    assert result.scanned == 0
    assert market.bookings_repo.items[booking.id].status == BookingStatus.DISPUTED
    assert market.users.wallet(market.provider.id).balance == 0


async def test_one_failing_booking_does_not_stop_the_sweep(market):
    first = await market.completed_booking()
    second = await market.completed_booking()
    market.clock.advance(hours=48)

    original_confirm = market.bookings.confirm

    async def flaky_confirm(booking_id, actor, method):
        if booking_id == first.id:
            raise RuntimeError("database hiccup")
        return await original_confirm(booking_id, actor, method)

    market.sweep.booking_service.confirm = flaky_confirm
    result = await market.sweep.run_once()

    assert (result.confirmed, result.failed) == (1, 1)
    assert market.bookings_repo.items[second.id].confirmation.client_confirmed is True
    assert market.bookings_repo.items[first.id].confirmation.client_confirmed is False


async def test_overlapping_sweeps_do_not_double_confirm(market):
    await market.completed_booking()
    market.clock.advance(hours=48)

    first, second = await asyncio.gather(market.sweep.run_once(), market.sweep.run_once())

    assert first.confirmed + second.confirmed == 1
    assert market.users.wallet(market.provider.id).balance == 250


async def test_sweep_finishes_a_release_that_failed(market, monkeypatch):
    booking = await market.completed_booking()

    async def refuse_wallet_writes(*args, **kwargs):
        return False

    monkeypatch.setattr(market.users, "save_wallet_if_version", refuse_wallet_writes)
    with pytest.raises(ConcurrentModification):
        await market.bookings.confirm(booking.id, market.client_actor)
    monkeypatch.undo()

    result = await market.sweep.run_once()

    assert (result.scanned, result.reconciled, result.failed) == (0, 1, 0)
    wallet = market.users.wallet(market.provider.id)
    assert (wallet.balance, wallet.pending_balance, wallet.total_earnings) == (250, 0, 250)
    assert wallet.applied_refs.count(confirmation_ref(booking.id)) == 1

    again = await market.sweep.run_once()
    assert again.reconciled == 0
    assert market.users.wallet(market.provider.id).balance == 250


async def test_sweep_issues_a_cancellation_refund_that_failed(market, monkeypatch):
    booking = await market.new_booking()
    await market.bookings.accept(booking.id, market.provider_actor)
    await market.pay(booking)

    async def payments_store_down(payment):
        raise RuntimeError("payments store unavailable")

    monkeypatch.setattr(market.payments_repo, "insert", payments_store_down)
    with pytest.raises(RuntimeError):
        await market.bookings.cancel(booking.id, market.client_actor, "Moved house")
    monkeypatch.undo()

    result = await market.sweep.run_once()

    assert (result.reconciled, result.failed) == (1, 0)
    (refund,) = market.payments_repo.of_type(PaymentType.REFUND)
    stored = market.bookings_repo.items[booking.id]
    assert stored.payment.refund_payment_code == refund.payment_code
    assert stored.payment.status == PaymentStatus.REFUNDED


async def test_scheduler_registers_a_single_interval_job(market):
    scheduler = AutoConfirmScheduler(market.sweep)
    scheduler.start(minutes=5)
    try:
        assert scheduler.is_running()
        jobs = scheduler.scheduler.get_jobs()
        assert [job.id for job in jobs] == ["auto_confirm_sweep"]
        assert jobs[0].max_instances == 1
    finally:
        scheduler.stop()


async def test_scheduled_task_swallows_sweep_errors(market):
    async def broken():
        raise RuntimeError("boom")

    market.sweep.run_once = broken
    scheduler = AutoConfirmScheduler(market.sweep)
    await scheduler.sweep_task()


def _dispute_request():
    return DisputeRequest(reason="Leak is back", description="Water under the sink again")
