import asyncio
import logging
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from homeservices.commonUtils.enumUtils import ConfirmationMethod
from homeservices.commonUtils.exceptions import AlreadyConfirmed, InvalidTransition
from homeservices.commonUtils.timeUtils import Clock, utcnow
from homeservices.config.settings import settings
from homeservices.crud.bookingService import BookingService
from homeservices.repositories.bookingRepository import BookingRepository
from homeservices.schemas.bookingSchema import Actor, BookingRecord

logger = logging.getLogger(__name__)


class SweepResult(BaseModel):
    started_at: datetime
    finished_at: Optional[datetime] = None
    scanned: int = 0
    confirmed: int = 0
    skipped: int = 0  # confirmed or disputed by someone else first
    reconciled: int = 0  # earlier money movements finished on this pass
    failed: int = 0


class AutoConfirmSweep:
    """
    One pass over completed bookings whose confirmation window has elapsed.

    Each booking goes through ``BookingService.confirm`` with the system actor,
    the same path a client's manual confirmation takes. The pass then settles
    bookings whose transition landed without its money movement. Failures are
    isolated per booking.
    """

    def __init__(self, bookings: BookingRepository, booking_service: BookingService, clock: Clock = utcnow,
                 batch_size: int = settings.AUTO_CONFIRM_SWEEP_BATCH,
                 concurrency: int = settings.AUTO_CONFIRM_SWEEP_CONCURRENCY):
        self.bookings = bookings
        self.booking_service = booking_service
        self.clock = clock
        self.batch_size = batch_size
        self.concurrency = concurrency
        self._lock = asyncio.Lock()

    async def run_once(self) -> SweepResult:
        async with self._lock:
            result = SweepResult(started_at=self.clock())
            due = await self.bookings.find_due_for_auto_confirm(result.started_at, self.batch_size)
            result.scanned = len(due)

            semaphore = asyncio.Semaphore(self.concurrency)
            outcomes = await asyncio.gather(*(self._confirm_one(booking, semaphore) for booking in due))

            result.confirmed = outcomes.count("confirmed")
            result.skipped = outcomes.count("skipped")
            result.failed = outcomes.count("failed")

            unsettled = await self.bookings.find_unsettled(self.batch_size)
            settled = await asyncio.gather(*(self._settle_one(booking, semaphore) for booking in unsettled))
            result.reconciled = settled.count(True)
            result.failed += settled.count(False)
            result.finished_at = self.clock()

            if result.scanned or unsettled:
                logger.info(
                    f"Auto-confirm sweep: {result.scanned} due, {result.confirmed} confirmed, "
                    f"{result.skipped} skipped, {result.reconciled} reconciled, {result.failed} failed"
                )
            return result

    async def _confirm_one(self, booking: BookingRecord, semaphore: asyncio.Semaphore) -> str:
        async with semaphore:
            try:
                await self.booking_service.confirm(booking.id, Actor.system(), ConfirmationMethod.AUTO)
                return "confirmed"
            except (AlreadyConfirmed, InvalidTransition) as e:
                logger.info(f"Auto-confirm skipped booking {booking.booking_code}: {e}")
                return "skipped"
            except Exception as e:
                logger.error(f"Auto-confirm failed for booking {booking.booking_code}: {e}", exc_info=True)
                return "failed"

    async def _settle_one(self, booking: BookingRecord, semaphore: asyncio.Semaphore) -> bool:
        async with semaphore:
            try:
                await self.booking_service.settlement.settle(booking)
                logger.info(f"Reconciled money movements of booking {booking.booking_code}")
                return True
            except Exception as e:
                logger.error(f"Reconciling booking {booking.booking_code} failed: {e}", exc_info=True)
                return False


class AutoConfirmScheduler:
    """Runs the auto-confirm sweep periodically on the application's event loop."""

    def __init__(self, sweep: AutoConfirmSweep):
        self.sweep = sweep
        self.scheduler = AsyncIOScheduler()

    async def sweep_task(self):
        """Task to run one sweep"""
        try:
            await self.sweep.run_once()
        except Exception as e:
            logger.error(f"Scheduled auto-confirm sweep failed: {e}", exc_info=True)

    def start(self, minutes: int = settings.AUTO_CONFIRM_SWEEP_MINUTES):
        """Start the periodic sweep. Environment checks are handled in the lifespan function."""
        try:
            self.scheduler.add_job(
                func=self.sweep_task,
                trigger=IntervalTrigger(minutes=minutes),
                id="auto_confirm_sweep",
                name="Booking Auto-Confirmation Sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.start()
            logger.info(f"Auto-confirm sweep scheduled every {minutes} minutes")
        except Exception as e:
            logger.error(f"Failed to start auto-confirm scheduler: {e}")

    def stop(self):
        """Stop the periodic sweep."""
        try:
            if self.scheduler.running:
                self.scheduler.shutdown(wait=False)
                logger.info("Auto-confirm scheduler stopped")
        except Exception as e:
            logger.error(f"Error stopping auto-confirm scheduler: {e}")

    def is_running(self) -> bool:
        return self.scheduler.running
