from fastapi import APIRouter, Depends, Query
from beanie import PydanticObjectId
import logging

from homeservices.crud.bookingService import BookingService
from homeservices.crud.disputeService import DisputeService
from homeservices.dependencies.serviceDependencies import (
    get_auto_confirm_sweep,
    get_booking_service,
    get_dispute_service,
    require_admin,
)
from homeservices.schedulers.auto_confirm_scheduler import AutoConfirmSweep, SweepResult
from homeservices.schemas.bookingSchema import (
    Actor,
    BookingPage,
    BookingRead,
    ReasonRequest,
    ResolveDisputeRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/bookings/disputed", response_model=BookingPage)
async def list_disputed_bookings(
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=50),
        admin: Actor = Depends(require_admin),
        disputes: DisputeService = Depends(get_dispute_service),
):
    """Disputed bookings awaiting resolution, most recently disputed first"""
    return await disputes.list_disputed(page=page, limit=limit)


@router.put("/bookings/{booking_id}/resolve-dispute", response_model=BookingRead)
async def resolve_dispute(
        booking_id: PydanticObjectId,
        request: ResolveDisputeRequest,
        admin: Actor = Depends(require_admin),
        disputes: DisputeService = Depends(get_dispute_service),
):
    """
    Resolve a dispute

    - **resolution**: Outcome recorded on the booking
    - **refund_amount**: Amount refunded to the client, up to the booking total
    """
    booking = await disputes.resolve(booking_id, admin, request)
    return BookingRead.from_record(booking)


@router.put("/bookings/{booking_id}/cancel", response_model=BookingRead)
async def force_cancel_booking(
        booking_id: PydanticObjectId,
        request: ReasonRequest,
        admin: Actor = Depends(require_admin),
        bookings: BookingService = Depends(get_booking_service),
):
    """Cancel a booking regardless of the client cancellation window"""
    logger.info(f"Admin {admin.user_id} force-cancelling booking {booking_id}")
    booking = await bookings.cancel(booking_id, admin, request.reason)
    return BookingRead.from_record(booking)


@router.post("/bookings/auto-confirm/run", response_model=SweepResult)
async def run_auto_confirm_sweep(
        admin: Actor = Depends(require_admin),
        sweep: AutoConfirmSweep = Depends(get_auto_confirm_sweep),
):
    """Run one auto-confirmation sweep now"""
    return await sweep.run_once()
