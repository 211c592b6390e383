from typing import Optional

from beanie import PydanticObjectId
from fastapi import APIRouter, Depends, Query, status

from homeservices.commonUtils.enumUtils import BookingStatus
from homeservices.crud import bookingStateMachine as machine
from homeservices.crud.bookingService import BookingService
from homeservices.crud.disputeService import DisputeService
from homeservices.dependencies.serviceDependencies import (
    current_actor,
    get_booking_service,
    get_dispute_service,
)
from homeservices.schemas.bookingSchema import (
    AcceptBookingRequest,
    Actor,
    BookingCreate,
    BookingOverview,
    BookingPage,
    BookingRead,
    CompleteBookingRequest,
    DisputeRequest,
    ReasonRequest,
)

router = APIRouter()


# ============= BOOKING ROUTES =============
@router.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED, tags=["bookings"])
async def create_booking(
        payload: BookingCreate,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    """Create a booking for an active service (clients only)"""
    booking = await bookings.create(actor, payload)
    return BookingRead.from_record(booking)


@router.get("/bookings", response_model=BookingPage, tags=["bookings"])
async def list_bookings(
        status: Optional[BookingStatus] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=50),
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    """List the caller's bookings, newest first"""
    return await bookings.list_for(actor, status=status, page=page, limit=limit)


@router.get("/bookings/overview", response_model=BookingOverview, tags=["bookings"])
async def booking_overview(
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    return await bookings.overview(actor)


@router.get("/bookings/{booking_id}", response_model=BookingRead, tags=["bookings"])
async def get_booking(
        booking_id: PydanticObjectId,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    booking = await bookings.get(booking_id, actor)
    read = BookingRead.from_record(booking)
    read.available_actions = machine.legal_actions(booking)
    return read


# ============= PROVIDER ACTIONS =============
@router.put("/bookings/{booking_id}/accept", response_model=BookingRead, tags=["bookings"])
async def accept_booking(
        booking_id: PydanticObjectId,
        request: Optional[AcceptBookingRequest] = None,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    booking = await bookings.accept(booking_id, actor, request)
    return BookingRead.from_record(booking)


@router.put("/bookings/{booking_id}/reject", response_model=BookingRead, tags=["bookings"])
async def reject_booking(
        booking_id: PydanticObjectId,
        request: ReasonRequest,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    booking = await bookings.reject(booking_id, actor, request.reason)
    return BookingRead.from_record(booking)


@router.put("/bookings/{booking_id}/start", response_model=BookingRead, tags=["bookings"])
async def start_booking(
        booking_id: PydanticObjectId,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    booking = await bookings.start(booking_id, actor)
    return BookingRead.from_record(booking)


@router.put("/bookings/{booking_id}/complete", response_model=BookingRead, tags=["bookings"])
async def complete_booking(
        booking_id: PydanticObjectId,
        request: Optional[CompleteBookingRequest] = None,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    """Mark the work done; earnings go to the provider's pending balance"""
    booking = await bookings.complete(booking_id, actor, request)
    return BookingRead.from_record(booking)


# ============= CLIENT ACTIONS =============
@router.put("/bookings/{booking_id}/confirm", response_model=BookingRead, tags=["bookings"])
async def confirm_booking(
        booking_id: PydanticObjectId,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    """Confirm completed work and release the provider's earnings"""
    booking = await bookings.confirm(booking_id, actor)
    return BookingRead.from_record(booking)


@router.put("/bookings/{booking_id}/cancel", response_model=BookingRead, tags=["bookings"])
async def cancel_booking(
        booking_id: PydanticObjectId,
        request: ReasonRequest,
        actor: Actor = Depends(current_actor),
        bookings: BookingService = Depends(get_booking_service),
):
    booking = await bookings.cancel(booking_id, actor, request.reason)
    return BookingRead.from_record(booking)


@router.put("/bookings/{booking_id}/dispute", response_model=BookingRead, tags=["bookings"])
async def dispute_booking(
        booking_id: PydanticObjectId,
        request: DisputeRequest,
        actor: Actor = Depends(current_actor),
        disputes: DisputeService = Depends(get_dispute_service),
):
    booking = await disputes.open_dispute(booking_id, actor, request)
    return BookingRead.from_record(booking)
