"""
Booking transitions as pure functions.

Each function checks, in order, the actor's role and party membership, duplicate
terminal actions, then the current status, and returns an updated copy of the
booking. Persistence and money movements are left to ``BookingService``.
"""
from datetime import datetime, timedelta
from typing import Dict, FrozenSet, List, Optional, Tuple

from homeservices.commonUtils.enumUtils import (
    BookingAction,
    BookingStatus,
    ConfirmationMethod,
    PaymentStatus,
    UserRole,
)
from homeservices.commonUtils.exceptions import (
    Forbidden,
    InvalidTransition,
    CancellationWindowClosed,
    AlreadyConfirmed,
    AlreadyDisputed,
    ValidationFailed,
)
from homeservices.config.settings import settings
from homeservices.schemas.bookingSchema import (
    Actor,
    BookingRecord,
    StatusHistoryEntry,
    ProviderResponse,
    SuggestedTime,
    ConfirmationRecord,
    DisputeRecord,
    DisputeResolution,
    CancellationRecord,
)

# action -> (legal source statuses, target status)
TRANSITIONS: Dict[BookingAction, Tuple[FrozenSet[BookingStatus], BookingStatus]] = {
    BookingAction.ACCEPT: (frozenset({BookingStatus.PENDING}), BookingStatus.ACCEPTED),
    BookingAction.REJECT: (frozenset({BookingStatus.PENDING}), BookingStatus.REJECTED),
    BookingAction.START: (frozenset({BookingStatus.ACCEPTED}), BookingStatus.IN_PROGRESS),
    BookingAction.COMPLETE: (frozenset({BookingStatus.IN_PROGRESS}), BookingStatus.COMPLETED),
    BookingAction.CONFIRM: (frozenset({BookingStatus.COMPLETED}), BookingStatus.COMPLETED),
    BookingAction.CANCEL: (frozenset({BookingStatus.PENDING, BookingStatus.ACCEPTED}), BookingStatus.CANCELLED),
    BookingAction.DISPUTE: (frozenset({BookingStatus.IN_PROGRESS, BookingStatus.COMPLETED}), BookingStatus.DISPUTED),
    BookingAction.RESOLVE: (frozenset({BookingStatus.DISPUTED}), BookingStatus.COMPLETED),
}

ACTION_ROLES: Dict[BookingAction, FrozenSet[UserRole]] = {
    BookingAction.ACCEPT: frozenset({UserRole.PROVIDER}),
    BookingAction.REJECT: frozenset({UserRole.PROVIDER}),
    BookingAction.START: frozenset({UserRole.PROVIDER}),
    BookingAction.COMPLETE: frozenset({UserRole.PROVIDER}),
    BookingAction.CONFIRM: frozenset({UserRole.CLIENT, UserRole.SYSTEM}),
    BookingAction.CANCEL: frozenset({UserRole.CLIENT, UserRole.ADMIN}),
    BookingAction.DISPUTE: frozenset({UserRole.CLIENT}),
    BookingAction.RESOLVE: frozenset({UserRole.ADMIN}),
}

TERMINAL_STATUSES = frozenset({BookingStatus.REJECTED, BookingStatus.CANCELLED})


def authorize(booking: BookingRecord, actor: Actor, action: BookingAction) -> None:
    if actor.role not in ACTION_ROLES[action]:
        raise Forbidden(
            f"A {actor.role.value} cannot {action.value} a booking",
            detail={"role": actor.role.value, "action": action.value},
        )
    if actor.role == UserRole.PROVIDER and actor.user_id != booking.provider_id:
        raise Forbidden("Only the booking's provider can do this")
    if actor.role == UserRole.CLIENT and actor.user_id != booking.client_id:
        raise Forbidden("Only the booking's client can do this")


def require_source(booking: BookingRecord, action: BookingAction) -> BookingStatus:
    sources, target = TRANSITIONS[action]
    if booking.status not in sources:
        raise InvalidTransition(
            f"Cannot {action.value} a booking that is {booking.status.value}",
            detail={"status": booking.status.value, "action": action.value},
        )
    return target


def legal_actions(booking: BookingRecord) -> List[BookingAction]:
    return [action for action, (sources, _) in TRANSITIONS.items() if booking.status in sources]


def _move(booking: BookingRecord, target: BookingStatus, actor: Actor, now: datetime,
          reason: Optional[str] = None) -> BookingRecord:
    updated = booking.model_copy(deep=True)
    updated.status_history.append(StatusHistoryEntry(
        from_status=booking.status,
        to_status=target,
        updated_by=actor.user_id,
        actor_role=actor.role,
        reason=reason,
        timestamp=now,
    ))
    updated.status = target
    updated.updated_at = now
    return updated


# ---------------------------------------------------------------------------#
# Provider transitions
# ---------------------------------------------------------------------------#

def accept(booking: BookingRecord, actor: Actor, now: datetime, message: Optional[str] = None,
           suggested_time: Optional[SuggestedTime] = None) -> BookingRecord:
    authorize(booking, actor, BookingAction.ACCEPT)
    target = require_source(booking, BookingAction.ACCEPT)

    updated = _move(booking, target, actor, now, reason=message)
    updated.provider_response = ProviderResponse(
        accepted=True,
        responded_at=now,
        message=message,
        suggested_time=suggested_time,
    )
    return updated


def reject(booking: BookingRecord, actor: Actor, now: datetime, reason: str) -> BookingRecord:
    authorize(booking, actor, BookingAction.REJECT)
    target = require_source(booking, BookingAction.REJECT)

    updated = _move(booking, target, actor, now, reason=reason)
    updated.provider_response = ProviderResponse(accepted=False, responded_at=now, message=reason)
    return updated


def start(booking: BookingRecord, actor: Actor, now: datetime) -> BookingRecord:
    authorize(booking, actor, BookingAction.START)
    target = require_source(booking, BookingAction.START)

    updated = _move(booking, target, actor, now, reason="Service started")
    updated.execution.started_at = now
    return updated


def complete(booking: BookingRecord, actor: Actor, now: datetime, completion_notes: Optional[str] = None,
             work_photos: Optional[List[str]] = None,
             auto_confirm_hours: int = settings.AUTO_CONFIRM_HOURS) -> BookingRecord:
    authorize(booking, actor, BookingAction.COMPLETE)
    target = require_source(booking, BookingAction.COMPLETE)

    updated = _move(booking, target, actor, now, reason="Service completed")
    execution = updated.execution
    execution.completed_at = now
    if execution.started_at is not None:
        # Wall clock minutes, unclamped.
        execution.actual_duration = round((now - execution.started_at).total_seconds() / 60)
    execution.completion_notes = completion_notes
    execution.work_photos = list(work_photos or [])
    updated.confirmation = ConfirmationRecord(auto_confirm_at=now + timedelta(hours=auto_confirm_hours))
    return updated


# ---------------------------------------------------------------------------#
# Client / system transitions
# ---------------------------------------------------------------------------#

def confirm(booking: BookingRecord, actor: Actor, now: datetime,
            method: ConfirmationMethod = ConfirmationMethod.MANUAL) -> BookingRecord:
    """
    Release the work to the client's satisfaction. Status stays ``completed``;
    the confirmation record is what changes, so no history entry is appended.
    """
    authorize(booking, actor, BookingAction.CONFIRM)
    if method == ConfirmationMethod.AUTO and actor.role != UserRole.SYSTEM:
        raise Forbidden("Only the scheduler can auto-confirm a booking")
    if booking.confirmation.client_confirmed:
        raise AlreadyConfirmed("Service already confirmed")
    require_source(booking, BookingAction.CONFIRM)
    if booking.dispute.is_disputed:
        raise InvalidTransition("A disputed booking is settled by its resolution, not by confirmation")
    if method == ConfirmationMethod.AUTO and not booking.should_auto_confirm(now):
        raise InvalidTransition("Auto-confirm deadline has not passed yet")

    updated = booking.model_copy(deep=True)
    updated.confirmation.client_confirmed = True
    updated.confirmation.confirmed_at = now
    updated.confirmation.confirmation_method = method
    updated.payment.status = PaymentStatus.COMPLETED
    updated.updated_at = now
    return updated


def cancel(booking: BookingRecord, actor: Actor, now: datetime, reason: str,
           window_hours: int = settings.CANCELLATION_WINDOW_HOURS) -> BookingRecord:
    """Admins force-cancel regardless of the cancellation window."""
    authorize(booking, actor, BookingAction.CANCEL)
    target = require_source(booking, BookingAction.CANCEL)
    if actor.role != UserRole.ADMIN and not booking.can_be_cancelled(now, window_hours):
        raise CancellationWindowClosed(
            f"Bookings can only be cancelled more than {window_hours} hours before the scheduled time",
            detail={"scheduled_at": booking.scheduled_at.isoformat()},
        )

    updated = _move(booking, target, actor, now, reason=reason)
    paid = booking.payment.status == PaymentStatus.PROCESSING
    updated.cancellation = CancellationRecord(
        cancelled_by=actor.user_id,
        cancelled_at=now,
        reason=reason,
        refund_amount=booking.pricing.total_amount if paid else 0,
    )
    return updated


def dispute(booking: BookingRecord, actor: Actor, now: datetime, reason: str, description: str,
            evidence: Optional[List[str]] = None) -> BookingRecord:
    authorize(booking, actor, BookingAction.DISPUTE)
    if booking.dispute.is_disputed:
        raise AlreadyDisputed("Booking is already disputed")
    target = require_source(booking, BookingAction.DISPUTE)

    updated = _move(booking, target, actor, now, reason=reason)
    updated.dispute = DisputeRecord(
        is_disputed=True,
        disputed_by=actor.user_id,
        disputed_at=now,
        reason=reason,
        description=description,
        evidence=list(evidence or []),
    )
    return updated


# ---------------------------------------------------------------------------#
# Admin transitions
# ---------------------------------------------------------------------------#

def resolve(booking: BookingRecord, actor: Actor, now: datetime, resolution: str, refund_amount: float = 0,
            refund_payment_code: Optional[str] = None) -> BookingRecord:
    """Back to ``completed`` with a resolution record. The confirmation record is left as is."""
    authorize(booking, actor, BookingAction.RESOLVE)
    target = require_source(booking, BookingAction.RESOLVE)
    if refund_amount < 0 or refund_amount > booking.pricing.total_amount:
        raise ValidationFailed(
            "Refund amount must be between 0 and the booking total",
            detail={"refund_amount": refund_amount, "total_amount": booking.pricing.total_amount},
        )

    updated = _move(booking, target, actor, now, reason=resolution)
    updated.dispute.resolution = DisputeResolution(
        resolved_by=actor.user_id,
        resolved_at=now,
        resolution=resolution,
        refund_amount=refund_amount,
        refund_payment_code=refund_payment_code,
    )
    if refund_payment_code:
        updated.payment.refund_payment_code = refund_payment_code
        updated.payment.refunded_at = now
        if refund_amount >= booking.pricing.total_amount:
            updated.payment.status = PaymentStatus.REFUNDED
    return updated
