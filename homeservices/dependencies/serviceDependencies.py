from fastapi import Depends, Request

from homeservices.commonUtils.enumUtils import UserRole
from homeservices.commonUtils.exceptions import Forbidden
from homeservices.config.container import ServiceContainer
from homeservices.crud.bookingService import BookingService
from homeservices.crud.disputeService import DisputeService
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.crud.userService import current_active_user
from homeservices.models.userModel import User
from homeservices.schedulers.auto_confirm_scheduler import AutoConfirmSweep
from homeservices.schemas.bookingSchema import Actor
from homeservices.schemas.walletSchema import UserProfile


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_booking_service(services: ServiceContainer = Depends(get_services)) -> BookingService:
    return services.bookings


def get_payment_orchestrator(services: ServiceContainer = Depends(get_services)) -> PaymentOrchestrator:
    return services.payments


def get_dispute_service(services: ServiceContainer = Depends(get_services)) -> DisputeService:
    return services.disputes


def get_auto_confirm_sweep(services: ServiceContainer = Depends(get_services)) -> AutoConfirmSweep:
    return services.sweep


def is_admin(user: User) -> bool:
    return user.is_superuser or user.role == UserRole.ADMIN


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=UserRole.ADMIN if is_admin(user) else user.role)


async def current_actor(user: User = Depends(current_active_user)) -> Actor:
    return actor_for(user)


async def current_profile(user: User = Depends(current_active_user)) -> UserProfile:
    return UserProfile(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        language=user.language,
        is_active=user.is_active,
        provider_info=user.provider_info,
    )


# Ensure only superusers/admins can access
async def require_admin(user: User = Depends(current_active_user)) -> Actor:
    if not is_admin(user):
        raise Forbidden("Admin access required")
    return actor_for(user)
