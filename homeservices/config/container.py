from dataclasses import dataclass
from typing import Optional

from homeservices.crud.bookingService import BookingService
from homeservices.crud.bookingSettlement import BookingSettlement
from homeservices.crud.disputeService import DisputeService
from homeservices.crud.notificationService import NotificationDispatcher
from homeservices.crud.paymentGateways import GatewayRegistry
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.crud.walletLedger import WalletLedger
from homeservices.realtime.connectionRegistry import ConnectionRegistry
from homeservices.repositories.bookingRepository import MongoBookingRepository
from homeservices.repositories.paymentRepository import MongoPaymentRepository
from homeservices.repositories.serviceRepository import MongoServiceRepository
from homeservices.repositories.userRepository import MongoUserRepository
from homeservices.schedulers.auto_confirm_scheduler import AutoConfirmSweep


@dataclass
class ServiceContainer:
    """The core services of one application instance, kept on ``app.state.services``."""
    realtime: ConnectionRegistry
    notifier: NotificationDispatcher
    payments: PaymentOrchestrator
    bookings: BookingService
    disputes: DisputeService
    sweep: AutoConfirmSweep


def build_services(realtime: ConnectionRegistry, gateways: Optional[GatewayRegistry] = None) -> ServiceContainer:
    booking_repo = MongoBookingRepository()
    payment_repo = MongoPaymentRepository()
    user_repo = MongoUserRepository()
    service_repo = MongoServiceRepository()

    notifier = NotificationDispatcher(user_repo, realtime)
    wallet_ledger = WalletLedger(user_repo)
    payments = PaymentOrchestrator(
        payment_repo, booking_repo, user_repo, wallet_ledger,
        gateways or GatewayRegistry.default(),
        notifier=notifier, realtime=realtime,
    )
    settlement = BookingSettlement(booking_repo, wallet_ledger, payments)
    bookings = BookingService(
        booking_repo, service_repo, user_repo, wallet_ledger, payments,
        notifier=notifier, realtime=realtime, settlement=settlement,
    )
    disputes = DisputeService(booking_repo, payments, settlement, notifier=notifier, realtime=realtime)
    sweep = AutoConfirmSweep(booking_repo, bookings)

    return ServiceContainer(
        realtime=realtime,
        notifier=notifier,
        payments=payments,
        bookings=bookings,
        disputes=disputes,
        sweep=sweep,
    )
