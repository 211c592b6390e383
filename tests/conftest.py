"""In-memory stand-ins for the Mongo repositories, plus a wired-up marketplace."""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import pytest
from beanie import PydanticObjectId

from homeservices.commonUtils.enumUtils import (
    BookingStatus,
    Language,
    PaymentMethod,
    PaymentStatus,
    UserRole,
)
from homeservices.commonUtils.exceptions import DuplicateKey
from homeservices.config.settings import Settings
from homeservices.crud.bookingService import BookingService
from homeservices.crud.bookingSettlement import BookingSettlement, outstanding
from homeservices.crud.disputeService import DisputeService
from homeservices.crud.paymentGateways import (
    GatewayRegistry,
    GatewayResult,
    MobileWalletGateway,
    PayPalGateway,
)
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.crud.walletLedger import WalletLedger
from homeservices.realtime.connectionRegistry import ConnectionRegistry
from homeservices.repositories.bookingRepository import BookingQuery
from homeservices.schedulers.auto_confirm_scheduler import AutoConfirmSweep
from homeservices.schemas.bookingSchema import (
    Actor,
    AddOn,
    BookingCreate,
    BookingLocation,
    BookingRecord,
    ScheduledTime,
    ServiceDetails,
)
from homeservices.schemas.paymentSchema import PaymentRecord
from homeservices.schemas.serviceSchema import ServiceListing, ServicePricing
from homeservices.schemas.walletSchema import ProviderInfo, UserProfile, Wallet

START = datetime(2025, 3, 10, 9, 0)


# ---------------------------------------------------------------------------#
# Repositories
# ---------------------------------------------------------------------------#

class InMemoryBookingRepository:
    """Yields to the loop before every read and write so concurrent callers interleave."""

    def __init__(self):
        self.items: Dict[PydanticObjectId, BookingRecord] = {}

    async def insert(self, booking: BookingRecord) -> BookingRecord:
        await asyncio.sleep(0)
        if any(existing.booking_code == booking.booking_code for existing in self.items.values()):
            raise DuplicateKey("Booking code already exists")
        stored = booking.model_copy(update={"id": booking.id or PydanticObjectId()}, deep=True)
        self.items[stored.id] = stored
        return stored.model_copy(deep=True)

    async def get(self, booking_id: PydanticObjectId) -> Optional[BookingRecord]:
        await asyncio.sleep(0)
        booking = self.items.get(booking_id)
        return booking.model_copy(deep=True) if booking else None

    async def save_if_version(self, booking: BookingRecord, expected_version: int) -> bool:
        await asyncio.sleep(0)
        current = self.items.get(booking.id)
        if current is None or current.version != expected_version:
            return False
        self.items[booking.id] = booking.model_copy(deep=True)
        return True

    async def find_due_for_auto_confirm(self, now: datetime, limit: int) -> List[BookingRecord]:
        await asyncio.sleep(0)
        due = [booking for booking in self.items.values() if booking.should_auto_confirm(now)]
        due.sort(key=lambda booking: booking.confirmation.auto_confirm_at)
        return [booking.model_copy(deep=True) for booking in due[:limit]]

    async def find_unsettled(self, limit: int) -> List[BookingRecord]:
        await asyncio.sleep(0)
        unsettled = sorted((booking for booking in self.items.values() if outstanding(booking)),
                           key=lambda booking: booking.updated_at)
        return [booking.model_copy(deep=True) for booking in unsettled[:limit]]

    async def find_page(self, query: BookingQuery, skip: int, limit: int,
                        newest_dispute_first: bool = False):
        matches = self._matching(query)
        if newest_dispute_first:
            matches.sort(key=lambda booking: booking.dispute.disputed_at or datetime.min, reverse=True)
        else:
            matches.sort(key=lambda booking: booking.created_at, reverse=True)
        return [booking.model_copy(deep=True) for booking in matches[skip:skip + limit]], len(matches)

    async def count(self, query: BookingQuery) -> int:
        return len(self._matching(query))

    async def status_breakdown(self, query: BookingQuery) -> List[dict]:
        rows: Dict[BookingStatus, dict] = {}
        for booking in self._matching(query):
            row = rows.setdefault(booking.status, {"status": booking.status, "count": 0, "total_amount": 0})
            row["count"] += 1
            row["total_amount"] += booking.pricing.total_amount
        return list(rows.values())

    def _matching(self, query: BookingQuery) -> List[BookingRecord]:
        def matches(booking: BookingRecord) -> bool:
            return (
                    (query.client_id is None or booking.client_id == query.client_id)
                    and (query.provider_id is None or booking.provider_id == query.provider_id)
                    and (query.status is None or booking.status == query.status)
                    and (query.created_after is None or booking.created_at >= query.created_after)
            )

        return [booking for booking in self.items.values() if matches(booking)]


class InMemoryPaymentRepository:
    def __init__(self):
        self.items: Dict[str, PaymentRecord] = {}

    async def insert(self, payment: PaymentRecord) -> PaymentRecord:
        await asyncio.sleep(0)
        if payment.payment_code in self.items:
            raise DuplicateKey("Payment reference already exists", detail={"keys": ["payment_code"]})
        if payment.external_reference is not None and any(
                existing.external_reference == payment.external_reference for existing in self.items.values()
        ):
            raise DuplicateKey("Payment reference already exists", detail={"keys": ["external_reference"]})
        stored = payment.model_copy(update={"id": PydanticObjectId()}, deep=True)
        self.items[stored.payment_code] = stored
        return stored.model_copy(deep=True)

    async def get_by_code(self, payment_code: str) -> Optional[PaymentRecord]:
        payment = self.items.get(payment_code)
        return payment.model_copy(deep=True) if payment else None

    async def get_by_external_reference(self, reference: str) -> Optional[PaymentRecord]:
        await asyncio.sleep(0)
        for payment in self.items.values():
            if payment.external_reference == reference:
                return payment.model_copy(deep=True)
        return None

    async def update_fields(self, payment_code: str, fields: Dict[str, Any]) -> Optional[PaymentRecord]:
        current = self.items.get(payment_code)
        if current is None:
            return None
        self.items[payment_code] = self._merge(current, fields)
        return self.items[payment_code].model_copy(deep=True)

    async def transition(self, payment_code: str, from_statuses: Iterable[PaymentStatus],
                         to_status: PaymentStatus, fields: Optional[Dict[str, Any]] = None):
        await asyncio.sleep(0)
        current = self.items.get(payment_code)
        if current is None or current.status not in set(from_statuses):
            return None
        self.items[payment_code] = self._merge(current, {**(fields or {}), "status": to_status})
        return self.items[payment_code].model_copy(deep=True)

    async def find_page(self, user_id, payment_type, status, skip: int, limit: int):
        matches = [
            payment for payment in self.items.values()
            if payment.user_id == user_id
               and (payment_type is None or payment.type == payment_type)
               and (status is None or payment.status == status)
        ]
        matches.sort(key=lambda payment: payment.created_at, reverse=True)
        return [payment.model_copy(deep=True) for payment in matches[skip:skip + limit]], len(matches)

    @staticmethod
    def _merge(payment: PaymentRecord, fields: Dict[str, Any]) -> PaymentRecord:
        data = payment.model_dump()
        data.update(fields)
        return PaymentRecord.model_validate(data)

    def of_type(self, payment_type) -> List[PaymentRecord]:
        return [payment for payment in self.items.values() if payment.type == payment_type]


class InMemoryUserRepository:
    def __init__(self):
        self.profiles: Dict[PydanticObjectId, UserProfile] = {}

    def add(self, role: UserRole, activated: bool = True, name: str = "Test User",
            language: Language = Language.ENGLISH) -> UserProfile:
        user_id = PydanticObjectId()
        provider_info = None
        if role == UserRole.PROVIDER:
            provider_info = ProviderInfo(
                business_name="Fix It Fast",
                is_activated=activated,
                activation_fee_paid=activated,
            )
        profile = UserProfile(
            id=user_id,
            email=f"{role.value}-{user_id}@example.com",
            name=name,
            role=role,
            language=language,
            provider_info=provider_info,
        )
        self.profiles[user_id] = profile
        return profile

    def set_wallet(self, user_id: PydanticObjectId, wallet: Wallet) -> None:
        self.profiles[user_id].provider_info.wallet = wallet

    def wallet(self, user_id: PydanticObjectId) -> Wallet:
        return self.profiles[user_id].provider_info.wallet

    async def get_profile(self, user_id: PydanticObjectId) -> Optional[UserProfile]:
        profile = self.profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    async def get_wallet(self, user_id: PydanticObjectId) -> Optional[Wallet]:
        await asyncio.sleep(0)
        profile = self.profiles.get(user_id)
        if profile is None or profile.role != UserRole.PROVIDER:
            return None
        return profile.provider_info.wallet.model_copy(deep=True)

    async def save_wallet_if_version(self, user_id: PydanticObjectId, wallet: Wallet,
                                     expected_version: int) -> bool:
        await asyncio.sleep(0)
        profile = self.profiles.get(user_id)
        if profile is None or profile.provider_info.wallet.version != expected_version:
            return False
        profile.provider_info.wallet = wallet.model_copy(deep=True)
        return True

    async def mark_activated(self, user_id: PydanticObjectId, payment_code: str, now: datetime) -> bool:
        profile = self.profiles.get(user_id)
        if profile is None or profile.role != UserRole.PROVIDER:
            return False
        profile.provider_info.is_activated = True
        profile.provider_info.activation_fee_paid = True
        profile.provider_info.activation_payment_code = payment_code
        profile.provider_info.activation_date = now
        return True


class InMemoryServiceRepository:
    def __init__(self):
        self.items: Dict[PydanticObjectId, ServiceListing] = {}

    def add(self, provider_id: PydanticObjectId, price: float = 200, **overrides) -> ServiceListing:
        service = ServiceListing(
            id=PydanticObjectId(),
            provider_id=provider_id,
            name="Kitchen sink repair",
            category="plumbing",
            pricing=ServicePricing(amount=price),
            estimated_duration=90,
            is_active=overrides.pop("is_active", True),
            is_approved=overrides.pop("is_approved", True),
        )
        self.items[service.id] = service
        return service

    async def get(self, service_id: PydanticObjectId) -> Optional[ServiceListing]:
        return self.items.get(service_id)


# ---------------------------------------------------------------------------#
# Collaborators
# ---------------------------------------------------------------------------#

class FrozenClock:
    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent: List[tuple] = []

    def notify(self, user_id, template, data, language=None):
        self.sent.append((user_id, template, data))

    def templates_for(self, user_id) -> list:
        return [template for recipient, template, _ in self.sent if recipient == user_id]


class ScriptedCardGateway:
    """Asynchronous gateway that hands out predictable references."""
    asynchronous = True

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.initiated: List[dict] = []

    def validate(self, amount, details):
        pass

    async def initiate(self, amount, currency, details, metadata) -> GatewayResult:
        if self.error is not None:
            raise self.error
        self.initiated.append(metadata)
        reference = f"pi_test_{len(self.initiated)}"
        return GatewayResult(status=PaymentStatus.PENDING, reference=reference, client_secret=f"{reference}_secret")

    async def confirm(self, reference) -> PaymentStatus:
        return PaymentStatus.COMPLETED


async def _no_sleep(_seconds):
    await asyncio.sleep(0)


def quiet_gateways(card: Optional[ScriptedCardGateway] = None) -> GatewayRegistry:
    """Registry whose simulated gateways never fail and never wait."""
    gateways = {
        method: MobileWalletGateway(method, failure_rate=0, latency_seconds=0, sleep=_no_sleep)
        for method in (PaymentMethod.VODAFONE_CASH, PaymentMethod.ETISALAT_CASH,
                       PaymentMethod.ORANGE_MONEY, PaymentMethod.WE_PAY)
    }
    gateways[PaymentMethod.STRIPE] = card or ScriptedCardGateway()
    gateways[PaymentMethod.PAYPAL] = PayPalGateway(failure_rate=0, latency_seconds=0, sleep=_no_sleep)
    return GatewayRegistry(gateways)


# ---------------------------------------------------------------------------#
# Wired marketplace
# ---------------------------------------------------------------------------#

@dataclass
class Marketplace:
    clock: FrozenClock
    config: Settings
    bookings_repo: InMemoryBookingRepository
    payments_repo: InMemoryPaymentRepository
    users: InMemoryUserRepository
    services: InMemoryServiceRepository
    notifier: RecordingNotifier
    realtime: ConnectionRegistry
    card: ScriptedCardGateway
    ledger: WalletLedger
    payments: PaymentOrchestrator
    settlement: BookingSettlement
    bookings: BookingService
    disputes: DisputeService
    sweep: AutoConfirmSweep
    client: UserProfile = field(init=False)
    provider: UserProfile = field(init=False)
    admin: UserProfile = field(init=False)

    def __post_init__(self):
        self.client = self.users.add(UserRole.CLIENT, name="Mona")
        self.provider = self.users.add(UserRole.PROVIDER, name="Karim")
        self.admin = self.users.add(UserRole.ADMIN, name="Ops")

    @property
    def client_actor(self) -> Actor:
        return Actor(user_id=self.client.id, role=UserRole.CLIENT)

    @property
    def provider_actor(self) -> Actor:
        return Actor(user_id=self.provider.id, role=UserRole.PROVIDER)

    @property
    def admin_actor(self) -> Actor:
        return Actor(user_id=self.admin.id, role=UserRole.ADMIN)

    def booking_request(self, service: ServiceListing, hours_ahead: int = 24, add_ons=None,
                        method: PaymentMethod = PaymentMethod.VODAFONE_CASH) -> BookingCreate:
        scheduled = self.clock() + timedelta(hours=hours_ahead)
        return BookingCreate(
            service_id=service.id,
            scheduled_date=scheduled.replace(hour=0, minute=0),
            scheduled_time=ScheduledTime(start=scheduled.strftime("%H:%M")),
            location=BookingLocation(address="12 Tahrir St", city="Cairo", governorate="Cairo"),
            service_details=ServiceDetails(add_ons=add_ons or []),
            payment_method=method,
        )

    async def new_booking(self, price: float = 200, add_on_price: float = 50, hours_ahead: int = 24) -> BookingRecord:
        service = self.services.add(self.provider.id, price=price)
        add_ons = [AddOn(name="Replacement valve", price=add_on_price)] if add_on_price else []
        return await self.bookings.create(self.client_actor, self.booking_request(service, hours_ahead, add_ons))

    async def pay(self, booking: BookingRecord, method: PaymentMethod = PaymentMethod.VODAFONE_CASH):
        return await self.payments.pay_for_booking(
            self.client.id, booking.id, method, {"phone_number": "01012345678", "email": "mona@example.com"}
        )

    async def completed_booking(self, paid: bool = True) -> BookingRecord:
        booking = await self.new_booking()
        await self.bookings.accept(booking.id, self.provider_actor)
        if paid:
            await self.pay(booking)
        await self.bookings.start(booking.id, self.provider_actor)
        self.clock.advance(minutes=95)
        return await self.bookings.complete(booking.id, self.provider_actor)


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def users() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def market(config) -> Marketplace:
    clock = FrozenClock()
    bookings_repo = InMemoryBookingRepository()
    payments_repo = InMemoryPaymentRepository()
    users = InMemoryUserRepository()
    services = InMemoryServiceRepository()
    notifier = RecordingNotifier()
    realtime = ConnectionRegistry()
    card = ScriptedCardGateway()

    ledger = WalletLedger(users)
    payments = PaymentOrchestrator(
        payments_repo, bookings_repo, users, ledger, quiet_gateways(card),
        notifier=notifier, realtime=realtime, clock=clock, config=config,
    )
    settlement = BookingSettlement(bookings_repo, ledger, payments, clock=clock)
    bookings = BookingService(
        bookings_repo, services, users, ledger, payments,
        notifier=notifier, realtime=realtime, clock=clock, config=config, settlement=settlement,
    )
    disputes = DisputeService(bookings_repo, payments, settlement, notifier=notifier, realtime=realtime, clock=clock)
    sweep = AutoConfirmSweep(bookings_repo, bookings, clock=clock, batch_size=100, concurrency=5)

    return Marketplace(
        clock=clock,
        config=config,
        bookings_repo=bookings_repo,
        payments_repo=payments_repo,
        users=users,
        services=services,
        notifier=notifier,
        realtime=realtime,
        card=card,
        ledger=ledger,
        payments=payments,
        settlement=settlement,
        bookings=bookings,
        disputes=disputes,
        sweep=sweep,
    )
