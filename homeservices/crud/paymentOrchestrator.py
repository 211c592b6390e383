import logging
from datetime import timedelta
from math import ceil
from typing import Any, Callable, Dict, List, Optional

from beanie import PydanticObjectId

from homeservices.commonUtils.enumUtils import (
    BookingStatus,
    FeeType,
    GatewayEventType,
    NotificationTemplate,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    UserRole,
    MOBILE_WALLET_METHODS,
)
from homeservices.commonUtils.exceptions import (
    DuplicateKey,
    Forbidden,
    GatewayDeclined,
    GatewayError,
    InsufficientBalance,
    InvalidTransition,
    MarketplaceError,
    NotFound,
    ValidationFailed,
)
from homeservices.commonUtils.timeUtils import Clock, generate_code, utcnow
from homeservices.config.settings import settings, Settings
from homeservices.crud.ledgerPrimitives import calculate_platform_fee, payment_sources
from homeservices.crud.notificationService import NotificationDispatcher
from homeservices.crud.paymentGateways import GatewayRegistry
from homeservices.crud.walletLedger import WalletLedger
from homeservices.realtime.connectionRegistry import ConnectionRegistry, booking_room
from homeservices.repositories.bookingRepository import BookingRepository, apply_with_retry
from homeservices.repositories.mongoUtils import page_bounds
from homeservices.repositories.paymentRepository import PaymentRepository
from homeservices.repositories.userRepository import UserRepository
from homeservices.schemas.bookingSchema import BookingRecord
from homeservices.schemas.paymentSchema import (
    GatewayEvent,
    PaymentBreakdown,
    PaymentHistoryPage,
    PaymentMethodInfo,
    PaymentOutcome,
    PaymentRead,
    PaymentRecord,
    PaymentRequest,
    RefundDetails,
    WithdrawalDetails,
    WithdrawalResponse,
)
from homeservices.schemas.walletSchema import UserProfile, WalletRead

logger = logging.getLogger(__name__)

PAYMENT_CODE_PREFIXES = {
    PaymentType.ACTIVATION_FEE: "ACT",
    PaymentType.BOOKING_PAYMENT: "BKG",
    PaymentType.WITHDRAWAL: "WTH",
    PaymentType.REFUND: "REF",
}

MAX_CODE_ATTEMPTS = 5
WITHDRAWAL_METHODS = MOBILE_WALLET_METHODS | {PaymentMethod.BANK_TRANSFER}
OPEN_STATUSES = payment_sources(PaymentStatus.COMPLETED)

PAYMENT_METHOD_CATALOGUE = [
    PaymentMethodInfo(id=PaymentMethod.STRIPE, name="Credit/Debit Card", name_ar="بطاقة ائتمان/خصم",
                      type="international", icon="credit-card"),
    PaymentMethodInfo(id=PaymentMethod.VODAFONE_CASH, name="Vodafone Cash", name_ar="فودافون كاش",
                      type="local", icon="smartphone"),
    PaymentMethodInfo(id=PaymentMethod.ETISALAT_CASH, name="Etisalat Cash", name_ar="اتصالات كاش",
                      type="local", icon="smartphone"),
    PaymentMethodInfo(id=PaymentMethod.ORANGE_MONEY, name="Orange Money", name_ar="أورانج موني",
                      type="local", icon="smartphone"),
    PaymentMethodInfo(id=PaymentMethod.WE_PAY, name="WE Pay", name_ar="وي باي",
                      type="local", icon="smartphone"),
    PaymentMethodInfo(id=PaymentMethod.PAYPAL, name="PayPal", name_ar="باي بال",
                      type="international", icon="paypal"),
]


def refund_reference(booking_id) -> str:
    return f"refund:{booking_id}"


class PaymentOrchestrator:
    """
    Routes payments to gateways and keeps the payment ledger in step with them.

    Every attempt gets one ledger entry. Synchronous gateways settle inline;
    asynchronous ones stay pending until ``on_webhook`` (or a PayPal capture)
    reports the outcome. Settlement applies the side effect first and then moves
    the entry to completed with a conditional update, so redelivered events are
    no-ops and a failed side effect leaves the entry open for redelivery.
    """

    def __init__(self, payments: PaymentRepository, bookings: BookingRepository, users: UserRepository,
                 wallet_ledger: WalletLedger, gateways: GatewayRegistry,
                 notifier: Optional[NotificationDispatcher] = None,
                 realtime: Optional[ConnectionRegistry] = None,
                 clock: Clock = utcnow, config: Settings = settings):
        self.payments = payments
        self.bookings = bookings
        self.users = users
        self.wallet_ledger = wallet_ledger
        self.gateways = gateways
        self.notifier = notifier
        self.realtime = realtime
        self.clock = clock
        self.config = config

    # ---------------------------------------------------------------------------#
    # Catalogue
    # ---------------------------------------------------------------------------#

    def payment_methods(self) -> List[PaymentMethodInfo]:
        return [
            info.model_copy(update={"enabled": self.gateways.supports(info.id)})
            for info in PAYMENT_METHOD_CATALOGUE
        ]

    # ---------------------------------------------------------------------------#
    # Generic payment flow
    # ---------------------------------------------------------------------------#

    async def pay(self, request: PaymentRequest) -> PaymentOutcome:
        gateway = self.gateways.get(request.method)
        gateway.validate(request.amount, request.details)

        now = self.clock()
        payment = await self._insert_with_code(request.purpose, lambda code: PaymentRecord(
            payment_code=code,
            type=request.purpose,
            user_id=request.user_id,
            booking_id=request.booking_id,
            amount=request.amount,
            currency=request.currency,
            method=request.method,
            status=PaymentStatus.PENDING,
            breakdown=request.breakdown,
            description=request.description,
            metadata=request.metadata,
            initiated_at=now,
            created_at=now,
            updated_at=now,
        ))
        logger.info(
            f"Payment {payment.payment_code} initiated: {request.purpose.value} of "
            f"{request.amount} {request.currency} via {request.method.value}"
        )

        metadata = {"payment_code": payment.payment_code, "type": request.purpose.value,
                    "user_id": str(request.user_id)}
        if request.booking_id:
            metadata["booking_id"] = str(request.booking_id)

        try:
            result = await gateway.initiate(request.amount, request.currency, request.details, metadata)
        except (GatewayError, GatewayDeclined) as e:
            await self.payments.transition(payment.payment_code, OPEN_STATUSES, PaymentStatus.FAILED, {
                "failed_at": self.clock(),
                "gateway_response": {"status": "failed", "message": e.message, "error_code": e.code},
            })
            logger.warning(f"Payment {payment.payment_code} failed at the gateway: {e.message}")
            raise

        payment = await self.payments.update_fields(payment.payment_code, {
            "external_reference": result.reference,
            "gateway_response": {"status": result.status.value, "message": result.message},
        })

        if result.status == PaymentStatus.COMPLETED:
            payment = await self._settle(payment, via_webhook=False)

        return PaymentOutcome(
            payment_code=payment.payment_code,
            status=payment.status,
            reference=result.reference,
            amount=payment.amount,
            currency=payment.currency,
            client_secret=result.client_secret,
            approval_url=result.approval_url,
        )

    async def on_webhook(self, event: GatewayEvent) -> None:
        """
        Apply an asynchronous gateway outcome. Unknown references and entries that
        are already final are acknowledged without changes. A known event that
        fails to apply is raised so the gateway delivers it again.
        """
        payment = await self.payments.get_by_external_reference(event.reference)
        if payment is None:
            logger.info(f"Webhook {event.type.value} for unknown reference {event.reference} acknowledged")
            return

        if payment.status not in OPEN_STATUSES:
            logger.info(
                f"Webhook {event.type.value} for payment {payment.payment_code} ignored: "
                f"already {payment.status.value}"
            )
            return

        if event.type == GatewayEventType.PAYMENT_SUCCEEDED:
            await self._settle(payment, via_webhook=True)
        else:
            await self._fail(payment, event.message or "Payment failed at the gateway", via_webhook=True)

    async def _settle(self, payment: PaymentRecord, via_webhook: bool) -> PaymentRecord:
        try:
            needs_refund = await self._apply_side_effect(payment)
        except Exception:
            logger.critical(
                f"Payment {payment.payment_code} (reference {payment.external_reference}) succeeded "
                f"at the gateway but its side effect failed to apply",
                exc_info=True,
            )
            raise

        completed = await self.payments.transition(payment.payment_code, OPEN_STATUSES, PaymentStatus.COMPLETED, {
            "completed_at": self.clock(),
            "webhook_received": via_webhook,
        })
        if completed is None:
            logger.info(f"Payment {payment.payment_code} was completed concurrently, nothing left to apply")
            return await self.payments.get_by_code(payment.payment_code)

        logger.info(f"Payment {completed.payment_code} completed ({completed.type.value}, {completed.amount})")
        if needs_refund:
            await self._refund_orphaned_payment(completed)
        else:
            self._notify_completed(completed)
        return completed

    async def _fail(self, payment: PaymentRecord, message: str, via_webhook: bool) -> None:
        failed = await self.payments.transition(payment.payment_code, OPEN_STATUSES, PaymentStatus.FAILED, {
            "failed_at": self.clock(),
            "webhook_received": via_webhook,
            "gateway_response": {"status": "failed", "message": message},
        })
        if failed is None:
            logger.info(f"Payment {payment.payment_code} already settled, failure event ignored")
            return
        logger.warning(f"Payment {payment.payment_code} failed: {message}")

    async def _apply_side_effect(self, payment: PaymentRecord) -> bool:
        """Returns True when the money arrived for a booking that can no longer use it."""
        if payment.type == PaymentType.ACTIVATION_FEE:
            if not await self.users.mark_activated(payment.user_id, payment.payment_code, self.clock()):
                raise NotFound(f"Provider {payment.user_id} not found for activation")
            logger.info(f"Provider {payment.user_id} activated by payment {payment.payment_code}")
            return False

        if payment.type == PaymentType.BOOKING_PAYMENT:
            return await self._mark_booking_paid(payment)

        return False

    async def _mark_booking_paid(self, payment: PaymentRecord) -> bool:
        now = self.clock()
        orphaned = False

        def mutate(booking: BookingRecord) -> BookingRecord:
            nonlocal orphaned
            info = booking.payment
            orphaned = False
            if info.payment_code == payment.payment_code and info.status != PaymentStatus.PENDING:
                return booking
            if booking.status in (BookingStatus.CANCELLED, BookingStatus.REJECTED) or info.status != PaymentStatus.PENDING:
                orphaned = True
                return booking

            updated = booking.model_copy(deep=True)
            updated.payment.method = payment.method
            updated.payment.status = PaymentStatus.PROCESSING  # held until the client confirms
            updated.payment.payment_code = payment.payment_code
            updated.payment.external_reference = payment.external_reference
            updated.payment.paid_at = now
            updated.updated_at = now
            return updated

        _, booking = await apply_with_retry(self.bookings, payment.booking_id, mutate)
        if orphaned:
            logger.warning(
                f"Payment {payment.payment_code} captured for booking {booking.booking_code} "
                f"which is {booking.status.value} or already paid; refunding"
            )
        else:
            await self._broadcast(booking, "payment_status_changed", {"payment_status": booking.payment.status.value})
        return orphaned

    async def _refund_orphaned_payment(self, payment: PaymentRecord) -> None:
        booking = await self.bookings.get(payment.booking_id)
        await self.issue_refund(
            booking,
            payment.amount,
            reason="Payment received for a booking that can no longer be served",
            reference=f"refund:{payment.payment_code}",
            original=payment,
        )

    # ---------------------------------------------------------------------------#
    # Purpose-specific entry points
    # ---------------------------------------------------------------------------#

    async def pay_activation_fee(self, profile: UserProfile, method: PaymentMethod,
                                 details: Dict[str, Any]) -> PaymentOutcome:
        if profile.role != UserRole.PROVIDER:
            raise Forbidden("Only providers pay the activation fee")
        if profile.is_activated_provider:
            raise ValidationFailed("Provider account is already activated")

        amount = calculate_platform_fee(0, FeeType.ACTIVATION, self.config)
        return await self.pay(PaymentRequest(
            purpose=PaymentType.ACTIVATION_FEE,
            amount=amount,
            method=method,
            user_id=profile.id,
            currency=self.config.DEFAULT_CURRENCY,
            details=details,
            breakdown=PaymentBreakdown(platform_fee=amount, total=amount),
            description="Provider activation fee",
        ))

    async def pay_for_booking(self, client_id: PydanticObjectId, booking_id: PydanticObjectId,
                              method: PaymentMethod, details: Dict[str, Any]) -> PaymentOutcome:
        booking = await self.bookings.get(booking_id)
        if booking is None:
            raise NotFound("Booking not found")
        if booking.client_id != client_id:
            raise Forbidden("Only the booking's client can pay for it")
        if booking.status != BookingStatus.ACCEPTED:
            raise InvalidTransition(
                "Only accepted bookings can be paid",
                detail={"status": booking.status.value},
            )
        if booking.payment.status != PaymentStatus.PENDING:
            raise ValidationFailed("Booking is already paid", detail={"payment_status": booking.payment.status.value})

        pricing = booking.pricing
        return await self.pay(PaymentRequest(
            purpose=PaymentType.BOOKING_PAYMENT,
            amount=pricing.total_amount,
            method=method,
            user_id=client_id,
            booking_id=booking.id,
            currency=pricing.currency,
            details=details,
            breakdown=PaymentBreakdown(
                service_amount=pricing.service_price,
                add_ons_amount=pricing.add_ons_price,
                platform_fee=pricing.platform_fee,
                total=pricing.total_amount,
            ),
            description=f"Payment for booking {booking.booking_code}",
            metadata={"booking_code": booking.booking_code},
        ))

    async def capture_paypal(self, user_id: PydanticObjectId, reference: str) -> PaymentOutcome:
        payment = await self.payments.get_by_external_reference(reference)
        if payment is None:
            raise NotFound("Payment not found")
        if payment.user_id != user_id:
            raise Forbidden("This payment belongs to another user")
        if payment.method != PaymentMethod.PAYPAL:
            raise ValidationFailed("Only PayPal orders can be captured")

        if payment.status in OPEN_STATUSES:
            status = await self.gateways.get(PaymentMethod.PAYPAL).confirm(reference)
            if status == PaymentStatus.COMPLETED:
                await self.on_webhook(GatewayEvent(type=GatewayEventType.PAYMENT_SUCCEEDED, reference=reference))
            elif status == PaymentStatus.FAILED:
                await self.on_webhook(GatewayEvent(type=GatewayEventType.PAYMENT_FAILED, reference=reference,
                                                   message="PayPal payment capture failed"))
            payment = await self.payments.get_by_code(payment.payment_code)

        return PaymentOutcome(
            payment_code=payment.payment_code,
            status=payment.status,
            reference=reference,
            amount=payment.amount,
            currency=payment.currency,
        )

    async def request_withdrawal(self, profile: UserProfile, amount: float, method: PaymentMethod,
                                 account_details: Dict[str, Any]) -> WithdrawalResponse:
        if profile.role != UserRole.PROVIDER:
            raise Forbidden("Only providers can request withdrawals")
        if not profile.is_activated_provider:
            raise Forbidden("Provider account must be activated to request withdrawals")
        if method not in WITHDRAWAL_METHODS:
            raise ValidationFailed(f"Unsupported withdrawal method: {method.value}")
        if amount < self.config.MINIMUM_WITHDRAWAL:
            raise ValidationFailed(
                f"Minimum withdrawal amount is {self.config.MINIMUM_WITHDRAWAL} {self.config.DEFAULT_CURRENCY}"
            )

        fee = calculate_platform_fee(amount, FeeType.WITHDRAWAL, self.config)
        wallet = await self.wallet_ledger.get_wallet(profile.id)
        if wallet.balance < amount + fee:
            raise InsufficientBalance("Insufficient balance", detail={
                "current_balance": wallet.balance,
                "requested_amount": amount,
                "withdrawal_fee": fee,
                "total_required": round(amount + fee, 2),
            })

        now = self.clock()
        estimated_completion = now + timedelta(hours=24)
        payment = await self._insert_with_code(PaymentType.WITHDRAWAL, lambda code: PaymentRecord(
            payment_code=code,
            type=PaymentType.WITHDRAWAL,
            user_id=profile.id,
            amount=-amount,
            currency=self.config.DEFAULT_CURRENCY,
            method=method,
            status=PaymentStatus.PROCESSING,
            withdrawal=WithdrawalDetails(
                account_details=account_details,
                processing_fee=fee,
                net_amount=amount,
                estimated_completion=estimated_completion,
            ),
            description="Provider withdrawal",
            initiated_at=now,
            created_at=now,
            updated_at=now,
        ))

        try:
            wallet = await self.wallet_ledger.settle_withdrawal(profile.id, amount, fee, ref=payment.payment_code)
        except MarketplaceError as e:
            await self.payments.transition(payment.payment_code, OPEN_STATUSES, PaymentStatus.FAILED, {
                "failed_at": self.clock(),
                "gateway_response": {"status": "failed", "message": e.message, "error_code": e.code},
            })
            logger.warning(f"Withdrawal {payment.payment_code} failed: {e.message}")
            raise

        logger.info(f"Withdrawal {payment.payment_code} of {amount} (fee {fee}) settled for provider {profile.id}")
        if self.notifier:
            self.notifier.notify(profile.id, NotificationTemplate.WITHDRAWAL_PROCESSED, {
                "payment_code": payment.payment_code,
                "amount": amount,
                "fee": fee,
                "currency": payment.currency,
                "method": method.value,
                "estimated_completion": estimated_completion.isoformat(),
            }, profile.language)

        return WithdrawalResponse(
            payment_code=payment.payment_code,
            amount=amount,
            withdrawal_fee=fee,
            net_amount=amount,
            new_balance=wallet.balance,
            estimated_completion=estimated_completion,
        )

    async def issue_refund(self, booking: BookingRecord, amount: float, reason: str,
                           reference: Optional[str] = None,
                           original: Optional[PaymentRecord] = None) -> PaymentRecord:
        """
        Record a completed ``refund`` entry for the booking's client. Keyed on
        ``reference`` (``refund:<booking id>`` by default): issuing it again returns
        the existing entry. A full refund also marks the original payment refunded.
        """
        if amount <= 0:
            raise ValidationFailed("Refund amount must be greater than zero")
        reference = reference or refund_reference(booking.id)

        existing = await self.payments.get_by_external_reference(reference)
        if existing is not None:
            logger.info(f"Refund {reference} already issued as {existing.payment_code}")
            return existing

        now = self.clock()
        try:
            refund = await self._insert_with_code(PaymentType.REFUND, lambda code: PaymentRecord(
                payment_code=code,
                type=PaymentType.REFUND,
                user_id=booking.client_id,
                booking_id=booking.id,
                amount=amount,
                currency=booking.pricing.currency,
                method=PaymentMethod.ADMIN_REFUND,
                status=PaymentStatus.COMPLETED,
                external_reference=reference,
                refund=RefundDetails(refund_amount=amount, reason=reason, refunded_at=now),
                description=f"Refund for booking {booking.booking_code}",
                initiated_at=now,
                completed_at=now,
                created_at=now,
                updated_at=now,
            ))
        except DuplicateKey:
            existing = await self.payments.get_by_external_reference(reference)
            if existing is None:
                raise
            logger.info(f"Refund {reference} issued concurrently as {existing.payment_code}")
            return existing

        logger.info(f"Refund {refund.payment_code} of {amount} issued to client {booking.client_id} ({reference})")

        original_code = original.payment_code if original else booking.payment.payment_code
        original_amount = original.amount if original else booking.pricing.total_amount
        if original_code and amount >= original_amount:
            await self.payments.transition(original_code, payment_sources(PaymentStatus.REFUNDED), PaymentStatus.REFUNDED, {
                "refund": {
                    "refund_payment_code": refund.payment_code,
                    "refund_amount": amount,
                    "reason": reason,
                    "refunded_at": now,
                },
            })
        return refund

    # ---------------------------------------------------------------------------#
    # Reads
    # ---------------------------------------------------------------------------#

    async def history(self, user_id: PydanticObjectId, payment_type: Optional[PaymentType] = None,
                      status: Optional[PaymentStatus] = None, page: int = 1, limit: int = 10) -> PaymentHistoryPage:
        skip, limit = page_bounds(page, limit)
        items, total = await self.payments.find_page(user_id, payment_type, status, skip, limit)
        return PaymentHistoryPage(
            payments=[PaymentRead.from_record(item) for item in items],
            page=max(page, 1),
            limit=limit,
            total=total,
            pages=ceil(total / limit) if total else 0,
        )

    async def get_wallet(self, profile: UserProfile) -> WalletRead:
        if profile.role != UserRole.PROVIDER:
            raise Forbidden("Only providers have a wallet")
        return WalletRead.from_wallet(await self.wallet_ledger.get_wallet(profile.id))

    # ---------------------------------------------------------------------------#
    # Helpers
    # ---------------------------------------------------------------------------#

    async def _insert_with_code(self, payment_type: PaymentType,
                                build: Callable[[str], PaymentRecord]) -> PaymentRecord:
        prefix = PAYMENT_CODE_PREFIXES[payment_type]
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            try:
                return await self.payments.insert(build(generate_code(prefix)))
            except DuplicateKey as e:
                keys = e.detail.get("keys", []) if isinstance(e.detail, dict) else []
                if "external_reference" in keys:
                    raise
                logger.info(f"Payment code collision on attempt {attempt}, regenerating")
        raise DuplicateKey("Could not allocate a unique payment code")

    def _notify_completed(self, payment: PaymentRecord) -> None:
        if self.notifier is None:
            return
        data = {
            "payment_code": payment.payment_code,
            "amount": payment.amount,
            "currency": payment.currency,
            "method": payment.method.value,
            "booking_code": payment.metadata.get("booking_code"),
        }
        if payment.type == PaymentType.ACTIVATION_FEE:
            self.notifier.notify(payment.user_id, NotificationTemplate.PROVIDER_ACTIVATION, data)
        elif payment.type == PaymentType.BOOKING_PAYMENT:
            self.notifier.notify(payment.user_id, NotificationTemplate.PAYMENT_CONFIRMATION, data)

    async def _broadcast(self, booking: BookingRecord, event: str, data: Dict[str, Any]) -> None:
        if self.realtime is None:
            return
        try:
            await self.realtime.broadcast(booking_room(booking.id), event, {
                "booking_id": str(booking.id),
                "booking_code": booking.booking_code,
                **data,
            })
        except Exception as e:
            logger.warning(f"Broadcast of {event} for booking {booking.booking_code} failed: {e}")
