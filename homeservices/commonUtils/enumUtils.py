from enum import Enum


class UserRole(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"
    SYSTEM = "system"  # Scheduler and other in-process actors, never a stored user


class BookingStatus(str, Enum):
    PENDING = "pending"  # Waiting for provider response (initial state)
    ACCEPTED = "accepted"  # Provider agreed, awaiting start
    REJECTED = "rejected"  # Provider explicitly rejects (terminal)
    IN_PROGRESS = "in_progress"  # Work has started
    COMPLETED = "completed"  # Provider marked work done, awaiting client confirmation
    CANCELLED = "cancelled"  # Cancelled before work started (terminal)
    DISPUTED = "disputed"  # Awaiting admin resolution


class BookingAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    START = "start"
    COMPLETE = "complete"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    DISPUTE = "dispute"
    RESOLVE = "resolve"


class ConfirmationMethod(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class PaymentType(str, Enum):
    ACTIVATION_FEE = "activation_fee"
    BOOKING_PAYMENT = "booking_payment"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    STRIPE = "stripe"
    VODAFONE_CASH = "vodafone_cash"
    ETISALAT_CASH = "etisalat_cash"
    ORANGE_MONEY = "orange_money"
    WE_PAY = "we_pay"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank_transfer"  # Withdrawals only
    ADMIN_REFUND = "admin_refund"  # Ledger-only, issued on dispute resolution


MOBILE_WALLET_METHODS = {
    PaymentMethod.VODAFONE_CASH,
    PaymentMethod.ETISALAT_CASH,
    PaymentMethod.ORANGE_MONEY,
    PaymentMethod.WE_PAY,
}

# Methods a client or provider may choose when paying
PAYABLE_METHODS = MOBILE_WALLET_METHODS | {PaymentMethod.STRIPE, PaymentMethod.PAYPAL}


class FeeType(str, Enum):
    BOOKING = "booking"
    ACTIVATION = "activation"
    WITHDRAWAL = "withdrawal"


class GatewayEventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"


class NotificationTemplate(str, Enum):
    BOOKING_CONFIRMATION = "bookingConfirmation"
    BOOKING_STATUS_UPDATE = "bookingStatusUpdate"
    PAYMENT_CONFIRMATION = "paymentConfirmation"
    PROVIDER_ACTIVATION = "providerActivation"
    WITHDRAWAL_PROCESSED = "withdrawalProcessed"
    DISPUTE_UPDATE = "disputeUpdate"


class Language(str, Enum):
    ARABIC = "ar"
    ENGLISH = "en"
