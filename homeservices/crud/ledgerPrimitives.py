"""
Pure ledger arithmetic: fees, the wallet movements and the payment status rules.

Nothing here touches storage. Wallet functions take a wallet value and return a new
one; ``crud/walletLedger.py`` is the only place those values get persisted.
"""
from typing import Dict, Set

from homeservices.commonUtils.enumUtils import FeeType, PaymentStatus
from homeservices.commonUtils.exceptions import InsufficientBalance, ValidationFailed
from homeservices.config.settings import settings, Settings
from homeservices.schemas.walletSchema import Wallet


def _money(value: float) -> float:
    return round(value, 2)


def _require_positive(amount: float) -> None:
    if amount is None or amount <= 0:
        raise ValidationFailed("Amount must be greater than zero", detail={"amount": amount})


# ---------------------------------------------------------------------------#
# Fees
# ---------------------------------------------------------------------------#

def calculate_platform_fee(amount: float, fee_type: FeeType, config: Settings = settings) -> float:
    if fee_type == FeeType.BOOKING:
        return _money(config.PLATFORM_FEE)
    if fee_type == FeeType.ACTIVATION:
        return _money(config.ACTIVATION_FEE)
    if fee_type == FeeType.WITHDRAWAL:
        return _money(max(amount * config.WITHDRAWAL_FEE_RATE, config.WITHDRAWAL_FEE_MINIMUM))
    raise ValidationFailed(f"Unknown fee type: {fee_type}")


# ---------------------------------------------------------------------------#
# Wallet movements
# ---------------------------------------------------------------------------#

def add_pending_earnings(wallet: Wallet, amount: float) -> Wallet:
    _require_positive(amount)
    return wallet.model_copy(update={"pending_balance": _money(wallet.pending_balance + amount)})


def confirm_earnings(wallet: Wallet, amount: float) -> Wallet:
    """Release confirmed work from pending to withdrawable balance."""
    _require_positive(amount)
    return wallet.model_copy(update={
        "pending_balance": _money(wallet.pending_balance - amount),
        "balance": _money(wallet.balance + amount),
        "total_earnings": _money(wallet.total_earnings + amount),
    })


def settle_disputed_earnings(wallet: Wallet, held: float, payout: float) -> Wallet:
    """
    Close out disputed work: drop what was held in pending and pay out what the
    resolution left the provider. The refunded part is never released.
    """
    if held < 0 or payout < 0:
        raise ValidationFailed("Amounts must not be negative", detail={"held": held, "payout": payout})
    return wallet.model_copy(update={
        "pending_balance": _money(wallet.pending_balance - held),
        "balance": _money(wallet.balance + payout),
        "total_earnings": _money(wallet.total_earnings + payout),
    })


def settle_withdrawal(wallet: Wallet, amount: float, fee: float) -> Wallet:
    _require_positive(amount)
    required = _money(amount + fee)
    if wallet.balance < required:
        raise InsufficientBalance(
            "Insufficient balance for this withdrawal",
            detail={"balance": wallet.balance, "required": required},
        )
    return wallet.model_copy(update={"balance": _money(wallet.balance - required)})


# ---------------------------------------------------------------------------#
# Payment status rules
# ---------------------------------------------------------------------------#

PAYMENT_TRANSITIONS: Dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.COMPLETED,
                            PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.PROCESSING: {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: set(),
    PaymentStatus.CANCELLED: set(),
    PaymentStatus.REFUNDED: set(),
}


def payment_sources(target: PaymentStatus) -> Set[PaymentStatus]:
    """Statuses a payment may be in for a move to ``target`` to be legal."""
    return {source for source, targets in PAYMENT_TRANSITIONS.items() if target in targets}
