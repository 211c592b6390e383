from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from homeservices.commonUtils.enumUtils import PaymentStatus, PaymentType
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.dependencies.serviceDependencies import current_profile, get_payment_orchestrator
from homeservices.schemas.paymentSchema import (
    ActivationFeeRequest,
    BookingPaymentRequest,
    PaymentHistoryPage,
    PaymentMethodInfo,
    PaymentOutcome,
    WithdrawalRequest,
    WithdrawalResponse,
)
from homeservices.schemas.walletSchema import UserProfile, WalletRead

router = APIRouter()


@router.get("/payments/methods", response_model=List[PaymentMethodInfo], tags=["payments"])
async def list_payment_methods(payments: PaymentOrchestrator = Depends(get_payment_orchestrator)):
    """Supported payment methods with display names"""
    return payments.payment_methods()


@router.post("/payments/activation-fee", response_model=PaymentOutcome, tags=["payments"])
async def pay_activation_fee(
        request: ActivationFeeRequest,
        profile: UserProfile = Depends(current_profile),
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Pay the one-off provider activation fee"""
    return await payments.pay_activation_fee(profile, request.payment_method, request.payment_details)


@router.post("/payments/process", response_model=PaymentOutcome, tags=["payments"])
async def pay_for_booking(
        request: BookingPaymentRequest,
        profile: UserProfile = Depends(current_profile),
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Pay for an accepted booking"""
    return await payments.pay_for_booking(
        profile.id, request.booking_id, request.payment_method, request.payment_details
    )


@router.post("/payments/paypal/{reference}/capture", response_model=PaymentOutcome, tags=["payments"])
async def capture_paypal_payment(
        reference: str,
        profile: UserProfile = Depends(current_profile),
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Capture a PayPal order after the payer approved it"""
    return await payments.capture_paypal(profile.id, reference)


@router.get("/payments/history", response_model=PaymentHistoryPage, tags=["payments"])
async def payment_history(
        type: Optional[PaymentType] = None,
        status: Optional[PaymentStatus] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(10, ge=1, le=50),
        profile: UserProfile = Depends(current_profile),
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.history(profile.id, payment_type=type, status=status, page=page, limit=limit)


# ============= PROVIDER WALLET =============
@router.post("/payments/withdraw", response_model=WithdrawalResponse, tags=["payments"])
async def request_withdrawal(
        request: WithdrawalRequest,
        profile: UserProfile = Depends(current_profile),
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Withdraw from the provider's available balance (a fee is added on top)"""
    return await payments.request_withdrawal(profile, request.amount, request.method, request.account_details)


@router.get("/payments/wallet", response_model=WalletRead, tags=["payments"])
async def get_wallet(
        profile: UserProfile = Depends(current_profile),
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return await payments.get_wallet(profile)
