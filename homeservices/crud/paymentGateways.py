import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import stripe
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from homeservices.commonUtils.enumUtils import PaymentMethod, PaymentStatus, MOBILE_WALLET_METHODS
from homeservices.commonUtils.exceptions import GatewayError, GatewayDeclined, ValidationFailed, NotFound
from homeservices.config.settings import settings

logger = logging.getLogger(__name__)


class GatewayResult(BaseModel):
    status: PaymentStatus  # pending for asynchronous gateways, completed for synchronous ones
    reference: str
    client_secret: Optional[str] = None
    approval_url: Optional[str] = None
    message: Optional[str] = None


class PaymentGateway(Protocol):
    asynchronous: bool

    def validate(self, amount: float, details: Dict[str, Any]) -> None: ...

    async def initiate(self, amount: float, currency: str, details: Dict[str, Any],
                       metadata: Dict[str, str]) -> GatewayResult: ...

    async def confirm(self, reference: str) -> PaymentStatus: ...


def _random_token(rng: random.Random, length: int = 9) -> str:
    return "".join(rng.choice("abcdefghijklmnopqrstuvwxyz0123456789") for _ in range(length))


# ---------------------------------------------------------------------------#
# Card gateway (Stripe PaymentIntents, confirmed by webhook)
# ---------------------------------------------------------------------------#

_STRIPE_STATUS = {
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.CANCELLED,
    "processing": PaymentStatus.PROCESSING,
}


class StripeCardGateway:
    asynchronous = True

    def __init__(self, api_key: str = settings.STRIPE_SECRET_KEY):
        self.api_key = api_key

    def validate(self, amount: float, details: Dict[str, Any]) -> None:
        if amount <= 0:
            raise ValidationFailed("Invalid amount")

    async def initiate(self, amount: float, currency: str, details: Dict[str, Any],
                       metadata: Dict[str, str]) -> GatewayResult:
        try:
            intent = await run_in_threadpool(
                stripe.PaymentIntent.create,
                api_key=self.api_key,
                amount=int(round(amount * 100)),  # smallest currency unit
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.CardError as e:
            raise GatewayDeclined(e.user_message or "Card was declined", detail={"code": e.code}) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed: {e}", exc_info=True)
            raise GatewayError("Card payment provider is unavailable, please retry") from e

        logger.info(f"Stripe PaymentIntent {intent.id} created for {amount} {currency}")
        return GatewayResult(status=PaymentStatus.PENDING, reference=intent.id, client_secret=intent.client_secret)

    async def confirm(self, reference: str) -> PaymentStatus:
        try:
            intent = await run_in_threadpool(stripe.PaymentIntent.retrieve, reference, api_key=self.api_key)
        except stripe.InvalidRequestError as e:
            raise NotFound(f"Unknown card payment {reference}") from e
        except stripe.StripeError as e:
            raise GatewayError("Card payment provider is unavailable, please retry") from e
        return _STRIPE_STATUS.get(intent.status, PaymentStatus.PENDING)


# ---------------------------------------------------------------------------#
# Local mobile wallets (synchronous simulation)
# ---------------------------------------------------------------------------#

class MobileWalletGateway:
    """
    Vodafone Cash, Etisalat Cash, Orange Money and WE Pay. Settles inline after a
    simulated provider round trip; a small random share of payments fails.
    """
    asynchronous = False

    def __init__(self, method: PaymentMethod, failure_rate: float = settings.MOBILE_WALLET_FAILURE_RATE,
                 latency_seconds: float = settings.MOBILE_WALLET_LATENCY_SECONDS,
                 rng: Optional[random.Random] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if method not in MOBILE_WALLET_METHODS:
            raise ValueError(f"{method} is not a mobile wallet")
        self.method = method
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.rng = rng or random.Random()
        self.sleep = sleep

    def validate(self, amount: float, details: Dict[str, Any]) -> None:
        phone_number = str(details.get("phone_number") or "")
        if len(phone_number) < 10:
            raise ValidationFailed("Invalid phone number", detail={"phone_number": phone_number})
        if amount < 1:
            raise ValidationFailed("Invalid amount", detail={"amount": amount})

    async def initiate(self, amount: float, currency: str, details: Dict[str, Any],
                       metadata: Dict[str, str]) -> GatewayResult:
        self.validate(amount, details)
        reference = f"{self.method.value}_{int(time.time() * 1000)}_{_random_token(self.rng)}"

        await self.sleep(self.latency_seconds)
        if self.rng.random() < self.failure_rate:
            raise GatewayError("Payment processing failed. Please try again.", detail={"reference": reference})

        return GatewayResult(status=PaymentStatus.COMPLETED, reference=reference)

    async def confirm(self, reference: str) -> PaymentStatus:
        return PaymentStatus.COMPLETED


# ---------------------------------------------------------------------------#
# PayPal (asynchronous order + capture simulation)
# ---------------------------------------------------------------------------#

class PayPalGateway:
    asynchronous = True

    def __init__(self, failure_rate: float = settings.MOBILE_WALLET_FAILURE_RATE,
                 latency_seconds: float = settings.MOBILE_WALLET_LATENCY_SECONDS,
                 rng: Optional[random.Random] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 approval_base_url: str = "https://www.sandbox.paypal.com/checkoutnow"):
        self.failure_rate = failure_rate
        self.latency_seconds = latency_seconds
        self.rng = rng or random.Random()
        self.sleep = sleep
        self.approval_base_url = approval_base_url

    def validate(self, amount: float, details: Dict[str, Any]) -> None:
        if not details.get("email"):
            raise ValidationFailed("Missing required fields: email")
        if amount <= 0:
            raise ValidationFailed("Invalid amount")

    async def initiate(self, amount: float, currency: str, details: Dict[str, Any],
                       metadata: Dict[str, str]) -> GatewayResult:
        order_id = f"PAYPAL_{int(time.time() * 1000)}_{_random_token(self.rng)}"
        return GatewayResult(
            status=PaymentStatus.PENDING,
            reference=order_id,
            approval_url=f"{self.approval_base_url}?token={order_id}",
        )

    async def confirm(self, reference: str) -> PaymentStatus:
        """Capture an approved order."""
        await self.sleep(self.latency_seconds)
        if self.rng.random() < self.failure_rate:
            return PaymentStatus.FAILED
        return PaymentStatus.COMPLETED


class GatewayRegistry:
    def __init__(self, gateways: Dict[PaymentMethod, PaymentGateway]):
        self._gateways = dict(gateways)

    @classmethod
    def default(cls) -> "GatewayRegistry":
        gateways: Dict[PaymentMethod, PaymentGateway] = {
            method: MobileWalletGateway(method) for method in MOBILE_WALLET_METHODS
        }
        gateways[PaymentMethod.STRIPE] = StripeCardGateway()
        gateways[PaymentMethod.PAYPAL] = PayPalGateway()
        return cls(gateways)

    def get(self, method: PaymentMethod) -> PaymentGateway:
        gateway = self._gateways.get(method)
        if gateway is None:
            raise ValidationFailed(f"Unsupported payment method: {method.value}")
        return gateway

    def supports(self, method: PaymentMethod) -> bool:
        return method in self._gateways
