from fastapi import APIRouter, Depends, HTTPException, Request
import stripe
import logging
from typing import Optional

from homeservices.commonUtils.enumUtils import GatewayEventType
from homeservices.config.settings import settings
from homeservices.crud.paymentOrchestrator import PaymentOrchestrator
from homeservices.dependencies.serviceDependencies import get_payment_orchestrator
from homeservices.schemas.paymentSchema import GatewayEvent

logger = logging.getLogger(__name__)
router = APIRouter()

# Stripe event types the ledger reacts to
STRIPE_EVENT_TYPES = {
    "payment_intent.succeeded": GatewayEventType.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": GatewayEventType.PAYMENT_FAILED,
}


def to_gateway_event(event) -> Optional[GatewayEvent]:
    """Translate a verified Stripe event into a GatewayEvent, or None if it is not one we handle."""
    event_type = STRIPE_EVENT_TYPES.get(event["type"])
    if event_type is None:
        return None

    payment_intent = event["data"]["object"]
    message = None
    if event_type == GatewayEventType.PAYMENT_FAILED:
        last_error = payment_intent.get("last_payment_error") or {}
        message = last_error.get("message", "Card payment failed")

    return GatewayEvent(
        type=event_type,
        reference=payment_intent["id"],
        message=message,
        raw={"stripe_event_id": event.get("id"), "stripe_event_type": event["type"]},
    )


# ==========================================================
# MAIN WEBHOOK LISTENER
# ==========================================================

@router.post("/stripe-webhook", summary="Stripe Webhook Listener")
async def stripe_webhook_listener(
        request: Request,
        payments: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Receives card payment outcomes from Stripe.

    Events for unknown payment intents, and repeats of events already applied,
    are acknowledged without changes. If a known event cannot be applied the
    error propagates and Stripe retries the delivery.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        raise HTTPException(status_code=400, detail="Stripe-Signature header missing")

    try:
        event = stripe.Webhook.construct_event(
            payload, sig_header, settings.stripe_keys["webhook_secret"]
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.error(f"Webhook Error: Verification failed: {e}")
        raise HTTPException(status_code=400, detail="Invalid webhook signature or payload")

    event_type = event["type"]
    gateway_event = to_gateway_event(event)
    if gateway_event is None:
        logger.info(f"Unhandled Stripe event type: {event_type}")
    else:
        logger.info(f"Received Stripe event: {event_type} for payment intent {gateway_event.reference}")
        await payments.on_webhook(gateway_event)

    return {
        "status": "success",
        "received_event_type": event_type,
    }
