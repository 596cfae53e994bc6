import json
import logging
import re
import time
from typing import Any, Dict, Optional

import stripe
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import activity_log, auth, config, storage
from .models import PaymentStatus, utcnow

logger = logging.getLogger(__name__)

router = APIRouter()

MIN_AMOUNT_CENTS = 50
PLATFORM = "leila-home-services"

EVENT_PAYMENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "charge.refunded": PaymentStatus.REFUNDED,
}
EVENT_ACTIVITY = {
    "payment_intent.succeeded": activity_log.ActionCategory.PAYMENT_PROCESSED,
    "payment_intent.payment_failed": activity_log.ActionCategory.PAYMENT_FAILED,
    "charge.refunded": activity_log.ActionCategory.REFUND_ISSUED,
}


class PaymentConfigurationError(RuntimeError):
    """Stripe keys are missing or malformed."""


def _stripe_ready() -> None:
    if not config.stripe_configured():
        raise PaymentConfigurationError("Payment system is not configured. Please contact support.")
    stripe.api_key = config.STRIPE_SECRET_KEY


def statement_suffix(service_id: Optional[str]) -> Optional[str]:
    if not service_id:
        return None
    cleaned = re.sub(r"[^A-Za-z0-9]", "", service_id)[:5]
    return f"SVC{cleaned}".upper()


class PaymentIntentRequest(BaseModel):
    amount: int = Field(..., description="Amount in cents")
    metadata: Dict[str, str] = Field(default_factory=dict)


def create_payment_intent(amount: int, metadata: Dict[str, str]):
    _stripe_ready()
    params: Dict[str, Any] = {
        "amount": int(amount),
        "currency": "usd",
        "metadata": {"platform": PLATFORM, "timestamp": utcnow().isoformat(), **metadata},
        "automatic_payment_methods": {"enabled": True},
    }
    suffix = statement_suffix(metadata.get("serviceId"))
    if suffix:
        params["statement_descriptor_suffix"] = suffix
    return stripe.PaymentIntent.create(**params)


def booking_amount_cents(booking: Dict[str, Any]) -> Optional[int]:
    """What the customer owes for a booking, in cents."""
    booking_pricing = booking.get("pricing") or {}
    amount = booking_pricing.get("finalAmount") or booking_pricing.get("estimatedAmount")
    if amount is None:
        return None
    return int(round(float(amount) * 100))


def _error(message: str, code: str, status_code: int, **extra) -> JSONResponse:
    return JSONResponse({"error": message, "code": code, **extra}, status_code=status_code)


@router.post(f"{config.API_PREFIX}/payments/intent")
def payment_intent(request: PaymentIntentRequest, user=Depends(auth.require_permission())):
    started = time.monotonic()
    if request.amount < MIN_AMOUNT_CENTS:
        return _error(
            "Invalid amount. Minimum $0.50 required.", "INVALID_AMOUNT", 400,
            details={"providedAmount": request.amount, "minimum": MIN_AMOUNT_CENTS},
        )

    booking_id = request.metadata.get("bookingId")
    if booking_id:
        booking = storage.get_document("bookings", booking_id)
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        if booking.get("customerId") != user["uid"] and not auth.is_admin(user):
            raise HTTPException(status_code=403, detail="Not your booking")
        expected = booking_amount_cents(booking)
        if expected is not None and request.amount != expected:
            return _error(
                "Amount does not match the booking price.", "AMOUNT_MISMATCH", 400,
                details={"providedAmount": request.amount, "expectedAmount": expected},
            )

    try:
        intent = create_payment_intent(request.amount, {**request.metadata, "userId": user["uid"]})
    except PaymentConfigurationError as exc:
        logger.error("Stripe secret key is not configured")
        return _error(str(exc), "STRIPE_NOT_CONFIGURED", 503)
    except stripe.CardError as exc:
        logger.error("Card error: %s (%s)", exc.user_message, exc.code)
        return _error(exc.user_message or "Card declined", exc.code or "card_error", 400, type="card_error")
    except stripe.InvalidRequestError as exc:
        logger.error("Invalid payment request: %s", exc.user_message)
        return _error("Invalid payment request", "INVALID_REQUEST", 400, details=exc.user_message)
    except stripe.AuthenticationError:
        logger.error("Stripe authentication failed, check API keys")
        return _error("Payment authentication failed", "AUTH_ERROR", 401)
    except stripe.APIConnectionError:
        logger.error("Unable to reach Stripe", exc_info=True)
        return _error("Unable to connect to payment service", "CONNECTION_ERROR", 503)
    except stripe.APIError:
        logger.error("Stripe API error", exc_info=True)
        return _error("Payment service temporarily unavailable", "STRIPE_API_ERROR", 503)
    except Exception:
        logger.error("Unexpected payment error", exc_info=True)
        return _error("An unexpected error occurred while processing payment", "INTERNAL_ERROR", 500)

    if booking_id:
        storage.update_document("bookings", booking_id, {
            "payment.stripePaymentIntentId": intent.id,
            "payment.status": PaymentStatus.PROCESSING.value,
            "updatedAt": utcnow(),
        })
    logger.info(
        "Payment intent %s created for %s cents in %dms",
        intent.id, intent.amount, int((time.monotonic() - started) * 1000),
    )
    return {
        "clientSecret": intent.client_secret,
        "paymentIntentId": intent.id,
        "amount": intent.amount,
        "status": intent.status,
    }


def _find_booking(payment_intent_id: Optional[str], metadata: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    booking_id = (metadata or {}).get("bookingId")
    if booking_id:
        return storage.get_document("bookings", booking_id)
    if not payment_intent_id:
        return None
    matches = storage.query_documents(
        "bookings", [("payment.stripePaymentIntentId", "==", payment_intent_id)], limit=1,
    )
    return matches[0] if matches else None


def handle_event(event: Dict[str, Any]) -> Optional[str]:
    """Apply a verified Stripe event to its booking. Returns the booking id it touched."""
    event_type = event["type"]
    status = EVENT_PAYMENT_STATUS.get(event_type)
    if status is None:
        logger.info("Unhandled Stripe event type %s", event_type)
        return None

    obj = event["data"]["object"]
    if event_type == "charge.refunded":
        intent_id = obj.get("payment_intent")
        if obj.get("amount_refunded", 0) < obj.get("amount", 0):
            status = PaymentStatus.PARTIALLY_REFUNDED
    else:
        intent_id = obj.get("id")
    booking = _find_booking(intent_id, obj.get("metadata") or {})
    if not booking:
        logger.warning("No booking found for Stripe event %s (%s)", event.get("id"), event_type)
        return None

    update: Dict[str, Any] = {"updatedAt": utcnow()}
    short_by = 0
    if status == PaymentStatus.COMPLETED:
        received = obj.get("amount_received", obj.get("amount")) or 0
        expected = booking_amount_cents(booking)
        short_by = expected - received if expected is not None and received < expected else 0
        update["payment.amountReceived"] = received
        if short_by:
            # underpaid bookings stay in processing until someone looks at them
            status = PaymentStatus.PROCESSING
            update["payment.shortBy"] = short_by
            logger.error("Booking %s underpaid by %s cents (event %s)", booking["id"], short_by, event.get("id"))
        else:
            update["payment.paidAt"] = utcnow()
    elif status == PaymentStatus.FAILED:
        update["payment.failureMessage"] = (obj.get("last_payment_error") or {}).get("message")
    else:
        update["payment.amountRefunded"] = obj.get("amount_refunded")
    update["payment.status"] = status.value
    storage.update_document("bookings", booking["id"], update)

    activity_log.log_system_action(
        "stripe", EVENT_ACTIVITY[event_type], f"Stripe {event_type}",
        {"type": "booking", "id": booking["id"]},
        actor_type=activity_log.ActorType.WEBHOOK,
        status=activity_log.ActionStatus.FAILED if status == PaymentStatus.FAILED or short_by
        else activity_log.ActionStatus.COMPLETED,
        level=activity_log.LogLevel.ERROR if short_by else activity_log.LogLevel.INFO,
        metadata={"eventId": event.get("id"), "paymentIntentId": intent_id, "shortBy": short_by or None},
    )
    return booking["id"]


@router.post(f"{config.API_PREFIX}/payments/webhook")
async def stripe_webhook(request: Request):
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(status_code=400, detail="No signature found")
    if not config.STRIPE_WEBHOOK_SECRET:
        logger.error("Stripe webhook secret not configured")
        return JSONResponse({"error": "Webhook not configured"}, status_code=500)

    payload = await request.body()
    try:
        stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.error("Stripe webhook verification failed: %s", exc)
        raise HTTPException(status_code=400, detail="Webhook signature verification failed")
    # work on the verified payload as plain dicts
    event = json.loads(payload)

    logger.info("Stripe event %s (%s)", event["id"], event["type"])
    try:
        booking_id = handle_event(event)
    except Exception:
        # acknowledged anyway so Stripe does not retry forever
        logger.error("Processing Stripe event %s failed", event["id"], exc_info=True)
        return {"received": True, "error": "Processing failed but acknowledged"}
    return {"received": True, "bookingId": booking_id}
