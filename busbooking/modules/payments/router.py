import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from busbooking.dependencies import get_lifecycle
from busbooking.errors import InvalidState
from busbooking.schemas.payment import WebhookAck
from busbooking.services.lifecycle import BookingLifecycle
from busbooking.services.payment_gateway import clear_event, mark_event_processed
from busbooking.services.policy import SYSTEM_ACTOR

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def payment_webhook(provider: str, request: Request, lifecycle: BookingLifecycle = Depends(get_lifecycle)):
    """Provider callback. The event only tells us which booking to look at;
    the outcome itself is always re-read from the provider."""
    payments = lifecycle.payments
    if provider.lower() != payments.provider_name:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider: {provider}")

    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    # verify signature
    valid = await payments.verify_webhook(headers, body)
    if not valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")

    event = payments.parse_webhook(payload)
    if not event.event_id:
        # cannot deduplicate without id
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing event id for idempotency")

    added = await mark_event_processed(payments.provider_name, str(event.event_id))
    if not added:
        # replay, or another worker has it
        return WebhookAck(received=True)

    booking_id = None
    if event.provider_ref:
        booking_id = await lifecycle.booking_id_for_payment(event.provider_ref)
    if not booking_id:
        logger.info("Webhook %s references no known booking (ref=%s)", event.event_id, event.provider_ref)
        return WebhookAck(received=True)

    try:
        await lifecycle.confirm_payment(SYSTEM_ACTOR, booking_id, event.provider_ref)
    except InvalidState as exc:
        # nothing left to do for this booking; acknowledge so the provider stops retrying
        logger.warning("Webhook %s for booking %s not applied: %s", event.event_id, booking_id, exc.message)
    except Exception:
        await clear_event(payments.provider_name, str(event.event_id))
        raise
    return WebhookAck(received=True, booking_id=booking_id)
