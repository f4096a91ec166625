from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from typing import Optional
import hmac, hashlib, json
import logging

from ..config import Settings, get_settings
from ..errors import WebhookPayloadError, WebhookSignatureError
from ..schemas.pydantic_schemas import WebhookEvent
from ..services.event_reconciler import EventReconciler
from .deps import get_reconciler

# Set up logger
logger = logging.getLogger(__name__)

router = APIRouter()


def verify_signature(request_body: bytes, signature: Optional[str], settings: Settings) -> None:
    """Check the hex HMAC-SHA256 of the raw body against the signature header.

    Verification runs when a secret is configured and the request carries a
    signature; with WEBHOOK_REQUIRE_SIGNATURE the signature is mandatory.
    """
    secret = settings.webhook_secret
    if not secret:
        return  # allow in local dev
    if not signature:
        if settings.webhook_require_signature:
            raise WebhookSignatureError("Missing signature")
        return
    digest = hmac.new(secret.encode(), request_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(digest, signature.strip()):
        raise WebhookSignatureError("Invalid signature")


def parse_event(body: bytes) -> WebhookEvent:
    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookPayloadError(f"Malformed JSON: {e}")
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")
    try:
        return WebhookEvent.model_validate(payload)
    except ValidationError as e:
        raise WebhookPayloadError(f"Invalid webhook payload: {e.errors()[0].get('msg')}")


@router.post("/webhook")
async def voice_webhook(request: Request,
                        settings: Settings = Depends(get_settings),
                        reconciler: EventReconciler = Depends(get_reconciler)):
    body = await request.body()
    sig = request.headers.get(settings.webhook_signature_header)

    try:
        verify_signature(body, sig, settings)
    except WebhookSignatureError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        raise HTTPException(status_code=401, detail=str(e))

    try:
        event = parse_event(body)
    except WebhookPayloadError as e:
        logger.error(f"Rejected webhook: {e}")
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Webhook received: status={event.status} provider call {event.provider_call_id}, {len(event.events)} sub-event(s)")
    try:
        result = reconciler.ingest(event)
    except Exception as e:
        logger.exception(f"Webhook processing failed for provider call {event.provider_call_id}")
        raise HTTPException(status_code=500, detail=f"Webhook processing failed: {e}")

    return {
        "success": True,
        "message": "Webhook received and processed",
        "call_id": result.call_id,
        "matched_by": result.tier,
        "events_inserted": result.inserted,
        "duplicates": result.duplicates,
    }
