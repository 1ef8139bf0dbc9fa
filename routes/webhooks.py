# routes/webhooks.py
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlmodel import Session

from core.config import settings
from core.database import get_session
from core.security import SignatureVerifier, SignatureError, InvalidPayloadError
from schemas.webhook_schema import OutcomeKind, TransientFailure, WebhookResponse, outcome_detail
from services.billing_repository import BillingRepository
from services.event_ordering import EventOrderingValidator
from services.notification_service import PlanNotificationService
from services.stripe_client import StripeClient
from services.webhook_handlers import WebhookEventHandlers
from services.webhook_ledger import WebhookLedger
from services.webhook_processor import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# -------------------------
# Dependencies
# -------------------------
def get_signature_verifier() -> SignatureVerifier:
    return SignatureVerifier.from_settings(settings)


def get_webhook_processor(session: Session = Depends(get_session)) -> WebhookProcessor:
    """Assemble the processor for one request; everything shares the request session."""
    billing = BillingRepository(session)
    handlers = WebhookEventHandlers(
        billing=billing,
        notifier=PlanNotificationService(session),
        stripe_client=StripeClient(),
    )
    ordering = EventOrderingValidator(
        session,
        max_age_seconds=settings.WEBHOOK_MAX_EVENT_AGE_SECONDS,
        gap_warning_seconds=settings.WEBHOOK_ORDERING_GAP_WARNING_SECONDS,
    )
    return WebhookProcessor.from_settings(WebhookLedger(session), ordering, handlers, settings)


# -------------------------
# Stripe webhook
# -------------------------
@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    processor: WebhookProcessor = Depends(get_webhook_processor),
):
    """
    Receive a Stripe event.

    200 tells Stripe to stop redelivering (processed, duplicate, stale,
    out-of-order or rejected). 500 asks for redelivery after a transient
    failure. 400 means the delivery could not be authenticated.
    """
    # Raw bytes: the signature covers the exact body
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        event = verifier.verify(payload, sig_header)
    except SignatureError as e:
        logger.warning(f"❌ Rejected webhook delivery: {e}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": f"Invalid signature: {e}"})
    except InvalidPayloadError as e:
        logger.warning(f"❌ Invalid webhook payload: {e}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid payload"})

    try:
        outcome = await processor.process(event)
    except Exception as e:
        logger.exception(f"❌ Error processing webhook event {event.id}: {e}")
        outcome = TransientFailure(cause=str(e), attempts=0)

    body = WebhookResponse(
        status=outcome.kind,
        event_id=event.id,
        event_type=event.type,
        detail=outcome_detail(outcome),
    )
    status_code = (
        status.HTTP_500_INTERNAL_SERVER_ERROR
        if outcome.kind == OutcomeKind.TRANSIENT_FAILURE
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))
