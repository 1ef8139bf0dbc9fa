# ================================================================
# services/event_ordering.py — Stale and out-of-order event detection
# ================================================================
import logging
import time
from dataclasses import dataclass
from typing import Optional, Callable, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from models.models import WebhookCheckpoint, utcnow
from schemas.webhook_schema import StripeEvent

logger = logging.getLogger(__name__)

# Objects whose own id identifies the resource being ordered
SELF_KEYED_OBJECTS = {"customer", "payment_intent", "setup_intent"}


def _ref_id(ref: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(ref, str):
        return ref or None
    if isinstance(ref, dict):
        return ref.get("id")
    return None


def invoice_subscription_id(invoice: dict) -> Optional[str]:
    """Subscription behind an invoice, for both old and new Stripe API shapes."""
    subscription_id = _ref_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _ref_id(details.get("subscription"))


def extract_resource_id(event: StripeEvent) -> Optional[str]:
    """
    Pick the resource an event is ordered against.

    Priority: subscription, customer, the object's own id for
    customer/payment_intent/setup_intent objects, then the session id
    for checkout sessions.
    """
    data = event.data_object
    object_type = data.get("object")

    if object_type == "subscription" and data.get("id"):
        return data["id"]
    subscription_id = invoice_subscription_id(data)
    if subscription_id:
        return subscription_id

    customer_id = _ref_id(data.get("customer"))
    if customer_id:
        return customer_id

    if data.get("id") and object_type in SELF_KEYED_OBJECTS:
        return data["id"]

    if event.type.startswith("checkout.session.") and data.get("id"):
        return data["id"]

    return None


@dataclass
class OrderingDecision:
    accepted: bool
    reason: Optional[str] = None
    resource_id: Optional[str] = None
    last_processed: Optional[int] = None


class EventOrderingValidator:
    """Keeps the last accepted event timestamp per (event type, resource)."""

    def __init__(
        self,
        session: Session,
        max_age_seconds: int = 24 * 60 * 60,
        gap_warning_seconds: int = 60 * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.session = session
        self.max_age_seconds = max_age_seconds
        self.gap_warning_seconds = gap_warning_seconds
        self.clock = clock

    def get_checkpoint(self, event_type: str, resource_id: str) -> Optional[WebhookCheckpoint]:
        return self.session.exec(
            select(WebhookCheckpoint).where(
                WebhookCheckpoint.event_type == event_type,
                WebhookCheckpoint.resource_id == resource_id,
            )
        ).first()

    def check(self, event: StripeEvent, correlation_id: str) -> OrderingDecision:
        age_seconds = self.clock() - event.created
        if age_seconds > self.max_age_seconds:
            return OrderingDecision(
                accepted=False,
                reason=(
                    f"Event is too old ({age_seconds / 3600:.1f} hours old, "
                    f"max {self.max_age_seconds / 3600:.0f} hours)"
                ),
            )

        resource_id = extract_resource_id(event)
        if not resource_id:
            logger.info(f"⚠️ No resource id for ordering validation [{correlation_id}], processing anyway")
            return OrderingDecision(accepted=True)

        try:
            checkpoint = self.get_checkpoint(event.type, resource_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"💥 Event ordering lookup failed [{correlation_id}], processing anyway: {e}")
            return OrderingDecision(accepted=True, resource_id=resource_id)

        if checkpoint is None:
            return OrderingDecision(accepted=True, resource_id=resource_id)

        last = checkpoint.last_event_created
        if event.created <= last:
            return OrderingDecision(
                accepted=False,
                reason=f"Out-of-order event (timestamp: {event.created}, last processed: {last})",
                resource_id=resource_id,
                last_processed=last,
            )

        gap = event.created - last
        if gap > self.gap_warning_seconds:
            logger.warning(
                f"⚠️ Large time gap between {event.type} events for {resource_id} "
                f"[{correlation_id}]: {gap // 60} minutes (last {last}, current {event.created})"
            )

        return OrderingDecision(accepted=True, resource_id=resource_id, last_processed=last)

    def advance(self, event: StripeEvent, correlation_id: str) -> None:
        """Move the checkpoint forward after a successfully processed event."""
        resource_id = extract_resource_id(event)
        if not resource_id:
            return

        checkpoint = self.get_checkpoint(event.type, resource_id)
        if checkpoint is None:
            checkpoint = WebhookCheckpoint(
                event_type=event.type,
                resource_id=resource_id,
                last_event_created=event.created,
            )
            try:
                self.session.add(checkpoint)
                self.session.commit()
                logger.debug(f"📝 Checkpoint created for {event.type}/{resource_id} at {event.created} [{correlation_id}]")
                return
            except IntegrityError:
                self.session.rollback()
                checkpoint = self.get_checkpoint(event.type, resource_id)
                if checkpoint is None:
                    raise

        if event.created <= checkpoint.last_event_created:
            return

        checkpoint.last_event_created = event.created
        checkpoint.updated_at = utcnow()
        try:
            self.session.add(checkpoint)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        logger.debug(f"📝 Checkpoint advanced for {event.type}/{resource_id} to {event.created} [{correlation_id}]")
