# ================================================================
# services/webhook_ledger.py — Persistent webhook idempotency ledger
# ================================================================
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from models.models import WebhookEvent, utcnow

logger = logging.getLogger(__name__)


class WebhookLedger:
    """
    One row per Stripe event id, guarded by a unique constraint.

    A successful row is final. A failed row (exhausted retries or a
    rejection) is overwritten when a later delivery of the same event
    succeeds.
    """

    def __init__(self, session: Session):
        self.session = session

    def get(self, stripe_event_id: str) -> Optional[WebhookEvent]:
        return self.session.exec(
            select(WebhookEvent).where(WebhookEvent.stripe_event_id == stripe_event_id)
        ).first()

    def is_processed(self, stripe_event_id: str) -> bool:
        row = self.get(stripe_event_id)
        return bool(row and row.success)

    def record(
        self,
        stripe_event_id: str,
        event_type: str,
        success: bool,
        error_message: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Persist the outcome of processing an event.

        Returns False when a successful row already exists, i.e. another
        delivery of the same event won.
        """
        existing = self.get(stripe_event_id)
        if existing is None:
            row = WebhookEvent(
                stripe_event_id=stripe_event_id,
                event_type=event_type,
                success=success,
                error_message=error_message,
                correlation_id=correlation_id,
            )
            try:
                self.session.add(row)
                self.session.commit()
                return True
            except IntegrityError:
                self.session.rollback()
                logger.info(f"⚠️ Ledger insert conflict for event {stripe_event_id}, re-reading winner")
                existing = self.get(stripe_event_id)
                if existing is None:
                    raise
            except SQLAlchemyError:
                self.session.rollback()
                raise

        if existing.success:
            return False

        existing.success = success
        existing.error_message = error_message
        existing.correlation_id = correlation_id
        existing.processed_at = utcnow()
        try:
            self.session.add(existing)
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return True

    def purge_older_than(self, days: int) -> int:
        cutoff = utcnow() - timedelta(days=days)
        try:
            result = self.session.exec(
                delete(WebhookEvent).where(WebhookEvent.processed_at < cutoff)
            )
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return result.rowcount or 0
