# ================================================================
# services/webhook_processor.py — Idempotent, ordered, retried webhook processing
# ================================================================
import asyncio
import logging
import secrets
import time
from typing import Callable, Awaitable, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.config import settings, Settings
from schemas.webhook_schema import (
    StripeEvent,
    HandlerResult,
    WebhookOutcome,
    Accepted,
    AlreadyProcessed,
    Rejected,
    TransientFailure,
)
from services.event_ordering import EventOrderingValidator
from services.webhook_handlers import WebhookEventHandlers
from services.webhook_ledger import WebhookLedger

logger = logging.getLogger(__name__)


def new_correlation_id(event_id: str) -> str:
    return f"webhook-{event_id}-{secrets.token_hex(4)}"


class WebhookProcessor:
    """
    Runs one verified Stripe event through the idempotency ledger, the
    ordering validator and the matching handler.

    Ledger, ordering and handler calls block on the database, Stripe and
    SendGrid, so each one runs in a worker thread and other deliveries
    keep the event loop.

    Handler failures are retried with exponential backoff. The result is
    always a WebhookOutcome; nothing here raises for a per-event problem
    except a failure to read the ledger itself.
    """

    def __init__(
        self,
        ledger: WebhookLedger,
        ordering: EventOrderingValidator,
        handlers: WebhookEventHandlers,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.ordering = ordering
        self.handlers = handlers
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        ledger: WebhookLedger,
        ordering: EventOrderingValidator,
        handlers: WebhookEventHandlers,
        config: Settings = settings,
    ) -> "WebhookProcessor":
        return cls(
            ledger,
            ordering,
            handlers,
            max_attempts=config.WEBHOOK_MAX_ATTEMPTS,
            base_delay=config.WEBHOOK_RETRY_BASE_DELAY_SECONDS,
        )

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** (attempt - 1))

    async def process(self, event: StripeEvent) -> WebhookOutcome:
        correlation_id = new_correlation_id(event.id)
        logger.info(
            f"📨 Processing webhook event [{correlation_id}]: type={event.type} id={event.id} "
            f"age_seconds={int(self.clock() - event.created)}"
        )

        if await asyncio.to_thread(self.ledger.is_processed, event.id):
            logger.info(f"⚠️ Event {event.id} already processed, skipping [{correlation_id}]")
            return AlreadyProcessed()

        decision = await asyncio.to_thread(self.ordering.check, event, correlation_id)
        if not decision.accepted:
            logger.warning(f"⚠️ Event {event.id} rejected by ordering validation [{correlation_id}]: {decision.reason}")
            await asyncio.to_thread(
                self._record, event, False, f"Event ordering validation failed: {decision.reason}", correlation_id
            )
            return Rejected(reason=decision.reason)

        return await self._run_with_retries(event, correlation_id)

    async def _run_with_retries(self, event: StripeEvent, correlation_id: str) -> WebhookOutcome:
        last_error = "Unexpected processing termination"

        for attempt in range(1, self.max_attempts + 1):
            try:
                # Handlers make blocking database, Stripe and email calls
                result = await asyncio.to_thread(self.handlers.dispatch, event, correlation_id)
            except Exception as e:
                await asyncio.to_thread(self.handlers.billing.rollback)
                logger.error(
                    f"❌ Webhook processing exception (attempt {attempt}/{self.max_attempts}) [{correlation_id}]: {e}",
                    exc_info=True,
                )
                result = HandlerResult.retry(f"{type(e).__name__}: {e}")

            if result.success:
                return await asyncio.to_thread(self._complete, event, result, correlation_id)

            if not result.retryable:
                logger.warning(f"🚫 Event {event.id} rejected by handler [{correlation_id}]: {result.message}")
                await asyncio.to_thread(self._record, event, False, result.message, correlation_id)
                return Rejected(reason=result.message)

            last_error = result.message
            if attempt < self.max_attempts:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"🔄 Webhook processing failed (attempt {attempt}/{self.max_attempts}) [{correlation_id}], "
                    f"retrying in {delay:.1f}s: {result.message}"
                )
                await self.sleep(delay)

        logger.error(f"❌ Webhook processing failed after {self.max_attempts} attempts [{correlation_id}]: {last_error}")
        await asyncio.to_thread(self._record, event, False, last_error, correlation_id)
        return TransientFailure(cause=last_error, attempts=self.max_attempts)

    def _complete(self, event: StripeEvent, result: HandlerResult, correlation_id: str) -> WebhookOutcome:
        try:
            recorded = self.ledger.record(event.id, event.type, True, None, correlation_id)
        except SQLAlchemyError as e:
            # The state change is already committed; a redelivery is absorbed by the checkpoint
            logger.error(f"❌ Failed to record successful webhook event [{correlation_id}]: {e}")
            recorded = True

        if not recorded:
            logger.info(f"⚠️ Event {event.id} was processed concurrently by another delivery [{correlation_id}]")
            return AlreadyProcessed()

        try:
            self.ordering.advance(event, correlation_id)
        except SQLAlchemyError as e:
            logger.error(f"💥 Failed to update last processed timestamp [{correlation_id}]: {e}")

        logger.info(f"✅ Webhook processed successfully [{correlation_id}]: {result.message}")
        return Accepted(message=result.message)

    def _record(self, event: StripeEvent, success: bool, error: Optional[str], correlation_id: str) -> None:
        try:
            self.ledger.record(event.id, event.type, success, error, correlation_id)
        except SQLAlchemyError as e:
            logger.error(f"❌ Failed to record webhook event outcome [{correlation_id}]: {e}")
