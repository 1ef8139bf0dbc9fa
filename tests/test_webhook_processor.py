import asyncio
import time
from contextlib import suppress

import pytest
from sqlmodel import select

from models.models import Organization, WebhookEvent
from schemas.webhook_schema import OutcomeKind, HandlerResult
from services.webhook_processor import WebhookProcessor, new_correlation_id
from tests.factories import NOW, make_event, subscription_obj, create_org, create_plan

pytestmark = [pytest.mark.asyncio]


@pytest.fixture
def org(session):
    create_plan(session, "planA", "price_A")
    create_plan(session, "planB", "price_B")
    return create_org(session, stripe_customer_id="cus_1", plan_id="planA", active_user_count=5)


def ledger_rows(session, event_id):
    session.expire_all()
    return session.exec(select(WebhookEvent).where(WebhookEvent.stripe_event_id == event_id)).all()


class FlakyDispatch:
    """Raises for the first ``failures`` calls, then delegates."""

    def __init__(self, dispatch, failures):
        self.dispatch = dispatch
        self.failures = failures
        self.calls = 0

    def __call__(self, event, correlation_id):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("database unavailable")
        return self.dispatch(event, correlation_id)


async def test_correlation_id_carries_event_id():
    cid = new_correlation_id("evt_42")

    assert cid.startswith("webhook-evt_42-")
    assert cid != new_correlation_id("evt_42")


async def test_backoff_doubles_per_attempt(processor):
    assert [processor.backoff_delay(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


async def test_new_event_is_accepted_and_recorded(processor, session, org, notifier):
    event = make_event("customer.subscription.updated", subscription_obj(price="price_B", quantity=7), event_id="evt_1")

    outcome = await processor.process(event)

    assert outcome.kind == OutcomeKind.ACCEPTED
    rows = ledger_rows(session, "evt_1")
    assert len(rows) == 1 and rows[0].success
    assert rows[0].correlation_id.startswith("webhook-evt_1-")
    assert processor.ordering.get_checkpoint(event.type, "sub_1").last_event_created == event.created
    assert notifier.calls == [("org1", "planA", "planB")]


async def test_replayed_event_is_already_processed(processor, session, org, notifier):
    event = make_event("customer.subscription.updated", subscription_obj(price="price_B"), event_id="evt_1")

    first = await processor.process(event)
    second = await processor.process(event)

    assert first.kind == OutcomeKind.ACCEPTED
    assert second.kind == OutcomeKind.ALREADY_PROCESSED
    assert len(ledger_rows(session, "evt_1")) == 1
    assert len(notifier.calls) == 1


async def test_older_event_after_newer_one_is_rejected(processor, session, org):
    newer = make_event("customer.subscription.updated", subscription_obj(price="price_B", quantity=9), created=NOW - 60)
    older = make_event("customer.subscription.updated", subscription_obj(price="price_A", quantity=2), created=NOW - 600)

    assert (await processor.process(newer)).kind == OutcomeKind.ACCEPTED
    outcome = await processor.process(older)

    assert outcome.kind == OutcomeKind.REJECTED
    assert "Out-of-order" in outcome.reason
    session.expire_all()
    org = session.get(Organization, "org1")
    assert org.plan_id == "planB"
    assert org.active_user_count == 9
    row = ledger_rows(session, older.id)[0]
    assert not row.success
    assert "ordering" in row.error_message


async def test_stale_event_is_rejected_without_touching_state(processor, session, org):
    event = make_event(
        "customer.subscription.updated", subscription_obj(price="price_B"), created=NOW - 25 * 3600
    )

    outcome = await processor.process(event)

    assert outcome.kind == OutcomeKind.REJECTED
    assert "too old" in outcome.reason
    session.expire_all()
    assert session.get(Organization, "org1").plan_id == "planA"


async def test_transient_failure_is_retried_with_backoff(processor, session, org, sleep, monkeypatch):
    flaky = FlakyDispatch(processor.handlers.dispatch, failures=99)
    monkeypatch.setattr(processor.handlers, "dispatch", flaky)
    event = make_event("customer.subscription.updated", subscription_obj(price="price_B"), event_id="evt_flaky")

    outcome = await processor.process(event)

    assert outcome.kind == OutcomeKind.TRANSIENT_FAILURE
    assert outcome.attempts == 3
    assert "database unavailable" in outcome.cause
    assert flaky.calls == 3
    assert sleep.delays == [1.0, 2.0]
    rows = ledger_rows(session, "evt_flaky")
    assert len(rows) == 1 and not rows[0].success


async def test_redelivery_after_exhausted_retries_succeeds(processor, session, org, monkeypatch):
    flaky = FlakyDispatch(processor.handlers.dispatch, failures=3)
    monkeypatch.setattr(processor.handlers, "dispatch", flaky)
    event = make_event("customer.subscription.updated", subscription_obj(price="price_B"), event_id="evt_2")

    assert (await processor.process(event)).kind == OutcomeKind.TRANSIENT_FAILURE
    assert (await processor.process(event)).kind == OutcomeKind.ACCEPTED

    rows = ledger_rows(session, "evt_2")
    assert len(rows) == 1 and rows[0].success


async def test_recovers_within_retry_budget(processor, org, sleep, monkeypatch):
    flaky = FlakyDispatch(processor.handlers.dispatch, failures=1)
    monkeypatch.setattr(processor.handlers, "dispatch", flaky)

    outcome = await processor.process(make_event("customer.subscription.updated", subscription_obj(price="price_B")))

    assert outcome.kind == OutcomeKind.ACCEPTED
    assert flaky.calls == 2
    assert sleep.delays == [1.0]


async def test_business_rejection_is_not_retried(processor, session, sleep):
    event = make_event("customer.subscription.updated", subscription_obj(customer="cus_unknown"), event_id="evt_orphan")

    outcome = await processor.process(event)

    assert outcome.kind == OutcomeKind.REJECTED
    assert "cus_unknown" in outcome.reason
    assert sleep.delays == []
    assert not ledger_rows(session, "evt_orphan")[0].success


async def test_single_attempt_processor_does_not_sleep(ledger, ordering, handlers, sleep, clock, monkeypatch):
    processor = WebhookProcessor(ledger, ordering, handlers, max_attempts=1, sleep=sleep, clock=clock)
    monkeypatch.setattr(handlers, "dispatch", lambda event, cid: HandlerResult.retry("upstream timeout"))

    outcome = await processor.process(make_event("invoice.paid", {"id": "in_1", "customer": "cus_1"}))

    assert outcome.kind == OutcomeKind.TRANSIENT_FAILURE
    assert outcome.attempts == 1
    assert sleep.delays == []


async def test_concurrent_delivery_loser_reports_already_processed(processor, ledger, org, monkeypatch):
    event = make_event("customer.subscription.updated", subscription_obj(price="price_B"), event_id="evt_race")
    dispatch = processor.handlers.dispatch

    def dispatch_then_lose_race(evt, cid):
        result = dispatch(evt, cid)
        ledger.record(evt.id, evt.type, True, None, "other-worker")
        return result

    monkeypatch.setattr(processor.handlers, "dispatch", dispatch_then_lose_race)

    outcome = await processor.process(event)

    assert outcome.kind == OutcomeKind.ALREADY_PROCESSED
    assert ledger.get("evt_race").correlation_id == "other-worker"


async def test_blocking_handler_does_not_stall_other_deliveries(processor, org, monkeypatch):
    dispatch = processor.handlers.dispatch

    def slow_dispatch(evt, cid):
        time.sleep(0.5)
        return dispatch(evt, cid)

    monkeypatch.setattr(processor.handlers, "dispatch", slow_dispatch)
    ticks = []

    async def heartbeat():
        while True:
            ticks.append(time.monotonic())
            await asyncio.sleep(0.02)

    beat = asyncio.create_task(heartbeat())
    try:
        outcome = await processor.process(make_event("customer.subscription.updated", subscription_obj(price="price_B")))
    finally:
        beat.cancel()
        with suppress(asyncio.CancelledError):
            await beat

    assert outcome.kind == OutcomeKind.ACCEPTED
    assert len(ticks) > 5
