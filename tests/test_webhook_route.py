import time

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from core.database import get_session
from main import app
from models.models import WebhookEvent
from routes.webhooks import get_webhook_processor
from schemas.webhook_schema import Accepted, AlreadyProcessed, Rejected, TransientFailure
from tests.factories import make_event, event_payload, sign


class StubProcessor:
    def __init__(self, outcome=None, error=None):
        self.outcome = outcome
        self.error = error
        self.events = []

    async def process(self, event):
        self.events.append(event)
        if self.error:
            raise self.error
        return self.outcome


@pytest.fixture
def stub():
    return StubProcessor(Accepted(message="Subscription synced"))


@pytest.fixture
def client(stub):
    app.dependency_overrides[get_webhook_processor] = lambda: stub
    yield TestClient(app)
    app.dependency_overrides.clear()


def post_event(client, event, path="/payments/webhook", header=None):
    payload = event_payload(event)
    headers = {"stripe-signature": header if header is not None else sign(payload)}
    return client.post(path, content=payload, headers={**headers, "content-type": "application/json"})


@pytest.mark.parametrize("path", ["/payments/webhook", "/api/v1/payments/webhook"])
def test_accepted_event_returns_200(client, stub, path):
    event = make_event("invoice.paid", {"id": "in_1"}, event_id="evt_ok")

    response = post_event(client, event, path=path)

    assert response.status_code == 200
    assert response.json() == {
        "status": "accepted",
        "event_id": "evt_ok",
        "event_type": "invoice.paid",
        "detail": "Subscription synced",
    }
    assert stub.events[0].id == "evt_ok"


@pytest.mark.parametrize(
    "outcome, expected_status",
    [
        (AlreadyProcessed(), "already_processed"),
        (Rejected(reason="Out-of-order event"), "rejected"),
    ],
)
def test_acknowledged_outcomes_return_200(client, stub, outcome, expected_status):
    stub.outcome = outcome

    response = post_event(client, make_event("invoice.paid", {}))

    assert response.status_code == 200
    assert response.json()["status"] == expected_status


def test_transient_failure_returns_500_so_stripe_redelivers(client, stub):
    stub.outcome = TransientFailure(cause="database unavailable", attempts=3)

    response = post_event(client, make_event("invoice.paid", {}))

    assert response.status_code == 500
    assert response.json()["status"] == "transient_failure"
    assert response.json()["detail"] == "database unavailable"


def test_unexpected_processor_error_returns_500(client, stub):
    stub.error = RuntimeError("ledger unreachable")

    response = post_event(client, make_event("invoice.paid", {}))

    assert response.status_code == 500
    assert response.json()["status"] == "transient_failure"


def test_bad_signature_returns_400_without_processing(client, stub):
    response = post_event(client, make_event("invoice.paid", {}), header="t=1,v1=deadbeef")

    assert response.status_code == 400
    assert "Invalid signature" in response.json()["error"]
    assert stub.events == []


def test_missing_signature_returns_400(client, stub):
    payload = event_payload(make_event("invoice.paid", {}))

    response = client.post("/payments/webhook", content=payload)

    assert response.status_code == 400
    assert stub.events == []


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.fixture
def wired_client(engine):
    def engine_session():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = engine_session
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_redelivered_event_is_applied_once_through_real_wiring(wired_client, engine):
    event = make_event("product.created", {"id": "prod_1", "object": "product"},
                       created=int(time.time()) - 5, event_id="evt_wired")

    first = post_event(wired_client, event)
    second = post_event(wired_client, event)

    assert first.status_code == 200
    assert first.json()["status"] == "accepted"
    assert second.status_code == 200
    assert second.json()["status"] == "already_processed"
    with Session(engine) as session:
        rows = session.exec(select(WebhookEvent).where(WebhookEvent.stripe_event_id == "evt_wired")).all()
    assert len(rows) == 1 and rows[0].success
