import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import models.models  # noqa: F401  (registers tables)
from services.billing_repository import BillingRepository
from services.event_ordering import EventOrderingValidator
from services.webhook_handlers import WebhookEventHandlers
from services.webhook_ledger import WebhookLedger
from services.webhook_processor import WebhookProcessor
from tests.factories import NOW


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def notify_plan_updated(self, org_id, old_plan_id, new_plan_id, actor_user_id=None):
        self.calls.append((org_id, old_plan_id, new_plan_id))
        return 1


class FakeStripeClient:
    def __init__(self):
        self.subscriptions = {}
        self.price_updates = []
        self.update_error = None

    def retrieve_subscription(self, subscription_id):
        return self.subscriptions[subscription_id]

    def update_subscription_price(self, subscription_id, price_id, quantity=None):
        if self.update_error:
            raise self.update_error
        self.price_updates.append((subscription_id, price_id, quantity))
        return {"id": subscription_id}


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def stripe_client():
    return FakeStripeClient()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return lambda: float(NOW)


@pytest.fixture
def billing(session):
    return BillingRepository(session)


@pytest.fixture
def ledger(session):
    return WebhookLedger(session)


@pytest.fixture
def ordering(session, clock):
    return EventOrderingValidator(session, clock=clock)


@pytest.fixture
def handlers(billing, notifier, stripe_client):
    return WebhookEventHandlers(billing=billing, notifier=notifier, stripe_client=stripe_client)


@pytest.fixture
def processor(ledger, ordering, handlers, sleep, clock):
    return WebhookProcessor(ledger, ordering, handlers, max_attempts=3, base_delay=1.0, sleep=sleep, clock=clock)
