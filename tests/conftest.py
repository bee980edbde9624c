import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Ensure the repo root is on sys.path so `import tourhub` works without an
# editable install.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from tourhub import events, gateway, quota
from tourhub.db import session
from tourhub.errors import GatewayError
from tourhub.models import Base


class FakeStripe:
    """In-memory stand-in for the functions in tourhub.gateway."""

    def __init__(self):
        self._n = 0
        self.customers = {}
        self.checkout_sessions = {}
        self.subscriptions = {}
        self.intents = {}
        self.cancelled = []

    def _id(self, prefix: str) -> str:
        self._n += 1
        return f"{prefix}_test_{self._n}"

    def create_customer(self, email, name, metadata):
        cus = {"id": self._id("cus"), "email": email, "name": name, "metadata": metadata}
        self.customers[cus["id"]] = cus
        return dict(cus)

    def retrieve_customer(self, customer_id):
        if customer_id not in self.customers:
            raise GatewayError(f"No such customer: {customer_id}")
        return dict(self.customers[customer_id])

    def create_product(self, name, description, metadata):
        return {"id": self._id("prod"), "name": name}

    def create_monthly_price(self, product_id, unit_amount, currency, metadata):
        return {"id": self._id("price"), "product": product_id, "unit_amount": unit_amount}

    def create_checkout_session(self, customer_id, price_id, success_url, cancel_url, metadata):
        cs = self._id("cs")
        sess = {
            "id": cs,
            "url": f"https://checkout.stripe.test/{cs}",
            "customer": customer_id,
            "metadata": dict(metadata),
            "subscription": None,
            "payment_status": "unpaid",
            "amount_total": None,
            "currency": "usd",
        }
        self.checkout_sessions[cs] = sess
        return dict(sess)

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.checkout_sessions:
            raise GatewayError(f"No such checkout session: {session_id}")
        return dict(self.checkout_sessions[session_id])

    def create_billing_portal_session(self, customer_id, return_url):
        return {"id": self._id("bps"), "url": f"https://billing.stripe.test/{customer_id}"}

    def retrieve_subscription(self, subscription_id):
        return dict(self.subscriptions.get(subscription_id, {"id": subscription_id}))

    def cancel_subscription(self, subscription_id):
        self.cancelled.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    def create_payment_intent(self, amount, currency, metadata, description):
        pi = {
            "id": self._id("pi"),
            "amount": amount,
            "currency": currency,
            "metadata": dict(metadata),
            "status": "requires_payment_method",
        }
        pi["client_secret"] = f"{pi['id']}_secret"
        self.intents[pi["id"]] = pi
        return dict(pi)

    def retrieve_payment_intent(self, payment_intent_id):
        if payment_intent_id not in self.intents:
            raise GatewayError(f"No such payment_intent: {payment_intent_id}")
        return dict(self.intents[payment_intent_id])


_GATEWAY_FUNCTIONS = (
    "create_customer",
    "retrieve_customer",
    "create_product",
    "create_monthly_price",
    "create_checkout_session",
    "retrieve_checkout_session",
    "create_billing_portal_session",
    "retrieve_subscription",
    "cancel_subscription",
    "create_payment_intent",
    "retrieve_payment_intent",
)


@pytest.fixture(autouse=True)
def rabbitmq_down(monkeypatch):
    # Events are best-effort; every test runs without a broker.
    monkeypatch.setattr(events, "EVENTS_STRICT", False)

    async def _boom(*args, **kwargs):
        raise RuntimeError("rabbitmq down")

    monkeypatch.setattr(events.aio_pika, "connect_robust", _boom)


@pytest.fixture(autouse=True)
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    for name in _GATEWAY_FUNCTIONS:
        monkeypatch.setattr(gateway, name, getattr(fake, name))
    return fake


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def s(engine):
    with session(engine) as sess:
        yield sess


@pytest.fixture
def host(s):
    return quota.register_host(s, user_id="host-user-1", email="Host@Example.com", name="Host One")


@pytest.fixture
def make_tour(s):
    def _make(host, *, max_group_size=10, price=50_00, title="Lake Bled Walk"):
        # Other sessions (the app, webhooks) may have moved the host row.
        s.expire_all()
        allowance = quota.check_tour_creation(s, host.user_id)
        return quota.create_tour(
            s,
            allowance,
            quota.NewTour(title=title, max_group_size=max_group_size, destination="Bled", price=price),
        )

    return _make


@pytest.fixture
def tour(make_tour, host):
    return make_tour(host)


@pytest.fixture
def client(engine):
    from fastapi.testclient import TestClient

    from tourhub.db import get_engine
    from tourhub.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
