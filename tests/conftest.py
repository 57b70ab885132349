"""Pytest configuration and fixtures."""

import copy
import hashlib
import hmac
import json
import os
import time
from datetime import UTC, datetime
from typing import Any

os.environ.setdefault("PROMETHEUS_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from google.cloud import firestore

from coachbilling.auth.jwt import create_access_token
from coachbilling.billing.reconciler import WebhookReconciler
from coachbilling.services.billing_store import BillingStore, get_billing_store
from coachbilling.services.event_ledger import EventLedger, get_event_ledger
from coachbilling.services.notifications import MailQueue, get_mail_queue
from coachbilling.services.stripe_gateway import StripeGateway, get_stripe_gateway

WEBHOOK_SECRET = "whsec_test_secret"
PREMIUM_PRICE = "price_premium_monthly"
BASIC_PRICE = "price_other"
PERIOD_END = 1767225600  # 2026-01-01T00:00:00Z


# ============ Firestore fake ============


class FakeSnapshot:
    def __init__(self, doc_id: str, data: dict | None):
        self.id = doc_id
        self._data = data

    @property
    def exists(self) -> bool:
        return self._data is not None

    def to_dict(self) -> dict | None:
        return copy.deepcopy(self._data)


class FakeDocument:
    def __init__(self, db: "FakeFirestore", collection: str, doc_id: str):
        self._db = db
        self._collection = collection
        self.id = doc_id

    async def get(self) -> FakeSnapshot:
        return FakeSnapshot(self.id, self._db.docs(self._collection).get(self.id))

    async def set(self, data: dict, merge: bool = False) -> None:
        self._db.writes.append((self._collection, self.id, copy.deepcopy(data)))
        if self._db.fail_writes:
            raise RuntimeError("firestore unavailable")
        resolved = {
            k: (datetime.now(UTC) if v is firestore.SERVER_TIMESTAMP else v)
            for k, v in data.items()
        }
        docs = self._db.docs(self._collection)
        if merge and self.id in docs:
            docs[self.id].update(resolved)
        else:
            docs[self.id] = resolved


class FakeQuery:
    def __init__(self, db: "FakeFirestore", collection: str, filters=None, limit=None):
        self._db = db
        self._collection = collection
        self._filters = filters or []
        self._limit = limit

    def where(self, *, filter) -> "FakeQuery":
        return FakeQuery(self._db, self._collection, [*self._filters, filter], self._limit)

    def limit(self, count: int) -> "FakeQuery":
        return FakeQuery(self._db, self._collection, self._filters, count)

    async def get(self) -> list[FakeSnapshot]:
        matches = [
            FakeSnapshot(doc_id, data)
            for doc_id, data in self._db.docs(self._collection).items()
            if all(
                f.op_string == "==" and data.get(f.field_path) == f.value
                for f in self._filters
            )
        ]
        return matches[: self._limit] if self._limit else matches


class FakeCollection(FakeQuery):
    def document(self, doc_id: str) -> FakeDocument:
        return FakeDocument(self._db, self._collection, doc_id)

    async def add(self, data: dict):
        if self._db.fail_writes:
            raise RuntimeError("firestore unavailable")
        doc_id = f"auto{len(self._db.docs(self._collection)) + 1}"
        self._db.docs(self._collection)[doc_id] = copy.deepcopy(data)
        return datetime.now(UTC), FakeDocument(self._db, self._collection, doc_id)


class FakeFirestore:
    """In-memory stand-in for ``firestore.AsyncClient``."""

    def __init__(self):
        self.collections: dict[str, dict[str, dict]] = {}
        self.writes: list[tuple[str, str, dict]] = []
        self.fail_writes = False

    def docs(self, name: str) -> dict[str, dict]:
        return self.collections.setdefault(name, {})

    def collection(self, name: str) -> FakeCollection:
        return FakeCollection(self, name)

    def seed(self, collection: str, doc_id: str, data: dict) -> None:
        self.docs(collection)[doc_id] = copy.deepcopy(data)


def billing_fields(doc: dict) -> dict:
    """Document without the write timestamp, for state comparisons."""
    return {k: v for k, v in doc.items() if k != "updatedAt"}


# ============ Stripe fake ============


class FakeStripeGateway(StripeGateway):
    """Real signature verification, canned Stripe resources."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.subscriptions: dict[str, dict] = {}
        self.sessions: dict[str, dict] = {}
        self.customers: list[tuple[str, str | None]] = []
        self.checkout_calls: list[dict] = []
        self.portal_calls: list[tuple[str, str]] = []
        self.retrieve_calls: list[str] = []
        self.error: Exception | None = None

    def _maybe_fail(self) -> None:
        if self.error is not None:
            raise self.error

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        self.retrieve_calls.append(subscription_id)
        self._maybe_fail()
        return copy.deepcopy(self.subscriptions[subscription_id])

    async def retrieve_checkout_session(self, session_id: str) -> dict:
        self._maybe_fail()
        return copy.deepcopy(self.sessions[session_id])

    async def create_customer(self, user_id: str, email: str | None = None) -> str:
        self._maybe_fail()
        self.customers.append((user_id, email))
        return f"cus_new_{user_id}"

    async def create_checkout_session(self, **kwargs: Any) -> dict:
        self._maybe_fail()
        self.checkout_calls.append(kwargs)
        return {"id": f"cs_test_{len(self.checkout_calls)}", "url": "https://checkout.stripe.com/c/pay"}

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        self._maybe_fail()
        self.portal_calls.append((customer_id, return_url))
        return f"https://billing.stripe.com/session/{customer_id}"


# ============ Redis fake ============


class FakeRedis:
    def __init__(self):
        self.values: dict[str, bytes] = {}
        self.ttls: dict[str, int | None] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.values.get(key)

    async def delete(self, key):
        return 1 if self.values.pop(key, None) is not None else 0

    async def ping(self):
        return True


# ============ Builders ============


def make_subscription(
    sub_id: str = "sub_1",
    customer: str | None = "cus_1",
    status: str = "active",
    price: str | None = PREMIUM_PRICE,
    period_end: int | None = PERIOD_END,
    cancel_at_period_end: bool = False,
    cancel_at: int | None = None,
) -> dict:
    items = [{"id": "si_1", "price": {"id": price}}] if price else []
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_end": period_end,
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "items": {"object": "list", "data": items},
    }


def make_invoice(
    invoice_id: str = "in_1",
    subscription: str | None = "sub_1",
    customer: str | None = "cus_1",
) -> dict:
    return {"id": invoice_id, "object": "invoice", "subscription": subscription, "customer": customer}


def make_checkout_session(
    user_id: str | None = "u1",
    subscription: str | None = "sub_1",
    customer: str | None = "cus_1",
    mode: str = "subscription",
) -> dict:
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "mode": mode,
        "client_reference_id": user_id,
        "metadata": {"firebaseUID": user_id} if user_id else {},
        "subscription": subscription,
        "customer": customer,
    }


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> dict:
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe signs webhooks."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode()


# ============ Fixtures ============


@pytest.fixture
def fake_db() -> FakeFirestore:
    return FakeFirestore()


@pytest.fixture
def store(fake_db) -> BillingStore:
    return BillingStore(fake_db, "users")


@pytest.fixture
def mail(fake_db) -> MailQueue:
    return MailQueue(fake_db, "mail")


@pytest.fixture
def gateway() -> FakeStripeGateway:
    return FakeStripeGateway()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def ledger(fake_redis) -> EventLedger:
    return EventLedger(fake_redis, ttl_seconds=3600, processing_ttl_seconds=60)


@pytest.fixture
def reconciler(store, gateway, mail) -> WebhookReconciler:
    return WebhookReconciler(store, gateway, mail, {PREMIUM_PRICE})


@pytest.fixture
def app(store, gateway, mail, ledger, monkeypatch):
    from coachbilling.config import get_settings
    from coachbilling.main import create_app

    monkeypatch.setattr(get_settings(), "premium_price_ids", [PREMIUM_PRICE])

    application = create_app()
    application.dependency_overrides[get_billing_store] = lambda: store
    application.dependency_overrides[get_stripe_gateway] = lambda: gateway
    application.dependency_overrides[get_mail_queue] = lambda: mail
    application.dependency_overrides[get_event_ledger] = lambda: ledger
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def auth_headers() -> dict:
    token = create_access_token({"sub": "u1", "email": "coach@example.com"})
    return {"Authorization": f"Bearer {token}"}
