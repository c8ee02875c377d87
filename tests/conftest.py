import hashlib
import hmac
import json
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytest
import stripe

from core.config import Settings
from core.database import build_engine, create_db_and_tables
from services.container import build_services

WEBHOOK_SECRET = "whsec_test_secret"
START = datetime(2025, 1, 15, 12, 0, 0)


class MutableClock:
    """Test clock; every billing component reads time through it."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


class RecordingNotifier:
    def __init__(self):
        self._lock = threading.Lock()
        self.sent = []

    def dispatch(self, notification) -> None:
        with self._lock:
            self.sent.append(notification)

    def kinds(self):
        return [notification.kind.value for notification in self.sent]

    def shutdown(self, wait: bool = True) -> None:
        pass


def sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def unix(moment: datetime) -> int:
    """Naive UTC datetime to the unix seconds Stripe sends."""
    return int((moment - datetime(1970, 1, 1)).total_seconds())


def event_payload(event_id: str, event_type: str, data_object: Dict[str, Any]) -> str:
    return json.dumps({"id": event_id, "object": "event", "type": event_type, "data": {"object": data_object}})


class WebhookDriver:
    """Builds signed Stripe-shaped events and feeds them to the reconciler."""

    def __init__(self, reconciler):
        self.reconciler = reconciler
        self._counter = 0

    def next_id(self) -> str:
        self._counter += 1
        return f"evt_test_{self._counter}"

    def send(self, event_type: str, data_object: Dict[str, Any], event_id: Optional[str] = None):
        payload = event_payload(event_id or self.next_id(), event_type, data_object)
        return self.reconciler.handle_external_event(payload.encode(), sign(payload))

    def checkout_completed(self, organization_id: str, plan_id: str, event_id: Optional[str] = None, **extra):
        data_object = {
            "id": extra.pop("session_id", f"cs_{organization_id}_{plan_id}"),
            "object": "checkout.session",
            "customer": extra.pop("customer", f"cus_{organization_id}"),
            "subscription": extra.pop("subscription", None),
            "payment_status": extra.pop("payment_status", "paid"),
            "metadata": {"organizationId": organization_id, "planId": plan_id},
        }
        data_object.update(extra)
        return self.send("checkout.session.completed", data_object, event_id)

    def invoice(self, event_type: str, subscription: str, event_id: Optional[str] = None, **extra):
        data_object = {
            "id": extra.pop("invoice_id", f"in_{subscription}"),
            "object": "invoice",
            "subscription": subscription,
            "billing_reason": extra.pop("billing_reason", "subscription_cycle"),
        }
        data_object.update(extra)
        return self.send(event_type, data_object, event_id)

    def subscription_deleted(self, subscription: str, event_id: Optional[str] = None):
        return self.send("customer.subscription.deleted", {"id": subscription, "object": "subscription"}, event_id)

    def subscription_updated(self, subscription: str, event_id: Optional[str] = None, **extra):
        data_object = {"id": subscription, "object": "subscription", "status": extra.pop("status", "active")}
        data_object.update(extra)
        return self.send("customer.subscription.updated", data_object, event_id)


class StripeSubscriptionCalls:
    """Stands in for stripe.Subscription so tests never reach the network."""

    def __init__(self):
        self.canceled = []
        self.modified = []

    def cancel(self, subscription_ref, **params):
        self.canceled.append(subscription_ref)
        return {"id": subscription_ref, "status": "canceled"}

    def modify(self, subscription_ref, **params):
        self.modified.append((subscription_ref, params))
        return {"id": subscription_ref, **params}


@pytest.fixture(autouse=True)
def stripe_subscriptions(monkeypatch):
    calls = StripeSubscriptionCalls()
    monkeypatch.setattr(stripe.Subscription, "cancel", calls.cancel)
    monkeypatch.setattr(stripe.Subscription, "modify", calls.modify)
    return calls


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        STRIPE_SECRET_KEY="sk_test_dummy",
        SWEEPER_ENABLED=False,
        FREE_PLAN_EVENT_CAP=1,
        FREE_PLAN_INVITATION_CAP=20,
        PAST_DUE_GRACE_DAYS=0,
        REMINDER_THRESHOLD_DAYS=[7, 3, 1],
    )


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'billing.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def billing(settings, engine, notifier, clock):
    return build_services(settings, engine=engine, notifier=notifier, clock=clock)


@pytest.fixture
def webhooks(billing):
    return WebhookDriver(billing.reconciler)


@pytest.fixture
def org(billing):
    """A freshly registered organization on the Free plan."""
    billing.store.register_organization("org-1", "Club de Voile", "contact@club.fr")
    return "org-1"
