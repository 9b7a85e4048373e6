"""
Shared pytest fixtures for the membership tests.

Every test gets a fresh in-memory SQLite database seeded with the plans
below, a RecordingDispatcher and a scriptable fake gateway.
"""

from datetime import datetime, timezone

import pytest

from memberships.events import RecordingDispatcher
from memberships.gateways import ChargeResult, FreeGateway, Gateway, GatewayRegistry, ManualGateway
from memberships.lifecycle import LifecycleController
from memberships.loader import membership_from_dict
from memberships.storage import create_storage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

MEMBERSHIP_CONFIG = {
    "protected-content": {
        "name": "Protected Content",
        "special": "base",
        "rules": {
            "post": {"entries": {"welcome": "allow"}},
            "url": {"entries": {"example.com/blog": "allow"}},
        },
    },
    "guest": {
        "name": "Visitors",
        "special": "guest",
        "rules": {"page": {"entries": {"signup": "allow"}}},
    },
    "bronze": {
        "pricing_mode": "recurring",
        "price": "9.99",
        "period": {"count": 1, "unit": "months"},
        "trial": {"enabled": True, "period": {"count": 14, "unit": "days"}, "price": "0"},
        "rules": {
            "post": {"entries": {"bronze-guide": "allow", "shared-post": "allow", "archived": "deny"}},
            "category": {"entries": {"tutorials": "allow"}},
            "url": {"entries": {"example.com/members": "allow"}},
        },
    },
    "gold": {
        "type": "tiered_child",
        "parent_id": "bronze",
        "pricing_mode": "recurring",
        "price": "29.00",
        "period": {"count": 1, "unit": "months"},
        "rules": {
            "post": {"entries": {"gold-report": "allow", "archived": "allow"}},
            "category": {"entries": {"masterclass": "allow"}},
        },
    },
    "silver": {
        "pricing_mode": "recurring",
        "price": "5.00",
        "period": {"count": 1, "unit": "months"},
        "rules": {"post": {"entries": {"silver-notes": "allow", "shared-post": "deny"}}},
    },
    "pro": {
        "pricing_mode": "recurring",
        "price": "20.00",
        "period": {"count": 1, "unit": "months"},
        "trial": {"enabled": True, "period": {"count": 7, "unit": "days"}, "price": "1.00"},
        "rules": {"post": {"entries": {"pro-tips": "allow"}}},
    },
    "course": {
        "type": "dripped",
        "pricing_mode": "finite",
        "price": "49.00",
        "period": {"count": 8, "unit": "weeks"},
        "rules": {
            "post": {
                "entries": {"lesson-1": "allow", "lesson-2": "allow", "lesson-3": "allow"},
                "drip_days": {"lesson-2": 7, "lesson-3": 14},
            },
        },
    },
    "conference": {
        "pricing_mode": "date_range",
        "price": "120.00",
        "date_start": "2026-01-01T00:00:00+00:00",
        "date_end": "2026-12-31T23:59:59+00:00",
        "rules": {"page": {"entries": {"conference-videos": "allow"}}},
    },
    "community": {
        "pricing_mode": "free",
        "rules": {"page": {"entries": {"forum": "allow"}}},
    },
}


class FakeGateway(Gateway):
    """
    Scriptable gateway.

    ``results`` is consumed one entry per charge: a ChargeResult is returned,
    an exception is raised, a callable is called with the invoice and its
    return value used. With nothing scripted every charge is approved.
    """

    gateway_id = "fake"
    name = "Fake Gateway"

    def __init__(self, results=None, recurring=False, configured=True):
        self.results = list(results or [])
        self.recurring = recurring
        self.configured = configured
        self.calls = []

    def is_configured(self):
        return self.configured

    def supports_recurring(self):
        return self.recurring

    def charge(self, invoice, payment_details):
        self.calls.append((invoice, payment_details))
        if not self.results:
            return ChargeResult.approved(f"fake-{len(self.calls)}")
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        if callable(result):
            return result(invoice)
        return result


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def memberships():
    return {
        membership_id: membership_from_dict(membership_id, raw)
        for membership_id, raw in MEMBERSHIP_CONFIG.items()
    }


@pytest.fixture
def storage(memberships):
    """Fresh in-memory database with every test plan stored."""
    storage = create_storage("sqlite://")
    for membership in memberships.values():
        storage.save_membership(membership)
    return storage


@pytest.fixture
def events():
    return RecordingDispatcher()


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateways(fake_gateway):
    return GatewayRegistry([
        fake_gateway,
        FreeGateway(),
        ManualGateway(instructions="Transfer to IBAN XX00 0000"),
    ])


@pytest.fixture
def controller(storage, gateways, events):
    return LifecycleController(storage, gateways, events=events)


@pytest.fixture
def paid_subscription(controller, now):
    """Subscribe and pay through the fake gateway; returns the PurchaseResult."""

    def _purchase(member_id, membership_id, at=None, gateway_id="fake"):
        at = at or now
        subscription = controller.subscribe(member_id, membership_id, gateway_id, now=at)
        return controller.attempt_purchase(subscription.id, gateway_id, now=at).raise_for_error()

    return _purchase
