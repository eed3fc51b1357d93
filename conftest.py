"""Shared fixtures: a throwaway SQLite database, a seeded catalog, and fake collaborators."""

from datetime import date, datetime, time, timezone
from decimal import Decimal
import dataclasses
import re

import pytest

from assignments import AssignmentEngine, OtpService
from catalog import CatalogLookup
from config import Settings
from database_manager import DatabaseManager
from errors import GatewayTimeoutError
from inventory_ledger import LedgerManager
from models import Category, PaymentKind
from payment_gateway import GatewayResponse
from purchase_pipeline import PurchasePipeline, PurchaseRequest, SettlementService
from verification import VerificationEngine

EVENT_DATE = date(2026, 12, 24)
# Session runs 10:00-14:00 in Africa/Dar_es_Salaam (UTC+3)
DURING_SESSION = datetime(2026, 12, 24, 8, 0, tzinfo=timezone.utc)


class FakeGateway:
    """Stands in for the payment API; ``mode`` picks accept, reject or timeout."""

    def __init__(self):
        self.mode = "accept"
        self.calls = []
        self.statuses = {}

    def checkout(self, **kwargs):
        self.calls.append(kwargs)
        if self.mode == "timeout":
            raise GatewayTimeoutError()
        if self.mode == "reject":
            return GatewayResponse(
                accepted=False,
                external_id=kwargs["external_id"],
                reason="Insufficient balance",
                raw={"success": False, "message": "Insufficient balance"},
            )
        return GatewayResponse(
            accepted=True,
            transaction_id=f"TX-{len(self.calls)}",
            external_id=kwargs["external_id"],
            reason="Checkout initiated",
            raw={"success": True},
        )

    def check_status(self, external_id):
        status = self.statuses.get(external_id, "pending")
        if status == "timeout":
            raise GatewayTimeoutError("status check failed")
        return status


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    def send(self, phone, message):
        self.messages.append((phone, message))
        return True

    def last_otp(self, phone):
        for to, message in reversed(self.messages):
            if to == phone:
                match = re.search(r"\b(\d{6})\b", message)
                if match:
                    return match.group(1)
        return None


class FixedClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite:///{tmp_path / 'ticketing.db'}")


@pytest.fixture
def db(settings):
    manager = DatabaseManager(settings.database_url)
    yield manager
    manager.dispose()


@pytest.fixture
def catalog_ids(db):
    """Seed one open day with a morning session, plus a closed day."""
    day_id = db.create_event_day("Christmas Eve", EVENT_DATE)
    session_id = db.create_event_session(
        day_id, "Morning", time(10, 0), time(14, 0),
        adult_capacity=10, student_capacity=5, child_capacity=5,
    )
    closed_day_id = db.create_event_day("Closed Day", date(2026, 12, 25), is_active=False)
    closed_session_id = db.create_event_session(closed_day_id, "Morning", time(10, 0), time(14, 0))
    return {
        "day_id": day_id,
        "session_id": session_id,
        "closed_day_id": closed_day_id,
        "closed_session_id": closed_session_id,
        "adult_price_id": db.create_price("Adult", Category.ADULT, Decimal("10000")),
        "student_price_id": db.create_price("Student", Category.STUDENT, Decimal("5000")),
        "child_price_id": db.create_price("Child", Category.CHILD, Decimal("3000")),
        "cash": db.create_payment_method("cash", "Cash", PaymentKind.CASH),
        "mpesa": db.create_payment_method("mpesa", "M-Pesa", PaymentKind.DIGITAL),
    }


@pytest.fixture
def make_session(db, catalog_ids):
    """Build an extra session on the open day with explicit capacities."""
    def _make(adult=1, student=0, child=0, total=None):
        return db.create_event_session(
            catalog_ids["day_id"], "Extra", time(10, 0), time(14, 0),
            adult_capacity=adult, student_capacity=student, child_capacity=child,
            total_capacity=total,
        )
    return _make


@pytest.fixture
def make_request(catalog_ids):
    def _make(**overrides):
        request = PurchaseRequest(
            day_id=catalog_ids["day_id"],
            session_id=catalog_ids["session_id"],
            price_id=catalog_ids["adult_price_id"],
            quantity=1,
            category=Category.ADULT,
            payment_method_id=catalog_ids["cash"],
            purchaser_name="Amina Juma",
            purchaser_phone="255712000001",
            total_amount=Decimal("10000"),
        )
        return dataclasses.replace(request, **overrides)
    return _make


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FixedClock(DURING_SESSION)


@pytest.fixture
def ledger(db):
    return LedgerManager(db)


@pytest.fixture
def pipeline(db, ledger, gateway, notifier, settings):
    return PurchasePipeline(db, CatalogLookup(db), ledger, gateway, notifier, settings)


@pytest.fixture
def settlement(db, ledger, gateway, notifier):
    return SettlementService(db, ledger, gateway, notifier)


@pytest.fixture
def verifier(db, settings, clock):
    return VerificationEngine(db, settings, clock=clock)


@pytest.fixture
def assignment_engine(db, notifier):
    return AssignmentEngine(db, notifier)


@pytest.fixture
def otp_service(db, notifier, settings, clock):
    return OtpService(db, notifier, settings, clock=clock)
