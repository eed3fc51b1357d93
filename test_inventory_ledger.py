"""Inventory ledger: reserve/release counters, sold-out transitions, and reconciliation."""

from concurrent.futures import ThreadPoolExecutor
from datetime import time
from decimal import Decimal

import pytest

from errors import (
    CapacityError, InsufficientCapacityError, InvalidPurchaseRequestError,
    LedgerNotFoundError, SessionInactiveError, SessionNotFoundError,
)
from inventory_ledger import CategoryCount
from models import Category, EventSession, InventoryLedger, Ticket, TicketStatus


def assert_counters_consistent(snapshot):
    for category, counts in snapshot.categories.items():
        assert counts.booked + counts.available == counts.capacity, category
    assert snapshot.total.booked == sum(c.booked for c in snapshot.categories.values())
    assert snapshot.total.booked + snapshot.total.available == snapshot.total.capacity


def add_ticket(db, session_id, code, status=TicketStatus.ACTIVE, adult=0, student=0, child=0):
    with db.get_session() as session:
        category = Category.ADULT if adult else Category.STUDENT if student else Category.CHILD
        session.add(Ticket(
            session_id=session_id,
            ticket_code=code,
            ticket_type=category,
            adult_quantity=adult,
            student_quantity=student,
            child_quantity=child,
            total_quantity=adult + student + child,
            total_amount=Decimal("0"),
            status=status,
        ))


def test_reserve_decrements_category_and_total(ledger, catalog_ids):
    """Test a reservation moves quantity from available to booked"""
    reservation = ledger.reserve(catalog_ids["session_id"], Category.ADULT, 3)

    assert reservation.remaining.booked == 3
    assert reservation.remaining.available == 7
    assert not reservation.sold_out

    snapshot = ledger.availability(catalog_ids["session_id"])
    assert snapshot.categories[Category.ADULT].booked == 3
    assert snapshot.total.booked == 3
    assert snapshot.total.available == 17
    assert_counters_consistent(snapshot)


def test_reserve_rejects_over_capacity_without_side_effects(ledger, catalog_ids):
    """Test a reservation larger than the category leaves the ledger untouched"""
    before = ledger.availability(catalog_ids["session_id"])

    with pytest.raises(InsufficientCapacityError) as exc:
        ledger.reserve(catalog_ids["session_id"], Category.STUDENT, 6)

    assert exc.value.available == 5
    assert ledger.availability(catalog_ids["session_id"]).counters() == before.counters()


def test_total_capacity_caps_categories(ledger, make_session):
    """Test the session total is enforced even when the category has room"""
    session_id = make_session(adult=5, student=5, total=6)
    ledger.reserve(session_id, Category.ADULT, 4)

    with pytest.raises(InsufficientCapacityError):
        ledger.reserve(session_id, Category.STUDENT, 3)

    ledger.reserve(session_id, Category.STUDENT, 2)
    snapshot = ledger.availability(session_id)
    assert snapshot.total.available == 0
    assert snapshot.is_sold_out


def test_invalid_quantity_and_unknown_session(ledger, catalog_ids):
    with pytest.raises(InvalidPurchaseRequestError):
        ledger.reserve(catalog_ids["session_id"], Category.ADULT, 0)
    with pytest.raises(LedgerNotFoundError):
        ledger.reserve(999999, Category.ADULT, 1)


def test_category_exhaustion_closes_session(db, ledger, make_session):
    """Test selling the last ticket of a category marks the session sold out"""
    session_id = make_session(adult=2, student=1)
    ledger.reserve(session_id, Category.STUDENT, 1)

    snapshot = ledger.availability(session_id)
    assert snapshot.is_sold_out
    assert not snapshot.is_active

    with db.get_session() as session:
        assert session.get(EventSession, session_id).is_active is False

    with pytest.raises(SessionInactiveError):
        ledger.reserve(session_id, Category.ADULT, 1)


def test_release_reopens_sold_out_session(db, ledger, make_session):
    session_id = make_session(adult=1)
    ledger.reserve(session_id, Category.ADULT, 1)
    assert ledger.availability(session_id).is_sold_out

    snapshot = ledger.release(session_id, Category.ADULT, 1)

    assert not snapshot.is_sold_out
    assert snapshot.is_active
    assert snapshot.categories[Category.ADULT].available == 1
    with db.get_session() as session:
        assert session.get(EventSession, session_id).is_active is True


def test_release_does_not_reopen_administratively_closed_session(db, ledger, catalog_ids):
    session_id = catalog_ids["session_id"]
    ledger.reserve(session_id, Category.ADULT, 2)
    db.set_session_active(session_id, False)

    snapshot = ledger.release(session_id, Category.ADULT, 1)

    assert not snapshot.is_active
    with pytest.raises(SessionInactiveError):
        ledger.reserve(session_id, Category.ADULT, 1)


def test_release_clamps_to_booked(ledger, catalog_ids):
    """Test releasing more than was booked never pushes counters past capacity"""
    session_id = catalog_ids["session_id"]
    ledger.reserve(session_id, Category.CHILD, 2)

    snapshot = ledger.release(session_id, Category.CHILD, 5)

    assert snapshot.categories[Category.CHILD].booked == 0
    assert snapshot.categories[Category.CHILD].available == 5
    assert_counters_consistent(snapshot)


def test_last_seat_race(ledger, make_session):
    """Test two concurrent reservations for the last seat: exactly one wins"""
    session_id = make_session(adult=1)

    def attempt(_):
        try:
            ledger.reserve(session_id, Category.ADULT, 1)
            return "ok"
        except CapacityError:
            return "capacity"

    with ThreadPoolExecutor(max_workers=2) as executor:
        outcomes = list(executor.map(attempt, range(2)))

    assert sorted(outcomes) == ["capacity", "ok"]
    snapshot = ledger.availability(session_id)
    assert snapshot.categories[Category.ADULT].booked == 1
    assert snapshot.categories[Category.ADULT].available == 0
    assert snapshot.is_sold_out


def test_concurrent_reservations_never_oversell(ledger, make_session):
    session_id = make_session(adult=10)

    def attempt(_):
        try:
            ledger.reserve(session_id, Category.ADULT, 1)
            return True
        except CapacityError:
            return False

    with ThreadPoolExecutor(max_workers=10) as executor:
        outcomes = list(executor.map(attempt, range(30)))

    assert sum(outcomes) == 10
    snapshot = ledger.availability(session_id)
    assert snapshot.categories[Category.ADULT].booked == 10
    assert_counters_consistent(snapshot)


def test_recompute_repairs_drift_and_is_idempotent(db, ledger, catalog_ids):
    """Test recompute rebuilds counters from tickets holding inventory"""
    session_id = catalog_ids["session_id"]
    add_ticket(db, session_id, "TKDRIFT00001", adult=2)
    add_ticket(db, session_id, "TKDRIFT00002", status=TicketStatus.PENDING, student=1)
    add_ticket(db, session_id, "TKDRIFT00003", status=TicketStatus.USED, child=1)
    add_ticket(db, session_id, "TKDRIFT00004", status=TicketStatus.CANCELLED, adult=3)
    add_ticket(db, session_id, "TKDRIFT00005", status=TicketStatus.FAILED, adult=4)

    # Counters drifted away from the ticket table
    with db.get_session() as session:
        row = session.get(InventoryLedger, session_id)
        row.adult_booked, row.adult_available = 7, 3

    first = ledger.recompute(session_id)
    second = ledger.recompute(session_id)

    assert first.categories[Category.ADULT].booked == 2
    assert first.categories[Category.STUDENT].booked == 1
    assert first.categories[Category.CHILD].booked == 1
    assert first.total.booked == 4
    assert_counters_consistent(first)
    assert second.counters() == first.counters()


def test_recompute_all_covers_every_session(ledger, catalog_ids):
    ledger.reserve(catalog_ids["session_id"], Category.ADULT, 1)

    snapshots = ledger.recompute_all()

    by_session = {s.session_id: s for s in snapshots}
    assert set(by_session) == {catalog_ids["session_id"], catalog_ids["closed_session_id"]}
    # No ticket backs the reservation, so reconciliation returns it
    assert by_session[catalog_ids["session_id"]].total.booked == 0


def test_snapshot_to_dict_shape(ledger, catalog_ids):
    payload = ledger.availability(catalog_ids["session_id"]).to_dict()

    assert payload["adult"] == {"capacity": 10, "booked": 0, "available": 10}
    assert payload["total"]["capacity"] == 20
    assert payload["is_sold_out"] is False
    assert payload["is_active"] is True


def test_ensure_ledger_creates_and_resizes(db, ledger, catalog_ids):
    with db.get_session() as session:
        bare = EventSession(
            day_id=catalog_ids["day_id"], name="Late", start_time=time(18, 0), end_time=time(21, 0), is_active=True
        )
        session.add(bare)
        session.flush()
        session_id = bare.id

    created = ledger.ensure_ledger(session_id, {Category.ADULT: 4, Category.CHILD: 2})
    assert created.categories[Category.ADULT] == CategoryCount(4, 0, 4)
    assert created.categories[Category.STUDENT].capacity == 0
    assert created.total.capacity == 6

    ledger.reserve(session_id, Category.ADULT, 1)
    add_ticket(db, session_id, "TKRESIZE0001", adult=1)

    resized = ledger.ensure_ledger(session_id, {"ADULT": 8, "CHILD": 2}, total_capacity=9)
    assert resized.categories[Category.ADULT] == CategoryCount(8, 1, 7)
    assert resized.total.available == 8
    assert_counters_consistent(resized)


def test_ensure_ledger_unknown_session(ledger):
    with pytest.raises(SessionNotFoundError):
        ledger.ensure_ledger(424242, {Category.ADULT: 1})
