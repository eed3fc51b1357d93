"""Per-session capacity tracking with atomic reserve/release and drift repair."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from errors import (
    InsufficientCapacityError, InvalidPurchaseRequestError, LedgerNotFoundError,
    SessionInactiveError, SessionNotFoundError,
)
from models import (
    Category, EventSession, INVENTORY_HOLDING_STATUSES, InventoryLedger, Ticket, utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategoryCount:
    capacity: int
    booked: int
    available: int


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable copy of a ledger row, safe to use after the transaction closes."""
    session_id: int
    categories: Dict[Category, CategoryCount]
    total: CategoryCount
    is_sold_out: bool
    is_active: bool

    @classmethod
    def of(cls, ledger: InventoryLedger) -> "LedgerSnapshot":
        return cls(
            session_id=ledger.session_id,
            categories={c: CategoryCount(*ledger.counts(c)) for c in Category},
            total=CategoryCount(ledger.total_capacity, ledger.total_booked, ledger.total_available),
            is_sold_out=ledger.is_sold_out,
            is_active=ledger.is_active,
        )

    def counters(self) -> tuple:
        """Counter values only, for comparing two snapshots."""
        return (
            tuple((c.value, self.categories[c]) for c in Category),
            self.total,
            self.is_sold_out,
            self.is_active,
        )

    def to_dict(self) -> Dict:
        payload = {
            c.value.lower(): {
                "capacity": n.capacity,
                "booked": n.booked,
                "available": n.available,
            }
            for c, n in self.categories.items()
        }
        payload["total"] = {
            "capacity": self.total.capacity,
            "booked": self.total.booked,
            "available": self.total.available,
        }
        payload.update({
            "session_id": self.session_id,
            "is_sold_out": self.is_sold_out,
            "is_active": self.is_active and not self.is_sold_out,
        })
        return payload


@dataclass(frozen=True)
class Reservation:
    session_id: int
    category: Category
    quantity: int
    remaining: CategoryCount
    sold_out: bool = field(default=False)


def _derive_sold_out(ledger: InventoryLedger) -> bool:
    """Sold out once the total, or any category that has capacity, is exhausted."""
    if ledger.total_available <= 0:
        return True
    for category in Category:
        capacity, _, available = ledger.counts(category)
        if capacity > 0 and available <= 0:
            return True
    return False


def _apply_sold_out(session, ledger: InventoryLedger):
    """Refresh the sold-out flag and mirror activity onto the session row.

    A session closed administratively stays closed; one closed only because it
    sold out reopens when capacity comes back.
    """
    was_sold_out = ledger.is_sold_out
    ledger.is_sold_out = _derive_sold_out(ledger)

    if ledger.is_sold_out:
        ledger.is_active = False
    elif was_sold_out:
        ledger.is_active = True
    else:
        return

    event_session = session.get(EventSession, ledger.session_id)
    if event_session is not None:
        event_session.is_active = ledger.is_active


class LedgerManager:
    """Atomic reserve/release primitive on the per-session ledger row.

    Every mutation locks the ledger row first (``SELECT ... FOR UPDATE``), so
    reserve, release and recompute on one session run in a serial order while
    different sessions never contend. The underscore-prefixed variants run in
    the caller's transaction; the public methods open their own.
    """

    def __init__(self, db):
        self.db = db

    def _lock(self, session, session_id) -> InventoryLedger:
        ledger = session.query(InventoryLedger).filter(
            InventoryLedger.session_id == session_id
        ).with_for_update().first()
        if ledger is None:
            raise LedgerNotFoundError(session_id)
        return ledger

    # ------------------------------------------------------------------
    # reserve / release
    # ------------------------------------------------------------------

    def reserve(self, session_id: int, category: Category, quantity: int) -> Reservation:
        with self.db.get_session() as session:
            return self._reserve(session, session_id, category, quantity)

    def _reserve(self, session, session_id: int, category: Category, quantity: int) -> Reservation:
        category = Category(category)
        if quantity <= 0:
            raise InvalidPurchaseRequestError("quantity must be a positive integer")

        # CRITICAL SECTION: the row lock is held until the caller's transaction ends
        ledger = self._lock(session, session_id)

        if not ledger.is_active or ledger.is_sold_out:
            raise SessionInactiveError(session_id)

        capacity, booked, available = ledger.counts(category)
        if available < quantity:
            raise InsufficientCapacityError(category.value, quantity, available)
        if ledger.total_available < quantity:
            raise InsufficientCapacityError("total", quantity, ledger.total_available)

        ledger.set_counts(category, booked + quantity, available - quantity)
        ledger.total_booked += quantity
        ledger.total_available -= quantity
        ledger.last_ticket_at = utcnow()
        _apply_sold_out(session, ledger)

        if ledger.is_sold_out:
            logger.info(f"Session {session_id} sold out")

        return Reservation(
            session_id=session_id,
            category=category,
            quantity=quantity,
            remaining=CategoryCount(capacity, booked + quantity, available - quantity),
            sold_out=ledger.is_sold_out,
        )

    def release(self, session_id: int, category: Category, quantity: int) -> LedgerSnapshot:
        with self.db.get_session() as session:
            return self._release(session, session_id, category, quantity)

    def _release(self, session, session_id: int, category: Category, quantity: int) -> LedgerSnapshot:
        """Return a reservation's quantity to the category and the total."""
        category = Category(category)
        ledger = self._lock(session, session_id)

        capacity, booked, available = ledger.counts(category)
        releasable = min(quantity, booked, ledger.total_booked)
        if releasable < quantity:
            logger.warning(
                "Release of %s %s on session %s exceeds booked count %s; releasing %s",
                quantity, category.value, session_id, booked, releasable
            )

        ledger.set_counts(category, booked - releasable, available + releasable)
        ledger.total_booked -= releasable
        ledger.total_available += releasable
        _apply_sold_out(session, ledger)

        logger.info(f"Released {releasable} {category.value} on session {session_id}")
        return LedgerSnapshot.of(ledger)

    # ------------------------------------------------------------------
    # reconciliation
    # ------------------------------------------------------------------

    def recompute(self, session_id: int) -> LedgerSnapshot:
        with self.db.get_session() as session:
            return self._recompute(session, session_id)

    def _recompute(self, session, session_id: int) -> LedgerSnapshot:
        """Rebuild every counter from the ticket table under the ledger lock."""
        ledger = self._lock(session, session_id)
        before = LedgerSnapshot.of(ledger)

        tickets = session.query(Ticket).filter(
            Ticket.session_id == session_id,
            Ticket.status.in_(INVENTORY_HOLDING_STATUSES)
        ).all()

        booked = {c: sum(t.quantity_for(c) for t in tickets) for c in Category}
        total_booked = sum(booked.values())

        for category in Category:
            capacity = ledger.counts(category)[0]
            if booked[category] > capacity:
                logger.error(
                    "Session %s is oversold for %s: booked %s of %s",
                    session_id, category.value, booked[category], capacity
                )
            ledger.set_counts(category, booked[category], max(0, capacity - booked[category]))

        ledger.total_booked = total_booked
        ledger.total_available = max(0, ledger.total_capacity - total_booked)
        _apply_sold_out(session, ledger)

        after = LedgerSnapshot.of(ledger)
        if after.counters() != before.counters():
            logger.warning(f"Recompute corrected drift on session {session_id}")
        return after

    def ensure_ledger(self, session_id: int, capacities: Dict[Category, int], total_capacity: Optional[int] = None) -> LedgerSnapshot:
        """Create the session's ledger row, or resize an existing one.

        Counters are rebuilt from the ticket table afterwards, so resizing a
        session that already sold tickets keeps booked counts intact.
        """
        capacities = {Category(c): int(n) for c, n in capacities.items()}
        if any(n < 0 for n in capacities.values()):
            raise InvalidPurchaseRequestError("capacities must be non-negative")
        if total_capacity is None:
            total_capacity = sum(capacities.values())

        with self.db.get_session() as session:
            if session.get(EventSession, session_id) is None:
                raise SessionNotFoundError(session_id)

            ledger = session.query(InventoryLedger).filter(
                InventoryLedger.session_id == session_id
            ).with_for_update().first()
            if ledger is None:
                ledger = InventoryLedger(session_id=session_id, is_sold_out=False, is_active=True)
                session.add(ledger)
                logger.info(f"Created ledger for session {session_id}")

            for category in Category:
                setattr(ledger, f'{category.value.lower()}_capacity', capacities.get(category, 0))
            ledger.total_capacity = total_capacity
            session.flush()

            return self._recompute(session, session_id)

    def recompute_all(self) -> List[LedgerSnapshot]:
        """Reconcile every session, one transaction per session."""
        with self.db.get_session() as session:
            session_ids = [row[0] for row in session.query(InventoryLedger.session_id).all()]

        snapshots = [self.recompute(session_id) for session_id in session_ids]
        logger.info(f"Recomputed {len(snapshots)} session ledgers")
        return snapshots

    def availability(self, session_id: int) -> LedgerSnapshot:
        with self.db.get_session() as session:
            ledger = session.get(InventoryLedger, session_id)
            if ledger is None:
                raise LedgerNotFoundError(session_id)
            return LedgerSnapshot.of(ledger)
