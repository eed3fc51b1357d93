"""Database coordination layer: engine, transactional sessions, and catalog seeding."""

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, scoped_session
from contextlib import contextmanager
from datetime import date, time
from decimal import Decimal
from typing import Dict, Optional
import logging

from errors import DomainError
from models import (
    Base, Category, EventDay, EventSession, InventoryLedger, PaymentKind,
    PaymentMethod, Ticket, TicketPrice, utcnow,
)

logger = logging.getLogger(__name__)


def _install_sqlite_locking(engine):
    """Make every SQLite transaction take the write lock up front.

    SQLite has no row locks, so ``SELECT ... FOR UPDATE`` compiles to a plain
    SELECT. ``BEGIN IMMEDIATE`` serializes writers instead, with the busy
    timeout queueing contenders rather than failing them.
    """

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """Thread-safe façade over SQLAlchemy sessions and transactional flows."""

    def __init__(self, database_url: str):
        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                echo=False
            )
            _install_sqlite_locking(self.engine)
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )
        self.session_factory = scoped_session(
            sessionmaker(bind=self.engine, expire_on_commit=False)
        )

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Provide a transactional scope, committing on success and rolling back otherwise."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except DomainError:
            session.rollback()
            raise
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def dispose(self):
        self.session_factory.remove()
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Catalog seeding (admin-created records)
    # ------------------------------------------------------------------

    def create_event_day(self, name: str, day_date: date, is_active: bool = True) -> int:
        with self.get_session() as session:
            day = EventDay(name=name, date=day_date, is_active=is_active)
            session.add(day)
            session.flush()
            logger.info(f"Created event day {day.id} ({name}, {day_date.isoformat()})")
            return day.id

    def create_event_session(
        self,
        day_id: int,
        name: str,
        start_time: time,
        end_time: time,
        adult_capacity: int = 100,
        student_capacity: int = 50,
        child_capacity: int = 50,
        total_capacity: Optional[int] = None,
    ) -> int:
        """Create a session together with its inventory ledger row."""
        if total_capacity is None:
            total_capacity = adult_capacity + student_capacity + child_capacity

        with self.get_session() as session:
            event_session = EventSession(
                day_id=day_id,
                name=name,
                start_time=start_time,
                end_time=end_time,
                is_active=True,
            )
            session.add(event_session)
            session.flush()

            session.add(InventoryLedger(
                session_id=event_session.id,
                adult_capacity=adult_capacity,
                student_capacity=student_capacity,
                child_capacity=child_capacity,
                total_capacity=total_capacity,
                adult_booked=0,
                student_booked=0,
                child_booked=0,
                total_booked=0,
                adult_available=adult_capacity,
                student_available=student_capacity,
                child_available=child_capacity,
                total_available=total_capacity,
                is_sold_out=False,
                is_active=True,
            ))

            logger.info(
                "Created session %s on day %s with capacity adult=%s student=%s child=%s total=%s",
                event_session.id, day_id, adult_capacity, student_capacity, child_capacity, total_capacity
            )
            return event_session.id

    def create_price(self, name: str, category: Category, amount: Decimal, description: str = None) -> int:
        with self.get_session() as session:
            price = TicketPrice(
                name=name,
                category=Category(category),
                price=Decimal(amount),
                description=description,
                is_active=True,
            )
            session.add(price)
            session.flush()
            return price.id

    def create_payment_method(self, method_id: str, name: str, kind: PaymentKind = PaymentKind.DIGITAL) -> str:
        with self.get_session() as session:
            session.add(PaymentMethod(id=method_id, name=name, kind=PaymentKind(kind), is_active=True))
            return method_id

    def set_session_active(self, session_id: int, is_active: bool) -> bool:
        """Administratively open or close a session; the ledger mirrors the flag."""
        with self.get_session() as session:
            event_session = session.get(EventSession, session_id)
            if not event_session:
                return False
            event_session.is_active = is_active
            ledger = session.get(InventoryLedger, session_id)
            if ledger:
                ledger.is_active = is_active and not ledger.is_sold_out
            return True

    def health_check(self) -> Dict:
        """Report database connectivity and catalog counts; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))

                return {
                    "status": "healthy",
                    "database": "connected",
                    "sessions": session.query(EventSession).count(),
                    "tickets": session.query(Ticket).count(),
                    "checked_at": utcnow().isoformat(),
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }
