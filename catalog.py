"""Read-only access to event days, sessions, prices, and payment methods."""

from typing import Dict, List, Optional

from models import EventDay, EventSession, PaymentMethod, TicketPrice


class CatalogLookup:
    """Catalog reads.

    The ``session``-taking methods run inside the caller's transaction so the
    purchase pipeline sees one consistent snapshot; the ``list_*`` helpers open
    their own short read transaction for the HTTP listing endpoints.
    """

    def __init__(self, db):
        self.db = db

    def active_day(self, session, day_id) -> Optional[EventDay]:
        return session.query(EventDay).filter(
            EventDay.id == day_id,
            EventDay.is_active.is_(True)
        ).first()

    def session_for_day(self, session, session_id, day_id) -> Optional[EventSession]:
        return session.query(EventSession).filter(
            EventSession.id == session_id,
            EventSession.day_id == day_id
        ).first()

    def price(self, session, price_id) -> Optional[TicketPrice]:
        return session.get(TicketPrice, price_id)

    def payment_method(self, session, payment_method_id) -> Optional[PaymentMethod]:
        return session.get(PaymentMethod, payment_method_id)

    def list_days(self) -> List[Dict]:
        with self.db.get_session() as session:
            days = session.query(EventDay).filter(
                EventDay.is_active.is_(True)
            ).order_by(EventDay.date).all()
            return [
                {"id": d.id, "name": d.name, "date": d.date.isoformat(), "is_active": d.is_active}
                for d in days
            ]

    def list_sessions(self, day_id) -> List[Dict]:
        with self.db.get_session() as session:
            sessions = session.query(EventSession).filter(
                EventSession.day_id == day_id
            ).order_by(EventSession.start_time).all()
            return [
                {
                    "id": s.id,
                    "day_id": s.day_id,
                    "name": s.name,
                    "start_time": s.start_time.strftime("%H:%M"),
                    "end_time": s.end_time.strftime("%H:%M"),
                    "is_active": s.is_active,
                }
                for s in sessions
            ]

    def list_prices(self) -> List[Dict]:
        with self.db.get_session() as session:
            prices = session.query(TicketPrice).filter(
                TicketPrice.is_active.is_(True)
            ).order_by(TicketPrice.id).all()
            return [
                {
                    "id": p.id,
                    "name": p.name,
                    "category": p.category.value,
                    "price": str(p.price),
                    "description": p.description,
                }
                for p in prices
            ]

    def list_payment_methods(self) -> List[Dict]:
        with self.db.get_session() as session:
            methods = session.query(PaymentMethod).filter(
                PaymentMethod.is_active.is_(True)
            ).order_by(PaymentMethod.id).all()
            return [{"id": m.id, "name": m.name, "kind": m.kind.value} for m in methods]
