"""Agent-driven reassignment of paid tickets to named attendees, with OTP confirmation."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging
import secrets

from sqlalchemy.exc import IntegrityError

from errors import (
    AlreadyAssignedError, AssignmentNotActiveError, AssignmentNotFoundError,
    AssignmentOwnershipError, TicketNotEligibleError, TicketNotFoundError,
)
from models import (
    Assignment, AssignmentStatus, Attendee, Category, EventSession, OtpChallenge,
    PaymentStatus, Ticket, TicketStatus, utcnow,
)
from notifications import notify, render_assignment, render_otp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Assignee:
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    category: Optional[Category] = None


def _session_time(event_session: EventSession) -> str:
    return f"{event_session.start_time.strftime('%H:%M')} - {event_session.end_time.strftime('%H:%M')}"


class AssignmentEngine:
    """Creates and cancels assignments.

    The ticket row is locked for update before the active-assignment check,
    and the partial unique index on active assignments catches anything that
    slips past it, so a ticket never has two ACTIVE assignments.
    """

    def __init__(self, db, notifier):
        self.db = db
        self.notifier = notifier

    def _eligible_ticket(self, session, ticket_id: int) -> Ticket:
        ticket = session.query(Ticket).filter(Ticket.id == ticket_id).with_for_update().first()
        if not ticket:
            raise TicketNotFoundError(ticket_id)
        if ticket.payment_status != PaymentStatus.PAID or ticket.status != TicketStatus.ACTIVE:
            raise TicketNotEligibleError(
                f"Ticket is {ticket.status.value}/{ticket.payment_status.value}; "
                f"only paid, active tickets can be assigned"
            )

        existing = session.query(Assignment).filter(
            Assignment.ticket_id == ticket_id,
            Assignment.status == AssignmentStatus.ACTIVE
        ).first()
        if existing:
            raise AlreadyAssignedError(ticket_id)
        return ticket

    def check_eligible(self, ticket_id: int):
        """Raise the error ``assign`` would raise for this ticket right now, without assigning."""
        with self.db.get_session() as session:
            self._eligible_ticket(session, ticket_id)

    def assign(self, ticket_id: int, assignee: Assignee, agent_id: str,
               require_otp: bool = False, otp_verified: bool = False) -> int:
        if not (assignee.name or "").strip():
            raise TicketNotEligibleError("Assignee name is required")

        with self.db.get_session() as session:
            ticket = self._eligible_ticket(session, ticket_id)

            now = utcnow()
            assignment = Assignment(
                ticket_id=ticket_id,
                assigned_to=assignee.name.strip(),
                assigned_phone=assignee.phone,
                assigned_email=assignee.email,
                assignee_category=assignee.category or ticket.ticket_type,
                agent_id=agent_id,
                status=AssignmentStatus.ACTIVE,
                otp_required=require_otp,
                otp_verified=otp_verified,
                meta={
                    "assigned_at": now.isoformat(),
                    "require_otp": require_otp,
                    "otp_verified": otp_verified,
                    "original_owner": {
                        "name": ticket.purchaser_name,
                        "phone": ticket.purchaser_phone,
                    },
                },
            )
            session.add(assignment)
            try:
                session.flush()
            except IntegrityError:
                logger.warning(f"Concurrent assignment of ticket {ticket_id} lost to another agent")
                raise AlreadyAssignedError(ticket_id)

            ticket.is_assigned = True
            ticket.meta = {
                **(ticket.meta or {}),
                "assignment": {
                    "assignment_id": assignment.id,
                    "assigned_to": assignment.assigned_to,
                    "agent_id": agent_id,
                    "assigned_at": now.isoformat(),
                },
            }

            assignment_id = assignment.id
            message = render_assignment(
                assignment.assigned_to, ticket.ticket_code,
                ticket.session.day.name, ticket.session.name,
            )

        logger.info(f"Agent {agent_id} assigned ticket {ticket_id} to {assignee.name} (assignment {assignment_id})")
        notify(self.notifier, assignee.phone, message)
        return assignment_id

    def cancel(self, assignment_id: int, agent_id: str, reason: str = None) -> bool:
        with self.db.get_session() as session:
            found = session.get(Assignment, assignment_id)
            if not found:
                raise AssignmentNotFoundError(assignment_id)

            # Ticket first, matching the lock order in assign()
            ticket = session.query(Ticket).filter(Ticket.id == found.ticket_id).with_for_update().first()
            assignment = session.query(Assignment).filter(
                Assignment.id == assignment_id
            ).with_for_update().populate_existing().first()

            if assignment.agent_id != agent_id:
                raise AssignmentOwnershipError(assignment_id)
            if assignment.status != AssignmentStatus.ACTIVE:
                raise AssignmentNotActiveError(assignment_id)

            assignment.status = AssignmentStatus.CANCELLED
            assignment.meta = {
                **(assignment.meta or {}),
                "cancelled_at": utcnow().isoformat(),
                "cancel_reason": reason,
            }

            ticket.is_assigned = False
            meta = dict(ticket.meta or {})
            meta.pop("assignment", None)
            ticket.meta = meta

        logger.info(f"Agent {agent_id} cancelled assignment {assignment_id}")
        return True

    def scan_for_assignment(self, code: str) -> Dict:
        """Summarize a ticket for an agent deciding whether it can be assigned."""
        code = (code or "").strip().upper()
        with self.db.get_session() as session:
            ticket = session.query(Ticket).filter(Ticket.ticket_code == code).first()
            if not ticket:
                raise TicketNotFoundError(code)

            active = session.query(Assignment).filter(
                Assignment.ticket_id == ticket.id,
                Assignment.status == AssignmentStatus.ACTIVE
            ).first()
            attendee = session.query(Attendee).filter(
                Attendee.ticket_id == ticket.id
            ).order_by(Attendee.id).first()

            event_session = ticket.session
            result = {
                "ticket_id": ticket.id,
                "ticket_code": ticket.ticket_code,
                "ticket_type": ticket.ticket_type.value,
                "original_owner": attendee.full_name if attendee else ticket.purchaser_name,
                "original_phone": ticket.purchaser_phone,
                "status": ticket.status.value,
                "payment_status": ticket.payment_status.value,
                "is_valid": ticket.status == TicketStatus.ACTIVE and ticket.payment_status == PaymentStatus.PAID,
                "is_assigned": active is not None,
                "assigned_to": active.assigned_to if active else None,
                "assigned_phone": active.assigned_phone if active else None,
                "event": {
                    "day_name": event_session.day.name,
                    "session_name": event_session.name,
                    "session_time": _session_time(event_session),
                },
                "price": str(ticket.total_amount),
                "created_at": ticket.created_at.isoformat() if ticket.created_at else None,
            }
            return result

    def agent_assignments(self, agent_id: str, limit: int = 20) -> List[Dict]:
        with self.db.get_session() as session:
            assignments = session.query(Assignment).filter(
                Assignment.agent_id == agent_id
            ).order_by(Assignment.created_at.desc(), Assignment.id.desc()).limit(limit).all()

            return [
                {
                    "id": a.id,
                    "ticket_id": a.ticket_id,
                    "ticket_code": a.ticket.ticket_code,
                    "assigned_to": a.assigned_to,
                    "assigned_phone": a.assigned_phone,
                    "status": a.status.value,
                    "otp_required": a.otp_required,
                    "otp_verified": a.otp_verified,
                    "day_name": a.ticket.session.day.name,
                    "session_name": a.ticket.session.name,
                    "created_at": a.created_at.isoformat() if a.created_at else None,
                }
                for a in assignments
            ]


class OtpService:
    """Six-digit single-use codes sent to an assignee's phone."""

    def __init__(self, db, notifier, settings, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.notifier = notifier
        self.ttl = timedelta(seconds=settings.otp_ttl_seconds)
        self.clock = clock

    def generate(self, phone: str) -> datetime:
        """Issue a fresh code for ``phone``; earlier unconsumed codes stop working."""
        now = self.clock()
        code = f"{secrets.randbelow(1_000_000):06d}"
        expires_at = now + self.ttl

        with self.db.get_session() as session:
            session.query(OtpChallenge).filter(
                OtpChallenge.phone == phone,
                OtpChallenge.consumed_at.is_(None)
            ).update({OtpChallenge.consumed_at: now}, synchronize_session=False)
            session.add(OtpChallenge(phone=phone, code=code, expires_at=expires_at, created_at=now))

        notify(self.notifier, phone, render_otp(code, int(self.ttl.total_seconds() // 60)))
        logger.info(f"Issued OTP to {phone}, expires {expires_at.isoformat()}")
        return expires_at

    def verify(self, phone: str, code: str) -> bool:
        """Consume a matching, unexpired code. A code verifies at most once."""
        now = self.clock()
        with self.db.get_session() as session:
            consumed = session.query(OtpChallenge).filter(
                OtpChallenge.phone == phone,
                OtpChallenge.code == (code or "").strip(),
                OtpChallenge.consumed_at.is_(None),
                OtpChallenge.expires_at > now
            ).update({OtpChallenge.consumed_at: now}, synchronize_session=False)

        if not consumed:
            logger.info(f"OTP verification failed for {phone}")
        return consumed > 0
