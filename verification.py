"""Ticket verification at the gate.

A scan runs through an ordered list of gate functions. Each gate inspects a
shared context and returns a ``GateStep``; the first failing gate ends the
scan with a denial, and every evaluated step is returned for display on the
scanner. Denials are results, not exceptions.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo
import enum
import logging
import re
import time
import uuid

from models import (
    Attendee, Category, EventDay, EventSession, PaymentStatus, Ticket, TicketStatus,
    Transaction, TransactionStatus, utcnow,
)

logger = logging.getLogger(__name__)

STUDENT_ID_PATTERN = re.compile(r"^[A-Z0-9-]+$")

# Statuses a scan may move to USED
ADMITTABLE_STATUSES = (TicketStatus.PENDING, TicketStatus.ACTIVE)


class DenialReason(str, enum.Enum):
    INVALID_CODE = 'INVALID_CODE'
    NOT_FOUND = 'NOT_FOUND'
    UNPAID = 'UNPAID'
    STUDENT_ID_REQUIRED = 'STUDENT_ID_REQUIRED'
    WRONG_DAY = 'WRONG_DAY'
    WRONG_TIME = 'WRONG_TIME'
    ALREADY_USED = 'ALREADY_USED'
    NOT_ACTIVE = 'NOT_ACTIVE'


@dataclass
class GateStep:
    gate: str
    passed: bool
    message: str
    details: Dict = field(default_factory=dict)
    reason: Optional[DenialReason] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "step": self.gate,
            "passed": self.passed,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class VerificationResult:
    admitted: bool
    reason: Optional[DenialReason]
    failed_gate: Optional[str]
    steps: List[GateStep]
    summary: Dict = field(default_factory=dict)
    verification_id: Optional[str] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict:
        return {
            "admitted": self.admitted,
            "reason": self.reason.value if self.reason else None,
            "failed_gate": self.failed_gate,
            "summary": self.summary,
            "verification_id": self.verification_id,
            "duration_ms": self.duration_ms,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class _ScanContext:
    session: object
    raw_code: str
    now: datetime
    early_entry: timedelta
    min_code_length: int
    require_student_id: bool = False
    code: Optional[str] = None
    ticket: Optional[Ticket] = None
    event_session: Optional[EventSession] = None
    day: Optional[EventDay] = None
    attendee: Optional[Dict] = None


def _session_window(ctx: _ScanContext):
    tz = ctx.now.tzinfo
    start = datetime.combine(ctx.day.date, ctx.event_session.start_time, tzinfo=tz)
    end = datetime.combine(ctx.day.date, ctx.event_session.end_time, tzinfo=tz)
    return start, end


# ----------------------------------------------------------------------
# Gates, in evaluation order
# ----------------------------------------------------------------------

def sanitize_input(ctx: _ScanContext) -> GateStep:
    """Accept a bare code or a scanned URL whose last path segment is the code."""
    code = (ctx.raw_code or "").strip()
    if "/" in code:
        code = code.split("?", 1)[0].split("#", 1)[0].rstrip("/").split("/")[-1].strip()
    code = code.upper()

    details = {"input": ctx.raw_code, "sanitized": code}
    if len(code) < ctx.min_code_length:
        return GateStep("INPUT_SANITIZATION", False, "Invalid ticket code format", details,
                        reason=DenialReason.INVALID_CODE)
    ctx.code = code
    return GateStep("INPUT_SANITIZATION", True, "Ticket code sanitized successfully", details)


def lookup_ticket(ctx: _ScanContext) -> GateStep:
    ticket = ctx.session.query(Ticket).filter(Ticket.ticket_code == ctx.code).first()
    if not ticket:
        return GateStep("DATABASE_LOOKUP", False, "Ticket not found in database", {"code": ctx.code},
                        reason=DenialReason.NOT_FOUND)

    event_session = ticket.session
    day = event_session.day if event_session else None
    if not event_session or not day:
        return GateStep("DATABASE_LOOKUP", False, "Session or day not found for ticket",
                        {"session_id": ticket.session_id}, reason=DenialReason.NOT_FOUND)

    ctx.ticket, ctx.event_session, ctx.day = ticket, event_session, day
    return GateStep("DATABASE_LOOKUP", True, "Ticket found in database", {
        "ticket_id": ticket.id,
        "purchaser": ticket.purchaser_name,
        "type": ticket.ticket_type.value,
        "status": ticket.status.value,
    })


def verify_payment(ctx: _ScanContext) -> GateStep:
    ticket = ctx.ticket
    transactions = ctx.session.query(Transaction).filter(
        Transaction.ticket_id == ticket.id
    ).order_by(Transaction.created_at.desc()).all()

    is_paid = ticket.payment_status == PaymentStatus.PAID or any(
        t.status == TransactionStatus.COMPLETED for t in transactions
    )
    details = {
        "payment_status": ticket.payment_status.value,
        "transactions": [
            {"provider": t.provider, "status": t.status.value, "amount": str(t.amount)}
            for t in transactions
        ],
    }
    if not is_paid:
        return GateStep("PAYMENT_VERIFICATION", False, "Ticket payment not verified", details,
                        reason=DenialReason.UNPAID)
    return GateStep("PAYMENT_VERIFICATION", True, "Payment verified successfully", details)


def verify_student_id(ctx: _ScanContext) -> Optional[GateStep]:
    """Only evaluated for student tickets when the operator asks for it."""
    if not ctx.require_student_id or ctx.ticket.ticket_type != Category.STUDENT:
        return None

    student_id = (ctx.ticket.student_id or "").strip()
    if not student_id:
        return GateStep("STUDENT_ID_VERIFICATION", False, "Student ID not found in ticket records",
                        {"ticket_type": Category.STUDENT.value}, reason=DenialReason.STUDENT_ID_REQUIRED)
    if not STUDENT_ID_PATTERN.match(student_id):
        return GateStep("STUDENT_ID_VERIFICATION", False, "Invalid student ID format",
                        {"student_id": student_id}, reason=DenialReason.STUDENT_ID_REQUIRED)
    return GateStep("STUDENT_ID_VERIFICATION", True, "Student ID verified", {
        "student_id": student_id,
        "institution": ctx.ticket.institution,
        "note": "Physical ID card verification still required at entry",
    })


def validate_date(ctx: _ScanContext) -> GateStep:
    today = ctx.now.date()
    details = {"today": today.isoformat(), "event_date": ctx.day.date.isoformat()}
    if today != ctx.day.date:
        details["difference_days"] = (ctx.day.date - today).days
        return GateStep("DATE_VALIDATION", False, "Ticket is not valid for today", details,
                        reason=DenialReason.WRONG_DAY)
    return GateStep("DATE_VALIDATION", True, "Ticket is valid for today", details)


def validate_time(ctx: _ScanContext) -> GateStep:
    start, end = _session_window(ctx)
    entry_opens = start - ctx.early_entry
    details = {
        "current_time": ctx.now.strftime("%H:%M"),
        "session_time": f"{start.strftime('%H:%M')} - {end.strftime('%H:%M')}",
        "entry_window": f"{entry_opens.strftime('%H:%M')} - {end.strftime('%H:%M')}",
    }
    if not entry_opens <= ctx.now <= end:
        return GateStep("TIME_VALIDATION", False, "Ticket is not valid at this time", details,
                        reason=DenialReason.WRONG_TIME)
    details["status"] = "early arrival" if ctx.now < start else "during session"
    return GateStep("TIME_VALIDATION", True, "Time validation passed", details)


def validate_usage(ctx: _ScanContext) -> GateStep:
    status = ctx.ticket.status
    details = {"current_status": status.value}
    if status == TicketStatus.USED:
        details["verified_at"] = ctx.ticket.verified_at.isoformat() if ctx.ticket.verified_at else None
        return GateStep("USAGE_VALIDATION", False, "Ticket has already been used", details,
                        reason=DenialReason.ALREADY_USED)
    if status not in ADMITTABLE_STATUSES:
        return GateStep("USAGE_VALIDATION", False, f"Ticket is {status.value.lower()}", details,
                        reason=DenialReason.NOT_ACTIVE)
    return GateStep("USAGE_VALIDATION", True, "Ticket has not been used yet", details)


def record_attendee(ctx: _ScanContext) -> GateStep:
    attendee = ctx.session.query(Attendee).filter(
        Attendee.ticket_id == ctx.ticket.id
    ).order_by(Attendee.id).first()

    if attendee is None:
        ctx.attendee = {"type": "General", "name": ctx.ticket.purchaser_name}
        return GateStep("ATTENDEE_VALIDATION", True,
                        "No specific attendee record found, using purchaser info", ctx.attendee)

    info = {"type": attendee.category.value.title(), "name": attendee.full_name}
    if attendee.category == Category.STUDENT:
        info.update({"student_id": attendee.student_id, "institution": attendee.institution})
    elif attendee.category == Category.CHILD:
        info["parent"] = attendee.parent_name
    else:
        info["phone"] = attendee.phone_number
    ctx.attendee = info
    return GateStep("ATTENDEE_VALIDATION", True, "Attendee information validated", info)


def update_status(ctx: _ScanContext) -> GateStep:
    """Compare-and-set to USED; only one concurrent scan can win."""
    stamp = ctx.now.astimezone(timezone.utc)
    updated = ctx.session.query(Ticket).filter(
        Ticket.id == ctx.ticket.id,
        Ticket.status.in_(ADMITTABLE_STATUSES)
    ).update({
        Ticket.status: TicketStatus.USED,
        Ticket.verified_at: stamp,
        Ticket.updated_at: stamp,
    }, synchronize_session=False)

    if updated == 0:
        return GateStep("STATUS_UPDATE", False, "Ticket was admitted by another scan",
                        {"ticket_id": ctx.ticket.id}, reason=DenialReason.ALREADY_USED)

    ctx.session.query(Attendee).filter(
        Attendee.ticket_id == ctx.ticket.id
    ).update({Attendee.is_used: True, Attendee.scanned_at: stamp}, synchronize_session=False)

    return GateStep("STATUS_UPDATE", True, "Ticket status updated to USED", {
        "old_status": ctx.ticket.status.value,
        "new_status": TicketStatus.USED.value,
        "verified_at": stamp.isoformat(),
    })


GATES: List[Callable[[_ScanContext], Optional[GateStep]]] = [
    sanitize_input,
    lookup_ticket,
    verify_payment,
    verify_student_id,
    validate_date,
    validate_time,
    validate_usage,
    record_attendee,
    update_status,
]


class VerificationEngine:
    """Runs the gate list for a scanned code inside one transaction."""

    def __init__(self, db, settings, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.tz = ZoneInfo(settings.service_timezone)

    def verify(self, raw_code: str, require_student_id_check: bool = False) -> VerificationResult:
        started = time.monotonic()
        steps: List[GateStep] = []

        with self.db.get_session() as session:
            ctx = _ScanContext(
                session=session,
                raw_code=raw_code,
                now=self.clock().astimezone(self.tz),
                early_entry=timedelta(minutes=self.settings.early_entry_minutes),
                min_code_length=self.settings.min_code_length,
                require_student_id=require_student_id_check,
            )

            for gate in GATES:
                step = gate(ctx)
                if step is None:
                    continue
                steps.append(step)
                if not step.passed:
                    logger.info(f"Denied scan {ctx.code or raw_code!r} at {step.gate}: {step.reason.value}")
                    return VerificationResult(
                        admitted=False,
                        reason=step.reason,
                        failed_gate=step.gate,
                        steps=steps,
                        duration_ms=int((time.monotonic() - started) * 1000),
                    )

            summary = self._summary(ctx, steps)

        result = VerificationResult(
            admitted=True,
            reason=None,
            failed_gate=None,
            steps=steps,
            summary=summary,
            verification_id=str(uuid.uuid4()),
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logger.info(
            f"Admitted ticket {summary['ticket_id']} ({summary['ticket_code']}) "
            f"in {result.duration_ms}ms"
        )
        return result

    def _summary(self, ctx: _ScanContext, steps: List[GateStep]) -> Dict:
        ticket, event_session, day = ctx.ticket, ctx.event_session, ctx.day
        summary = {
            "ticket_id": ticket.id,
            "ticket_code": ticket.ticket_code,
            "purchaser": ticket.purchaser_name,
            "phone": ticket.purchaser_phone,
            "ticket_type": ticket.ticket_type.value,
            "quantity": ticket.total_quantity,
            "session": event_session.name,
            "time": f"{event_session.start_time.strftime('%H:%M')} - {event_session.end_time.strftime('%H:%M')}",
            "day": day.name,
            "date": day.date.isoformat(),
            "attendee": ctx.attendee,
            "verification_score": f"{sum(1 for s in steps if s.passed)}/{len(steps)} steps passed",
        }
        if ticket.ticket_type == Category.STUDENT:
            summary.update({
                "student_id": ticket.student_id,
                "institution": ticket.institution,
                "note": "Student ID must be presented for physical verification",
            })
        return summary

    def verification_history(self, session_id: int = None, limit: int = 50) -> List[Dict]:
        """Admitted tickets, most recently verified first."""
        with self.db.get_session() as session:
            query = session.query(Ticket).filter(Ticket.status == TicketStatus.USED)
            if session_id is not None:
                query = query.filter(Ticket.session_id == session_id)
            tickets = query.order_by(Ticket.verified_at.desc().nulls_last(), Ticket.id.desc()).limit(limit).all()

            return [
                {
                    "id": t.id,
                    "code": t.ticket_code,
                    "purchaser": t.purchaser_name,
                    "type": t.ticket_type.value,
                    "quantity": t.total_quantity,
                    "verified_at": t.verified_at.isoformat() if t.verified_at else None,
                    "session_id": t.session_id,
                    "payment_method": t.payment_method_id,
                }
                for t in tickets
            ]
