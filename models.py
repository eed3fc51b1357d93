"""ORM model definitions describing the ticketing schema."""

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Enum, ForeignKey, Index, Integer, JSON,
    Numeric, String, Time, CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Category(str, enum.Enum):
    """Attendee categories with their own per-session capacity."""
    ADULT = 'ADULT'
    STUDENT = 'STUDENT'
    CHILD = 'CHILD'


class PaymentKind(str, enum.Enum):
    CASH = 'CASH'
    DIGITAL = 'DIGITAL'


class PaymentStatus(str, enum.Enum):
    UNPAID = 'UNPAID'
    PENDING = 'PENDING'
    PAID = 'PAID'
    FAILED = 'FAILED'
    REFUNDED = 'REFUNDED'


class TicketStatus(str, enum.Enum):
    """Ticket lifecycle; USED is set exactly once by the verification engine."""
    PENDING = 'PENDING'
    ACTIVE = 'ACTIVE'
    USED = 'USED'
    CANCELLED = 'CANCELLED'
    FAILED = 'FAILED'


class TransactionStatus(str, enum.Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    ERROR = 'ERROR'
    CANCELLED = 'CANCELLED'


class AssignmentStatus(str, enum.Enum):
    ACTIVE = 'ACTIVE'
    CANCELLED = 'CANCELLED'


# Ticket statuses whose quantities hold inventory
INVENTORY_HOLDING_STATUSES = (TicketStatus.PENDING, TicketStatus.ACTIVE, TicketStatus.USED)


class EventDay(Base):
    __tablename__ = 'event_days'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    sessions = relationship('EventSession', back_populates='day', cascade='all, delete-orphan')


class EventSession(Base):
    __tablename__ = 'event_sessions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    day_id = Column(Integer, ForeignKey('event_days.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(50), nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    day = relationship('EventDay', back_populates='sessions')
    ledger = relationship('InventoryLedger', back_populates='session', uselist=False,
                          cascade='all, delete-orphan')
    tickets = relationship('Ticket', back_populates='session')

    __table_args__ = (
        Index('idx_event_sessions_day', 'day_id'),
    )


class TicketPrice(Base):
    __tablename__ = 'ticket_prices'

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False)
    category = Column(Enum(Category, name='ticket_category_enum'), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    description = Column(String(255))
    is_active = Column(Boolean, nullable=False, default=True)


class PaymentMethod(Base):
    __tablename__ = 'payment_methods'

    id = Column(String(50), primary_key=True)
    name = Column(String(100), nullable=False)
    kind = Column(Enum(PaymentKind, name='payment_kind_enum'), nullable=False, default=PaymentKind.DIGITAL)
    is_active = Column(Boolean, nullable=False, default=True)


class InventoryLedger(Base):
    """Per-session booked/available counters; the single contention point per session."""
    __tablename__ = 'inventory_ledgers'

    session_id = Column(Integer, ForeignKey('event_sessions.id', ondelete='CASCADE'), primary_key=True)

    adult_capacity = Column(Integer, nullable=False, default=0)
    student_capacity = Column(Integer, nullable=False, default=0)
    child_capacity = Column(Integer, nullable=False, default=0)
    total_capacity = Column(Integer, nullable=False, default=0)

    adult_booked = Column(Integer, nullable=False, default=0)
    student_booked = Column(Integer, nullable=False, default=0)
    child_booked = Column(Integer, nullable=False, default=0)
    total_booked = Column(Integer, nullable=False, default=0)

    adult_available = Column(Integer, nullable=False, default=0)
    student_available = Column(Integer, nullable=False, default=0)
    child_available = Column(Integer, nullable=False, default=0)
    total_available = Column(Integer, nullable=False, default=0)

    is_sold_out = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    last_ticket_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    session = relationship('EventSession', back_populates='ledger')

    __table_args__ = (
        CheckConstraint('adult_available >= 0', name='ck_ledger_adult_available'),
        CheckConstraint('student_available >= 0', name='ck_ledger_student_available'),
        CheckConstraint('child_available >= 0', name='ck_ledger_child_available'),
        CheckConstraint('total_available >= 0', name='ck_ledger_total_available'),
    )

    def counts(self, category: Category):
        """Return (capacity, booked, available) for one category."""
        prefix = category.value.lower()
        return (
            getattr(self, f'{prefix}_capacity'),
            getattr(self, f'{prefix}_booked'),
            getattr(self, f'{prefix}_available'),
        )

    def set_counts(self, category: Category, booked: int, available: int):
        prefix = category.value.lower()
        setattr(self, f'{prefix}_booked', booked)
        setattr(self, f'{prefix}_available', available)


class Ticket(Base):
    __tablename__ = 'tickets'

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey('event_sessions.id'), nullable=False)
    ticket_code = Column(String(64), nullable=False, unique=True)
    purchaser_name = Column(String(255))
    purchaser_phone = Column(String(20))
    ticket_type = Column(Enum(Category, name='ticket_category_enum'), nullable=False)

    adult_quantity = Column(Integer, nullable=False, default=0)
    student_quantity = Column(Integer, nullable=False, default=0)
    child_quantity = Column(Integer, nullable=False, default=0)
    total_quantity = Column(Integer, nullable=False, default=1)

    total_amount = Column(Numeric(10, 2), nullable=False)
    payment_method_id = Column(String(50))
    payment_status = Column(Enum(PaymentStatus, name='payment_status_enum'),
                            nullable=False, default=PaymentStatus.UNPAID)
    status = Column(Enum(TicketStatus, name='ticket_status_enum'),
                    nullable=False, default=TicketStatus.PENDING)

    student_id = Column(String(50))
    institution = Column(String(100))

    is_assigned = Column(Boolean, nullable=False, default=False)
    verified_at = Column(DateTime(timezone=True))
    # "metadata" is reserved on declarative classes
    meta = Column('metadata', JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    session = relationship('EventSession', back_populates='tickets')
    attendees = relationship('Attendee', back_populates='ticket', cascade='all, delete-orphan')
    transactions = relationship('Transaction', back_populates='ticket')
    assignments = relationship('Assignment', back_populates='ticket')

    __table_args__ = (
        Index('idx_tickets_session_status', 'session_id', 'status'),
    )

    def quantity_for(self, category: Category) -> int:
        return getattr(self, f'{category.value.lower()}_quantity') or 0


class Attendee(Base):
    __tablename__ = 'attendees'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey('tickets.id', ondelete='CASCADE'), nullable=False)
    category = Column(Enum(Category, name='ticket_category_enum'), nullable=False)
    full_name = Column(String(255), nullable=False)
    phone_number = Column(String(20))
    student_id = Column(String(50))
    institution = Column(String(100))
    parent_name = Column(String(255))

    is_used = Column(Boolean, nullable=False, default=False)
    scanned_at = Column(DateTime(timezone=True))

    ticket = relationship('Ticket', back_populates='attendees')

    __table_args__ = (
        Index('idx_attendees_ticket', 'ticket_id'),
    )


class Transaction(Base):
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey('tickets.id'))
    external_id = Column(String(255), nullable=False, unique=True)
    provider_reference = Column(String(255))
    provider = Column(String(50), nullable=False)
    account_number = Column(String(50))
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(10), default='TZS')
    status = Column(Enum(TransactionStatus, name='transaction_status_enum'),
                    nullable=False, default=TransactionStatus.PENDING)
    message = Column(String(255))
    raw_response = Column(JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    ticket = relationship('Ticket', back_populates='transactions')

    __table_args__ = (
        Index('idx_transactions_status', 'status',
              postgresql_where=status == TransactionStatus.PENDING),
    )


class Assignment(Base):
    __tablename__ = 'ticket_assignments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id = Column(Integer, ForeignKey('tickets.id'), nullable=False)
    assigned_to = Column(String(255), nullable=False)
    assigned_phone = Column(String(20))
    assigned_email = Column(String(255))
    assignee_category = Column(Enum(Category, name='ticket_category_enum'))
    agent_id = Column(String(100), nullable=False)
    status = Column(Enum(AssignmentStatus, name='assignment_status_enum'),
                    nullable=False, default=AssignmentStatus.ACTIVE)
    otp_required = Column(Boolean, nullable=False, default=False)
    otp_verified = Column(Boolean, nullable=False, default=False)
    meta = Column('metadata', JSON)

    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    ticket = relationship('Ticket', back_populates='assignments')

    __table_args__ = (
        # At most one ACTIVE assignment per ticket
        Index('uq_assignments_active_ticket', 'ticket_id', unique=True,
              postgresql_where=status == AssignmentStatus.ACTIVE,
              sqlite_where=status == AssignmentStatus.ACTIVE),
        Index('idx_assignments_agent', 'agent_id'),
    )


class OtpChallenge(Base):
    __tablename__ = 'otp_challenges'

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String(20), nullable=False)
    code = Column(String(6), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    consumed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_otp_phone', 'phone'),
    )
