"""Domain error codes and exceptions raised by the ticketing core."""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Stable error codes surfaced to API callers."""

    INVALID_REQUEST = "INVALID_REQUEST"
    DAY_NOT_AVAILABLE = "DAY_NOT_AVAILABLE"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    PRICE_NOT_FOUND = "PRICE_NOT_FOUND"
    PRICE_CATEGORY_MISMATCH = "PRICE_CATEGORY_MISMATCH"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    PAYMENT_METHOD_NOT_FOUND = "PAYMENT_METHOD_NOT_FOUND"
    STUDENT_DETAILS_REQUIRED = "STUDENT_DETAILS_REQUIRED"
    INSUFFICIENT_CAPACITY = "INSUFFICIENT_CAPACITY"
    SESSION_INACTIVE = "SESSION_INACTIVE"
    LEDGER_NOT_FOUND = "LEDGER_NOT_FOUND"
    PAYMENT_REJECTED = "PAYMENT_REJECTED"
    GATEWAY_TIMEOUT = "GATEWAY_TIMEOUT"
    TRANSACTION_NOT_FOUND = "TRANSACTION_NOT_FOUND"
    TICKET_NOT_FOUND = "TICKET_NOT_FOUND"
    TICKET_NOT_ELIGIBLE = "TICKET_NOT_ELIGIBLE"
    ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
    ASSIGNMENT_NOT_FOUND = "ASSIGNMENT_NOT_FOUND"
    ASSIGNMENT_NOT_ACTIVE = "ASSIGNMENT_NOT_ACTIVE"
    ASSIGNMENT_OWNERSHIP = "ASSIGNMENT_OWNERSHIP"
    OTP_INVALID = "OTP_INVALID"


@dataclass(frozen=True)
class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code.value}


# --- Validation errors: bad catalog references or request data -------------

class ValidationError(DomainError):
    """A purchase request failed a catalog or data check."""


class InvalidPurchaseRequestError(ValidationError):
    def __init__(self, reason: str) -> None:
        super().__init__(code=ErrorCode.INVALID_REQUEST, message=reason)


class DayNotAvailableError(ValidationError):
    def __init__(self, day_id) -> None:
        super().__init__(code=ErrorCode.DAY_NOT_AVAILABLE, message="Selected day is not available")
        self.day_id = day_id


class SessionNotFoundError(ValidationError):
    def __init__(self, session_id, day_id=None) -> None:
        super().__init__(code=ErrorCode.SESSION_NOT_FOUND, message="Session not found for selected day")
        self.session_id = session_id
        self.day_id = day_id


class PriceNotFoundError(ValidationError):
    def __init__(self, price_id) -> None:
        super().__init__(code=ErrorCode.PRICE_NOT_FOUND, message="Selected ticket price not found")
        self.price_id = price_id


class PriceCategoryMismatchError(ValidationError):
    def __init__(self, price_category: str, requested: str) -> None:
        super().__init__(
            code=ErrorCode.PRICE_CATEGORY_MISMATCH,
            message=f"Price is for {price_category} tickets, not {requested}",
        )


class AmountMismatchError(ValidationError):
    def __init__(self, provided, expected) -> None:
        super().__init__(
            code=ErrorCode.AMOUNT_MISMATCH,
            message="Total amount does not match price calculation",
        )
        self.provided = provided
        self.expected = expected


class PaymentMethodNotFoundError(ValidationError):
    def __init__(self, payment_method_id) -> None:
        super().__init__(
            code=ErrorCode.PAYMENT_METHOD_NOT_FOUND,
            message="Selected payment method not available",
        )
        self.payment_method_id = payment_method_id


class StudentDetailsRequiredError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            code=ErrorCode.STUDENT_DETAILS_REQUIRED,
            message="Student ID is required for student tickets",
        )


# --- Capacity errors ---------------------------------------------------------

class CapacityError(DomainError):
    """The session cannot take the requested quantity."""


class InsufficientCapacityError(CapacityError):
    def __init__(self, category: str, requested: int, available: int) -> None:
        super().__init__(
            code=ErrorCode.INSUFFICIENT_CAPACITY,
            message=f"Only {available} {category.lower()} tickets available",
        )
        self.requested = requested
        self.available = available


class SessionInactiveError(CapacityError):
    def __init__(self, session_id) -> None:
        super().__init__(code=ErrorCode.SESSION_INACTIVE, message="This session is fully booked or closed")
        self.session_id = session_id


class LedgerNotFoundError(DomainError):
    def __init__(self, session_id) -> None:
        super().__init__(code=ErrorCode.LEDGER_NOT_FOUND, message="No inventory ledger for session")
        self.session_id = session_id


# --- Gateway errors ----------------------------------------------------------

class GatewayError(DomainError):
    """The payment gateway refused or did not answer; the ticket was persisted."""

    ticket_id = None
    ticket_code = None
    external_id = None

    def attach(self, ticket_id, ticket_code, external_id) -> "GatewayError":
        self.ticket_id = ticket_id
        self.ticket_code = ticket_code
        self.external_id = external_id
        return self

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload.update({
            "ticket_id": self.ticket_id,
            "ticket_code": self.ticket_code,
            "external_id": self.external_id,
        })
        return payload


class PaymentRejectedError(GatewayError):
    def __init__(self, reason: str) -> None:
        super().__init__(code=ErrorCode.PAYMENT_REJECTED, message=f"Payment rejected: {reason}")
        self.reason = reason


class GatewayTimeoutError(GatewayError):
    def __init__(self, detail: str = "payment gateway did not respond") -> None:
        super().__init__(code=ErrorCode.GATEWAY_TIMEOUT, message=detail)


class TransactionNotFoundError(DomainError):
    def __init__(self, external_id: str) -> None:
        super().__init__(code=ErrorCode.TRANSACTION_NOT_FOUND, message="Transaction not found")
        self.external_id = external_id


# --- Assignment errors -------------------------------------------------------

class TicketNotFoundError(DomainError):
    def __init__(self, ticket_ref) -> None:
        super().__init__(code=ErrorCode.TICKET_NOT_FOUND, message="Ticket not found")
        self.ticket_ref = ticket_ref


class TicketNotEligibleError(DomainError):
    def __init__(self, reason: str) -> None:
        super().__init__(code=ErrorCode.TICKET_NOT_ELIGIBLE, message=reason)


class AlreadyAssignedError(DomainError):
    def __init__(self, ticket_id) -> None:
        super().__init__(
            code=ErrorCode.ALREADY_ASSIGNED,
            message="Ticket already assigned to another attendee",
        )
        self.ticket_id = ticket_id


class AssignmentNotFoundError(DomainError):
    def __init__(self, assignment_id) -> None:
        super().__init__(code=ErrorCode.ASSIGNMENT_NOT_FOUND, message="Assignment not found")
        self.assignment_id = assignment_id


class AssignmentNotActiveError(DomainError):
    def __init__(self, assignment_id) -> None:
        super().__init__(code=ErrorCode.ASSIGNMENT_NOT_ACTIVE, message="Assignment is not active")
        self.assignment_id = assignment_id


class AssignmentOwnershipError(DomainError):
    def __init__(self, assignment_id) -> None:
        super().__init__(
            code=ErrorCode.ASSIGNMENT_OWNERSHIP,
            message="Only the agent who created the assignment can cancel it",
        )
        self.assignment_id = assignment_id


class OtpInvalidError(DomainError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.OTP_INVALID, message="OTP is invalid or expired")
