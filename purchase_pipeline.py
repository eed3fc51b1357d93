"""Ticket purchase: catalog validation, reservation, payment, and settlement."""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
import logging
import secrets

from errors import (
    AmountMismatchError, CapacityError, DayNotAvailableError, GatewayTimeoutError,
    InvalidPurchaseRequestError, PaymentMethodNotFoundError, PaymentRejectedError,
    PriceCategoryMismatchError, PriceNotFoundError, SessionNotFoundError,
    StudentDetailsRequiredError, TransactionNotFoundError,
)
from models import (
    Attendee, Category, PaymentKind, PaymentStatus, Ticket, TicketStatus,
    Transaction, TransactionStatus, utcnow,
)
from notifications import (
    notify, render_payment_failed, render_purchase_confirmed, render_purchase_submitted,
)
from payment_gateway import generate_external_id

logger = logging.getLogger(__name__)


def generate_ticket_code() -> str:
    """Fourteen characters: ``TK`` followed by twelve random digits."""
    return "TK" + "".join(str(secrets.randbelow(10)) for _ in range(12))


@dataclass(frozen=True)
class PurchaseRequest:
    day_id: int
    session_id: int
    price_id: int
    quantity: int
    category: Category
    payment_method_id: str
    purchaser_name: str
    purchaser_phone: str
    total_amount: Decimal
    student_id: Optional[str] = None
    institution: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PurchaseRequest":
        """Parse a JSON body, raising ``InvalidPurchaseRequestError`` on bad shapes."""
        try:
            category = Category(str(data.get("category", "")).upper())
        except ValueError:
            raise InvalidPurchaseRequestError("category must be one of ADULT, STUDENT, CHILD")

        ints = {}
        for name in ("day_id", "session_id", "price_id", "quantity"):
            value = data.get(name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidPurchaseRequestError(f"{name} must be an integer")
            ints[name] = value

        try:
            total_amount = Decimal(str(data.get("total_amount")))
        except InvalidOperation:
            raise InvalidPurchaseRequestError("total_amount must be a number")
        if not total_amount.is_finite():
            raise InvalidPurchaseRequestError("total_amount must be a number")

        optional = {}
        for name in ("student_id", "institution"):
            value = data.get(name)
            if value is not None and not isinstance(value, str):
                raise InvalidPurchaseRequestError(f"{name} must be a string")
            optional[name] = (value or "").strip() or None

        return cls(
            category=category,
            payment_method_id=str(data.get("payment_method_id") or "").strip(),
            purchaser_name=str(data.get("purchaser_name") or "").strip(),
            purchaser_phone=str(data.get("purchaser_phone") or "").strip(),
            total_amount=total_amount,
            **optional,
            **ints,
        )


@dataclass
class PurchaseResult:
    ticket_id: int
    ticket_code: str
    ticket_status: str
    payment_status: str
    external_id: Optional[str] = None
    message: str = ""
    steps: List[Dict] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "ticket_id": self.ticket_id,
            "ticket_code": self.ticket_code,
            "ticket_status": self.ticket_status,
            "payment_status": self.payment_status,
            "external_id": self.external_id,
            "message": self.message,
            "steps": self.steps,
        }


@dataclass(frozen=True)
class _Committed:
    """What the caller needs from the reservation transaction once it has closed."""
    ticket_id: int
    ticket_code: str
    day_name: str
    session_name: str
    session_time: str
    external_id: Optional[str]
    is_cash: bool


def _release_ticket_quantities(ledger, session, ticket: Ticket):
    for category in Category:
        quantity = ticket.quantity_for(category)
        if quantity > 0:
            ledger._release(session, ticket.session_id, category, quantity)


class PurchasePipeline:
    """Validates a purchase, reserves capacity and commits the ticket atomically.

    Catalog checks and the reservation share one transaction with the ticket
    insert, so any failure before commit leaves no rows behind and the ledger
    untouched. Digital payments call the gateway after that commit, outside the
    ledger lock.
    """

    def __init__(self, db, catalog, ledger, gateway, notifier, settings):
        self.db = db
        self.catalog = catalog
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings

    def purchase(self, request: PurchaseRequest) -> PurchaseResult:
        logger.info(
            f"Starting purchase for {request.purchaser_name}: session={request.session_id} "
            f"{request.quantity}x{request.category.value} via {request.payment_method_id}"
        )
        self._check_request(request)

        steps: List[Dict] = []
        committed = self._reserve_and_create(request, steps)

        if committed.is_cash:
            logger.info(f"Cash purchase completed: ticket {committed.ticket_id} ({committed.ticket_code})")
            notify(self.notifier, request.purchaser_phone, render_purchase_confirmed(
                request.purchaser_name, committed.ticket_code, committed.day_name,
                committed.session_name, committed.session_time, request.quantity,
            ))
            return PurchaseResult(
                ticket_id=committed.ticket_id,
                ticket_code=committed.ticket_code,
                ticket_status=TicketStatus.ACTIVE.value,
                payment_status=PaymentStatus.PAID.value,
                message="Payment received",
                steps=steps,
            )

        return self._submit_payment(request, committed, steps)

    # ------------------------------------------------------------------
    # validation + reservation (single transaction)
    # ------------------------------------------------------------------

    def _check_request(self, request: PurchaseRequest):
        if request.quantity <= 0:
            raise InvalidPurchaseRequestError("quantity must be a positive integer")
        if not request.purchaser_name:
            raise InvalidPurchaseRequestError("purchaser_name is required")
        if not request.purchaser_phone:
            raise InvalidPurchaseRequestError("purchaser_phone is required")
        if not request.payment_method_id:
            raise InvalidPurchaseRequestError("payment_method_id is required")

    def _reserve_and_create(self, request: PurchaseRequest, steps: List[Dict]) -> _Committed:
        with self.db.get_session() as session:
            # Step 1: Day
            day = self.catalog.active_day(session, request.day_id)
            if not day:
                raise DayNotAvailableError(request.day_id)
            steps.append({"step": "DAY_VALIDATION", "passed": True, "message": f"Day: {day.name}"})

            # Step 2: Session belongs to day
            event_session = self.catalog.session_for_day(session, request.session_id, request.day_id)
            if not event_session:
                raise SessionNotFoundError(request.session_id, request.day_id)
            session_time = (
                f"{event_session.start_time.strftime('%H:%M')} - {event_session.end_time.strftime('%H:%M')}"
            )
            steps.append({
                "step": "SESSION_VALIDATION", "passed": True,
                "message": f"Session: {event_session.name} ({session_time})",
            })

            # Step 3: Price and exact amount
            price = self.catalog.price(session, request.price_id)
            if not price:
                raise PriceNotFoundError(request.price_id)
            if price.category != request.category:
                raise PriceCategoryMismatchError(price.category.value, request.category.value)
            expected = Decimal(price.price) * request.quantity
            if request.total_amount != expected:
                logger.warning(
                    "Amount mismatch for %s: provided %s, expected %s",
                    request.purchaser_phone, request.total_amount, expected
                )
                raise AmountMismatchError(request.total_amount, expected)
            steps.append({
                "step": "PRICE_VALIDATION", "passed": True,
                "message": f"Price: {price.name} - {self.settings.payment_currency} {price.price}",
            })

            # Step 4: Payment method
            method = self.catalog.payment_method(session, request.payment_method_id)
            if not method:
                raise PaymentMethodNotFoundError(request.payment_method_id)
            steps.append({
                "step": "PAYMENT_METHOD_VALIDATION", "passed": True,
                "message": f"Payment Method: {method.name}",
            })

            if request.category == Category.STUDENT and not (request.student_id or "").strip():
                raise StudentDetailsRequiredError()

            # Step 5: Capacity, only after every catalog check has passed
            reservation = self.ledger._reserve(session, request.session_id, request.category, request.quantity)
            steps.append({
                "step": "CAPACITY_RESERVATION", "passed": True,
                "message": f"Reserved {request.quantity} {request.category.value.lower()} ticket(s)",
                "details": {"remaining": reservation.remaining.available, "sold_out": reservation.sold_out},
            })

            ticket = Ticket(
                session_id=request.session_id,
                ticket_code=generate_ticket_code(),
                purchaser_name=request.purchaser_name,
                purchaser_phone=request.purchaser_phone,
                ticket_type=request.category,
                total_quantity=request.quantity,
                total_amount=request.total_amount,
                payment_method_id=method.id,
                payment_status=PaymentStatus.UNPAID,
                status=TicketStatus.PENDING,
                student_id=request.student_id,
                institution=request.institution,
                meta={
                    "day_name": day.name,
                    "session_name": event_session.name,
                    "submitted_at": utcnow().isoformat(),
                },
            )
            setattr(ticket, f"{request.category.value.lower()}_quantity", request.quantity)
            session.add(ticket)
            session.flush()

            for i in range(request.quantity):
                session.add(Attendee(
                    ticket_id=ticket.id,
                    category=request.category,
                    full_name=f"{request.purchaser_name} {i + 1}" if request.quantity > 1 else request.purchaser_name,
                    phone_number=request.purchaser_phone,
                    student_id=request.student_id if request.category == Category.STUDENT else None,
                    institution=request.institution if request.category == Category.STUDENT else None,
                    parent_name=request.purchaser_name if request.category == Category.CHILD else None,
                ))
            steps.append({
                "step": "TICKET_CREATION", "passed": True,
                "message": f"Ticket created with {request.quantity} attendee record(s)",
                "details": {"ticket_id": ticket.id, "ticket_code": ticket.ticket_code},
            })

            is_cash = method.kind == PaymentKind.CASH
            external_id = None
            if is_cash:
                session.add(Transaction(
                    ticket_id=ticket.id,
                    external_id=generate_external_id("CASH-"),
                    provider=method.id.upper(),
                    account_number=request.purchaser_phone,
                    amount=request.total_amount,
                    currency=self.settings.payment_currency,
                    status=TransactionStatus.COMPLETED,
                    message="Cash payment received",
                ))
                ticket.payment_status = PaymentStatus.PAID
                ticket.status = TicketStatus.ACTIVE
            else:
                # Written with the reservation so an early settlement callback can match it
                external_id = generate_external_id(self.settings.external_id_prefix)
                session.add(Transaction(
                    ticket_id=ticket.id,
                    external_id=external_id,
                    provider=method.id.upper(),
                    account_number=request.purchaser_phone,
                    amount=request.total_amount,
                    currency=self.settings.payment_currency,
                    status=TransactionStatus.PENDING,
                    message="Awaiting gateway submission",
                ))

            return _Committed(
                ticket_id=ticket.id,
                ticket_code=ticket.ticket_code,
                day_name=day.name,
                session_name=event_session.name,
                session_time=session_time,
                external_id=external_id,
                is_cash=is_cash,
            )

    # ------------------------------------------------------------------
    # digital payment
    # ------------------------------------------------------------------

    def _submit_payment(self, request: PurchaseRequest, committed: _Committed, steps: List[Dict]) -> PurchaseResult:
        try:
            response = self.gateway.checkout(
                account_ref=request.purchaser_phone,
                amount=request.total_amount,
                currency=self.settings.payment_currency,
                provider=request.payment_method_id,
                external_id=committed.external_id,
                reference=committed.ticket_code,
                customer_name=request.purchaser_name,
            )
        except GatewayTimeoutError as e:
            # Outcome unknown: keep the reservation; settlement or reconciliation decides
            settled = self._record_gateway_outcome(committed, accepted=None, reason=e.message, raw={})
            if settled is not None:
                return self._settled_result(committed, settled, steps)
            logger.warning(
                f"Gateway outcome unknown for ticket {committed.ticket_id} "
                f"({committed.external_id}); left PENDING"
            )
            raise e.attach(committed.ticket_id, committed.ticket_code, committed.external_id)

        settled = self._record_gateway_outcome(committed, accepted=response.accepted, reason=response.reason,
                                               raw=response.raw, provider_reference=response.transaction_id)
        if settled is not None:
            return self._settled_result(committed, settled, steps)

        if not response.accepted:
            steps.append({
                "step": "PAYMENT_SUBMISSION", "passed": False,
                "message": f"Payment submission failed: {response.reason}",
            })
            notify(self.notifier, request.purchaser_phone,
                   render_payment_failed(request.purchaser_name, response.reason))
            raise PaymentRejectedError(response.reason or "rejected by gateway").attach(
                committed.ticket_id, committed.ticket_code, committed.external_id
            )

        steps.append({
            "step": "PAYMENT_SUBMISSION", "passed": True,
            "message": f"Payment submitted via {request.payment_method_id}",
            "details": {"external_id": committed.external_id, "transaction_id": response.transaction_id},
        })
        notify(self.notifier, request.purchaser_phone, render_purchase_submitted(
            request.purchaser_name, committed.day_name, committed.session_name, committed.ticket_code,
        ))
        logger.info(f"Payment submitted for ticket {committed.ticket_id} ({committed.external_id})")

        return PurchaseResult(
            ticket_id=committed.ticket_id,
            ticket_code=committed.ticket_code,
            ticket_status=TicketStatus.PENDING.value,
            payment_status=PaymentStatus.UNPAID.value,
            external_id=committed.external_id,
            message=response.reason or "Payment submitted. Please confirm the payment on your phone.",
            steps=steps,
        )

    def _settled_result(self, committed: _Committed, settled: Tuple[str, str], steps: List[Dict]) -> PurchaseResult:
        ticket_status, payment_status = settled
        if payment_status == PaymentStatus.FAILED.value:
            raise PaymentRejectedError("payment reported failed by the provider").attach(
                committed.ticket_id, committed.ticket_code, committed.external_id
            )
        steps.append({
            "step": "PAYMENT_SUBMISSION", "passed": True,
            "message": "Payment already settled by the provider",
            "details": {"external_id": committed.external_id},
        })
        return PurchaseResult(
            ticket_id=committed.ticket_id,
            ticket_code=committed.ticket_code,
            ticket_status=ticket_status,
            payment_status=payment_status,
            external_id=committed.external_id,
            message="Payment already settled",
            steps=steps,
        )

    def _record_gateway_outcome(self, committed: _Committed, accepted: Optional[bool], reason: Optional[str],
                                raw: Dict, provider_reference: str = None) -> Optional[Tuple[str, str]]:
        """Persist the checkout answer; a rejection also compensates the reservation.

        Returns the ticket's (status, payment_status) when a settlement already
        decided the transaction, in which case the answer is ignored.
        """
        with self.db.get_session() as session:
            txn = session.query(Transaction).filter(
                Transaction.external_id == committed.external_id
            ).with_for_update().first()
            ticket = session.query(Ticket).filter(
                Ticket.id == committed.ticket_id
            ).with_for_update().first()

            if txn.status != TransactionStatus.PENDING:
                # A settlement callback beat the checkout response; it already decided
                logger.info(f"Transaction {committed.external_id} already settled as {txn.status.value}")
                return ticket.status.value, ticket.payment_status.value

            txn.raw_response = raw
            if provider_reference:
                txn.provider_reference = provider_reference

            if accepted is None:
                txn.message = (reason or "Gateway timeout")[:255]
                ticket.meta = {**(ticket.meta or {}), "payment_timeout_at": utcnow().isoformat()}
            elif accepted:
                txn.message = (reason or "Submitted")[:255]
                ticket.meta = {
                    **(ticket.meta or {}),
                    "payment_external_id": committed.external_id,
                    "payment_submitted_at": utcnow().isoformat(),
                }
            else:
                txn.status = TransactionStatus.FAILED
                txn.message = (reason or "Rejected")[:255]
                ticket.payment_status = PaymentStatus.FAILED
                ticket.status = TicketStatus.FAILED
                ticket.meta = {
                    **(ticket.meta or {}),
                    "payment_error": reason,
                    "payment_failed_at": utcnow().isoformat(),
                }
                _release_ticket_quantities(self.ledger, session, ticket)
                logger.info(f"Reservation for ticket {ticket.id} released after gateway rejection")


# ----------------------------------------------------------------------
# Settlement
# ----------------------------------------------------------------------

_PROVIDER_STATUS = {
    "success": TransactionStatus.COMPLETED,
    "succeeded": TransactionStatus.COMPLETED,
    "successful": TransactionStatus.COMPLETED,
    "completed": TransactionStatus.COMPLETED,
    "failure": TransactionStatus.FAILED,
    "failed": TransactionStatus.FAILED,
    "pending": TransactionStatus.PENDING,
}


def normalize_provider_status(raw_status: str) -> Optional[TransactionStatus]:
    """Map a provider's status string to ours; ``None`` means unknown."""
    return _PROVIDER_STATUS.get((raw_status or "").strip().lower())


@dataclass(frozen=True)
class SettlementResult:
    external_id: str
    status: str
    ticket_id: Optional[int]
    changed: bool


class SettlementService:
    """Applies payment outcomes reported by the gateway callback or a status poll.

    Inventory was already taken at reservation time, so a successful settlement
    only flips payment and ticket state. A failed settlement releases the
    reservation exactly once. Repeated callbacks are no-ops.
    """

    def __init__(self, db, ledger, gateway, notifier):
        self.db = db
        self.ledger = ledger
        self.gateway = gateway
        self.notifier = notifier

    def settle(self, external_id: str, provider_status: str, provider_reference: str = None,
               message: str = None, raw: Dict = None) -> SettlementResult:
        status = normalize_provider_status(provider_status)
        outgoing = None

        with self.db.get_session() as session:
            txn = session.query(Transaction).filter(
                Transaction.external_id == external_id
            ).with_for_update().first()
            if not txn:
                raise TransactionNotFoundError(external_id)

            # Always keep what the provider sent
            if raw is not None:
                txn.raw_response = raw
            if message:
                txn.message = message[:255]
            if provider_reference:
                txn.provider_reference = provider_reference

            if status is None:
                logger.warning(f"Unknown provider status {provider_status!r} for {external_id}; stored raw only")
                return SettlementResult(external_id, "UNKNOWN", txn.ticket_id, False)

            ticket = session.query(Ticket).filter(Ticket.id == txn.ticket_id).with_for_update().first()
            changed = False

            if status == TransactionStatus.COMPLETED and txn.status != TransactionStatus.COMPLETED:
                txn.status = TransactionStatus.COMPLETED
                changed = True
                if ticket is not None:
                    outgoing = self._promote(session, ticket, txn)

            elif status == TransactionStatus.FAILED and txn.status == TransactionStatus.PENDING:
                txn.status = TransactionStatus.FAILED
                changed = True
                if ticket is not None and ticket.status == TicketStatus.PENDING:
                    ticket.payment_status = PaymentStatus.FAILED
                    ticket.status = TicketStatus.FAILED
                    ticket.meta = {
                        **(ticket.meta or {}),
                        "payment_error": message,
                        "payment_failed_at": utcnow().isoformat(),
                    }
                    _release_ticket_quantities(self.ledger, session, ticket)
                    outgoing = (ticket.purchaser_phone, render_payment_failed(ticket.purchaser_name, message))

            result = SettlementResult(external_id, txn.status.value, txn.ticket_id, changed)

        if changed:
            logger.info(f"Settled {external_id} as {result.status} (ticket {result.ticket_id})")
        if outgoing:
            notify(self.notifier, *outgoing)
        return result

    def _promote(self, session, ticket: Ticket, txn: Transaction):
        """Mark a ticket paid; returns the confirmation to send, if any."""
        if ticket.payment_status == PaymentStatus.PAID:
            return None

        if ticket.status == TicketStatus.FAILED:
            # Its reservation was released when the payment was first reported failed
            try:
                for category in Category:
                    quantity = ticket.quantity_for(category)
                    if quantity > 0:
                        self.ledger._reserve(session, ticket.session_id, category, quantity)
            except CapacityError as e:
                logger.error(
                    f"Ticket {ticket.id} paid after failure but session {ticket.session_id} "
                    f"has no capacity left ({e.message}); needs refund"
                )
                ticket.payment_status = PaymentStatus.PAID
                ticket.meta = {**(ticket.meta or {}), "needs_refund": True}
                return None
        elif ticket.status != TicketStatus.PENDING:
            logger.warning(f"Settlement for ticket {ticket.id} in status {ticket.status.value}; payment recorded only")
            ticket.payment_status = PaymentStatus.PAID
            return None

        ticket.payment_status = PaymentStatus.PAID
        ticket.status = TicketStatus.ACTIVE
        ticket.meta = {**(ticket.meta or {}), "paid_at": utcnow().isoformat()}

        event_session = ticket.session
        day = event_session.day
        session_time = f"{event_session.start_time.strftime('%H:%M')} - {event_session.end_time.strftime('%H:%M')}"
        return (ticket.purchaser_phone, render_purchase_confirmed(
            ticket.purchaser_name, ticket.ticket_code, day.name, event_session.name,
            session_time, ticket.total_quantity,
        ))

    def poll_pending(self, limit: int = 50) -> int:
        """Ask the gateway about PENDING transactions and settle those with an answer."""
        with self.db.get_session() as session:
            pending = [
                row[0] for row in session.query(Transaction.external_id).filter(
                    Transaction.status == TransactionStatus.PENDING
                ).order_by(Transaction.created_at).limit(limit).all()
            ]

        settled = 0
        for external_id in pending:
            try:
                provider_status = self.gateway.check_status(external_id)
            except GatewayTimeoutError as e:
                logger.warning(f"Status check for {external_id} failed: {e.message}")
                continue
            result = self.settle(external_id, provider_status)
            if result.changed:
                settled += 1

        if pending:
            logger.info(f"Polled {len(pending)} pending transactions, settled {settled}")
        return settled
