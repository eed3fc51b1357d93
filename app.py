"""HTTP entrypoint for the session admission ticketing backend."""

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException
import atexit
import click
import logging
import signal
import threading
from datetime import datetime, time
from zoneinfo import ZoneInfo
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from assignments import Assignee, AssignmentEngine, OtpService
from catalog import CatalogLookup
from config import Settings
from database_manager import DatabaseManager
from errors import DomainError, ErrorCode, OtpInvalidError
from inventory_ledger import LedgerManager
from models import Category, PaymentKind, utcnow
from notifications import LoggingNotifier, SmsApiNotifier
from payment_gateway import PaymentGatewayAdapter
from purchase_pipeline import PurchasePipeline, PurchaseRequest, SettlementService
from verification import VerificationEngine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)

HTTP_STATUS = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.DAY_NOT_AVAILABLE: 404,
    ErrorCode.SESSION_NOT_FOUND: 404,
    ErrorCode.PRICE_NOT_FOUND: 404,
    ErrorCode.PRICE_CATEGORY_MISMATCH: 422,
    ErrorCode.AMOUNT_MISMATCH: 422,
    ErrorCode.PAYMENT_METHOD_NOT_FOUND: 404,
    ErrorCode.STUDENT_DETAILS_REQUIRED: 422,
    ErrorCode.INSUFFICIENT_CAPACITY: 409,
    ErrorCode.SESSION_INACTIVE: 409,
    ErrorCode.LEDGER_NOT_FOUND: 404,
    ErrorCode.PAYMENT_REJECTED: 402,
    ErrorCode.GATEWAY_TIMEOUT: 202,
    ErrorCode.TRANSACTION_NOT_FOUND: 404,
    ErrorCode.TICKET_NOT_FOUND: 404,
    ErrorCode.TICKET_NOT_ELIGIBLE: 409,
    ErrorCode.ALREADY_ASSIGNED: 409,
    ErrorCode.ASSIGNMENT_NOT_FOUND: 404,
    ErrorCode.ASSIGNMENT_NOT_ACTIVE: 409,
    ErrorCode.ASSIGNMENT_OWNERSHIP: 403,
    ErrorCode.OTP_INVALID: 403,
}


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message, "code": ErrorCode.INVALID_REQUEST.value}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[str, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def require_string(data: Dict[str, Any], name: str) -> Tuple[Optional[str], Optional[Tuple[str, int]]]:
    value = data.get(name)
    if not isinstance(value, str) or not value.strip():
        return None, bad_request(f"{name} must be a non-empty string")
    return value.strip(), None


def optional_string(data: Dict[str, Any], name: str) -> Tuple[Optional[str], Optional[Tuple[str, int]]]:
    value = data.get(name)
    if value is None:
        return None, None
    if not isinstance(value, str):
        return None, bad_request(f"{name} must be a string")
    return value.strip() or None, None


def initialize_demo_catalog(db: DatabaseManager, settings: Settings):
    """Create an example day, session, prices and payment methods for local demos."""
    if db.health_check().get("sessions"):
        logger.info("Catalog already populated; skipping demo data")
        return

    today = datetime.now(ZoneInfo(settings.service_timezone)).date()
    day_id = db.create_event_day("Demo Day", today)
    db.create_event_session(
        day_id, "Morning", time(9, 0), time(13, 0),
        adult_capacity=settings.default_adult_capacity,
        student_capacity=settings.default_student_capacity,
        child_capacity=settings.default_child_capacity,
    )
    db.create_event_session(
        day_id, "Afternoon", time(14, 0), time(18, 0),
        adult_capacity=settings.default_adult_capacity,
        student_capacity=settings.default_student_capacity,
        child_capacity=settings.default_child_capacity,
    )
    db.create_price("Adult", Category.ADULT, Decimal("10000"))
    db.create_price("Student", Category.STUDENT, Decimal("5000"), "Valid student ID required")
    db.create_price("Child", Category.CHILD, Decimal("3000"))
    db.create_payment_method("cash", "Cash", PaymentKind.CASH)
    db.create_payment_method("mpesa", "M-Pesa", PaymentKind.DIGITAL)
    db.create_payment_method("tigopesa", "Tigo Pesa", PaymentKind.DIGITAL)
    logger.info(f"Pre-initialized demo catalog for {today.isoformat()}")


class ReconciliationWorker:
    """Background loop that repairs ledger drift and polls pending payments."""

    def __init__(self, settings: Settings, ledger: LedgerManager, settlement: SettlementService):
        self.interval = settings.reconcile_interval_seconds
        self.ledger = ledger
        self.settlement = settlement
        self.stopped = threading.Event()
        self.thread = threading.Thread(target=self.run, name="reconciliation", daemon=True)

    def run(self):
        while not self.stopped.wait(self.interval):
            try:
                self.ledger.recompute_all()
                self.settlement.poll_pending()
            except Exception as e:
                logger.error(f"Background reconciliation error: {e}")
        logger.info("Reconciliation thread terminated gracefully.")

    def start(self):
        self.thread.start()
        logger.info(f"Reconciliation every {self.interval}s")

    def stop(self, *args):
        if not self.stopped.is_set():
            self.stopped.set()
            logger.info("Stopping reconciliation thread...")


def create_app(settings: Settings = None, db: DatabaseManager = None, gateway=None,
               notifier=None, clock=None, start_background: bool = False) -> Flask:
    settings = settings or Settings.from_env()
    logging.getLogger().setLevel(settings.log_level)

    # One database layer per app so every request handler reuses the same pool
    db = db or DatabaseManager(settings.database_url)
    clock = clock or utcnow

    if gateway is None:
        if not settings.payment_api_url:
            logger.warning("PAYMENT_API_URL is not set; digital payments will stay pending")
        gateway = PaymentGatewayAdapter(
            settings.payment_api_url,
            settings.payment_status_url,
            timeout=settings.payment_timeout_seconds
        )
    if notifier is None:
        notifier = (
            SmsApiNotifier(settings.sms_api_url, settings.sms_api_key)
            if settings.sms_api_url else LoggingNotifier()
        )

    catalog = CatalogLookup(db)
    ledger = LedgerManager(db)
    pipeline = PurchasePipeline(db, catalog, ledger, gateway, notifier, settings)
    settlement = SettlementService(db, ledger, gateway, notifier)
    verifier = VerificationEngine(db, settings, clock=clock)
    assignments = AssignmentEngine(db, notifier)
    otp = OtpService(db, notifier, settings, clock=clock)

    app = Flask(__name__)
    CORS(app)
    app.extensions["ticketing"] = {
        "settings": settings,
        "db": db,
        "ledger": ledger,
        "settlement": settlement,
    }

    @app.errorhandler(DomainError)
    def handle_domain_error(e: DomainError):
        status = HTTP_STATUS.get(e.code, 400)
        logger.info(f"{request.method} {request.path} -> {status} {e.code.value}")
        return jsonify(e.to_dict()), status

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({"error": "internal server error", "code": "SYSTEM_ERROR"}), 500

    # Catalog

    @app.route('/event-days', methods=['GET'])
    def list_event_days():
        return jsonify(catalog.list_days())

    @app.route('/event-days/<int:day_id>/sessions', methods=['GET'])
    def list_event_sessions(day_id):
        return jsonify(catalog.list_sessions(day_id))

    @app.route('/prices', methods=['GET'])
    def list_prices():
        return jsonify(catalog.list_prices())

    @app.route('/payment-methods', methods=['GET'])
    def list_payment_methods():
        return jsonify(catalog.list_payment_methods())

    @app.route('/sessions/<int:session_id>/availability', methods=['GET'])
    def session_availability(session_id):
        """Return the live capacity summary for a session."""
        return jsonify(ledger.availability(session_id).to_dict())

    # Purchases and payments

    @app.route('/purchases', methods=['POST'])
    def create_purchase():
        data, error_response = require_json_object()
        if error_response:
            return error_response

        result = pipeline.purchase(PurchaseRequest.from_dict(data))
        logger.info(f"Purchase created: ticket_id={result.ticket_id}, payment={result.payment_status}")
        return jsonify(result.to_dict()), 201

    @app.route('/payments/callback', methods=['POST'])
    def payment_callback():
        """Settlement notification from the payment provider."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        external_id = data.get('externalId') or data.get('utilityref') or data.get('external_id')
        if not isinstance(external_id, str) or not external_id.strip():
            return bad_request("externalId must be a non-empty string")
        provider_status = data.get('transactionstatus') or data.get('status') or ""

        result = settlement.settle(
            external_id.strip(),
            str(provider_status),
            provider_reference=data.get('reference') or data.get('transid'),
            message=data.get('message'),
            raw=data,
        )
        return jsonify({
            "external_id": result.external_id,
            "status": result.status,
            "ticket_id": result.ticket_id,
            "changed": result.changed,
        }), 200

    # Verification

    @app.route('/verify', methods=['POST'])
    def verify_ticket():
        data, error_response = require_json_object()
        if error_response:
            return error_response

        code = data.get('code')
        if not isinstance(code, str):
            return bad_request("code must be a string")
        require_student_id = data.get('require_student_id', False)
        if not isinstance(require_student_id, bool):
            return bad_request("require_student_id must be a boolean")

        return jsonify(verifier.verify(code, require_student_id).to_dict()), 200

    @app.route('/verified-tickets', methods=['GET'])
    def verified_tickets():
        session_id = request.args.get('session_id', type=int)
        limit = max(1, min(request.args.get('limit', 50, type=int), 500))
        return jsonify(verifier.verification_history(session_id=session_id, limit=limit))

    # Assignments

    @app.route('/otp', methods=['POST'])
    def request_otp():
        data, error_response = require_json_object()
        if error_response:
            return error_response
        phone, phone_error = require_string(data, 'phone')
        if phone_error:
            return phone_error

        expires_at = otp.generate(phone)
        return jsonify({"message": "OTP sent", "expires_at": expires_at.isoformat()}), 201

    @app.route('/tickets/scan/<code>', methods=['GET'])
    def scan_for_assignment(code):
        return jsonify(assignments.scan_for_assignment(code))

    @app.route('/tickets/<int:ticket_id>/assignments', methods=['POST'])
    def assign_ticket(ticket_id):
        data, error_response = require_json_object()
        if error_response:
            return error_response

        agent_id, agent_error = require_string(data, 'agent_id')
        if agent_error:
            return agent_error
        name, name_error = require_string(data, 'name')
        if name_error:
            return name_error

        category = data.get('category')
        if category is not None:
            try:
                category = Category(str(category).upper())
            except ValueError:
                return bad_request("category must be one of ADULT, STUDENT, CHILD")

        require_otp = data.get('require_otp', False)
        if not isinstance(require_otp, bool):
            return bad_request("require_otp must be a boolean")

        phone, phone_error = optional_string(data, 'phone')
        if phone_error:
            return phone_error
        email, email_error = optional_string(data, 'email')
        if email_error:
            return email_error

        otp_verified = False
        if require_otp:
            if not phone:
                return bad_request("phone is required when require_otp is set")
            # A code is single use; don't burn it on a ticket that cannot be assigned
            assignments.check_eligible(ticket_id)
            if not otp.verify(phone, str(data.get('otp_code') or "")):
                raise OtpInvalidError()
            otp_verified = True

        assignment_id = assignments.assign(
            ticket_id,
            Assignee(name=name, phone=phone, email=email, category=category),
            agent_id,
            require_otp=require_otp,
            otp_verified=otp_verified,
        )
        return jsonify({"assignment_id": assignment_id, "ticket_id": ticket_id}), 201

    @app.route('/assignments/<int:assignment_id>/cancel', methods=['POST'])
    def cancel_assignment(assignment_id):
        data, error_response = require_json_object()
        if error_response:
            return error_response
        agent_id, agent_error = require_string(data, 'agent_id')
        if agent_error:
            return agent_error

        reason, reason_error = optional_string(data, 'reason')
        if reason_error:
            return reason_error

        assignments.cancel(assignment_id, agent_id, reason=reason)
        return jsonify({"message": "assignment cancelled", "assignment_id": assignment_id}), 200

    @app.route('/agents/<agent_id>/assignments', methods=['GET'])
    def agent_assignments(agent_id):
        limit = max(1, min(request.args.get('limit', 20, type=int), 200))
        return jsonify(assignments.agent_assignments(agent_id, limit=limit))

    # Operations

    @app.route('/admin/recompute', methods=['POST'])
    def recompute_ledgers():
        """Rebuild ledger counters from tickets; one session or all of them."""
        data = {}
        if request.data:
            data, error_response = require_json_object()
            if error_response:
                return error_response

        session_id = data.get('session_id')
        if session_id is not None:
            if isinstance(session_id, bool) or not isinstance(session_id, int):
                return bad_request("session_id must be an integer")
            return jsonify([ledger.recompute(session_id).to_dict()]), 200

        return jsonify([s.to_dict() for s in ledger.recompute_all()]), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and catalog counts."""
        return jsonify(db.health_check())

    @app.cli.command("recompute")
    @click.option("--session-id", type=int, default=None, help="Only this session.")
    def recompute_command(session_id):
        """Rebuild ledger counters from the ticket table."""
        snapshots = [ledger.recompute(session_id)] if session_id else ledger.recompute_all()
        for snapshot in snapshots:
            click.echo(
                f"session {snapshot.session_id}: booked {snapshot.total.booked}/"
                f"{snapshot.total.capacity}, sold_out={snapshot.is_sold_out}"
            )

    @app.cli.command("poll-payments")
    @click.option("--limit", type=int, default=50)
    def poll_payments_command(limit):
        """Ask the gateway about pending transactions and settle them."""
        click.echo(f"settled {settlement.poll_pending(limit=limit)} transaction(s)")

    @app.cli.command("seed-demo")
    def seed_demo_command():
        """Create the demo catalog if the database is empty."""
        initialize_demo_catalog(db, settings)

    if start_background and settings.reconcile_interval_seconds > 0:
        worker = ReconciliationWorker(settings, ledger, settlement)
        worker.start()
        app.extensions["ticketing"]["worker"] = worker

        if threading.current_thread() is threading.main_thread():
            # Register signal handlers for production (Gunicorn, Docker, etc.)
            signal.signal(signal.SIGTERM, worker.stop)
            signal.signal(signal.SIGINT, worker.stop)
        # Fallback for local runs (e.g., python app.py)
        atexit.register(worker.stop)

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    app = create_app(settings, start_background=True)
    initialize_demo_catalog(app.extensions["ticketing"]["db"], settings)

    logger.info(f"""
    ================================
    SESSION TICKETING SYSTEM
    ================================
    Database: {settings.database_url.split('@')[-1]}
    Concurrency: ledger row locks with SELECT FOR UPDATE
    Reconciliation: {settings.reconcile_interval_seconds or 'disabled'}s
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
