"""Message rendering and the outbound notification collaborator."""

import logging

import requests

logger = logging.getLogger(__name__)


def render_purchase_submitted(name: str, day_name: str, session_name: str, ticket_code: str) -> str:
    return (
        f"Hello {name}!\n\n"
        f"Your ticket purchase for {day_name} - {session_name} has been submitted.\n"
        f"Ticket code: {ticket_code}\n"
        f"Please wait while we confirm your transaction."
    )


def render_purchase_confirmed(name: str, ticket_code: str, day_name: str, session_name: str,
                              session_time: str, quantity: int) -> str:
    return (
        f"Hello {name}, your payment is received.\n"
        f"Ticket: {ticket_code} ({quantity} admission{'s' if quantity != 1 else ''})\n"
        f"{day_name} - {session_name}, {session_time}"
    )


def render_payment_failed(name: str, reason: str) -> str:
    return f"Hello {name}, payment failed. Reason: {reason or 'Payment failed'}."


def render_otp(code: str, ttl_minutes: int) -> str:
    return f"Your ticket assignment code is {code}. It expires in {ttl_minutes} minutes."


def render_assignment(assignee: str, ticket_code: str, day_name: str, session_name: str) -> str:
    return (
        f"Hello {assignee}, ticket {ticket_code} for {day_name} - {session_name} "
        f"has been assigned to you."
    )


class LoggingNotifier:
    """Default notifier: records the message in the log instead of sending it."""

    def send(self, phone: str, message: str) -> bool:
        logger.info(f"Notification to {phone}: {message!r}")
        return True


class SmsApiNotifier:
    """Posts messages to an SMS HTTP API; delivery is best effort."""

    def __init__(self, api_url: str, api_key: str = "", timeout: float = 5):
        self.api_url = api_url
        self.api_key = api_key
        self.timeout = timeout

    def send(self, phone: str, message: str) -> bool:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            response = requests.post(
                self.api_url,
                json={"to": phone, "message": message},
                headers=headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Failed to send SMS to {phone}: {e}")
            return False


def notify(notifier, phone: str, message: str) -> bool:
    """Send through ``notifier`` without letting delivery problems fail the caller."""
    if not phone:
        return False
    try:
        return notifier.send(phone, message)
    except Exception:
        logger.exception(f"Notifier raised while sending to {phone}")
        return False
