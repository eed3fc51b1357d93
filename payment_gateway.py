"""HTTP client for the external mobile-money checkout API."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional
import logging
import uuid

import requests

from errors import GatewayTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResponse:
    accepted: bool
    transaction_id: Optional[str] = None
    external_id: Optional[str] = None
    reason: Optional[str] = None
    raw: Dict = field(default_factory=dict)


def generate_external_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4()}"


class PaymentGatewayAdapter:
    """Checkout and status calls against the payment API.

    Any transport failure (timeout, refused or reset connection) is raised as
    ``GatewayTimeoutError``: the request may or may not have reached the
    provider, so the caller must treat the outcome as unknown. Only an HTTP
    answer that does not report success counts as a rejection.
    """

    def __init__(self, checkout_url: str, status_url: str = "", timeout: float = 10):
        self.checkout_url = checkout_url
        self.status_url = status_url
        self.timeout = timeout
        self.http = requests.Session()

    def checkout(
        self,
        account_ref: str,
        amount: Decimal,
        currency: str,
        provider: str,
        external_id: str,
        reference: str = None,
        customer_name: str = None,
    ) -> GatewayResponse:
        payload = {
            "accountNumber": account_ref,
            "amount": str(amount),
            "currency": currency,
            "provider": provider,
            "externalId": external_id,
            "reference": reference,
            "customerName": customer_name,
            "description": f"Ticket Purchase - {reference}" if reference else "Ticket Purchase",
        }
        logger.info(f"Submitting checkout {external_id} via {provider}")

        try:
            response = self.http.post(
                self.checkout_url,
                json=payload,
                headers={"Accept": "application/json"},
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.warning(f"Checkout {external_id} outcome unknown: {e}")
            raise GatewayTimeoutError(f"payment gateway unreachable: {e.__class__.__name__}")

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text[:255]}
        if not isinstance(body, dict):
            body = {"data": body}

        accepted = response.ok and (
            body.get("status") == "success"
            or body.get("success") is True
            or (body.get("azampay_response") or {}).get("success") is True
        )

        if not accepted:
            reason = body.get("message") or body.get("error") or f"HTTP {response.status_code}"
            logger.info(f"Checkout {external_id} rejected: {reason}")
            return GatewayResponse(accepted=False, external_id=external_id, reason=reason, raw=body)

        return GatewayResponse(
            accepted=True,
            transaction_id=body.get("transid") or body.get("transactionId") or external_id,
            external_id=body.get("externalId") or external_id,
            reason=body.get("message"),
            raw=body,
        )

    def check_status(self, external_id: str) -> str:
        """Ask the provider for a transaction's current status string."""
        if not self.status_url:
            return "pending"
        try:
            response = self.http.get(
                self.status_url,
                params={"externalId": external_id},
                timeout=self.timeout
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise GatewayTimeoutError(f"status check failed: {e.__class__.__name__}")

        try:
            body = response.json()
        except ValueError:
            logger.warning(f"Status check for {external_id} returned a non-JSON body")
            return "unknown"
        if not isinstance(body, dict):
            logger.warning(f"Status check for {external_id} returned {type(body).__name__}, expected an object")
            return "unknown"
        return str(body.get("transactionstatus") or body.get("status") or "unknown")
