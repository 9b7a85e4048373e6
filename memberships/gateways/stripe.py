"""
Stripe gateway using the PaymentIntents REST API.

Only the parts needed by the charge contract are implemented:
- confirming a PaymentIntent for an invoice (first purchase or off-session renewal)
- verifying signed webhooks and mapping them to confirmations

Network failures and 5xx/429 responses are reported as retryable; card
errors are hard declines. Each invoice uses its own idempotency key so a
retried charge can never bill the member twice.
"""

import hashlib
import hmac
import json
import logging
import os
import time
from typing import Any, Dict, Mapping, Optional

import httpx

from .base import ChargeResult, Confirmation, Gateway, PaymentDetails
from ..errors import ValidationError
from ..invoice import Invoice, InvoiceStatus, to_cents

logger = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.stripe.com"
SIGNATURE_TOLERANCE_SECONDS = 300

_EVENT_STATUS = {
    "payment_intent.succeeded": InvoiceStatus.PAID,
    "payment_intent.payment_failed": InvoiceStatus.FAILED,
    "charge.refunded": InvoiceStatus.REFUNDED,
}


class StripeGateway(Gateway):

    gateway_id = "stripe"
    name = "Stripe"

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the Stripe gateway.

        Args:
            secret_key: Stripe secret API key (from STRIPE_SECRET_KEY if not provided)
            webhook_secret: Endpoint signing secret (from STRIPE_WEBHOOK_SECRET if not provided)
            api_base: API root, overridable for stripe-mock
            timeout: Seconds before a charge is reported as a retryable failure
            transport: Optional httpx transport (tests)
        """
        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        self.webhook_secret = webhook_secret or os.getenv("STRIPE_WEBHOOK_SECRET")
        self.api_base = (api_base or os.getenv("STRIPE_API_BASE") or DEFAULT_API_BASE).rstrip("/")

        self._client = httpx.Client(
            base_url=self.api_base,
            headers={"Authorization": f"Bearer {self.secret_key or ''}"},
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def supports_recurring(self) -> bool:
        return True

    def charge(self, invoice: Invoice, payment_details: PaymentDetails) -> ChargeResult:
        data: Dict[str, Any] = {
            "amount": str(to_cents(invoice.total)),
            "currency": invoice.currency.lower(),
            "confirm": "true",
            "description": f"Invoice #{invoice.invoice_number}",
            "metadata[invoice_id]": invoice.id,
            "metadata[subscription_id]": invoice.subscription_id,
        }
        if payment_details.customer_ref:
            data["customer"] = payment_details.customer_ref
        if payment_details.token:
            data["payment_method"] = payment_details.token
        if payment_details.save_profile:
            data["setup_future_usage"] = "off_session"
        else:
            data["off_session"] = "true"

        try:
            response = self._client.post(
                "/v1/payment_intents",
                data=data,
                headers={"Idempotency-Key": f"invoice-{invoice.id}"},
            )
        except httpx.TimeoutException:
            logger.warning("Stripe charge timed out", extra={"invoice_id": invoice.id})
            return ChargeResult.transient("Payment processor timed out")
        except httpx.RequestError as e:
            logger.warning("Stripe request error", extra={
                "invoice_id": invoice.id,
                "error": str(e),
            })
            return ChargeResult.transient(f"Request failed: {e}")

        return self._result_from_response(invoice, response)

    def _result_from_response(self, invoice: Invoice, response: httpx.Response) -> ChargeResult:
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Stripe unavailable", extra={
                "invoice_id": invoice.id,
                "status_code": response.status_code,
            })
            return ChargeResult.transient(f"Stripe API error: {response.status_code}")

        if response.status_code >= 400:
            error = body.get("error", {}) if isinstance(body, dict) else {}
            intent_id = (error.get("payment_intent") or {}).get("id")
            reason = error.get("message") or f"Stripe API error: {response.status_code}"
            logger.warning("Stripe charge declined", extra={
                "invoice_id": invoice.id,
                "status_code": response.status_code,
                "decline_code": error.get("decline_code"),
                "error_type": error.get("type"),
            })
            return ChargeResult.declined(reason, transaction_id=intent_id)

        intent_id = body.get("id")
        intent_status = body.get("status")
        if intent_status == "succeeded":
            profile = {}
            if body.get("customer"):
                profile["customer_id"] = body["customer"]
            if body.get("payment_method"):
                profile["payment_method"] = body["payment_method"]
            logger.info("Stripe charge succeeded", extra={
                "invoice_id": invoice.id,
                "payment_intent": intent_id,
            })
            return ChargeResult.approved(intent_id, profile=profile)
        if intent_status == "processing":
            return ChargeResult.pending(intent_id)

        last_error = body.get("last_payment_error") or {}
        reason = last_error.get("message") or f"Payment not completed ({intent_status})"
        return ChargeResult.declined(reason, transaction_id=intent_id)

    def verify_webhook_signature(self, payload: bytes, signature_header: str, now: Optional[float] = None) -> bool:
        """
        Verify a Stripe-Signature header (``t=<ts>,v1=<hex hmac>``).

        Args:
            payload: Raw request body bytes
            signature_header: Stripe-Signature header value
            now: Current unix time (tests)

        Returns:
            True if one v1 signature matches and the timestamp is recent
        """
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured for webhook verification")
            return False

        timestamp = None
        signatures = []
        for part in (signature_header or "").split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            return False

        try:
            age = (now if now is not None else time.time()) - int(timestamp)
        except ValueError:
            return False
        if abs(age) > SIGNATURE_TOLERANCE_SECONDS:
            return False

        signed_payload = f"{timestamp}.".encode("utf-8") + payload
        expected = hmac.new(self.webhook_secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
        return any(hmac.compare_digest(expected, candidate) for candidate in signatures)

    def parse_confirmation(self, body: bytes, headers: Mapping[str, str]) -> Optional[Confirmation]:
        signature = headers.get("stripe-signature") or headers.get("Stripe-Signature") or ""
        if not self.verify_webhook_signature(body, signature):
            raise ValidationError("Invalid webhook signature", details={"gateway_id": self.gateway_id})

        try:
            event = json.loads(body)
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid JSON payload") from exc

        event_type = event.get("type")
        status = _EVENT_STATUS.get(event_type)
        if status is None:
            logger.info("Ignoring Stripe event", extra={"event_type": event_type})
            return None

        obj = (event.get("data") or {}).get("object") or {}
        external_id = obj.get("payment_intent") if event_type == "charge.refunded" else obj.get("id")
        if not external_id:
            raise ValidationError("Stripe event has no payment intent", details={"event_type": event_type})
        return Confirmation(gateway_id=self.gateway_id, external_id=external_id, status=status)
