"""
Manual payment gateway (bank transfer, cheque).

The member is shown payment instructions and a reference; an admin or a
bank feed confirms the payment later through the asynchronous confirmation
entry point. Never recurring: renewals produce a pending invoice that the
member has to pay again.
"""

import logging
from typing import Optional

from .base import ChargeResult, Gateway, PaymentDetails
from ..invoice import Invoice

logger = logging.getLogger(__name__)


class ManualGateway(Gateway):

    gateway_id = "manual"
    name = "Manual Payment"

    def __init__(self, instructions: Optional[str] = None, reference_prefix: str = "MAN"):
        self.instructions = (instructions or "").strip()
        self.reference_prefix = reference_prefix

    def is_configured(self) -> bool:
        return bool(self.instructions)

    def reference_for(self, invoice: Invoice) -> str:
        return f"{self.reference_prefix}-{invoice.invoice_number:06d}"

    def charge(self, invoice: Invoice, payment_details: PaymentDetails) -> ChargeResult:
        reference = self.reference_for(invoice)
        logger.info("Manual payment requested", extra={
            "invoice_id": invoice.id,
            "reference": reference,
            "total": str(invoice.total),
            "currency": invoice.currency,
        })
        return ChargeResult.pending(reference)
