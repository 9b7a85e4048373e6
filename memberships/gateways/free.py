"""
Free gateway.

Settles invoices whose total is zero, e.g. a free plan or a 100% coupon
applied to an otherwise paid membership. The lifecycle controller already
settles zero totals without calling any gateway; this gateway exists so a
free checkout can still name a gateway, and so a non-zero invoice routed
here by mistake is refused instead of being marked paid.
"""

import logging

from .base import ChargeResult, Gateway, PaymentDetails
from ..invoice import Invoice

logger = logging.getLogger(__name__)


class FreeGateway(Gateway):

    gateway_id = "free"
    name = "Free Gateway"

    def is_configured(self) -> bool:
        # Free products need no payment configuration.
        return True

    def charge(self, invoice: Invoice, payment_details: PaymentDetails) -> ChargeResult:
        if invoice.total != 0:
            logger.warning("Free gateway refused a non-zero invoice", extra={
                "invoice_id": invoice.id,
                "total": str(invoice.total),
            })
            return ChargeResult.declined("Free gateway cannot settle a non-zero invoice")
        return ChargeResult.approved(f"free-{invoice.invoice_number}")
