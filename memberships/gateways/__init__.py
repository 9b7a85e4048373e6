"""
Payment gateways.

- Gateway / GatewayRegistry: the contract and the explicit registry
- FreeGateway: zero-total invoices only
- ManualGateway: bank transfer, confirmed out of band
- StripeGateway: PaymentIntents over httpx, signed webhooks
"""

from .base import ChargeResult, Confirmation, Gateway, GatewayRegistry, PaymentDetails
from .free import FreeGateway
from .manual import ManualGateway
from .stripe import StripeGateway

__all__ = [
    "ChargeResult",
    "Confirmation",
    "Gateway",
    "GatewayRegistry",
    "PaymentDetails",
    "FreeGateway",
    "ManualGateway",
    "StripeGateway",
]
