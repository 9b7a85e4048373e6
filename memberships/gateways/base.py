"""
Payment gateway contract.

Every processor implements Gateway. Charges return a structured
ChargeResult; they never raise for a decline or a network failure, so the
lifecycle controller can decide what happens to the invoice without
exception-driven control flow.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from ..errors import ConfigurationError, ValidationError
from ..invoice import Invoice, InvoiceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentDetails:
    """Tokenized payment input for one charge. Raw card data never reaches the engine."""

    token: Optional[str] = None
    customer_ref: Optional[str] = None
    save_profile: bool = True
    extra: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @classmethod
    def from_profile(cls, profile: Mapping[str, str]) -> PaymentDetails:
        return cls(
            token=profile.get("payment_method"),
            customer_ref=profile.get("customer_id"),
            save_profile=False,
        )


@dataclass(frozen=True)
class ChargeResult:
    success: bool
    transaction_id: Optional[str] = None
    decline_reason: Optional[str] = None
    retryable: bool = False
    awaiting_confirmation: bool = False
    profile: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "profile", MappingProxyType(dict(self.profile)))

    @classmethod
    def approved(cls, transaction_id: str, profile: Optional[Mapping[str, str]] = None) -> ChargeResult:
        return cls(success=True, transaction_id=transaction_id, profile=profile or {})

    @classmethod
    def declined(cls, reason: str, transaction_id: Optional[str] = None) -> ChargeResult:
        return cls(success=False, transaction_id=transaction_id, decline_reason=reason)

    @classmethod
    def transient(cls, reason: str, transaction_id: Optional[str] = None) -> ChargeResult:
        return cls(success=False, transaction_id=transaction_id, decline_reason=reason, retryable=True)

    @classmethod
    def pending(cls, transaction_id: str) -> ChargeResult:
        return cls(success=False, transaction_id=transaction_id, awaiting_confirmation=True)


@dataclass(frozen=True)
class Confirmation:
    """Out-of-band settlement report keyed by (gateway_id, external transaction id)."""

    gateway_id: str
    external_id: str
    status: InvoiceStatus

    def __post_init__(self) -> None:
        external_id = str(self.external_id).strip()
        if not external_id:
            raise ValueError("external_id is required")
        status = InvoiceStatus(self.status)
        if status is InvoiceStatus.PENDING:
            raise ValueError("a confirmation must settle the invoice")
        object.__setattr__(self, "external_id", external_id)
        object.__setattr__(self, "status", status)


class Gateway(ABC):
    """Abstract payment processor."""

    gateway_id: str = ""
    name: str = ""

    @abstractmethod
    def charge(self, invoice: Invoice, payment_details: PaymentDetails) -> ChargeResult:
        ...

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    def supports_recurring(self) -> bool:
        return False

    def parse_confirmation(self, body: bytes, headers: Mapping[str, str]) -> Optional[Confirmation]:
        """
        Turn a webhook request into a Confirmation.

        The default accepts ``{"transaction_id": ..., "status": ...}``.
        Gateways with signed webhooks override this and verify first.
        """
        try:
            payload = json.loads(body or b"{}")
        except json.JSONDecodeError as exc:
            raise ValidationError("Invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Confirmation payload must be an object")
        try:
            return Confirmation(
                gateway_id=self.gateway_id,
                external_id=str(payload.get("transaction_id") or ""),
                status=InvoiceStatus(str(payload.get("status", "")).lower()),
            )
        except ValueError as exc:
            raise ValidationError(str(exc), details={"gateway_id": self.gateway_id}) from exc


class GatewayRegistry:
    """Explicit registry of the gateways available to the lifecycle controller."""

    def __init__(self, gateways: Iterable[Gateway] = ()):
        self._gateways: Dict[str, Gateway] = {}
        for gateway in gateways:
            self.register(gateway)

    def register(self, gateway: Gateway) -> None:
        if not gateway.gateway_id:
            raise ValueError("gateway_id is required")
        if gateway.gateway_id in self._gateways:
            raise ValueError(f"gateway {gateway.gateway_id!r} is already registered")
        self._gateways[gateway.gateway_id] = gateway
        logger.info("Registered payment gateway", extra={
            "gateway_id": gateway.gateway_id,
            "recurring": gateway.supports_recurring(),
        })

    def get(self, gateway_id: str) -> Gateway:
        """Return a configured gateway or raise before any charge is attempted."""
        gateway = self._gateways.get(str(gateway_id or "").strip())
        if gateway is None:
            raise ValidationError(f"Unknown payment gateway '{gateway_id}'", details={"gateway_id": gateway_id})
        if not gateway.is_configured():
            raise ConfigurationError(gateway.gateway_id)
        return gateway

    def __contains__(self, gateway_id: str) -> bool:
        return gateway_id in self._gateways

    def ids(self) -> list[str]:
        return sorted(self._gateways)
