"""
Invoices: one billable event of a subscription.

An invoice is a lifecycle marker, not an accounting record. Its total is
always derived from its components (amount, discount, pro-rate, tax) and is
never stored on its own. Once paid, only a refund may change it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Iterable, Optional, Protocol, Tuple

from .errors import InvoiceLockedError
from .models import Membership
from .subscription import Subscription

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: Decimal) -> int:
    return int((to_money(value) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return to_money(Decimal(int(cents)) / 100)


class InvoiceStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


@dataclass(frozen=True)
class Invoice:
    id: str
    subscription_id: str
    invoice_number: int
    status: InvoiceStatus
    currency: str
    amount: Decimal
    due_date: datetime
    gateway_id: Optional[str] = None
    discount: Decimal = ZERO
    pro_rate: Decimal = ZERO
    tax_name: Optional[str] = None
    tax_rate: Decimal = ZERO
    trial: bool = False
    notes: Tuple[str, ...] = ()
    external_id: Optional[str] = None
    coupon_code: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", InvoiceStatus(self.status))
        for name in ("amount", "discount", "pro_rate"):
            value = to_money(getattr(self, name))
            if value < 0:
                raise ValueError(f"invoice {name} must not be negative")
            object.__setattr__(self, name, value)
        tax_rate = Decimal(str(self.tax_rate))
        if tax_rate < 0:
            raise ValueError("tax_rate must not be negative")
        object.__setattr__(self, "tax_rate", tax_rate)
        object.__setattr__(self, "currency", str(self.currency).strip().upper())
        object.__setattr__(self, "notes", tuple(self.notes))

    @property
    def subtotal(self) -> Decimal:
        return max(self.amount - self.discount - self.pro_rate, ZERO)

    @property
    def tax_amount(self) -> Decimal:
        return to_money(self.subtotal * self.tax_rate / 100)

    @property
    def total(self) -> Decimal:
        return to_money(self.subtotal + self.tax_amount)

    @property
    def is_paid(self) -> bool:
        return self.status is InvoiceStatus.PAID

    @property
    def is_open(self) -> bool:
        return self.status is InvoiceStatus.PENDING

    def with_note(self, note: str) -> Invoice:
        return replace(self, notes=self.notes + (note,))


def mark_paid(invoice: Invoice, *, external_id: Optional[str], now: datetime, gateway_id: Optional[str] = None) -> Invoice:
    if invoice.status is not InvoiceStatus.PENDING and invoice.status is not InvoiceStatus.FAILED:
        raise InvoiceLockedError(invoice.id)
    return replace(
        invoice,
        status=InvoiceStatus.PAID,
        external_id=external_id or invoice.external_id,
        gateway_id=gateway_id or invoice.gateway_id,
        paid_at=now,
    )


def mark_failed(invoice: Invoice, reason: str) -> Invoice:
    if invoice.status is not InvoiceStatus.PENDING:
        raise InvoiceLockedError(invoice.id)
    return replace(invoice, status=InvoiceStatus.FAILED).with_note(f"Payment failed: {reason}")


def mark_refunded(invoice: Invoice, note: Optional[str] = None) -> Invoice:
    if invoice.status is not InvoiceStatus.PAID:
        raise InvoiceLockedError(invoice.id)
    refunded = replace(invoice, status=InvoiceStatus.REFUNDED)
    return refunded.with_note(note) if note else refunded


def ensure_replaceable(existing: Invoice, updated: Invoice) -> None:
    """Reject any write to a paid invoice other than a refund annotation."""
    if existing.status is not InvoiceStatus.PAID:
        return
    if updated.status is InvoiceStatus.PAID and updated == existing:
        return
    if updated.status is InvoiceStatus.REFUNDED:
        unchanged = replace(updated, status=existing.status, notes=existing.notes)
        if unchanged == existing and updated.notes[: len(existing.notes)] == existing.notes:
            return
    raise InvoiceLockedError(existing.id)


# -----------------------------------------------------------------------------
# Extension points: discounts and tax
# -----------------------------------------------------------------------------


class DiscountKind(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


@dataclass(frozen=True)
class Coupon:
    code: str
    kind: DiscountKind
    value: Decimal
    membership_ids: frozenset = field(default_factory=frozenset)
    expires_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        code = str(self.code).strip().upper()
        if not code:
            raise ValueError("coupon code is required")
        kind = DiscountKind(self.kind)
        value = Decimal(str(self.value))
        if value < 0:
            raise ValueError("coupon value must not be negative")
        if kind is DiscountKind.PERCENT and value > 100:
            raise ValueError("percent coupon cannot exceed 100")
        object.__setattr__(self, "code", code)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "membership_ids", frozenset(self.membership_ids))

    def applies_to(self, membership: Membership, now: datetime) -> bool:
        if self.expires_at is not None and self.expires_at <= now:
            return False
        return not self.membership_ids or membership.id in self.membership_ids


class DiscountCalculator(Protocol):
    """Pluggable discount source; returns the discount for one invoice amount."""

    def discount_for(
        self, membership: Membership, subscription: Subscription, amount: Decimal, now: datetime
    ) -> Tuple[Decimal, Optional[str]]:
        ...


class NoDiscount:
    def discount_for(self, membership, subscription, amount, now):
        return ZERO, None


class CouponDiscount:
    """Applies the first matching coupon; a coupon never discounts below zero."""

    def __init__(self, coupons: Iterable[Coupon]):
        self._coupons = tuple(coupons)

    def discount_for(self, membership, subscription, amount, now):
        for coupon in self._coupons:
            if not coupon.applies_to(membership, now):
                continue
            if coupon.kind is DiscountKind.PERCENT:
                discount = to_money(amount * coupon.value / 100)
            else:
                discount = to_money(coupon.value)
            return min(discount, to_money(amount)), coupon.code
        return ZERO, None


class TaxPolicy(Protocol):
    def rate_for(self, membership: Membership, subscription: Subscription) -> Tuple[Optional[str], Decimal]:
        ...


class NoTax:
    def rate_for(self, membership, subscription):
        return None, ZERO


class FlatTax:
    def __init__(self, name: str, rate: Decimal):
        rate = Decimal(str(rate))
        if rate < 0:
            raise ValueError("tax rate must not be negative")
        self.name = name
        self.rate = rate

    def rate_for(self, membership, subscription):
        return self.name, self.rate


# -----------------------------------------------------------------------------
# Invoice construction
# -----------------------------------------------------------------------------


def build_invoice(
    subscription: Subscription,
    membership: Membership,
    *,
    invoice_number: int,
    due_date: datetime,
    gateway_id: Optional[str] = None,
    trial: bool = False,
    pro_rate: Decimal = ZERO,
    discounts: Optional[DiscountCalculator] = None,
    taxes: Optional[TaxPolicy] = None,
    now: Optional[datetime] = None,
) -> Invoice:
    """Price one billing event of ``subscription`` from its membership's terms."""
    now = now or datetime.now(timezone.utc)
    if trial:
        amount = membership.trial.price
    elif membership.is_free:
        amount = ZERO
    else:
        amount = membership.price

    discount, coupon_code = (discounts or NoDiscount()).discount_for(membership, subscription, amount, now)
    tax_name, tax_rate = (taxes or NoTax()).rate_for(membership, subscription)

    return Invoice(
        id=str(uuid.uuid4()),
        subscription_id=subscription.id,
        invoice_number=invoice_number,
        status=InvoiceStatus.PENDING,
        currency=membership.currency,
        amount=amount,
        discount=discount,
        pro_rate=min(to_money(pro_rate), to_money(amount)),
        tax_name=tax_name,
        tax_rate=tax_rate,
        due_date=due_date,
        gateway_id=gateway_id,
        trial=trial,
        coupon_code=coupon_code,
        created_at=now,
    )


def prorate_credit(last_paid: Optional[Invoice], subscription: Subscription, now: datetime) -> Decimal:
    """
    Credit for the unused part of a subscription being replaced by another plan.

    Proportional to the remaining share of the period covered by its last
    paid invoice; zero for unpaid, perpetual or already-ended coverage.
    """
    if last_paid is None or not last_paid.is_paid or subscription.expire_date is None:
        return ZERO
    period_start = last_paid.paid_at or subscription.start_date
    total_seconds = (subscription.expire_date - period_start).total_seconds()
    remaining_seconds = (subscription.expire_date - now).total_seconds()
    if total_seconds <= 0 or remaining_seconds <= 0:
        return ZERO
    share = Decimal(str(min(remaining_seconds / total_seconds, 1.0)))
    return to_money(last_paid.subtotal * share)
