"""
Import of legacy membership exports.

An export is a JSON object with memberships, members (each carrying its
registrations and their invoices) and settings. Cross references inside the
export use export-local ids, resolved through an ImportSession that lives for
exactly one import run.

Per-record problems (unknown membership, special membership registration,
duplicate registration) are collected in the ImportReport; the import keeps
going. A malformed export is rejected up front with ValidationError.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ConcurrencyConflict, NotFoundError, ValidationError
from .invoice import Invoice, InvoiceStatus, to_money
from .models import Member, Membership, MembershipType, Period, PeriodUnit, PricingMode, SpecialKind, TrialTerms
from .storage import Storage
from .subscription import Subscription, SubscriptionState

logger = logging.getLogger(__name__)

REQUIRED_EXPORT_FIELDS = ("source", "memberships", "members")

_PAY_TYPES = {
    "permanent": PricingMode.FREE,
    "finite": PricingMode.FINITE,
    "date-range": PricingMode.DATE_RANGE,
    "date_range": PricingMode.DATE_RANGE,
    "recurring": PricingMode.RECURRING,
}

_REGISTRATION_STATES = {
    "pending": SubscriptionState.PENDING,
    "trial": SubscriptionState.TRIAL,
    "active": SubscriptionState.ACTIVE,
    "expired": SubscriptionState.EXPIRED,
    "trial_expired": SubscriptionState.EXPIRED,
    "cancelled": SubscriptionState.CANCELLED,
    "canceled": SubscriptionState.CANCELLED,
    "deactivated": SubscriptionState.CANCELLED,
}

_INVOICE_STATES = {
    "paid": InvoiceStatus.PAID,
    "failed": InvoiceStatus.FAILED,
    "refunded": InvoiceStatus.REFUNDED,
}

# legacy payment keys per gateway: {gateway_id: {profile_key: export_key}}
_PROFILE_FIELDS = {
    "stripe": {"card_exp": "stripe_card_exp", "card_last4": "stripe_card_num", "customer_id": "stripe_customer"},
    "authorize": {
        "card_exp": "authorize_card_exp",
        "card_last4": "authorize_card_num",
        "cim_profile_id": "authorize_cim_profile",
        "cim_payment_profile_id": "authorize_cim_payment_profile",
    },
}


@dataclass
class ImportReport:
    memberships: int = 0
    members: int = 0
    registrations: int = 0
    invoices: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict:
        return {
            "memberships": self.memberships,
            "members": self.members,
            "registrations": self.registrations,
            "invoices": self.invoices,
            "errors": list(self.errors),
        }


class ImportSession:
    """Export-id to imported-object map for one import run."""

    def __init__(self) -> None:
        self._objects: Dict[Tuple[str, str], Any] = {}
        self.closed = False

    def __enter__(self) -> ImportSession:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._objects.clear()
        self.closed = True

    def register(self, kind: str, import_id: Any, obj: Any) -> None:
        if self.closed:
            raise RuntimeError("import session is closed")
        self._objects[(kind, str(import_id))] = obj

    def resolve(self, kind: str, import_id: Any) -> Optional[Any]:
        return self._objects.get((kind, str(import_id)))

    def count(self, kind: str) -> int:
        return sum(1 for key in self._objects if key[0] == kind)


def _decimal(raw: Any) -> Decimal:
    try:
        return Decimal(str(raw if raw not in (None, "") else "0"))
    except InvalidOperation as exc:
        raise ValueError(f"invalid amount {raw!r}") from exc


def _datetime(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    text = str(raw).strip()
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        # legacy exports use plain dates ("2015-03-01")
        value = datetime.strptime(text[:10], "%Y-%m-%d")
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _period(count: Any, unit: Any) -> Optional[Period]:
    if count in (None, "", 0, "0"):
        return None
    return Period(count=int(count), unit=PeriodUnit.parse(unit))


class Importer:
    """Writes a legacy export into Storage."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    @staticmethod
    def validate(data: Any) -> Mapping[str, Any]:
        if not isinstance(data, Mapping):
            raise ValidationError("Import data must be an object")
        missing = [key for key in REQUIRED_EXPORT_FIELDS if key not in data]
        if missing:
            raise ValidationError("Import data could not be parsed", details={"missing": missing})
        if not isinstance(data["memberships"], list) or not isinstance(data["members"], list):
            raise ValidationError("Import memberships and members must be lists")
        return data

    def run(self, data: Any, *, now: Optional[datetime] = None) -> ImportReport:
        data = self.validate(data)
        now = now or datetime.now(timezone.utc)
        report = ImportReport()

        with ImportSession() as session:
            for obj in data["memberships"]:
                self._import_membership(session, report, obj)
            for obj in data["members"]:
                self._import_member(session, report, obj, now)

        logger.info("Import finished", extra={"source": data.get("source"), **report.to_dict()})
        return report

    # -- memberships ---------------------------------------------------------

    def _import_membership(self, session: ImportSession, report: ImportReport, obj: Mapping) -> None:
        name = str(obj.get("name") or obj.get("id") or "").strip()
        special = obj.get("special") or None
        if special:
            existing = self._existing_special(special)
            if existing is None:
                report.errors.append(f"Special membership {name} has no counterpart and was skipped")
            else:
                session.register("membership", obj.get("id"), existing)
            return

        try:
            membership = self._membership_from_export(session, obj, name)
        except (ValueError, KeyError) as exc:
            report.errors.append(f"Could not import membership {name}: {exc}")
            return

        self.storage.save_membership(membership)
        session.register("membership", obj.get("id"), membership)
        report.memberships += 1

    def _existing_special(self, special: str) -> Optional[Membership]:
        try:
            kind = SpecialKind(str(special).strip().lower())
        except ValueError:
            return None
        if kind is SpecialKind.BASE:
            try:
                return self.storage.get_base_membership()
            except NotFoundError:
                return None
        for membership in self.storage.list_memberships():
            if membership.special is kind:
                return membership
        return None

    @staticmethod
    def _membership_from_export(session: ImportSession, obj: Mapping, name: str) -> Membership:
        is_free = bool(obj.get("free", False))
        mode = _PAY_TYPES.get(str(obj.get("pay_type") or "permanent").strip().lower(), PricingMode.FREE)
        if is_free:
            mode = PricingMode.FREE

        period = None
        date_start = date_end = None
        if mode in (PricingMode.FINITE, PricingMode.RECURRING):
            # legacy naming: period_unit is the count, period_type the unit
            period = _period(obj.get("period_unit"), obj.get("period_type"))
        elif mode is PricingMode.DATE_RANGE:
            date_start = _datetime(obj.get("period_start"))
            date_end = _datetime(obj.get("period_end"))

        trial_enabled = bool(obj.get("trial", False))
        trial = TrialTerms(
            enabled=trial_enabled,
            period=_period(obj.get("trial_period_unit"), obj.get("trial_period_type")) if trial_enabled else None,
            price=_decimal(obj.get("trial_price")) if trial_enabled else Decimal("0"),
        )

        parent_id = None
        membership_type = MembershipType.DRIPPED if obj.get("dripped") else MembershipType.SIMPLE
        if obj.get("parent"):
            parent = session.resolve("membership", obj.get("parent"))
            if parent is None:
                raise KeyError(f"unknown parent {obj.get('parent')!r}")
            parent_id = parent.id
            membership_type = MembershipType.TIERED_CHILD

        return Membership(
            id=str(uuid.uuid4()),
            name=name,
            type=membership_type,
            pricing_mode=mode,
            price=Decimal("0") if is_free else _decimal(obj.get("price")),
            currency=str(obj.get("currency") or "USD"),
            period=period,
            date_start=date_start,
            date_end=date_end,
            trial=trial,
            parent_id=parent_id,
            active=bool(obj.get("active", True)),
            private=bool(obj.get("private", False)),
        )

    # -- members -------------------------------------------------------------

    def _import_member(self, session: ImportSession, report: ImportReport, obj: Mapping, now: datetime) -> None:
        member_id = str(obj.get("email") or obj.get("username") or "").strip().lower()
        if not member_id:
            report.errors.append(f"Could not import member {obj.get('id')!r}: no email or username")
            return

        member = self.storage.get_member(member_id) or Member(id=member_id)
        payment = obj.get("payment") or {}
        for gateway_id, fields in _PROFILE_FIELDS.items():
            profile = {key: str(payment[source]).strip() for key, source in fields.items() if payment.get(source)}
            if "card_last4" in profile:
                # only the last four digits of a card number are kept
                profile["card_last4"] = "".join(ch for ch in profile["card_last4"] if ch.isdigit())[-4:]
            if profile:
                member = member.with_gateway_profile(gateway_id, profile)
        self.storage.save_member(member)
        session.register("member", obj.get("id"), member)
        report.members += 1

        for registration in obj.get("subscriptions") or []:
            self._import_registration(session, report, member, registration, now)

    def _import_registration(
        self,
        session: ImportSession,
        report: ImportReport,
        member: Member,
        obj: Mapping,
        now: datetime,
    ) -> None:
        membership = session.resolve("membership", obj.get("membership"))
        if membership is None:
            report.errors.append(f"Could not import a membership for member {member.id}")
            return
        if membership.is_special:
            report.errors.append(f"Did not import the special membership {membership.name} for {member.id}")
            return

        state = _REGISTRATION_STATES.get(str(obj.get("status") or "pending").strip().lower(), SubscriptionState.PENDING)
        start = _datetime(obj.get("start")) or now
        trial_end = _datetime(obj.get("trial_expire"))
        if state is SubscriptionState.TRIAL and trial_end is None:
            trial_end = _datetime(obj.get("expire"))
        subscription = Subscription(
            id=str(uuid.uuid4()),
            member_id=member.id,
            membership_id=membership.id,
            state=state,
            start_date=start,
            trial_end=trial_end,
            expire_date=_datetime(obj.get("expire")),
            gateway_id=obj.get("gateway") or None,
        )
        try:
            self.storage.add_subscription(subscription)
        except ConcurrencyConflict:
            report.errors.append(f"Member {member.id} already holds {membership.name}; registration skipped")
            return

        session.register("registration", obj.get("id"), subscription)
        report.registrations += 1

        for invoice in obj.get("invoices") or []:
            self._import_invoice(session, report, subscription, invoice, now)

    # -- invoices ------------------------------------------------------------

    def _import_invoice(
        self,
        session: ImportSession,
        report: ImportReport,
        subscription: Subscription,
        obj: Mapping,
        now: datetime,
    ) -> None:
        try:
            status = _INVOICE_STATES.get(str(obj.get("status") or "").strip().lower(), InvoiceStatus.PENDING)
            notes = obj.get("notes") or []
            if isinstance(notes, str):
                notes = [notes]
            legacy_number = obj.get("invoice_number")
            if legacy_number:
                notes = list(notes) + [f"Imported invoice #{legacy_number}"]
            invoice = Invoice(
                id=str(uuid.uuid4()),
                subscription_id=subscription.id,
                invoice_number=self.storage.next_invoice_number(),
                status=status,
                currency=str(obj.get("currency") or "USD"),
                amount=_decimal(obj.get("amount")),
                discount=_decimal(obj.get("discount")),
                pro_rate=_decimal(obj.get("discount2")),
                tax_name=obj.get("tax_name") or None,
                tax_rate=_decimal(obj.get("tax_rate")) if obj.get("taxable", True) else Decimal("0"),
                due_date=_datetime(obj.get("due")) or now,
                gateway_id=obj.get("gateway") or None,
                trial=bool(obj.get("for_trial", False)),
                notes=tuple(str(note) for note in notes),
                external_id=obj.get("external_id") or None,
                coupon_code=obj.get("coupon") or None,
                paid_at=now if status is InvoiceStatus.PAID else None,
                created_at=now,
            )
        except ValueError as exc:
            report.errors.append(f"Could not import invoice {obj.get('id')!r}: {exc}")
            return

        legacy_total = obj.get("total")
        if legacy_total not in (None, "") and to_money(_decimal(legacy_total)) != invoice.total:
            report.errors.append(
                f"Invoice {obj.get('id')!r}: stored total {legacy_total} recomputed as {invoice.total}"
            )

        try:
            self.storage.save_invoice(invoice)
        except ValidationError as exc:
            report.errors.append(f"Could not import invoice {obj.get('id')!r}: {exc.message}")
            return
        session.register("invoice", obj.get("id"), invoice)
        report.invoices += 1
