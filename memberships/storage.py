"""
Persistence for members, memberships, subscriptions and invoices.

Storage is a contract (the Storage protocol); SqlStorage implements it with
SQLAlchemy against any supported database URL (SQLite in tests, PostgreSQL
in production).

Write rules:
- subscription state changes go through commit_transition, a compare-and-swap
  on (state, version) executed in one transaction together with the invoice
  write that caused it
- paid invoices are write-protected; only a refund annotation is accepted
- amounts are stored as integer cents, datetimes as UTC
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .errors import ConcurrencyConflict, NotFoundError, ValidationError
from .invoice import Invoice, InvoiceStatus, ensure_replaceable, from_cents, to_cents
from .models import Member, Membership, Period, SpecialKind, TrialTerms
from .rules import rule_set_from_dict
from .subscription import DueAction, Subscription, SubscriptionState, TERMINAL_STATES

logger = logging.getLogger(__name__)

Base = declarative_base()

INVOICE_NUMBER_COUNTER = "invoice_number"


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; every stored value is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# TABLES
# =============================================================================


class MemberRow(Base):
    __tablename__ = "members"

    id = Column(String(255), primary_key=True)
    # {gateway_id: {customer_id, payment_method, card_last4, card_exp}}
    gateway_profiles = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class MembershipRow(Base):
    __tablename__ = "memberships"

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    type = Column(String(50), nullable=False, default="simple")
    pricing_mode = Column(String(50), nullable=False, default="free")
    price_cents = Column(Integer, nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    period_count = Column(Integer, nullable=True)
    period_unit = Column(String(20), nullable=True)
    date_start = Column(DateTime(timezone=True), nullable=True)
    date_end = Column(DateTime(timezone=True), nullable=True)
    trial_enabled = Column(Boolean, nullable=False, default=False)
    trial_period_count = Column(Integer, nullable=True)
    trial_period_unit = Column(String(20), nullable=True)
    trial_price_cents = Column(Integer, nullable=False, default=0)
    special = Column(String(20), nullable=True, index=True)
    parent_id = Column(String(255), nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    private = Column(Boolean, nullable=False, default=False)
    # {rule_type: {"entries": {...}, "default": ..., "drip_days": {...}}}
    rules = Column(JSON, nullable=False, default=dict)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SubscriptionRow(Base):
    __tablename__ = "subscriptions"

    id = Column(String(255), primary_key=True)
    member_id = Column(String(255), nullable=False)
    membership_id = Column(String(255), nullable=False)
    state = Column(String(20), nullable=False)
    start_date = Column(DateTime(timezone=True), nullable=False)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    expire_date = Column(DateTime(timezone=True), nullable=True)
    grace_until = Column(DateTime(timezone=True), nullable=True)
    gateway_id = Column(String(50), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    deleted = Column(Boolean, nullable=False, default=False)
    # optimistic-concurrency counter, bumped by every committed transition
    version = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_subscriptions_member_membership", "member_id", "membership_id"),
        Index("ix_subscriptions_state_expire", "state", "expire_date"),
    )


class InvoiceRow(Base):
    __tablename__ = "invoices"

    id = Column(String(255), primary_key=True)
    subscription_id = Column(String(255), nullable=False, index=True)
    invoice_number = Column(Integer, nullable=False, unique=True)
    status = Column(String(20), nullable=False)
    currency = Column(String(3), nullable=False)
    amount_cents = Column(Integer, nullable=False)
    discount_cents = Column(Integer, nullable=False, default=0)
    pro_rate_cents = Column(Integer, nullable=False, default=0)
    tax_name = Column(String(100), nullable=True)
    # percent, kept as text to avoid float rounding
    tax_rate = Column(String(20), nullable=False, default="0")
    due_date = Column(DateTime(timezone=True), nullable=False)
    gateway_id = Column(String(50), nullable=True)
    trial = Column(Boolean, nullable=False, default=False)
    notes = Column(JSON, nullable=False, default=list)
    external_id = Column(String(255), nullable=True)
    coupon_code = Column(String(100), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("gateway_id", "external_id", name="uq_invoices_gateway_external"),
    )


class CounterRow(Base):
    __tablename__ = "counters"

    name = Column(String(100), primary_key=True)
    value = Column(Integer, nullable=False, default=0)


# =============================================================================
# ROW <-> SNAPSHOT MAPPING
# =============================================================================


def _member_from_row(row: MemberRow) -> Member:
    return Member(id=row.id, gateway_profiles=row.gateway_profiles or {})


def _membership_values(membership: Membership) -> dict:
    period = membership.period
    trial_period = membership.trial.period
    return {
        "name": membership.name,
        "type": membership.type.value,
        "pricing_mode": membership.pricing_mode.value,
        "price_cents": to_cents(membership.price),
        "currency": membership.currency,
        "period_count": period.count if period else None,
        "period_unit": period.unit.value if period else None,
        "date_start": _to_db(membership.date_start),
        "date_end": _to_db(membership.date_end),
        "trial_enabled": membership.trial.enabled,
        "trial_period_count": trial_period.count if trial_period else None,
        "trial_period_unit": trial_period.unit.value if trial_period else None,
        "trial_price_cents": to_cents(membership.trial.price),
        "special": membership.special.value if membership.special else None,
        "parent_id": membership.parent_id,
        "active": membership.active,
        "private": membership.private,
        "rules": {rule_type.value: rule_set.to_dict() for rule_type, rule_set in membership.rules.items()},
    }


def _membership_from_row(row: MembershipRow) -> Membership:
    period = Period(row.period_count, row.period_unit) if row.period_count else None
    trial_period = Period(row.trial_period_count, row.trial_period_unit) if row.trial_period_count else None
    rules = {
        rule_type: rule_set_from_dict(row.id, rule_type, raw)
        for rule_type, raw in (row.rules or {}).items()
    }
    return Membership(
        id=row.id,
        name=row.name,
        type=row.type,
        pricing_mode=row.pricing_mode,
        price=from_cents(row.price_cents),
        currency=row.currency,
        period=period,
        date_start=_from_db(row.date_start),
        date_end=_from_db(row.date_end),
        trial=TrialTerms(
            enabled=row.trial_enabled,
            period=trial_period,
            price=from_cents(row.trial_price_cents),
        ),
        special=row.special,
        parent_id=row.parent_id,
        active=row.active,
        private=row.private,
        rules=rules,
    )


def _subscription_values(subscription: Subscription) -> dict:
    return {
        "member_id": subscription.member_id,
        "membership_id": subscription.membership_id,
        "state": subscription.state.value,
        "start_date": _to_db(subscription.start_date),
        "trial_end": _to_db(subscription.trial_end),
        "expire_date": _to_db(subscription.expire_date),
        "grace_until": _to_db(subscription.grace_until),
        "gateway_id": subscription.gateway_id,
        "cancellation_reason": subscription.cancellation_reason,
        "deleted": subscription.deleted,
    }


def _subscription_from_row(row: SubscriptionRow) -> Subscription:
    return Subscription(
        id=row.id,
        member_id=row.member_id,
        membership_id=row.membership_id,
        state=row.state,
        start_date=_from_db(row.start_date),
        trial_end=_from_db(row.trial_end),
        expire_date=_from_db(row.expire_date),
        grace_until=_from_db(row.grace_until),
        gateway_id=row.gateway_id,
        cancellation_reason=row.cancellation_reason,
        deleted=row.deleted,
        version=row.version,
    )


def _invoice_values(invoice: Invoice) -> dict:
    return {
        "subscription_id": invoice.subscription_id,
        "invoice_number": invoice.invoice_number,
        "status": invoice.status.value,
        "currency": invoice.currency,
        "amount_cents": to_cents(invoice.amount),
        "discount_cents": to_cents(invoice.discount),
        "pro_rate_cents": to_cents(invoice.pro_rate),
        "tax_name": invoice.tax_name,
        "tax_rate": str(invoice.tax_rate),
        "due_date": _to_db(invoice.due_date),
        "gateway_id": invoice.gateway_id,
        "trial": invoice.trial,
        "notes": list(invoice.notes),
        "external_id": invoice.external_id,
        "coupon_code": invoice.coupon_code,
        "paid_at": _to_db(invoice.paid_at),
        "created_at": _to_db(invoice.created_at),
    }


def _invoice_from_row(row: InvoiceRow) -> Invoice:
    return Invoice(
        id=row.id,
        subscription_id=row.subscription_id,
        invoice_number=row.invoice_number,
        status=row.status,
        currency=row.currency,
        amount=from_cents(row.amount_cents),
        discount=from_cents(row.discount_cents),
        pro_rate=from_cents(row.pro_rate_cents),
        tax_name=row.tax_name,
        tax_rate=Decimal(row.tax_rate or "0"),
        due_date=_from_db(row.due_date),
        gateway_id=row.gateway_id,
        trial=row.trial,
        notes=tuple(row.notes or ()),
        external_id=row.external_id,
        coupon_code=row.coupon_code,
        paid_at=_from_db(row.paid_at),
        created_at=_from_db(row.created_at),
    )


# =============================================================================
# CONTRACT
# =============================================================================


class Storage(Protocol):
    """What the lifecycle controller and access service need from persistence."""

    def get_member(self, member_id: str) -> Optional[Member]: ...

    def save_member(self, member: Member) -> Member: ...

    def get_membership(self, membership_id: str) -> Optional[Membership]: ...

    def save_membership(self, membership: Membership) -> Membership: ...

    def list_memberships(self, active_only: bool = False) -> List[Membership]: ...

    def get_base_membership(self) -> Membership: ...

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]: ...

    def add_subscription(self, subscription: Subscription) -> Subscription: ...

    def list_subscriptions(self, member_id: str, include_deleted: bool = False) -> List[Subscription]: ...

    def list_due_subscriptions(self, now: datetime) -> List[Subscription]: ...

    def commit_transition(
        self,
        subscription: Subscription,
        expected_state: SubscriptionState,
        expected_version: int,
        invoice: Optional[Invoice] = None,
        expected_invoice_status: Optional[InvoiceStatus] = None,
    ) -> Subscription: ...

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]: ...

    def save_invoice(self, invoice: Invoice) -> Invoice: ...

    def update_invoice_status(self, invoice: Invoice, expected_status: InvoiceStatus) -> Invoice: ...

    def list_invoices(self, subscription_id: str) -> List[Invoice]: ...

    def find_invoice_by_external_id(self, gateway_id: str, external_id: str) -> Optional[Invoice]: ...

    def next_invoice_number(self) -> int: ...


# =============================================================================
# SQLALCHEMY IMPLEMENTATION
# =============================================================================


class SqlStorage:
    """SQLAlchemy-backed Storage."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self._session_factory()

    # -- members -------------------------------------------------------------

    def get_member(self, member_id: str) -> Optional[Member]:
        with self.session() as session:
            row = session.get(MemberRow, member_id)
            return _member_from_row(row) if row else None

    def save_member(self, member: Member) -> Member:
        profiles = {key: dict(value) for key, value in member.gateway_profiles.items()}
        with self._session_factory.begin() as session:
            row = session.get(MemberRow, member.id)
            if row is None:
                session.add(MemberRow(id=member.id, gateway_profiles=profiles))
            else:
                row.gateway_profiles = profiles
        return member

    # -- memberships ---------------------------------------------------------

    def get_membership(self, membership_id: str) -> Optional[Membership]:
        with self.session() as session:
            row = session.get(MembershipRow, membership_id)
            return _membership_from_row(row) if row else None

    def save_membership(self, membership: Membership) -> Membership:
        values = _membership_values(membership)
        with self._session_factory.begin() as session:
            if membership.is_base:
                other = session.execute(
                    select(MembershipRow.id).where(
                        MembershipRow.special == SpecialKind.BASE.value,
                        MembershipRow.id != membership.id,
                    )
                ).first()
                if other is not None:
                    raise ValidationError(
                        "Only one base membership may exist",
                        details={"existing": other[0], "membership_id": membership.id},
                    )
            row = session.get(MembershipRow, membership.id)
            if row is None:
                session.add(MembershipRow(id=membership.id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
        return membership

    def delete_membership(self, membership_id: str) -> None:
        with self._session_factory.begin() as session:
            row = session.get(MembershipRow, membership_id)
            if row is None:
                raise NotFoundError("Membership", membership_id)
            if row.special:
                raise ValidationError(
                    "Special memberships cannot be deleted",
                    details={"membership_id": membership_id, "special": row.special},
                )
            session.delete(row)

    def list_memberships(self, active_only: bool = False) -> List[Membership]:
        stmt = select(MembershipRow).order_by(MembershipRow.id)
        if active_only:
            stmt = stmt.where(MembershipRow.active.is_(True))
        with self.session() as session:
            return [_membership_from_row(row) for row in session.execute(stmt).scalars()]

    def get_base_membership(self) -> Membership:
        with self.session() as session:
            rows = session.execute(
                select(MembershipRow).where(MembershipRow.special == SpecialKind.BASE.value)
            ).scalars().all()
        if not rows:
            raise NotFoundError("Base membership")
        if len(rows) > 1:
            raise ValidationError(
                "More than one base membership is stored",
                details={"membership_ids": sorted(row.id for row in rows)},
            )
        return _membership_from_row(rows[0])

    # -- subscriptions -------------------------------------------------------

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self.session() as session:
            row = session.get(SubscriptionRow, subscription_id)
            return _subscription_from_row(row) if row else None

    def add_subscription(self, subscription: Subscription) -> Subscription:
        """Insert a new subscription; at most one open one per (member, membership)."""
        with self._session_factory.begin() as session:
            if not subscription.deleted and not subscription.is_terminal:
                open_row = session.execute(
                    select(SubscriptionRow.id).where(
                        SubscriptionRow.member_id == subscription.member_id,
                        SubscriptionRow.membership_id == subscription.membership_id,
                        SubscriptionRow.deleted.is_(False),
                        SubscriptionRow.state.notin_([state.value for state in TERMINAL_STATES]),
                    )
                ).first()
                if open_row is not None:
                    raise ConcurrencyConflict("subscription", open_row[0], expected="no open subscription")
            session.add(SubscriptionRow(
                id=subscription.id,
                version=subscription.version,
                **_subscription_values(subscription),
            ))
        return subscription

    def list_subscriptions(self, member_id: str, include_deleted: bool = False) -> List[Subscription]:
        stmt = (
            select(SubscriptionRow)
            .where(SubscriptionRow.member_id == member_id)
            .order_by(SubscriptionRow.start_date, SubscriptionRow.id)
        )
        if not include_deleted:
            stmt = stmt.where(SubscriptionRow.deleted.is_(False))
        with self.session() as session:
            return [_subscription_from_row(row) for row in session.execute(stmt).scalars()]

    def list_due_subscriptions(self, now: datetime) -> List[Subscription]:
        """Subscriptions the renewal scan has to act on at ``now``."""
        cutoff = _to_db(now)
        stmt = (
            select(SubscriptionRow)
            .where(
                SubscriptionRow.deleted.is_(False),
                SubscriptionRow.state.in_([
                    SubscriptionState.TRIAL.value,
                    SubscriptionState.ACTIVE.value,
                    SubscriptionState.PENDING.value,
                ]),
                or_(
                    SubscriptionRow.expire_date <= cutoff,
                    SubscriptionRow.trial_end <= cutoff,
                    SubscriptionRow.grace_until <= cutoff,
                ),
            )
            .order_by(SubscriptionRow.expire_date, SubscriptionRow.id)
        )
        with self.session() as session:
            rows = session.execute(stmt).scalars().all()
        due = [_subscription_from_row(row) for row in rows]
        return [sub for sub in due if sub.due_action(now) is not DueAction.NONE]

    def commit_transition(
        self,
        subscription: Subscription,
        expected_state: SubscriptionState,
        expected_version: int,
        invoice: Optional[Invoice] = None,
        expected_invoice_status: Optional[InvoiceStatus] = None,
    ) -> Subscription:
        """
        Persist a subscription change (and its invoice) atomically.

        The subscription row is only written if it is still in
        ``expected_state`` at ``expected_version``; when
        ``expected_invoice_status`` is given the invoice row must still carry
        that status. Any mismatch rolls the whole transaction back.

        Returns:
            The stored subscription with its new version

        Raises:
            ConcurrencyConflict: if another writer got there first
        """
        expected_state = SubscriptionState(expected_state)
        new_version = expected_version + 1
        with self._session_factory.begin() as session:
            result = session.execute(
                update(SubscriptionRow)
                .where(
                    SubscriptionRow.id == subscription.id,
                    SubscriptionRow.state == expected_state.value,
                    SubscriptionRow.version == expected_version,
                )
                .values(version=new_version, **_subscription_values(subscription))
            )
            if result.rowcount != 1:
                logger.warning("Subscription transition lost a race", extra={
                    "subscription_id": subscription.id,
                    "expected_state": expected_state.value,
                    "expected_version": expected_version,
                })
                raise ConcurrencyConflict(
                    "subscription", subscription.id, expected=f"{expected_state.value}@{expected_version}"
                )
            if invoice is not None:
                self._write_invoice(session, invoice, expected_invoice_status)

        return replace(subscription, version=new_version)

    # -- invoices ------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        with self.session() as session:
            row = session.get(InvoiceRow, invoice_id)
            return _invoice_from_row(row) if row else None

    def save_invoice(self, invoice: Invoice) -> Invoice:
        with self._session_factory.begin() as session:
            self._write_invoice(session, invoice, None)
        return invoice

    def update_invoice_status(self, invoice: Invoice, expected_status: InvoiceStatus) -> Invoice:
        """Write ``invoice`` only if the stored row still has ``expected_status``."""
        with self._session_factory.begin() as session:
            self._write_invoice(session, invoice, expected_status)
        return invoice

    def _write_invoice(
        self, session: Session, invoice: Invoice, expected_status: Optional[InvoiceStatus]
    ) -> None:
        values = _invoice_values(invoice)
        row = session.get(InvoiceRow, invoice.id)
        if row is None:
            if expected_status is not None:
                raise NotFoundError("Invoice", invoice.id)
            session.add(InvoiceRow(id=invoice.id, **values))
        else:
            ensure_replaceable(_invoice_from_row(row), invoice)
            if expected_status is not None:
                result = session.execute(
                    update(InvoiceRow)
                    .where(InvoiceRow.id == invoice.id, InvoiceRow.status == InvoiceStatus(expected_status).value)
                    .values(**values)
                )
                if result.rowcount != 1:
                    raise ConcurrencyConflict("invoice", invoice.id, expected=InvoiceStatus(expected_status).value)
            else:
                for key, value in values.items():
                    setattr(row, key, value)
        try:
            session.flush()
        except IntegrityError as exc:
            raise ValidationError(
                "Invoice conflicts with an existing invoice",
                details={"invoice_id": invoice.id, "external_id": invoice.external_id},
            ) from exc

    def list_invoices(self, subscription_id: str) -> List[Invoice]:
        stmt = (
            select(InvoiceRow)
            .where(InvoiceRow.subscription_id == subscription_id)
            .order_by(InvoiceRow.invoice_number)
        )
        with self.session() as session:
            return [_invoice_from_row(row) for row in session.execute(stmt).scalars()]

    def find_invoice_by_external_id(self, gateway_id: str, external_id: str) -> Optional[Invoice]:
        with self.session() as session:
            row = session.execute(
                select(InvoiceRow).where(
                    InvoiceRow.gateway_id == gateway_id,
                    InvoiceRow.external_id == external_id,
                )
            ).scalars().first()
            return _invoice_from_row(row) if row else None

    def next_invoice_number(self) -> int:
        """Monotonic per install; numbers are never reused, even if the invoice is not saved."""
        with self._session_factory.begin() as session:
            result = session.execute(
                update(CounterRow)
                .where(CounterRow.name == INVOICE_NUMBER_COUNTER)
                .values(value=CounterRow.value + 1)
            )
            if result.rowcount == 0:
                session.add(CounterRow(name=INVOICE_NUMBER_COUNTER, value=1))
                return 1
            return session.execute(
                select(CounterRow.value).where(CounterRow.name == INVOICE_NUMBER_COUNTER)
            ).scalar_one()


def create_storage(database_url: str, create_schema: bool = True) -> SqlStorage:
    """Build SqlStorage for ``database_url``; in-memory SQLite shares one connection."""
    kwargs: dict = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, **kwargs)
    storage = SqlStorage(engine)
    if create_schema:
        storage.create_schema()
    return storage
