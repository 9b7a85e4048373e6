"""
Lifecycle controller: drives subscriptions and invoices.

Every state change is committed through Storage.commit_transition, which
compares the subscription's (state, version) with what this controller read.
A concurrent writer (a webhook racing a purchase, two purchase attempts)
therefore makes exactly one transition stick; the other caller receives
ConcurrencyConflict and must re-fetch.

Precondition failures (unknown plan, unconfigured gateway, lost race) are
raised. Gateway outcomes (decline, timeout) are returned in PurchaseResult so
the caller decides whether to retry. Nothing here retries on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from .errors import (
    AppError,
    ConcurrencyConflict,
    ConfigurationError,
    GatewayDeclined,
    GatewayTransient,
    InvoiceLockedError,
    NotFoundError,
    ValidationError,
)
from .events import EventDispatcher, EventName
from .gateways import ChargeResult, Gateway, GatewayRegistry, PaymentDetails
from .invoice import (
    ZERO,
    DiscountCalculator,
    Invoice,
    InvoiceStatus,
    TaxPolicy,
    build_invoice,
    mark_failed,
    mark_paid,
    mark_refunded,
    prorate_credit,
)
from .models import Member, Membership, PricingMode
from .storage import Storage
from .subscription import (
    DueAction,
    Subscription,
    SubscriptionState,
    activate,
    cancel,
    enter_grace,
    expire,
    is_trial_eligible,
    new_subscription,
    start_trial,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD_DAYS = 3
ADMIN_GATEWAY_ID = "admin"


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome of one purchase or renewal attempt."""

    invoice: Invoice
    subscription: Subscription
    error: Optional[AppError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def awaiting_confirmation(self) -> bool:
        return self.error is None and self.invoice.is_open

    def raise_for_error(self) -> PurchaseResult:
        if self.error is not None:
            raise self.error
        return self


class LifecycleController:
    """Subscription and invoice operations over a Storage and a GatewayRegistry."""

    def __init__(
        self,
        storage: Storage,
        gateways: GatewayRegistry,
        *,
        events: Optional[EventDispatcher] = None,
        discounts: Optional[DiscountCalculator] = None,
        taxes: Optional[TaxPolicy] = None,
        grace_period_days: int = DEFAULT_GRACE_PERIOD_DAYS,
    ):
        if grace_period_days < 0:
            raise ValueError("grace_period_days must not be negative")
        self.storage = storage
        self.gateways = gateways
        self.events = events or EventDispatcher()
        self.discounts = discounts
        self.taxes = taxes
        self.grace_period_days = grace_period_days

    # =========================================================================
    # Lookups
    # =========================================================================

    def _require_subscription(self, subscription_id: str) -> Subscription:
        subscription = self.storage.get_subscription(subscription_id)
        if subscription is None or subscription.deleted:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def _require_membership(self, membership_id: str) -> Membership:
        membership = self.storage.get_membership(membership_id)
        if membership is None:
            raise NotFoundError("Membership", membership_id)
        return membership

    def _ensure_member(self, member_id: str) -> Member:
        member_id = str(member_id or "").strip()
        if not member_id:
            raise ValidationError("member_id is required")
        member = self.storage.get_member(member_id)
        if member is None:
            member = self.storage.save_member(Member(id=member_id))
            logger.info("Member created", extra={"member_id": member_id})
        return member

    def _open_subscription(self, member_id: str, membership_id: str) -> Optional[Subscription]:
        for subscription in self.storage.list_subscriptions(member_id):
            if subscription.membership_id == membership_id and not subscription.is_terminal:
                return subscription
        return None

    def _open_invoice(self, subscription_id: str) -> Optional[Invoice]:
        for invoice in reversed(self.storage.list_invoices(subscription_id)):
            if invoice.is_open:
                return invoice
        return None

    def _last_paid_invoice(self, subscription_id: str) -> Optional[Invoice]:
        for invoice in reversed(self.storage.list_invoices(subscription_id)):
            if invoice.is_paid:
                return invoice
        return None

    # =========================================================================
    # Commit helpers
    # =========================================================================

    def _commit(
        self,
        before: Subscription,
        after: Subscription,
        invoice: Optional[Invoice] = None,
        expected_invoice_status: Optional[InvoiceStatus] = None,
    ) -> Subscription:
        stored = self.storage.commit_transition(
            after,
            expected_state=before.state,
            expected_version=before.version,
            invoice=invoice,
            expected_invoice_status=expected_invoice_status,
        )
        logger.info("Subscription transition committed", extra={
            "subscription_id": stored.id,
            "member_id": stored.member_id,
            "membership_id": stored.membership_id,
            "from_state": before.state.value,
            "to_state": stored.state.value,
            "version": stored.version,
        })
        self.events.emit(
            EventName.SUBSCRIPTION_STATE_CHANGED,
            subscription_id=stored.id,
            member_id=stored.member_id,
            membership_id=stored.membership_id,
            old=before.state.value,
            new=stored.state.value,
        )
        if invoice is not None and invoice.status is not InvoiceStatus.PENDING:
            self._emit_settled(invoice)
        return stored

    def _emit_settled(self, invoice: Invoice) -> None:
        self.events.emit(
            EventName.INVOICE_SETTLED,
            invoice_id=invoice.id,
            subscription_id=invoice.subscription_id,
            status=invoice.status.value,
        )

    def _settled_subscription(
        self, subscription: Subscription, membership: Membership, invoice: Invoice, now: datetime
    ) -> Subscription:
        """State the subscription moves to once ``invoice`` is paid."""
        if invoice.trial and subscription.state is SubscriptionState.PENDING and not subscription.in_grace:
            settled = start_trial(subscription, membership, now)
        else:
            settled = activate(subscription, membership, now)
        if invoice.gateway_id and invoice.gateway_id != settled.gateway_id:
            settled = replace(settled, gateway_id=invoice.gateway_id)
        return settled

    def _save_profile(self, member_id: str, gateway_id: str, result: ChargeResult) -> None:
        if not result.profile:
            return
        member = self._ensure_member(member_id)
        self.storage.save_member(member.with_gateway_profile(gateway_id, result.profile))
        logger.info("Gateway profile stored", extra={"member_id": member_id, "gateway_id": gateway_id})

    # =========================================================================
    # Subscribe / grant
    # =========================================================================

    def subscribe(
        self,
        member_id: str,
        membership_id: str,
        gateway_id: Optional[str] = None,
        *,
        replaces: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create a subscription for ``member_id`` to ``membership_id``.

        - an open subscription to the same plan is returned as-is (a repeat
          purchase extends it through attempt_purchase)
        - a trial-eligible plan with a free trial starts the trial now; a
          paid trial stays pending until its trial invoice is paid
        - ``replaces`` switches plans: the old subscription is cancelled
          immediately and its unused paid time is credited on the first
          invoice of the new one
        """
        now = now or datetime.now(timezone.utc)
        membership = self._require_membership(membership_id)
        if not membership.is_purchasable:
            raise ValidationError(
                f"Membership '{membership_id}' cannot be purchased",
                details={"membership_id": membership_id},
            )
        if gateway_id and not membership.is_free:
            self.gateways.get(gateway_id)

        self._ensure_member(member_id)
        existing = self._open_subscription(member_id, membership.id)
        if existing is not None:
            logger.info("Subscription already open", extra={
                "subscription_id": existing.id,
                "member_id": member_id,
                "membership_id": membership.id,
            })
            return existing

        replaced: Optional[Subscription] = None
        if replaces:
            replaced = self._require_subscription(replaces)
            if replaced.member_id != member_id:
                raise ValidationError(
                    "Replaced subscription belongs to another member",
                    details={"subscription_id": replaces},
                )
            if replaced.is_terminal:
                raise ValidationError(
                    "Replaced subscription is no longer open",
                    details={"subscription_id": replaces, "state": replaced.state.value},
                )

        history = self.storage.list_subscriptions(member_id, include_deleted=True)
        subscription = self.storage.add_subscription(
            new_subscription(member_id, membership, gateway_id=gateway_id, now=now)
        )
        logger.info("Subscription created", extra={
            "subscription_id": subscription.id,
            "member_id": member_id,
            "membership_id": membership.id,
            "gateway_id": gateway_id,
        })

        if replaced is not None:
            credit = prorate_credit(self._last_paid_invoice(replaced.id), replaced, now)
            self._commit(replaced, cancel(replaced, f"Replaced by {membership.id}", now, immediate=True))
            self._create_invoice(subscription, membership, gateway_id=gateway_id, pro_rate=credit, now=now)
            return subscription

        if is_trial_eligible(membership, history) and membership.trial.price == 0:
            subscription = self._commit(subscription, start_trial(subscription, membership, now))
        return subscription

    def grant(self, member_id: str, membership_id: str, *, now: Optional[datetime] = None) -> Subscription:
        """Admin grant: activate without an invoice or a gateway."""
        now = now or datetime.now(timezone.utc)
        membership = self._require_membership(membership_id)
        if membership.is_special:
            raise ValidationError(
                f"Membership '{membership_id}' is a system membership",
                details={"membership_id": membership_id},
            )
        self._ensure_member(member_id)

        subscription = self._open_subscription(member_id, membership.id)
        if subscription is None:
            subscription = self.storage.add_subscription(
                new_subscription(member_id, membership, gateway_id=ADMIN_GATEWAY_ID, now=now)
            )
        elif subscription.state in (SubscriptionState.ACTIVE, SubscriptionState.TRIAL):
            return subscription

        granted = replace(activate(subscription, membership, now), gateway_id=ADMIN_GATEWAY_ID)
        logger.info("Membership granted", extra={
            "subscription_id": subscription.id,
            "member_id": member_id,
            "membership_id": membership.id,
        })
        return self._commit(subscription, granted)

    # =========================================================================
    # Invoices
    # =========================================================================

    def create_invoice(
        self,
        subscription_id: str,
        *,
        gateway_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """Return the subscription's open invoice, creating one if none is pending."""
        now = now or datetime.now(timezone.utc)
        subscription = self._require_subscription(subscription_id)
        if subscription.is_terminal:
            raise ValidationError(
                "Cannot invoice a closed subscription",
                details={"subscription_id": subscription.id, "state": subscription.state.value},
            )
        existing = self._open_invoice(subscription.id)
        if existing is not None:
            return existing
        membership = self._require_membership(subscription.membership_id)
        return self._create_invoice(subscription, membership, gateway_id=gateway_id, now=now)

    def _is_trial_purchase(self, subscription: Subscription, membership: Membership) -> bool:
        if subscription.state is not SubscriptionState.PENDING or subscription.in_grace:
            return False
        if membership.trial.price == 0:
            return False
        history = [
            sub for sub in self.storage.list_subscriptions(subscription.member_id, include_deleted=True)
            if sub.id != subscription.id
        ]
        return is_trial_eligible(membership, history)

    def _due_date(self, subscription: Subscription, now: datetime) -> datetime:
        if subscription.state is SubscriptionState.TRIAL and subscription.trial_end is not None:
            return subscription.trial_end
        if subscription.state is SubscriptionState.ACTIVE or subscription.in_grace:
            return subscription.expire_date or now
        return now

    def _create_invoice(
        self,
        subscription: Subscription,
        membership: Membership,
        *,
        gateway_id: Optional[str] = None,
        pro_rate: Decimal = ZERO,
        now: datetime,
    ) -> Invoice:
        invoice = self._build_invoice(
            subscription, membership, gateway_id=gateway_id, pro_rate=pro_rate, now=now
        )
        return self._save_new_invoice(invoice)

    def _build_invoice(
        self,
        subscription: Subscription,
        membership: Membership,
        *,
        gateway_id: Optional[str] = None,
        pro_rate: Decimal = ZERO,
        now: datetime,
    ) -> Invoice:
        """Price the next invoice without persisting it."""
        return build_invoice(
            subscription,
            membership,
            invoice_number=self.storage.next_invoice_number(),
            due_date=self._due_date(subscription, now),
            gateway_id=gateway_id or subscription.gateway_id,
            trial=self._is_trial_purchase(subscription, membership),
            pro_rate=pro_rate,
            discounts=self.discounts,
            taxes=self.taxes,
            now=now,
        )

    def _save_new_invoice(self, invoice: Invoice) -> Invoice:
        self.storage.save_invoice(invoice)
        logger.info("Invoice created", extra={
            "invoice_id": invoice.id,
            "invoice_number": invoice.invoice_number,
            "subscription_id": invoice.subscription_id,
            "total": str(invoice.total),
            "currency": invoice.currency,
            "trial": invoice.trial,
        })
        return invoice

    # =========================================================================
    # Purchase
    # =========================================================================

    def attempt_purchase(
        self,
        subscription_id: str,
        gateway_id: Optional[str] = None,
        payment_details: Optional[PaymentDetails] = None,
        *,
        now: Optional[datetime] = None,
    ) -> PurchaseResult:
        """
        Settle the subscription's open invoice.

        Zero totals are paid without contacting any gateway. Otherwise the
        gateway is charged once:
        - success: invoice paid, subscription moved to trial or active
        - hard decline: invoice failed, subscription unchanged
        - timeout/network: invoice stays pending, error is retryable
        - asynchronous gateway: invoice stays pending with its transaction id

        An open invoice that already carries a transaction id is returned as
        awaiting confirmation; the gateway is not charged a second time.

        Raises:
            NotFoundError: unknown subscription or membership
            ValidationError: closed subscription or missing/unknown gateway,
                raised before a new invoice is written
            ConfigurationError: gateway not configured
            ConcurrencyConflict: another writer transitioned the subscription first
        """
        now = now or datetime.now(timezone.utc)
        subscription = self._require_subscription(subscription_id)
        if subscription.is_terminal:
            raise ValidationError(
                "Subscription is closed; subscribe again to purchase",
                details={"subscription_id": subscription.id, "state": subscription.state.value},
            )
        membership = self._require_membership(subscription.membership_id)

        invoice = self._open_invoice(subscription.id)
        if invoice is not None and invoice.external_id:
            # a charge for this invoice is already waiting on the gateway
            logger.info("Purchase already awaiting gateway confirmation", extra={
                "invoice_id": invoice.id,
                "gateway_id": invoice.gateway_id,
                "external_id": invoice.external_id,
            })
            return PurchaseResult(invoice=invoice, subscription=subscription)

        is_new = invoice is None
        if is_new:
            invoice = self._build_invoice(subscription, membership, gateway_id=gateway_id, now=now)

        if invoice.total == 0:
            if is_new:
                self._save_new_invoice(invoice)
            return self._settle_free(subscription, membership, invoice, now)

        gateway_id = gateway_id or invoice.gateway_id or subscription.gateway_id
        if not gateway_id:
            raise ValidationError(
                "gateway_id is required for a paid invoice",
                details={"subscription_id": subscription.id, "total": str(invoice.total)},
            )
        gateway = self.gateways.get(gateway_id)
        if is_new:
            invoice = self._save_new_invoice(replace(invoice, gateway_id=gateway.gateway_id))
        elif invoice.gateway_id != gateway.gateway_id:
            invoice = replace(invoice, gateway_id=gateway.gateway_id)
            self.storage.update_invoice_status(invoice, InvoiceStatus.PENDING)

        details = payment_details or PaymentDetails()
        result = self._charge(gateway, invoice, details)
        return self._apply_charge(subscription, membership, invoice, gateway, result, details, now)

    def _settle_free(
        self, subscription: Subscription, membership: Membership, invoice: Invoice, now: datetime
    ) -> PurchaseResult:
        paid = mark_paid(invoice, external_id=None, now=now)
        stored = self._commit(
            subscription,
            self._settled_subscription(subscription, membership, paid, now),
            invoice=paid,
            expected_invoice_status=invoice.status,
        )
        logger.info("Zero-total invoice settled without gateway", extra={
            "invoice_id": paid.id,
            "subscription_id": stored.id,
        })
        return PurchaseResult(invoice=paid, subscription=stored)

    def _charge(self, gateway: Gateway, invoice: Invoice, details: PaymentDetails) -> ChargeResult:
        try:
            return gateway.charge(invoice, details)
        except TimeoutError:
            logger.warning("Gateway charge timed out", extra={
                "gateway_id": gateway.gateway_id,
                "invoice_id": invoice.id,
            })
            return ChargeResult.transient("Payment gateway timed out")

    def _apply_charge(
        self,
        subscription: Subscription,
        membership: Membership,
        invoice: Invoice,
        gateway: Gateway,
        result: ChargeResult,
        details: PaymentDetails,
        now: datetime,
    ) -> PurchaseResult:
        if result.success:
            paid = mark_paid(invoice, external_id=result.transaction_id, now=now, gateway_id=gateway.gateway_id)
            try:
                stored = self._commit(
                    subscription,
                    self._settled_subscription(subscription, membership, paid, now),
                    invoice=paid,
                    expected_invoice_status=invoice.status,
                )
            except ConcurrencyConflict:
                self._record_unapplied_charge(invoice, gateway, result)
                raise
            if details.save_profile:
                self._save_profile(subscription.member_id, gateway.gateway_id, result)
            return PurchaseResult(invoice=paid, subscription=stored)

        if result.awaiting_confirmation:
            pending = replace(invoice, external_id=result.transaction_id)
            self.storage.update_invoice_status(pending, InvoiceStatus.PENDING)
            logger.info("Payment awaiting gateway confirmation", extra={
                "invoice_id": invoice.id,
                "gateway_id": gateway.gateway_id,
                "external_id": result.transaction_id,
            })
            return PurchaseResult(invoice=pending, subscription=subscription)

        reason = result.decline_reason or "Payment failed"
        if result.retryable:
            logger.warning("Payment attempt failed, retryable", extra={
                "invoice_id": invoice.id,
                "gateway_id": gateway.gateway_id,
                "reason": reason,
            })
            return PurchaseResult(
                invoice=invoice,
                subscription=subscription,
                error=GatewayTransient(gateway.gateway_id, reason, invoice_id=invoice.id),
            )

        failed = mark_failed(invoice, reason)
        if result.transaction_id and not failed.external_id:
            failed = replace(failed, external_id=result.transaction_id)
        self.storage.update_invoice_status(failed, InvoiceStatus.PENDING)
        self._emit_settled(failed)
        logger.warning("Payment declined", extra={
            "invoice_id": invoice.id,
            "gateway_id": gateway.gateway_id,
            "reason": reason,
        })
        return PurchaseResult(
            invoice=failed,
            subscription=subscription,
            error=GatewayDeclined(gateway.gateway_id, reason, invoice_id=invoice.id),
        )

    def _record_unapplied_charge(self, invoice: Invoice, gateway: Gateway, result: ChargeResult) -> None:
        """
        Keep a captured transaction traceable after losing the commit race.

        The transaction id is stored on the still-open invoice so a later
        gateway confirmation can settle it, or staff can refund it.
        """
        log_context = {
            "invoice_id": invoice.id,
            "subscription_id": invoice.subscription_id,
            "gateway_id": gateway.gateway_id,
            "external_id": result.transaction_id,
        }
        noted = invoice.with_note(
            f"Captured transaction {result.transaction_id} was not applied: subscription changed concurrently"
        )
        if result.transaction_id and not invoice.external_id:
            noted = replace(noted, external_id=result.transaction_id, gateway_id=gateway.gateway_id)
        try:
            self.storage.update_invoice_status(noted, invoice.status)
        except (ConcurrencyConflict, InvoiceLockedError):
            # the invoice was settled by someone else; only the log remains
            logger.error("Captured charge could not be recorded on invoice", extra=log_context)
            return
        logger.error("Captured charge not applied to subscription", extra=log_context)

    # =========================================================================
    # Asynchronous confirmation
    # =========================================================================

    def handle_async_confirmation(
        self,
        gateway_id: str,
        external_id: str,
        status: InvoiceStatus,
        *,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Apply an out-of-band settlement report.

        Idempotent: an invoice already in ``status`` is returned untouched,
        so a redelivered webhook never extends a subscription twice.
        """
        now = now or datetime.now(timezone.utc)
        status = InvoiceStatus(status)
        invoice = self.storage.find_invoice_by_external_id(gateway_id, external_id)
        if invoice is None:
            raise NotFoundError("Invoice", f"{gateway_id}:{external_id}")

        log_context = {
            "invoice_id": invoice.id,
            "gateway_id": gateway_id,
            "external_id": external_id,
            "current_status": invoice.status.value,
            "reported_status": status.value,
        }
        if invoice.status is status:
            logger.info("Confirmation already applied", extra=log_context)
            return invoice

        if status is InvoiceStatus.REFUNDED:
            return self._refund(invoice, "Refunded by gateway")

        if status is InvoiceStatus.FAILED:
            if not invoice.is_open:
                logger.warning("Ignoring failure report for settled invoice", extra=log_context)
                return invoice
            failed = mark_failed(invoice, "Reported by gateway")
            self.storage.update_invoice_status(failed, InvoiceStatus.PENDING)
            self._emit_settled(failed)
            logger.info("Confirmation applied", extra=log_context)
            return failed

        paid = mark_paid(invoice, external_id=external_id, now=now)
        subscription = self.storage.get_subscription(invoice.subscription_id)
        if subscription is None:
            raise NotFoundError("Subscription", invoice.subscription_id)

        if subscription.is_terminal or subscription.deleted:
            self.storage.update_invoice_status(paid, invoice.status)
            self._emit_settled(paid)
            logger.warning("Payment confirmed for closed subscription", extra={
                **log_context,
                "subscription_id": subscription.id,
                "state": subscription.state.value,
            })
            return paid

        membership = self._require_membership(subscription.membership_id)
        self._commit(
            subscription,
            self._settled_subscription(subscription, membership, paid, now),
            invoice=paid,
            expected_invoice_status=invoice.status,
        )
        logger.info("Confirmation applied", extra=log_context)
        return paid

    # =========================================================================
    # Renewal scan
    # =========================================================================

    def process_due(self, subscription_id: str, *, now: Optional[datetime] = None) -> Subscription:
        """
        Advance one subscription whose period boundary has passed.

        Called per subscription by the external renewal trigger.
        """
        now = now or datetime.now(timezone.utc)
        subscription = self._require_subscription(subscription_id)
        action = subscription.due_action(now)
        if action is DueAction.NONE:
            return subscription

        membership = self._require_membership(subscription.membership_id)
        log_context = {
            "subscription_id": subscription.id,
            "membership_id": membership.id,
            "action": action.value,
        }
        logger.info("Processing due subscription", extra=log_context)

        if action is DueAction.EXPIRE:
            return self._commit(subscription, expire(subscription, now))

        if action is DueAction.RENEW and membership.pricing_mode in (PricingMode.FINITE, PricingMode.DATE_RANGE):
            return self._commit(subscription, expire(subscription, now))

        if membership.pricing_mode is PricingMode.FREE:
            return self._commit(subscription, activate(subscription, membership, now))

        return self._bill_renewal(subscription, membership, now).subscription

    def _bill_renewal(self, subscription: Subscription, membership: Membership, now: datetime) -> PurchaseResult:
        invoice = self._open_invoice(subscription.id)
        if invoice is None:
            invoice = self._create_invoice(subscription, membership, now=now)

        if invoice.total == 0:
            return self._settle_free(subscription, membership, invoice, now)

        gateway = None if invoice.external_id else self._recurring_gateway(subscription, invoice)
        if gateway is not None:
            profile = self._ensure_member(subscription.member_id).get_gateway_profile(gateway.gateway_id)
            details = PaymentDetails.from_profile(profile)
            result = self._charge(gateway, invoice, details)
            outcome = self._apply_charge(subscription, membership, invoice, gateway, result, details, now)
            if result.success:
                return outcome
            invoice = outcome.invoice

        # prompt: the member pays the renewal invoice during the grace window
        grace = enter_grace(subscription, self.grace_period_days, now)
        stored = self._commit(subscription, grace)
        logger.info("Renewal awaiting payment", extra={
            "subscription_id": stored.id,
            "invoice_id": invoice.id,
            "grace_until": stored.grace_until.isoformat() if stored.grace_until else None,
        })
        return PurchaseResult(invoice=invoice, subscription=stored)

    def _recurring_gateway(self, subscription: Subscription, invoice: Invoice) -> Optional[Gateway]:
        gateway_id = invoice.gateway_id or subscription.gateway_id
        if not gateway_id or gateway_id not in self.gateways:
            return None
        try:
            gateway = self.gateways.get(gateway_id)
        except ConfigurationError:
            logger.warning("Renewal gateway not configured, prompting member", extra={
                "subscription_id": subscription.id,
                "gateway_id": gateway_id,
            })
            return None
        if not gateway.supports_recurring():
            return None
        member = self.storage.get_member(subscription.member_id)
        if member is None or not member.get_gateway_profile(gateway_id):
            return None
        return gateway

    def process_all_due(self, now: Optional[datetime] = None) -> List[Subscription]:
        now = now or datetime.now(timezone.utc)
        return [self.process_due(sub.id, now=now) for sub in self.storage.list_due_subscriptions(now)]

    # =========================================================================
    # Cancellation, removal, refunds
    # =========================================================================

    def cancel(
        self,
        subscription_id: str,
        reason: Optional[str] = None,
        *,
        immediate: bool = False,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Cancel; access continues until the paid-through date unless ``immediate``."""
        now = now or datetime.now(timezone.utc)
        subscription = self._require_subscription(subscription_id)
        return self._commit(subscription, cancel(subscription, reason, now, immediate=immediate))

    def remove(self, subscription_id: str, *, now: Optional[datetime] = None) -> Subscription:
        """Soft-delete a subscription, cancelling it first if it is still open."""
        now = now or datetime.now(timezone.utc)
        subscription = self._require_subscription(subscription_id)
        if not subscription.is_terminal:
            subscription = self._commit(
                subscription, cancel(subscription, "Removed", now, immediate=True)
            )
        return self._commit(subscription, replace(subscription, deleted=True))

    def refund(self, invoice_id: str, note: Optional[str] = None) -> Invoice:
        """Mark a paid invoice refunded. Subscription state is left to the caller."""
        invoice = self.storage.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return self._refund(invoice, note)

    def _refund(self, invoice: Invoice, note: Optional[str]) -> Invoice:
        refunded = mark_refunded(invoice, note)
        self.storage.update_invoice_status(refunded, InvoiceStatus.PAID)
        self._emit_settled(refunded)
        logger.info("Invoice refunded", extra={
            "invoice_id": invoice.id,
            "subscription_id": invoice.subscription_id,
        })
        return refunded
