"""
Lifecycle controller tests.

Tests cover:
1. Subscribe, trials and admin grants
2. Purchase outcomes (paid, zero total, declined, retryable, asynchronous)
3. Asynchronous confirmations and their idempotency
4. Renewal scan: grace, expiry, recurring charges
5. Plan changes, cancellation, removal, refunds
6. Optimistic locking between racing writers
"""

from datetime import timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from memberships.access import REASON_NO_SUBSCRIPTION, AccessEvaluator
from memberships.errors import (
    ConcurrencyConflict,
    ConfigurationError,
    GatewayDeclined,
    GatewayTransient,
    InvoiceLockedError,
    NotFoundError,
    ValidationError,
)
from memberships.events import EventName
from memberships.gateways import ChargeResult
from memberships.invoice import Coupon, CouponDiscount, InvoiceStatus
from memberships.lifecycle import ADMIN_GATEWAY_ID, LifecycleController
from memberships.loader import membership_from_dict
from memberships.models import Member
from memberships.rules import RuleType
from memberships.subscription import SubscriptionState


# ============================================================================
# SUBSCRIBE
# ============================================================================

class TestSubscribe:

    def test_paid_plan_starts_pending(self, controller, storage, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        assert sub.state is SubscriptionState.PENDING
        assert storage.get_member("alice") is not None

    def test_free_trial_starts_immediately(self, controller, events, now):
        sub = controller.subscribe("alice", "bronze", "fake", now=now)

        assert sub.state is SubscriptionState.TRIAL
        assert sub.trial_end == now + timedelta(days=14)
        changed = events.named(EventName.SUBSCRIPTION_STATE_CHANGED)
        assert [(e.payload["old"], e.payload["new"]) for e in changed] == [("pending", "trial")]

    def test_second_trial_refused(self, controller, fake_gateway, now):
        first = controller.subscribe("alice", "bronze", "fake", now=now)
        controller.cancel(first.id, "not for me", immediate=True, now=now + timedelta(days=1))

        second = controller.subscribe("alice", "bronze", "fake", now=now + timedelta(days=2))
        assert second.state is SubscriptionState.PENDING

        result = controller.attempt_purchase(second.id, "fake", now=now + timedelta(days=2))
        assert result.invoice.trial is False
        assert result.invoice.total == Decimal("9.99")
        assert result.subscription.state is SubscriptionState.ACTIVE

    def test_open_subscription_returned_for_repeat_subscribe(self, controller, now):
        first = controller.subscribe("alice", "silver", "fake", now=now)

        assert controller.subscribe("alice", "silver", "fake", now=now).id == first.id

    def test_special_membership_not_purchasable(self, controller, now):
        with pytest.raises(ValidationError):
            controller.subscribe("alice", "protected-content", now=now)

    def test_unknown_membership(self, controller, now):
        with pytest.raises(NotFoundError):
            controller.subscribe("alice", "platinum", now=now)

    def test_unknown_gateway_rejected_before_anything_is_written(self, controller, storage, now):
        with pytest.raises(ValidationError):
            controller.subscribe("alice", "silver", "paypal", now=now)

        assert storage.list_subscriptions("alice") == []

    def test_unconfigured_gateway_rejected(self, controller, fake_gateway, now):
        fake_gateway.configured = False

        with pytest.raises(ConfigurationError):
            controller.subscribe("alice", "silver", "fake", now=now)

    def test_blank_member_rejected(self, controller, now):
        with pytest.raises(ValidationError):
            controller.subscribe("  ", "silver", now=now)


class TestGrant:

    def test_grant_activates_without_invoice(self, controller, storage, fake_gateway, now):
        sub = controller.grant("alice", "silver", now=now)

        assert sub.state is SubscriptionState.ACTIVE
        assert sub.gateway_id == ADMIN_GATEWAY_ID
        assert storage.list_invoices(sub.id) == []
        assert fake_gateway.calls == []

    def test_grant_activates_pending_subscription(self, controller, now):
        pending = controller.subscribe("alice", "silver", "fake", now=now)

        granted = controller.grant("alice", "silver", now=now)

        assert granted.id == pending.id
        assert granted.state is SubscriptionState.ACTIVE

    def test_grant_refuses_special_memberships(self, controller, now):
        with pytest.raises(ValidationError):
            controller.grant("alice", "guest", now=now)


# ============================================================================
# PURCHASE
# ============================================================================

class TestPurchase:

    def test_successful_purchase_activates(self, controller, storage, events, fake_gateway, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        result = controller.attempt_purchase(sub.id, "fake", now=now)

        assert result.ok
        assert result.invoice.status is InvoiceStatus.PAID
        assert result.subscription.state is SubscriptionState.ACTIVE
        assert result.subscription.expire_date == now + relativedelta(months=1)
        assert storage.get_invoice(result.invoice.id).external_id == "fake-1"
        assert len(fake_gateway.calls) == 1
        settled = events.named(EventName.INVOICE_SETTLED)
        assert [e.payload["status"] for e in settled] == ["paid"]

    def test_zero_total_settles_without_gateway(self, controller, fake_gateway, now):
        sub = controller.subscribe("alice", "community", now=now)

        result = controller.attempt_purchase(sub.id, now=now)

        assert result.invoice.is_paid
        assert result.invoice.total == Decimal("0.00")
        assert result.subscription.state is SubscriptionState.ACTIVE
        assert result.subscription.expire_date is None
        assert fake_gateway.calls == []

    def test_full_discount_settles_without_gateway(self, storage, gateways, fake_gateway, now):
        controller = LifecycleController(
            storage, gateways, discounts=CouponDiscount([Coupon(code="FREE", kind="percent", value="100")])
        )
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        result = controller.attempt_purchase(sub.id, "fake", now=now)

        assert result.invoice.is_paid
        assert result.invoice.coupon_code == "FREE"
        assert fake_gateway.calls == []

    def test_paid_trial(self, controller, now):
        sub = controller.subscribe("alice", "pro", "fake", now=now)
        assert sub.state is SubscriptionState.PENDING

        result = controller.attempt_purchase(sub.id, "fake", now=now)

        assert result.invoice.trial is True
        assert result.invoice.total == Decimal("1.00")
        assert result.subscription.state is SubscriptionState.TRIAL
        assert result.subscription.trial_end == now + timedelta(days=7)

    def test_decline_fails_invoice_and_keeps_state(self, controller, storage, events, fake_gateway, now):
        fake_gateway.results = [ChargeResult.declined("card_declined", transaction_id="ch_1")]
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        result = controller.attempt_purchase(sub.id, "fake", now=now)

        assert isinstance(result.error, GatewayDeclined)
        assert result.invoice.status is InvoiceStatus.FAILED
        assert storage.get_invoice(result.invoice.id).status is InvoiceStatus.FAILED
        stored = storage.get_subscription(sub.id)
        assert stored.state is SubscriptionState.PENDING
        assert stored.version == sub.version
        assert events.named(EventName.SUBSCRIPTION_STATE_CHANGED) == []
        with pytest.raises(GatewayDeclined):
            result.raise_for_error()

    def test_retry_after_decline_uses_new_invoice(self, controller, fake_gateway, now):
        fake_gateway.results = [ChargeResult.declined("card_declined")]
        sub = controller.subscribe("alice", "silver", "fake", now=now)
        declined = controller.attempt_purchase(sub.id, "fake", now=now)

        retried = controller.attempt_purchase(sub.id, "fake", now=now)

        assert retried.ok
        assert retried.invoice.id != declined.invoice.id
        assert retried.invoice.invoice_number > declined.invoice.invoice_number

    def test_transient_failure_leaves_invoice_pending(self, controller, storage, fake_gateway, now):
        fake_gateway.results = [ChargeResult.transient("gateway timeout")]
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        result = controller.attempt_purchase(sub.id, "fake", now=now)

        assert isinstance(result.error, GatewayTransient)
        assert result.error.retryable is True
        assert storage.get_invoice(result.invoice.id).status is InvoiceStatus.PENDING

        again = controller.attempt_purchase(sub.id, "fake", now=now)
        assert again.ok
        assert again.invoice.id == result.invoice.id

    def test_timeout_exception_is_retryable(self, controller, fake_gateway, now):
        fake_gateway.results = [TimeoutError("read timeout")]
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        result = controller.attempt_purchase(sub.id, "fake", now=now)

        assert isinstance(result.error, GatewayTransient)
        assert result.invoice.is_open

    def test_gateway_required_for_paid_invoice(self, controller, storage, now):
        sub = controller.subscribe("alice", "silver", now=now)

        with pytest.raises(ValidationError):
            controller.attempt_purchase(sub.id, now=now)

        assert storage.list_invoices(sub.id) == []

    def test_unknown_gateway_rejected_before_invoice_is_written(self, controller, storage, now):
        sub = controller.subscribe("alice", "silver", now=now)

        with pytest.raises(ValidationError):
            controller.attempt_purchase(sub.id, "bitcoin", now=now)

        assert storage.list_invoices(sub.id) == []

    def test_invoice_awaiting_confirmation_is_not_charged_again(self, controller, storage, fake_gateway, now):
        fake_gateway.results = [ChargeResult.pending("tx-1"), ChargeResult.approved("tx-2")]
        sub = controller.subscribe("alice", "silver", "fake", now=now)
        first = controller.attempt_purchase(sub.id, "fake", now=now)

        again = controller.attempt_purchase(sub.id, "fake", now=now)

        assert again.awaiting_confirmation is True
        assert again.invoice.id == first.invoice.id
        assert again.invoice.external_id == "tx-1"
        assert len(fake_gateway.calls) == 1

        controller.handle_async_confirmation("fake", "tx-1", InvoiceStatus.PAID, now=now)
        assert storage.get_invoice(first.invoice.id).is_paid
        assert storage.get_subscription(sub.id).state is SubscriptionState.ACTIVE

    def test_purchase_on_closed_subscription_rejected(self, controller, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)
        controller.cancel(sub.id, now=now)

        with pytest.raises(ValidationError):
            controller.attempt_purchase(sub.id, "fake", now=now)

    def test_profile_saved_after_success(self, controller, storage, fake_gateway, now):
        fake_gateway.results = [ChargeResult.approved("ch_9", profile={"customer_id": "cus_1"})]
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        controller.attempt_purchase(sub.id, "fake", now=now)

        assert dict(storage.get_member("alice").get_gateway_profile("fake")) == {"customer_id": "cus_1"}

    def test_create_invoice_reuses_open_invoice(self, controller, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        first = controller.create_invoice(sub.id, now=now)

        assert controller.create_invoice(sub.id, now=now).id == first.id
        assert first.gateway_id == "fake"


# ============================================================================
# ASYNCHRONOUS CONFIRMATION
# ============================================================================

class TestAsyncConfirmation:

    def _manual_purchase(self, controller, now, member_id="alice"):
        sub = controller.subscribe(member_id, "silver", "manual", now=now)
        return controller.attempt_purchase(sub.id, "manual", now=now)

    def test_manual_payment_awaits_confirmation(self, controller, now):
        result = self._manual_purchase(controller, now)

        assert result.ok
        assert result.awaiting_confirmation is True
        assert result.invoice.external_id == "MAN-000001"
        assert result.subscription.state is SubscriptionState.PENDING

    def test_confirmation_activates(self, controller, storage, now):
        result = self._manual_purchase(controller, now)

        invoice = controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.PAID, now=now)

        assert invoice.is_paid
        assert storage.get_subscription(result.subscription.id).state is SubscriptionState.ACTIVE

    def test_redelivered_confirmation_is_a_no_op(self, controller, storage, events, now):
        result = self._manual_purchase(controller, now)
        controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.PAID, now=now)
        after_first = storage.get_subscription(result.subscription.id)

        again = controller.handle_async_confirmation(
            "manual", "MAN-000001", InvoiceStatus.PAID, now=now + timedelta(hours=1)
        )

        assert again.is_paid
        after_second = storage.get_subscription(result.subscription.id)
        assert after_second.version == after_first.version
        assert after_second.expire_date == after_first.expire_date
        assert len(events.named(EventName.SUBSCRIPTION_STATE_CHANGED)) == 1

    def test_unknown_transaction(self, controller):
        with pytest.raises(NotFoundError):
            controller.handle_async_confirmation("manual", "MAN-999999", InvoiceStatus.PAID)

    def test_failure_report_fails_open_invoice(self, controller, storage, now):
        result = self._manual_purchase(controller, now)

        failed = controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.FAILED, now=now)

        assert failed.status is InvoiceStatus.FAILED
        assert storage.get_subscription(result.subscription.id).state is SubscriptionState.PENDING

    def test_late_failure_report_ignored_for_paid_invoice(self, controller, now):
        self._manual_purchase(controller, now)
        controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.PAID, now=now)

        invoice = controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.FAILED, now=now)

        assert invoice.is_paid

    def test_payment_for_cancelled_subscription_only_settles_invoice(self, controller, storage, now):
        result = self._manual_purchase(controller, now)
        controller.cancel(result.subscription.id, immediate=True, now=now)

        invoice = controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.PAID, now=now)

        assert invoice.is_paid
        assert storage.get_subscription(result.subscription.id).state is SubscriptionState.CANCELLED

    def test_gateway_refund_report(self, controller, storage, now):
        result = self._manual_purchase(controller, now)
        controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.PAID, now=now)

        refunded = controller.handle_async_confirmation("manual", "MAN-000001", InvoiceStatus.REFUNDED, now=now)

        assert refunded.status is InvoiceStatus.REFUNDED
        assert storage.get_subscription(result.subscription.id).state is SubscriptionState.ACTIVE


# ============================================================================
# RENEWAL SCAN
# ============================================================================

class TestRenewal:

    def test_unpaid_renewal_enters_grace_then_expires(self, controller, storage, memberships, paid_subscription, now):
        purchase = paid_subscription("alice", "silver")
        expire_date = purchase.subscription.expire_date
        evaluator = AccessEvaluator(memberships.values())

        in_grace = controller.process_due(purchase.subscription.id, now=expire_date + timedelta(minutes=1))

        assert in_grace.state is SubscriptionState.PENDING
        assert in_grace.grace_until == expire_date + timedelta(days=3)
        subs = storage.list_subscriptions("alice")
        member = Member(id="alice")
        assert evaluator.can_access(member, subs, "silver-notes", RuleType.POST, expire_date + timedelta(days=1)).allowed

        after_grace = expire_date + timedelta(days=3, minutes=1)
        expired = controller.process_due(purchase.subscription.id, now=after_grace)

        assert expired.state is SubscriptionState.EXPIRED
        decision = evaluator.can_access(
            member, storage.list_subscriptions("alice"), "silver-notes", RuleType.POST, after_grace
        )
        assert decision.allowed is False
        assert decision.reason == REASON_NO_SUBSCRIPTION

    def test_paying_during_grace_keeps_period_boundary(self, controller, paid_subscription, now):
        purchase = paid_subscription("alice", "silver")
        expire_date = purchase.subscription.expire_date
        controller.process_due(purchase.subscription.id, now=expire_date + timedelta(minutes=1))

        result = controller.attempt_purchase(purchase.subscription.id, "fake", now=expire_date + timedelta(days=2))

        assert result.subscription.state is SubscriptionState.ACTIVE
        assert result.subscription.expire_date == expire_date + relativedelta(months=1)
        assert result.subscription.grace_until is None

    def test_recurring_gateway_charges_stored_profile(self, controller, fake_gateway, paid_subscription, now):
        fake_gateway.recurring = True
        fake_gateway.results = [ChargeResult.approved("ch_1", profile={"customer_id": "cus_1", "payment_method": "pm_1"})]
        purchase = paid_subscription("alice", "silver")
        expire_date = purchase.subscription.expire_date

        renewed = controller.process_due(purchase.subscription.id, now=expire_date + timedelta(minutes=1))

        assert renewed.state is SubscriptionState.ACTIVE
        assert renewed.expire_date == expire_date + relativedelta(months=1)
        _, details = fake_gateway.calls[-1]
        assert details.token == "pm_1"
        assert details.customer_ref == "cus_1"
        assert details.save_profile is False

    def test_declined_renewal_falls_back_to_grace(self, controller, fake_gateway, paid_subscription, now):
        fake_gateway.recurring = True
        fake_gateway.results = [
            ChargeResult.approved("ch_1", profile={"customer_id": "cus_1"}),
            ChargeResult.declined("expired_card"),
        ]
        purchase = paid_subscription("alice", "silver")

        renewed = controller.process_due(
            purchase.subscription.id, now=purchase.subscription.expire_date + timedelta(minutes=1)
        )

        assert renewed.state is SubscriptionState.PENDING
        assert renewed.in_grace is True

    def test_free_trial_ending_without_payment_enters_grace(self, controller, now):
        trial = controller.subscribe("alice", "bronze", "fake", now=now)

        after_trial = controller.process_due(trial.id, now=trial.trial_end + timedelta(minutes=1))

        assert after_trial.state is SubscriptionState.PENDING
        assert after_trial.grace_until == trial.trial_end + timedelta(days=3)

    def test_finite_membership_expires_at_period_end(self, controller, paid_subscription, now):
        purchase = paid_subscription("alice", "course")

        expired = controller.process_due(
            purchase.subscription.id, now=purchase.subscription.expire_date + timedelta(seconds=1)
        )

        assert expired.state is SubscriptionState.EXPIRED

    def test_not_due_is_unchanged(self, controller, paid_subscription, now):
        purchase = paid_subscription("alice", "silver")

        same = controller.process_due(purchase.subscription.id, now=now + timedelta(days=1))

        assert same == purchase.subscription

    def test_process_all_due(self, controller, paid_subscription, now):
        paid_subscription("alice", "silver")
        paid_subscription("bob", "silver")

        processed = controller.process_all_due(now + timedelta(days=40))

        assert [sub.state for sub in processed] == [SubscriptionState.PENDING, SubscriptionState.PENDING]

    def test_zero_price_recurring_plan_invoices_each_period(self, controller, storage, fake_gateway, now):
        storage.save_membership(membership_from_dict("starter", {
            "name": "Starter",
            "pricing_mode": "recurring",
            "price": "0",
            "period": {"count": 1, "unit": "months"},
        }))
        sub = controller.subscribe("alice", "starter", now=now)
        first = controller.attempt_purchase(sub.id, now=now)
        assert first.subscription.expire_date == now + relativedelta(months=1)

        renewed = controller.process_due(sub.id, now=first.subscription.expire_date + timedelta(minutes=1))

        assert renewed.state is SubscriptionState.ACTIVE
        assert renewed.expire_date == now + relativedelta(months=2)
        invoices = storage.list_invoices(sub.id)
        assert len(invoices) == 2
        assert all(invoice.is_paid and invoice.total == 0 for invoice in invoices)
        assert fake_gateway.calls == []

    def test_custom_grace_period(self, storage, gateways, paid_subscription, now):
        controller = LifecycleController(storage, gateways, grace_period_days=7)
        purchase = paid_subscription("alice", "silver")
        expire_date = purchase.subscription.expire_date

        in_grace = controller.process_due(purchase.subscription.id, now=expire_date)

        assert in_grace.grace_until == expire_date + timedelta(days=7)

    def test_negative_grace_period_rejected(self, storage, gateways):
        with pytest.raises(ValueError):
            LifecycleController(storage, gateways, grace_period_days=-1)


# ============================================================================
# PLAN CHANGE, CANCEL, REMOVE, REFUND
# ============================================================================

class TestPlanChange:

    def test_replacing_credits_unused_time(self, controller, storage, paid_subscription, now):
        silver = paid_subscription("alice", "silver")
        halfway = now + (silver.subscription.expire_date - now) / 2

        gold = controller.subscribe("alice", "gold", "fake", replaces=silver.subscription.id, now=halfway)

        old = storage.get_subscription(silver.subscription.id)
        assert old.state is SubscriptionState.CANCELLED
        assert old.expire_date == halfway
        invoice = controller.create_invoice(gold.id, now=halfway)
        assert invoice.pro_rate == Decimal("2.50")
        assert invoice.total == Decimal("26.50")

    def test_cannot_replace_another_members_subscription(self, controller, paid_subscription, now):
        bob = paid_subscription("bob", "silver")

        with pytest.raises(ValidationError):
            controller.subscribe("alice", "gold", "fake", replaces=bob.subscription.id, now=now)


class TestCancelRemoveRefund:

    def test_cancel_keeps_access_until_expire(self, controller, paid_subscription, now):
        purchase = paid_subscription("alice", "silver")

        cancelled = controller.cancel(purchase.subscription.id, "moving on", now=now + timedelta(days=1))

        assert cancelled.state is SubscriptionState.CANCELLED
        assert cancelled.expire_date == purchase.subscription.expire_date
        assert cancelled.grants_access(now + timedelta(days=2)) is True

    def test_cancelled_subscription_is_not_renewed(self, controller, storage, paid_subscription, now):
        purchase = paid_subscription("alice", "silver")
        controller.cancel(purchase.subscription.id, now=now)

        assert storage.list_due_subscriptions(now + timedelta(days=40)) == []

    def test_remove_soft_deletes(self, controller, storage, paid_subscription, now):
        purchase = paid_subscription("alice", "silver")

        removed = controller.remove(purchase.subscription.id, now=now)

        assert removed.deleted is True
        assert removed.state is SubscriptionState.CANCELLED
        assert storage.list_subscriptions("alice") == []
        assert len(storage.list_subscriptions("alice", include_deleted=True)) == 1
        with pytest.raises(NotFoundError):
            controller.cancel(purchase.subscription.id)

    def test_removed_trial_still_blocks_another_trial(self, controller, now):
        trial = controller.subscribe("alice", "bronze", "fake", now=now)
        controller.remove(trial.id, now=now)

        again = controller.subscribe("alice", "bronze", "fake", now=now + timedelta(days=1))

        assert again.state is SubscriptionState.PENDING

    def test_refund_marks_invoice_only(self, controller, storage, events, paid_subscription):
        purchase = paid_subscription("alice", "silver")

        refunded = controller.refund(purchase.invoice.id, "duplicate charge")

        assert refunded.status is InvoiceStatus.REFUNDED
        assert storage.get_invoice(purchase.invoice.id).notes[-1] == "duplicate charge"
        assert storage.get_subscription(purchase.subscription.id).state is SubscriptionState.ACTIVE
        assert events.named(EventName.INVOICE_SETTLED)[-1].payload["status"] == "refunded"

    def test_refund_requires_paid_invoice(self, controller, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)
        invoice = controller.create_invoice(sub.id, now=now)

        with pytest.raises(InvoiceLockedError):
            controller.refund(invoice.id)

    def test_refund_unknown_invoice(self, controller):
        with pytest.raises(NotFoundError):
            controller.refund("missing")


# ============================================================================
# OPTIMISTIC LOCKING
# ============================================================================

class TestConcurrency:

    def test_webhook_racing_a_purchase_settles_once(self, controller, storage, fake_gateway, now):
        """A purchase retried before the webhook arrives charges nothing; the webhook settles once."""
        sub = controller.subscribe("alice", "silver", "fake", now=now)
        fake_gateway.results = [ChargeResult.pending("tx-1")]
        first = controller.attempt_purchase(sub.id, "fake", now=now)
        assert first.awaiting_confirmation

        retried = controller.attempt_purchase(sub.id, "fake", now=now)
        controller.handle_async_confirmation("fake", "tx-1", InvoiceStatus.PAID, now=now)

        assert retried.awaiting_confirmation
        assert retried.invoice.id == first.invoice.id

        stored = storage.get_subscription(sub.id)
        assert stored.state is SubscriptionState.ACTIVE
        assert stored.version == sub.version + 1
        assert stored.expire_date == now + relativedelta(months=1)
        invoice = storage.get_invoice(first.invoice.id)
        assert invoice.is_paid
        assert invoice.external_id == "tx-1"
        assert len(fake_gateway.calls) == 1

    def test_charge_losing_the_commit_race_is_recorded(self, controller, storage, fake_gateway, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)

        def grant_during_charge(invoice):
            controller.grant("alice", "silver", now=now)
            return ChargeResult.approved("tx-2")

        fake_gateway.results = [grant_during_charge]

        with pytest.raises(ConcurrencyConflict):
            controller.attempt_purchase(sub.id, "fake", now=now)

        [invoice] = storage.list_invoices(sub.id)
        assert invoice.status is InvoiceStatus.PENDING
        assert invoice.external_id == "tx-2"
        assert "tx-2" in invoice.notes[-1]
        assert storage.find_invoice_by_external_id("fake", "tx-2").id == invoice.id

        settled = controller.handle_async_confirmation("fake", "tx-2", InvoiceStatus.PAID, now=now)
        assert settled.is_paid

    def test_stale_snapshot_cannot_transition(self, controller, storage, now):
        sub = controller.subscribe("alice", "silver", "fake", now=now)
        controller.grant("alice", "silver", now=now)

        with pytest.raises(ConcurrencyConflict):
            storage.commit_transition(sub, expected_state=sub.state, expected_version=sub.version)
