"""
Subscription (membership relationship) and its state machine.

Lifecycle:
1. pending   - created, awaiting first payment
2. trial     - trial running (one per member per membership, ever)
3. active    - paid; renewed at every period boundary
4. pending   - again, when a renewal invoice is unpaid (grace window)
5. expired / cancelled - terminal

All functions here are pure: they take a snapshot and return a new one.
Persisting a transition (with its optimistic-lock check) is the storage
layer's job; orchestrating them is the lifecycle controller's.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterable, Optional

from .errors import InvalidTransitionError
from .models import Membership, PricingMode


class SubscriptionState(str, Enum):
    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


TERMINAL_STATES: FrozenSet[SubscriptionState] = frozenset(
    {SubscriptionState.EXPIRED, SubscriptionState.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[SubscriptionState, FrozenSet[SubscriptionState]] = {
    SubscriptionState.PENDING: frozenset({
        SubscriptionState.TRIAL,
        SubscriptionState.ACTIVE,
        SubscriptionState.EXPIRED,
        SubscriptionState.CANCELLED,
    }),
    SubscriptionState.TRIAL: frozenset({
        SubscriptionState.ACTIVE,
        SubscriptionState.PENDING,
        SubscriptionState.EXPIRED,
        SubscriptionState.CANCELLED,
    }),
    SubscriptionState.ACTIVE: frozenset({
        SubscriptionState.ACTIVE,
        SubscriptionState.PENDING,
        SubscriptionState.EXPIRED,
        SubscriptionState.CANCELLED,
    }),
    SubscriptionState.EXPIRED: frozenset(),
    SubscriptionState.CANCELLED: frozenset(),
}


class DueAction(str, Enum):
    """What the periodic renewal scan has to do for a subscription."""

    NONE = "none"
    END_TRIAL = "end_trial"
    RENEW = "renew"
    EXPIRE = "expire"


@dataclass(frozen=True)
class Subscription:
    id: str
    member_id: str
    membership_id: str
    state: SubscriptionState
    start_date: datetime
    trial_end: Optional[datetime] = None
    expire_date: Optional[datetime] = None
    gateway_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    grace_until: Optional[datetime] = None
    deleted: bool = False
    version: int = 0

    def __post_init__(self) -> None:
        if not str(self.member_id).strip():
            raise ValueError("member_id is required")
        if not str(self.membership_id).strip():
            raise ValueError("membership_id is required")
        object.__setattr__(self, "state", SubscriptionState(self.state))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def in_grace(self) -> bool:
        return self.state is SubscriptionState.PENDING and self.grace_until is not None

    @property
    def had_trial(self) -> bool:
        return self.trial_end is not None

    def grants_access(self, now: Optional[datetime] = None) -> bool:
        """
        Whether this subscription currently lets its member use the membership.

        Trial and active always do. A renewal in its grace window keeps access
        until the window closes. A cancelled subscription keeps access until
        its paid-through date (immediate cancellation sets that date to the
        cancellation time).
        """
        if self.deleted:
            return False
        now = now or datetime.now(timezone.utc)
        if self.state in (SubscriptionState.TRIAL, SubscriptionState.ACTIVE):
            return True
        if self.in_grace:
            return now < self.grace_until
        if self.state is SubscriptionState.CANCELLED:
            return self.expire_date is not None and now < self.expire_date
        return False

    def due_action(self, now: datetime) -> DueAction:
        if self.deleted:
            return DueAction.NONE
        if self.state is SubscriptionState.TRIAL and self.trial_end is not None and self.trial_end <= now:
            return DueAction.END_TRIAL
        if self.state is SubscriptionState.ACTIVE and self.expire_date is not None and self.expire_date <= now:
            return DueAction.RENEW
        if self.in_grace and self.grace_until <= now:
            return DueAction.EXPIRE
        return DueAction.NONE


def new_subscription(
    member_id: str,
    membership: Membership,
    *,
    gateway_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Subscription:
    now = now or datetime.now(timezone.utc)
    return Subscription(
        id=str(uuid.uuid4()),
        member_id=member_id,
        membership_id=membership.id,
        state=SubscriptionState.PENDING,
        start_date=now,
        gateway_id=gateway_id,
    )


def transition(subscription: Subscription, target: SubscriptionState, **changes) -> Subscription:
    """Apply a state change allowed by ALLOWED_TRANSITIONS, else raise."""
    target = SubscriptionState(target)
    if target not in ALLOWED_TRANSITIONS[subscription.state]:
        raise InvalidTransitionError(subscription.id, subscription.state.value, target.value)
    return replace(subscription, state=target, **changes)


def next_expire_date(membership: Membership, base: datetime) -> Optional[datetime]:
    """Paid-through date for a period starting at ``base``; None means perpetual."""
    mode = membership.pricing_mode
    if mode is PricingMode.DATE_RANGE:
        return membership.date_end
    if mode in (PricingMode.FINITE, PricingMode.RECURRING) and membership.period is not None:
        return membership.period.add_to(base)
    return None


def is_trial_eligible(membership: Membership, history: Iterable[Subscription]) -> bool:
    """One trial per member per membership, counted over the full soft-deleted history."""
    if not membership.has_trial:
        return False
    return not any(
        sub.membership_id == membership.id and sub.had_trial
        for sub in history
    )


def start_trial(subscription: Subscription, membership: Membership, now: datetime) -> Subscription:
    trial_end = membership.trial.period.add_to(now)
    return transition(
        subscription,
        SubscriptionState.TRIAL,
        trial_end=trial_end,
        expire_date=trial_end,
        grace_until=None,
    )


def activate(subscription: Subscription, membership: Membership, now: datetime) -> Subscription:
    """
    Move to active after a payment (or a free trial ending).

    The new period starts where the member's paid or trial coverage ends so
    no time is lost or double counted:
    - active renewal or grace recovery: from the current expire date
    - trial conversion: from the later of now and trial end
    - first purchase: from now
    """
    if subscription.state is SubscriptionState.ACTIVE or subscription.in_grace:
        base = subscription.expire_date or now
    elif subscription.state is SubscriptionState.TRIAL and subscription.trial_end is not None:
        base = max(now, subscription.trial_end)
    else:
        base = now
    return transition(
        subscription,
        SubscriptionState.ACTIVE,
        expire_date=next_expire_date(membership, base),
        grace_until=None,
    )


def renew(subscription: Subscription, membership: Membership, now: datetime) -> Subscription:
    if subscription.state is not SubscriptionState.ACTIVE:
        raise InvalidTransitionError(subscription.id, subscription.state.value, SubscriptionState.ACTIVE.value)
    return activate(subscription, membership, now)


def enter_grace(subscription: Subscription, grace_days: int, now: datetime) -> Subscription:
    boundary = subscription.expire_date or subscription.trial_end or now
    return transition(
        subscription,
        SubscriptionState.PENDING,
        grace_until=boundary + timedelta(days=grace_days),
    )


def expire(subscription: Subscription, now: datetime) -> Subscription:
    return transition(subscription, SubscriptionState.EXPIRED, grace_until=None)


def cancel(
    subscription: Subscription,
    reason: Optional[str],
    now: datetime,
    *,
    immediate: bool = False,
) -> Subscription:
    changes: dict = {"cancellation_reason": reason, "grace_until": None}
    if immediate or subscription.state is SubscriptionState.PENDING:
        # nothing paid through: access ends now
        changes["expire_date"] = now
    return transition(subscription, SubscriptionState.CANCELLED, **changes)
