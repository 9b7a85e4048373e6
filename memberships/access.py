"""
Access evaluation: may this member see this content right now?

Pure function of membership definitions and subscription snapshots the
caller has already fetched. Denial is a normal Decision, never an error.

Precedence:
- within one membership's hierarchy (tiered children) rules merge deny-wins
- across the independent memberships a member holds, allow wins
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .models import Member, Membership, MembershipType, SpecialKind
from .rules import RuleSet, RuleType
from .subscription import Subscription

REASON_BASE_ALLOWS = "base_membership_allows"
REASON_GUEST_ALLOWS = "guest_membership_allows"
REASON_MEMBERSHIP_ALLOWS = "membership_allows"
REASON_NO_SUBSCRIPTION = "no_active_subscription"
REASON_NOT_COVERED = "not_covered_by_memberships"
REASON_NOT_RELEASED = "dripped_content_not_released"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    membership_id: Optional[str] = None
    available_at: Optional[datetime] = None


class AccessEvaluator:
    """Evaluates content access across every membership a member holds."""

    def __init__(self, memberships: Iterable[Membership]):
        self._memberships: Dict[str, Membership] = {m.id: m for m in memberships}
        bases = [m for m in self._memberships.values() if m.special is SpecialKind.BASE]
        if len(bases) != 1:
            raise ValueError(f"exactly one base membership is required, found {len(bases)}")
        self._base = bases[0]
        guests = [m for m in self._memberships.values() if m.special is SpecialKind.GUEST]
        self._guest = guests[0] if guests else None
        self._resolved: Dict[Tuple[str, RuleType], RuleSet] = {}

    @property
    def base(self) -> Membership:
        return self._base

    def resolve_rule_set(self, membership: Membership, rule_type: RuleType) -> RuleSet:
        """Rule set of ``membership`` merged with every ancestor (deny wins)."""
        rule_type = RuleType(rule_type)
        key = (membership.id, rule_type)
        cached = self._resolved.get(key)
        if cached is not None:
            return cached

        resolved = membership.rule_for(rule_type)
        seen = {membership.id}
        parent_id = membership.parent_id
        while parent_id:
            if parent_id in seen:
                raise ValueError(f"membership hierarchy of {membership.id!r} contains a cycle")
            seen.add(parent_id)
            parent = self._memberships.get(parent_id)
            if parent is None:
                break
            resolved = resolved.merge(parent.rule_for(rule_type))
            parent_id = parent.parent_id

        self._resolved[key] = resolved
        return resolved

    def can_access(
        self,
        member: Optional[Member],
        subscriptions: Iterable[Subscription],
        content_id: str,
        rule_type: RuleType,
        now: Optional[datetime] = None,
    ) -> Decision:
        """
        Decide access for ``member`` (None for an anonymous visitor).

        Anonymous visitors are evaluated against the base and guest
        memberships only. Members are evaluated against the base membership
        plus every subscription that currently grants access.
        """
        now = now or datetime.now(timezone.utc)
        rule_type = RuleType(rule_type)

        if self.resolve_rule_set(self._base, rule_type).is_allowed(content_id):
            return Decision(True, REASON_BASE_ALLOWS, self._base.id)

        if member is None:
            if self._guest is not None and self.resolve_rule_set(self._guest, rule_type).is_allowed(content_id):
                return Decision(True, REASON_GUEST_ALLOWS, self._guest.id)
            return Decision(False, REASON_NO_SUBSCRIPTION)

        candidates = self._candidates(member, subscriptions, now)
        if not candidates:
            return Decision(False, REASON_NO_SUBSCRIPTION)

        earliest_release: Optional[datetime] = None
        for subscription, membership in candidates:
            rule_set = self.resolve_rule_set(membership, rule_type)
            if not rule_set.is_allowed(content_id):
                continue
            release_at = self._release_at(membership, rule_set, subscription, content_id)
            if release_at is not None and release_at > now:
                if earliest_release is None or release_at < earliest_release:
                    earliest_release = release_at
                continue
            return Decision(True, REASON_MEMBERSHIP_ALLOWS, membership.id)

        if earliest_release is not None:
            return Decision(False, REASON_NOT_RELEASED, available_at=earliest_release)
        return Decision(False, REASON_NOT_COVERED)

    def _candidates(
        self, member: Member, subscriptions: Iterable[Subscription], now: datetime
    ) -> List[Tuple[Subscription, Membership]]:
        candidates = []
        for subscription in subscriptions:
            if subscription.member_id != member.id or not subscription.grants_access(now):
                continue
            membership = self._memberships.get(subscription.membership_id)
            if membership is None or membership.is_special:
                continue
            candidates.append((subscription, membership))
        return candidates

    @staticmethod
    def _release_at(
        membership: Membership, rule_set: RuleSet, subscription: Subscription, content_id: str
    ) -> Optional[datetime]:
        if membership.type is not MembershipType.DRIPPED:
            return None
        delay = rule_set.release_delay(content_id)
        if delay is None:
            return None
        return subscription.start_date + timedelta(days=delay)


def can_access(
    memberships: Mapping[str, Membership] | Iterable[Membership],
    member: Optional[Member],
    subscriptions: Iterable[Subscription],
    content_id: str,
    rule_type: RuleType,
    now: Optional[datetime] = None,
) -> Decision:
    """Convenience wrapper building a one-off evaluator."""
    values = memberships.values() if isinstance(memberships, Mapping) else memberships
    return AccessEvaluator(values).can_access(member, subscriptions, content_id, rule_type, now)
