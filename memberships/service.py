from __future__ import annotations

import logging
from datetime import datetime
from threading import RLock
from typing import List, Optional

from .access import AccessEvaluator, Decision
from .cache import AccessSnapshotCache
from .events import Event, EventDispatcher, EventName
from .models import Member
from .rules import RuleType
from .storage import Storage
from .subscription import Subscription

logger = logging.getLogger(__name__)


class AccessService:
    """Per-request access checks: cached subscription snapshots fed to the evaluator."""

    def __init__(
        self,
        storage: Storage,
        *,
        cache: Optional[AccessSnapshotCache] = None,
        events: Optional[EventDispatcher] = None,
    ) -> None:
        self.storage = storage
        self.cache = cache or AccessSnapshotCache()
        self.events = events or EventDispatcher()
        self._lock = RLock()
        self._evaluator: Optional[AccessEvaluator] = None
        self.events.subscribe(EventName.SUBSCRIPTION_STATE_CHANGED, self._on_state_changed)

    def _on_state_changed(self, event: Event) -> None:
        self.invalidate(event.payload["member_id"])

    @property
    def evaluator(self) -> AccessEvaluator:
        with self._lock:
            if self._evaluator is None:
                self._evaluator = AccessEvaluator(self.storage.list_memberships())
            return self._evaluator

    def reload_memberships(self) -> None:
        """Drop the evaluator so the next check sees current membership definitions."""
        with self._lock:
            self._evaluator = None

    def invalidate(self, member_id: str) -> None:
        self.cache.invalidate(member_id)
        logger.debug("Access snapshot invalidated", extra={"member_id": member_id})

    def subscriptions_for(self, member_id: str) -> List[Subscription]:
        cached = self.cache.get(member_id)
        if cached is not None:
            return cached
        subscriptions = self.storage.list_subscriptions(member_id)
        self.cache.set(member_id, subscriptions)
        return subscriptions

    def check(
        self,
        member_id: Optional[str],
        content_id: str,
        rule_type: RuleType,
        now: Optional[datetime] = None,
    ) -> Decision:
        """Decide access; ``member_id=None`` is an anonymous visitor."""
        member: Optional[Member] = None
        subscriptions: List[Subscription] = []
        if member_id:
            member = self.storage.get_member(member_id) or Member(id=member_id)
            subscriptions = self.subscriptions_for(member.id)

        decision = self.evaluator.can_access(member, subscriptions, content_id, rule_type, now)
        if not decision.allowed:
            self.events.emit(
                EventName.ACCESS_DENIED,
                member_id=member_id,
                content_id=content_id,
                rule_type=RuleType(rule_type).value,
                reason=decision.reason,
            )
        return decision
