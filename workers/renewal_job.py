from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from memberships.api import build_controller
from memberships.config import Settings, load_settings
from memberships.errors import ConcurrencyConflict
from memberships.lifecycle import LifecycleController
from memberships.subscription import DueAction, SubscriptionState

logger = logging.getLogger(__name__)


@dataclass
class RenewalStats:
    started_at: str
    completed_at: Optional[str] = None
    scanned: int = 0
    trials_ended: int = 0
    renewed: int = 0
    prompted: int = 0
    expired: int = 0
    conflicts: int = 0
    errors: int = 0


def run_renewal_cycle(controller: LifecycleController, now: Optional[datetime] = None) -> RenewalStats:
    """Periodic renewal scan.

    Responsibilities:
    - end trials and bill renewals whose period boundary passed
    - expire subscriptions whose grace window closed
    - leave subscriptions another writer already moved alone
    """

    now = now or datetime.now(timezone.utc)
    stats = RenewalStats(started_at=datetime.now(timezone.utc).isoformat())

    for subscription in controller.storage.list_due_subscriptions(now):
        stats.scanned += 1
        action = subscription.due_action(now)
        try:
            result = controller.process_due(subscription.id, now=now)
        except ConcurrencyConflict:
            # picked up again on the next cycle if still due
            stats.conflicts += 1
            continue
        except Exception:
            logger.exception("Renewal failed", extra={
                "subscription_id": subscription.id,
                "action": action.value,
            })
            stats.errors += 1
            continue

        if result.state is SubscriptionState.EXPIRED:
            stats.expired += 1
        elif result.in_grace:
            stats.prompted += 1
        elif action is DueAction.END_TRIAL:
            stats.trials_ended += 1
        else:
            stats.renewed += 1

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info("Renewal cycle completed", extra={
        "scanned": stats.scanned,
        "renewed": stats.renewed,
        "prompted": stats.prompted,
        "expired": stats.expired,
        "conflicts": stats.conflicts,
        "errors": stats.errors,
    })
    return stats


def run_forever(interval_seconds: int = 300, settings: Optional[Settings] = None) -> None:
    import time

    controller = build_controller(settings or load_settings())
    while True:
        run_renewal_cycle(controller)
        time.sleep(interval_seconds)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    run_forever()
