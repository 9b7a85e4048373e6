"""
Membership access rules and the subscription/invoice lifecycle.

This package provides:
- RuleSet / AccessEvaluator: content rules and the access decision
- LifecycleController: subscribe, purchase, confirm, renew, cancel, refund
- Gateway implementations behind an explicit GatewayRegistry
- SqlStorage: optimistic-locked persistence on SQLAlchemy
- AccessService: cached per-request access checks
- MembershipLoader: plans, rules and coupons from config/memberships.json

Grace period: 3 days (configurable via MEMBERSHIP_GRACE_PERIOD_DAYS)
"""

from memberships.access import AccessEvaluator, Decision, can_access
from memberships.errors import (
    AppError,
    ConcurrencyConflict,
    ConfigurationError,
    GatewayDeclined,
    GatewayTransient,
    InvalidTransitionError,
    InvoiceLockedError,
    NotFoundError,
    ValidationError,
)
from memberships.events import Event, EventDispatcher, EventName
from memberships.invoice import Invoice, InvoiceStatus
from memberships.lifecycle import LifecycleController, PurchaseResult
from memberships.loader import MembershipLoader
from memberships.models import Member, Membership, MembershipType, Period, PricingMode, SpecialKind, TrialTerms
from memberships.rules import RuleAccess, RuleSet, RuleType
from memberships.service import AccessService
from memberships.storage import SqlStorage, create_storage
from memberships.subscription import Subscription, SubscriptionState

__all__ = [
    "AccessEvaluator",
    "AccessService",
    "AppError",
    "ConcurrencyConflict",
    "ConfigurationError",
    "Decision",
    "Event",
    "EventDispatcher",
    "EventName",
    "GatewayDeclined",
    "GatewayTransient",
    "InvalidTransitionError",
    "Invoice",
    "InvoiceLockedError",
    "InvoiceStatus",
    "LifecycleController",
    "Member",
    "Membership",
    "MembershipLoader",
    "MembershipType",
    "NotFoundError",
    "Period",
    "PricingMode",
    "PurchaseResult",
    "RuleAccess",
    "RuleSet",
    "RuleType",
    "SpecialKind",
    "SqlStorage",
    "Subscription",
    "SubscriptionState",
    "TrialTerms",
    "ValidationError",
    "can_access",
]
