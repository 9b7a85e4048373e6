from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from dateutil.relativedelta import relativedelta

from .rules import RuleSet, RuleType, empty_rule_set


class MembershipType(str, Enum):
    SIMPLE = "simple"
    TIERED_CHILD = "tiered_child"
    DRIPPED = "dripped"


class PricingMode(str, Enum):
    FREE = "free"
    FINITE = "finite"
    RECURRING = "recurring"
    DATE_RANGE = "date_range"


class SpecialKind(str, Enum):
    """Reserved system memberships; never purchasable or deletable."""

    BASE = "base"
    GUEST = "guest"


class PeriodUnit(str, Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"
    YEARS = "years"

    @classmethod
    def parse(cls, raw: Optional[str]) -> PeriodUnit:
        """Lenient parse keyed on the first letter ('m', 'month', 'Months' ...); defaults to days."""
        value = str(raw or "").strip().lower()
        for unit in cls:
            if value and unit.value[0] == value[0]:
                return unit
        return cls.DAYS


@dataclass(frozen=True)
class Period:
    count: int
    unit: PeriodUnit = PeriodUnit.DAYS

    def __post_init__(self) -> None:
        count = int(self.count)
        if count < 0:
            raise ValueError("period count must not be negative")
        object.__setattr__(self, "count", count)
        object.__setattr__(self, "unit", PeriodUnit.parse(getattr(self.unit, "value", self.unit)))

    def add_to(self, moment: datetime) -> datetime:
        return moment + relativedelta(**{self.unit.value: self.count})

    def to_dict(self) -> dict:
        return {"count": self.count, "unit": self.unit.value}


@dataclass(frozen=True)
class TrialTerms:
    enabled: bool = False
    period: Optional[Period] = None
    price: Decimal = Decimal("0")

    def __post_init__(self) -> None:
        price = Decimal(str(self.price))
        if price < 0:
            raise ValueError("trial price must not be negative")
        if self.enabled and (self.period is None or self.period.count == 0):
            raise ValueError("an enabled trial needs a non-empty period")
        object.__setattr__(self, "price", price)


@dataclass(frozen=True)
class Membership:
    """A purchasable or grantable plan: pricing, trial terms and content rules."""

    id: str
    name: str
    type: MembershipType = MembershipType.SIMPLE
    pricing_mode: PricingMode = PricingMode.FREE
    price: Decimal = Decimal("0")
    currency: str = "USD"
    period: Optional[Period] = None
    date_start: Optional[datetime] = None
    date_end: Optional[datetime] = None
    trial: TrialTerms = field(default_factory=TrialTerms)
    special: Optional[SpecialKind] = None
    parent_id: Optional[str] = None
    active: bool = True
    private: bool = False
    rules: Mapping[RuleType, RuleSet] = field(default_factory=dict)

    def __post_init__(self) -> None:
        membership_id = str(self.id).strip()
        if not membership_id:
            raise ValueError("membership id is required")
        membership_type = MembershipType(self.type)
        pricing_mode = PricingMode(self.pricing_mode)
        special = SpecialKind(self.special) if self.special is not None else None
        price = Decimal(str(self.price))
        if price < 0:
            raise ValueError("price must not be negative")
        if membership_type is MembershipType.TIERED_CHILD and not self.parent_id:
            raise ValueError(f"tiered child membership {membership_id!r} needs a parent_id")
        if self.parent_id and str(self.parent_id).strip() == membership_id:
            raise ValueError("a membership cannot be its own parent")
        if pricing_mode in (PricingMode.FINITE, PricingMode.RECURRING):
            if self.period is None or self.period.count == 0:
                raise ValueError(f"{pricing_mode.value} membership {membership_id!r} needs a period")
        if pricing_mode is PricingMode.DATE_RANGE and self.date_end is None:
            raise ValueError(f"date range membership {membership_id!r} needs date_end")

        rules: Dict[RuleType, RuleSet] = {}
        for rule_type, rule_set in self.rules.items():
            key = RuleType(rule_type)
            if rule_set.rule_type is not key:
                raise ValueError(f"rule set stored under {key.value} has type {rule_set.rule_type.value}")
            if rule_set.membership_id != membership_id:
                raise ValueError(f"rule set for {key.value} belongs to {rule_set.membership_id!r}")
            rules[key] = rule_set

        object.__setattr__(self, "id", membership_id)
        object.__setattr__(self, "type", membership_type)
        object.__setattr__(self, "pricing_mode", pricing_mode)
        object.__setattr__(self, "special", special)
        object.__setattr__(self, "price", price)
        object.__setattr__(self, "currency", str(self.currency).strip().upper() or "USD")
        object.__setattr__(self, "rules", MappingProxyType(rules))

    @property
    def is_free(self) -> bool:
        return self.pricing_mode is PricingMode.FREE or self.price == 0

    @property
    def is_special(self) -> bool:
        return self.special is not None

    @property
    def is_base(self) -> bool:
        return self.special is SpecialKind.BASE

    @property
    def is_purchasable(self) -> bool:
        return self.active and not self.is_special

    @property
    def has_trial(self) -> bool:
        return self.trial.enabled

    def rule_for(self, rule_type: RuleType) -> RuleSet:
        rule_type = RuleType(rule_type)
        return self.rules.get(rule_type) or empty_rule_set(self.id, rule_type)


@dataclass(frozen=True)
class Member:
    """A user of the site. Gateway profiles hold tokenized references, never card data."""

    id: str
    gateway_profiles: Mapping[str, Mapping[str, str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        member_id = str(self.id).strip()
        if not member_id:
            raise ValueError("member id is required")
        profiles = {
            str(gateway_id): MappingProxyType({str(k): str(v) for k, v in profile.items() if v is not None})
            for gateway_id, profile in self.gateway_profiles.items()
        }
        object.__setattr__(self, "id", member_id)
        object.__setattr__(self, "gateway_profiles", MappingProxyType(profiles))

    def get_gateway_profile(self, gateway_id: str) -> Mapping[str, str]:
        return self.gateway_profiles.get(gateway_id, MappingProxyType({}))

    def with_gateway_profile(self, gateway_id: str, profile: Mapping[str, str]) -> Member:
        profiles = {key: dict(value) for key, value in self.gateway_profiles.items()}
        merged = dict(profiles.get(gateway_id, {}))
        merged.update(profile)
        profiles[gateway_id] = merged
        return Member(id=self.id, gateway_profiles=profiles)
