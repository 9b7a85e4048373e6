from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from threading import RLock
from typing import Dict, List, Optional, Tuple

from .invoice import Coupon
from .models import Membership, Period, SpecialKind, TrialTerms
from .rules import RuleType, rule_set_from_dict

logger = logging.getLogger(__name__)


def _parse_period(membership_id: str, field_name: str, raw) -> Optional[Period]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ValueError(f"membership '{membership_id}' {field_name} must be an object")
    return Period(count=int(raw.get("count", 0)), unit=raw.get("unit"))


def _parse_decimal(membership_id: str, field_name: str, raw) -> Decimal:
    try:
        return Decimal(str(raw if raw is not None else "0"))
    except InvalidOperation as exc:
        raise ValueError(f"membership '{membership_id}' has invalid {field_name}: {raw!r}") from exc


def _parse_datetime(membership_id: str, field_name: str, raw) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    try:
        value = datetime.fromisoformat(str(raw))
    except ValueError as exc:
        raise ValueError(f"membership '{membership_id}' has invalid {field_name}: {raw!r}") from exc
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def membership_from_dict(membership_id: str, raw: dict, default_currency: str = "USD") -> Membership:
    """Build a Membership from its config-file object."""
    if not isinstance(raw, dict):
        raise ValueError(f"membership '{membership_id}' must be an object")

    rules_raw = raw.get("rules", {})
    if not isinstance(rules_raw, dict):
        raise ValueError(f"membership '{membership_id}' rules must be an object")
    rules = {
        RuleType(rule_type): rule_set_from_dict(membership_id, rule_type, rule_raw)
        for rule_type, rule_raw in rules_raw.items()
    }

    trial_raw = raw.get("trial") or {}
    if not isinstance(trial_raw, dict):
        raise ValueError(f"membership '{membership_id}' trial must be an object")
    trial = TrialTerms(
        enabled=bool(trial_raw.get("enabled", False)),
        period=_parse_period(membership_id, "trial period", trial_raw.get("period")),
        price=_parse_decimal(membership_id, "trial price", trial_raw.get("price")),
    )

    return Membership(
        id=membership_id,
        name=str(raw.get("name") or membership_id).strip(),
        type=raw.get("type", "simple"),
        pricing_mode=raw.get("pricing_mode", "free"),
        price=_parse_decimal(membership_id, "price", raw.get("price")),
        currency=str(raw.get("currency") or default_currency),
        period=_parse_period(membership_id, "period", raw.get("period")),
        date_start=_parse_datetime(membership_id, "date_start", raw.get("date_start")),
        date_end=_parse_datetime(membership_id, "date_end", raw.get("date_end")),
        trial=trial,
        special=raw.get("special"),
        parent_id=raw.get("parent_id"),
        active=bool(raw.get("active", True)),
        private=bool(raw.get("private", False)),
        rules=rules,
    )


class MembershipLoader:
    """Loads membership plans, rules and coupons from config/memberships.json with reload support."""

    def __init__(self, config_path: str = "config/memberships.json", default_currency: str = "USD") -> None:
        self._config_path = Path(config_path)
        self._default_currency = default_currency
        self._lock = RLock()
        self._memberships: Dict[str, Membership] = {}
        self._coupons: Tuple[Coupon, ...] = ()
        self.reload()

    def reload(self) -> None:
        """Reload config from disk (for safe process restart workflows)."""
        raw = self._read_config_file()
        memberships, coupons = self._parse_config(raw, self._default_currency)
        with self._lock:
            self._memberships = memberships
            self._coupons = coupons
        logger.info("Membership config loaded", extra={
            "config_path": str(self._config_path),
            "membership_count": len(memberships),
            "coupon_count": len(coupons),
        })

    def get_membership(self, membership_id: str) -> Membership:
        if not str(membership_id).strip():
            raise ValueError("membership_id is required")
        with self._lock:
            membership = self._memberships.get(str(membership_id).strip())
        if membership is None:
            raise KeyError(f"unknown membership: {membership_id}")
        return membership

    def list_memberships(self) -> List[Membership]:
        with self._lock:
            return [self._memberships[key] for key in sorted(self._memberships)]

    def coupons(self) -> Tuple[Coupon, ...]:
        with self._lock:
            return self._coupons

    def sync_to(self, storage) -> int:
        """Write every configured membership to ``storage``; returns the count."""
        memberships = self.list_memberships()
        # base first so the single-base check sees a consistent table
        memberships.sort(key=lambda m: (not m.is_base, m.id))
        for membership in memberships:
            storage.save_membership(membership)
        return len(memberships)

    def _read_config_file(self) -> dict:
        with self._config_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError("config/memberships.json must contain a top-level object")
        return raw

    @staticmethod
    def _parse_config(raw: dict, default_currency: str = "USD") -> Tuple[Dict[str, Membership], Tuple[Coupon, ...]]:
        memberships_raw = raw.get("memberships")
        if not isinstance(memberships_raw, dict):
            raise ValueError("config/memberships.json must include an object field named 'memberships'")

        memberships: Dict[str, Membership] = {}
        for membership_id, membership_data in memberships_raw.items():
            if not isinstance(membership_id, str) or not membership_id.strip():
                raise ValueError("each membership key must be a non-empty string")
            membership = membership_from_dict(membership_id.strip(), membership_data, default_currency)
            memberships[membership.id] = membership

        bases = [m.id for m in memberships.values() if m.special is SpecialKind.BASE]
        if len(bases) != 1:
            raise ValueError(f"config/memberships.json must define exactly one base membership, found {len(bases)}")

        for membership in memberships.values():
            if membership.parent_id and membership.parent_id not in memberships:
                raise ValueError(
                    f"membership '{membership.id}' references unknown parent '{membership.parent_id}'"
                )

        coupons_raw = raw.get("coupons", [])
        if not isinstance(coupons_raw, list):
            raise ValueError("config/memberships.json coupons must be a list")
        coupons = []
        for coupon_data in coupons_raw:
            if not isinstance(coupon_data, dict):
                raise ValueError("each coupon must be an object")
            expires_at = coupon_data.get("expires_at")
            coupons.append(Coupon(
                code=coupon_data.get("code", ""),
                kind=coupon_data.get("kind", "percent"),
                value=Decimal(str(coupon_data.get("value", "0"))),
                membership_ids=frozenset(coupon_data.get("membership_ids", [])),
                expires_at=_parse_datetime(str(coupon_data.get("code")), "expires_at", expires_at),
            ))

        return memberships, tuple(coupons)
