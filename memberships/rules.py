"""
Content rules owned by a membership.

A RuleSet holds, for one rule type, the content ids a membership explicitly
allows or denies. Rule types form a closed set; per-type behaviour (default
policy, id normalisation, matching) is selected from RULE_TYPE_HANDLERS.

Precedence inside a membership hierarchy is deny-wins (see RuleSet.merge).
Cross-membership aggregation is allow-wins and lives in access.py; the two
policies are deliberately different.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Tuple


class RuleType(str, Enum):
    """Closed set of content categories a membership can protect."""

    POST = "post"
    PAGE = "page"
    CATEGORY = "category"
    MENU = "menu"
    MEDIA = "media"
    SHORTCODE = "shortcode"
    URL = "url"
    CUSTOM_POST_TYPE = "cpt"
    COMMENT = "comment"


class RuleAccess(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


def _normalize_plain(content_id: str) -> str:
    return str(content_id).strip()


def _normalize_shortcode(content_id: str) -> str:
    return str(content_id).strip().strip("[]").strip().lower()


def _normalize_url(content_id: str) -> str:
    value = str(content_id).strip()
    for scheme in ("https://", "http://"):
        if value.lower().startswith(scheme):
            value = value[len(scheme):]
            break
    host, sep, path = value.partition("/")
    value = host.lower() + sep + path
    return value.rstrip("/")


def _match_exact(entries: Mapping[str, RuleAccess], content_id: str) -> Optional[RuleAccess]:
    return entries.get(content_id)


def _match_url_prefix(entries: Mapping[str, RuleAccess], content_id: str) -> Optional[RuleAccess]:
    # longest matching prefix wins; prefixes only match on path boundaries
    best: Optional[str] = None
    for prefix in entries:
        if content_id == prefix or content_id.startswith(prefix + "/"):
            if best is None or len(prefix) > len(best):
                best = prefix
    return entries[best] if best is not None else None


@dataclass(frozen=True)
class RuleTypeHandler:
    rule_type: RuleType
    title: str
    default: RuleAccess
    normalize: Callable[[str], str]
    match: Callable[[Mapping[str, RuleAccess], str], Optional[RuleAccess]]


RULE_TYPE_HANDLERS: Dict[RuleType, RuleTypeHandler] = {
    RuleType.POST: RuleTypeHandler(RuleType.POST, "Posts", RuleAccess.DENY, _normalize_plain, _match_exact),
    RuleType.PAGE: RuleTypeHandler(RuleType.PAGE, "Pages", RuleAccess.DENY, _normalize_plain, _match_exact),
    RuleType.CATEGORY: RuleTypeHandler(
        RuleType.CATEGORY, "Categories", RuleAccess.DENY, _normalize_plain, _match_exact
    ),
    RuleType.MENU: RuleTypeHandler(RuleType.MENU, "Menu items", RuleAccess.ALLOW, _normalize_plain, _match_exact),
    RuleType.MEDIA: RuleTypeHandler(RuleType.MEDIA, "Media", RuleAccess.DENY, _normalize_plain, _match_exact),
    RuleType.SHORTCODE: RuleTypeHandler(
        RuleType.SHORTCODE, "Shortcodes", RuleAccess.DENY, _normalize_shortcode, _match_exact
    ),
    RuleType.URL: RuleTypeHandler(RuleType.URL, "URL groups", RuleAccess.DENY, _normalize_url, _match_url_prefix),
    RuleType.CUSTOM_POST_TYPE: RuleTypeHandler(
        RuleType.CUSTOM_POST_TYPE, "Custom post types", RuleAccess.DENY, _normalize_plain, _match_exact
    ),
    RuleType.COMMENT: RuleTypeHandler(
        RuleType.COMMENT, "Comments", RuleAccess.ALLOW, _normalize_plain, _match_exact
    ),
}


def get_rule_type_titles() -> Dict[RuleType, str]:
    return {rule_type: handler.title for rule_type, handler in RULE_TYPE_HANDLERS.items()}


@dataclass(frozen=True)
class RuleSet:
    """Explicit allow/deny entries of one rule type for one membership."""

    membership_id: str
    rule_type: RuleType
    entries: Mapping[str, RuleAccess] = field(default_factory=dict)
    default: Optional[RuleAccess] = None
    drip_days: Mapping[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        membership_id = str(self.membership_id).strip()
        if not membership_id:
            raise ValueError("membership_id is required")
        # raises ValueError for anything outside the closed set
        rule_type = RuleType(self.rule_type)
        handler = RULE_TYPE_HANDLERS[rule_type]

        entries: Dict[str, RuleAccess] = {}
        for content_id, access in self.entries.items():
            key = handler.normalize(content_id)
            if not key:
                raise ValueError(f"{rule_type.value} rule has an empty content id")
            entries[key] = RuleAccess(access)

        drip: Dict[str, int] = {}
        for content_id, days in self.drip_days.items():
            key = handler.normalize(content_id)
            if int(days) < 0:
                raise ValueError(f"drip delay for {key!r} must not be negative")
            drip[key] = int(days)

        object.__setattr__(self, "membership_id", membership_id)
        object.__setattr__(self, "rule_type", rule_type)
        object.__setattr__(self, "default", RuleAccess(self.default) if self.default is not None else None)
        object.__setattr__(self, "entries", MappingProxyType(entries))
        object.__setattr__(self, "drip_days", MappingProxyType(drip))

    @property
    def handler(self) -> RuleTypeHandler:
        return RULE_TYPE_HANDLERS[self.rule_type]

    @property
    def default_access(self) -> RuleAccess:
        return self.default if self.default is not None else self.handler.default

    def decision(self, content_id: str) -> RuleAccess:
        """Explicit entry wins; otherwise the default policy applies."""
        explicit = self.handler.match(self.entries, self.handler.normalize(content_id))
        if explicit is not None:
            return explicit
        return self.default_access

    def is_allowed(self, content_id: str) -> bool:
        return self.decision(content_id) is RuleAccess.ALLOW

    def is_explicit(self, content_id: str) -> bool:
        return self.handler.match(self.entries, self.handler.normalize(content_id)) is not None

    def release_delay(self, content_id: str) -> Optional[int]:
        """Days after subscription start before dripped content is released."""
        return self.drip_days.get(self.handler.normalize(content_id))

    def merge(self, other: RuleSet) -> RuleSet:
        """
        Combine with an inherited rule set of the same type.

        Deny wins over allow for explicit entries and for the default policy,
        independent of argument order. The result keeps this rule set's owner.
        """
        if other.rule_type is not self.rule_type:
            raise ValueError(
                f"cannot merge {other.rule_type.value} rules into {self.rule_type.value} rules"
            )

        merged: Dict[str, RuleAccess] = dict(other.entries)
        for content_id, access in self.entries.items():
            existing = merged.get(content_id)
            if existing is RuleAccess.DENY or access is RuleAccess.DENY:
                merged[content_id] = RuleAccess.DENY
            else:
                merged[content_id] = access
        # a deny on a covering prefix in either set overrides a narrower allow
        for content_id, access in list(merged.items()):
            if access is RuleAccess.ALLOW and RuleAccess.DENY in (
                self.handler.match(self.entries, content_id),
                self.handler.match(other.entries, content_id),
            ):
                merged[content_id] = RuleAccess.DENY

        if RuleAccess.DENY in (self.default_access, other.default_access):
            default = RuleAccess.DENY
        else:
            default = RuleAccess.ALLOW

        drip: Dict[str, int] = dict(other.drip_days)
        for content_id, days in self.drip_days.items():
            drip[content_id] = max(days, drip.get(content_id, 0))

        return RuleSet(
            membership_id=self.membership_id,
            rule_type=self.rule_type,
            entries=merged,
            default=default,
            drip_days=drip,
        )

    def with_entry(self, content_id: str, access: RuleAccess) -> RuleSet:
        entries = dict(self.entries)
        entries[self.handler.normalize(content_id)] = RuleAccess(access)
        return replace(self, entries=entries)

    def count_rules(self) -> int:
        return len(self.entries)

    def list_content_ids(self) -> Tuple[str, ...]:
        return tuple(sorted(self.entries))

    def has_rules(self) -> bool:
        return bool(self.entries)

    def to_dict(self) -> dict:
        payload: dict = {
            "entries": {key: value.value for key, value in sorted(self.entries.items())},
        }
        if self.default is not None:
            payload["default"] = self.default.value
        if self.drip_days:
            payload["drip_days"] = dict(sorted(self.drip_days.items()))
        return payload


def empty_rule_set(membership_id: str, rule_type: RuleType) -> RuleSet:
    return RuleSet(membership_id=membership_id, rule_type=rule_type)


def rule_set_from_dict(membership_id: str, rule_type: str, raw: Mapping) -> RuleSet:
    """Parse the JSON shape used by config files, storage and imports."""
    if not isinstance(raw, Mapping):
        raise ValueError(f"rules for {rule_type!r} must be an object")
    entries = raw.get("entries", {})
    if not isinstance(entries, Mapping):
        raise ValueError(f"rules for {rule_type!r}: entries must be an object")
    drip = raw.get("drip_days", {})
    if not isinstance(drip, Mapping):
        raise ValueError(f"rules for {rule_type!r}: drip_days must be an object")
    default = raw.get("default")
    return RuleSet(
        membership_id=membership_id,
        rule_type=RuleType(rule_type),
        entries={str(k): RuleAccess(v) for k, v in entries.items()},
        default=RuleAccess(default) if default is not None else None,
        drip_days={str(k): int(v) for k, v in drip.items()},
    )
