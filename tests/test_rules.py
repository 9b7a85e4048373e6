import pytest

from memberships.rules import (
    RuleAccess,
    RuleSet,
    RuleType,
    empty_rule_set,
    get_rule_type_titles,
    rule_set_from_dict,
)


def _rules(rule_type, entries, membership_id="m1", **kwargs):
    return RuleSet(membership_id=membership_id, rule_type=rule_type, entries=entries, **kwargs)


# ============================================================================
# DEFAULT POLICY AND MATCHING
# ============================================================================

class TestRuleDecision:

    def test_explicit_entries_win_over_default(self):
        rules = _rules(RuleType.POST, {"p1": "allow", "p2": "deny"})

        assert rules.is_allowed("p1") is True
        assert rules.is_allowed("p2") is False

    def test_default_policy_depends_on_rule_type(self):
        assert empty_rule_set("m1", RuleType.POST).is_allowed("anything") is False
        assert empty_rule_set("m1", RuleType.MENU).is_allowed("anything") is True
        assert empty_rule_set("m1", RuleType.COMMENT).is_allowed("anything") is True

    def test_explicit_default_overrides_type_default(self):
        rules = _rules(RuleType.PAGE, {"private": "deny"}, default="allow")

        assert rules.is_allowed("about") is True
        assert rules.is_allowed("private") is False

    def test_shortcode_ids_are_normalized(self):
        rules = _rules(RuleType.SHORTCODE, {"[Gallery]": "allow"})

        assert rules.is_allowed("gallery") is True
        assert rules.is_allowed("[GALLERY]") is True

    def test_url_rules_match_longest_prefix(self):
        rules = _rules(RuleType.URL, {
            "example.com/members": "allow",
            "example.com/members/archive": "deny",
        })

        assert rules.is_allowed("https://Example.com/members/") is True
        assert rules.is_allowed("http://example.com/members/news/today") is True
        assert rules.is_allowed("example.com/members/archive/2019") is False

    def test_url_prefix_only_matches_on_path_boundary(self):
        rules = _rules(RuleType.URL, {"example.com/members": "allow"})

        assert rules.is_allowed("example.com/membership") is False

    def test_release_delay_for_dripped_entries(self):
        rules = _rules(RuleType.POST, {"lesson-2": "allow"}, drip_days={"lesson-2": 7})

        assert rules.release_delay("lesson-2") == 7
        assert rules.release_delay("lesson-1") is None

    def test_rule_type_titles_cover_every_type(self):
        assert set(get_rule_type_titles()) == set(RuleType)


# ============================================================================
# VALIDATION
# ============================================================================

class TestRuleValidation:

    def test_unknown_rule_type_rejected(self):
        with pytest.raises(ValueError):
            RuleSet(membership_id="m1", rule_type="widget")

    def test_empty_content_id_rejected(self):
        with pytest.raises(ValueError):
            _rules(RuleType.POST, {"  ": "allow"})

    def test_negative_drip_rejected(self):
        with pytest.raises(ValueError):
            _rules(RuleType.POST, {"p1": "allow"}, drip_days={"p1": -1})

    def test_unknown_access_value_rejected(self):
        with pytest.raises(ValueError):
            _rules(RuleType.POST, {"p1": "maybe"})

    def test_from_dict_requires_object_entries(self):
        with pytest.raises(ValueError):
            rule_set_from_dict("m1", "post", {"entries": ["p1"]})

    def test_from_dict_parses_config_shape(self):
        rules = rule_set_from_dict("m1", "post", {
            "entries": {"p1": "allow"},
            "default": "deny",
            "drip_days": {"p1": "3"},
        })

        assert rules.rule_type is RuleType.POST
        assert rules.entries["p1"] is RuleAccess.ALLOW
        assert rules.release_delay("p1") == 3
        assert rules.to_dict() == {"entries": {"p1": "allow"}, "default": "deny", "drip_days": {"p1": 3}}


# ============================================================================
# MERGE (DENY WINS)
# ============================================================================

class TestRuleMerge:

    def test_deny_wins_regardless_of_order(self):
        child = _rules(RuleType.POST, {"p1": "allow", "p2": "allow"}, membership_id="child")
        parent = _rules(RuleType.POST, {"p1": "deny", "p3": "allow"}, membership_id="parent")

        for merged in (child.merge(parent), parent.merge(child)):
            assert merged.is_allowed("p1") is False
            assert merged.is_allowed("p2") is True
            assert merged.is_allowed("p3") is True

    def test_url_prefix_deny_beats_narrower_allow(self):
        denied = _rules(RuleType.URL, {"site.com/a": "deny"}, membership_id="parent")
        allowed = _rules(RuleType.URL, {"site.com/a/b": "allow", "site.com/c": "allow"}, membership_id="child")

        for merged in (denied.merge(allowed), allowed.merge(denied)):
            assert merged.is_allowed("site.com/a/b") is False
            assert merged.is_allowed("https://site.com/a/b/c") is False
            assert merged.is_allowed("site.com/c/d") is True

    def test_url_deny_below_allow_still_applies(self):
        parent = _rules(RuleType.URL, {"site.com/a": "allow"}, membership_id="parent")
        child = _rules(RuleType.URL, {"site.com/a/private": "deny"}, membership_id="child")

        merged = child.merge(parent)

        assert merged.is_allowed("site.com/a/public") is True
        assert merged.is_allowed("site.com/a/private/x") is False

    def test_merge_keeps_owner(self):
        child = _rules(RuleType.POST, {}, membership_id="child")
        parent = _rules(RuleType.POST, {"p1": "allow"}, membership_id="parent")

        assert child.merge(parent).membership_id == "child"

    def test_deny_default_wins(self):
        child = _rules(RuleType.PAGE, {}, default="allow")
        parent = _rules(RuleType.PAGE, {}, default="deny", membership_id="parent")

        assert child.merge(parent).is_allowed("any-page") is False

    def test_merge_keeps_longest_drip(self):
        child = _rules(RuleType.POST, {"p1": "allow"}, drip_days={"p1": 3})
        parent = _rules(RuleType.POST, {"p1": "allow"}, drip_days={"p1": 10}, membership_id="parent")

        assert child.merge(parent).release_delay("p1") == 10

    def test_merge_rejects_different_types(self):
        with pytest.raises(ValueError):
            _rules(RuleType.POST, {}).merge(_rules(RuleType.PAGE, {}))

    def test_with_entry_returns_new_rule_set(self):
        rules = _rules(RuleType.POST, {"p1": "allow"})
        updated = rules.with_entry("p2", RuleAccess.ALLOW)

        assert rules.count_rules() == 1
        assert updated.list_content_ids() == ("p1", "p2")
        assert updated.has_rules() is True
