"""
Tests for rule normalization, de-duplication and classification.
"""

import pytest

from dns_filter_manager.rules import (
    classify_rule,
    classify_rules,
    dedup_rules,
    generate_allow_rule,
    generate_block_rule,
    get_rule_counts,
    merge_rules,
    normalize_rule,
    parse_input_to_hostname,
    remove_rules,
)


class TestNormalize:

    @pytest.mark.parametrize("raw,expected", [
        ("  ||ads.example^  ", "||ads.example^"),
        ("@@||cdn.example^", "@@||cdn.example^"),
        ("! comment  ", "! comment"),
        ("!", "!"),
        ("x", ""),
        ("", ""),
        ("   ", ""),
        (None, ""),
        (42, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_rule(raw) == expected


class TestDedup:

    def test_first_occurrence_wins(self):
        rules = ["||b.example^", "||a.example^", " ||b.example^ ", "||a.example^"]
        assert dedup_rules(rules) == ["||b.example^", "||a.example^"]

    def test_comments_always_kept(self):
        rules = ["! section", "||a.example^", "! section", "||a.example^"]
        assert dedup_rules(rules) == ["! section", "||a.example^", "! section"]

    def test_drops_short_and_non_string(self):
        assert dedup_rules(["a", "", None, "||ok.example^", 5]) == ["||ok.example^"]

    def test_exception_rules_preserved(self):
        assert dedup_rules(["||ads.example^", "@@||cdn.example^"]) == [
            "||ads.example^",
            "@@||cdn.example^",
        ]

    def test_non_list(self):
        assert dedup_rules("||a.example^") == []
        assert dedup_rules(None) == []


class TestClassify:

    @pytest.mark.parametrize("rule,kind", [
        ("||ads.example^", "block"),
        ("0.0.0.0 ads.example", "block"),
        ("ads.example", "block"),
        ("@@||cdn.example^", "allow"),
        ("! disabled", "disabled"),
        ("# disabled", "disabled"),
        ("", "disabled"),
        (None, "unknown"),
    ])
    def test_classify_rule(self, rule, kind):
        assert classify_rule(rule) == kind

    def test_classify_rules_and_counts(self):
        rules = ["||a.example^", "@@||b.example^", "! note", "c.example"]

        classified = classify_rules(rules)
        assert classified["block"] == ["||a.example^", "c.example"]
        assert classified["allow"] == ["@@||b.example^"]
        assert classified["disabled"] == ["! note"]

        assert get_rule_counts(rules) == {"allow": 1, "block": 2, "disabled": 1, "total": 4}


class TestGenerate:

    @pytest.mark.parametrize("value,hostname", [
        ("https://ads.example.com/path?q=1", "ads.example.com"),
        ("ads.example.com", "ads.example.com"),
        ("ads.example.com/banner.js", "ads.example.com"),
        ("localhost", "localhost"),
        ("  tracker.example  ", "tracker.example"),
        ("", ""),
        (None, ""),
    ])
    def test_parse_hostname(self, value, hostname):
        assert parse_input_to_hostname(value) == hostname

    def test_generate_rules(self):
        assert generate_block_rule("https://ads.example.com/x") == "||ads.example.com^"
        assert generate_allow_rule("cdn.example.com") == "@@||cdn.example.com^"


class TestMergeRemove:

    def test_merge_appends(self):
        assert merge_rules(["a1"], ["b1", "a1"]) == ["a1", "b1", "a1"]

    def test_remove_all_occurrences(self):
        assert remove_rules(["a1", "b1", "a1", "c1"], ["a1"]) == ["b1", "c1"]
