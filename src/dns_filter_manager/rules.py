"""
Filtering rule helpers.

Rules use AdGuard syntax: ``||example.org^`` blocks, ``@@||example.org^``
allows, lines starting with ``!`` or ``#`` are comments.
"""

from typing import Any, Dict, Iterable, List
from urllib.parse import urlsplit


def normalize_rule(rule: Any) -> str:
    """Trim a rule; return '' for anything that is not a usable rule.

    Comments and exception (``@@``) rules are preserved verbatim after
    trimming. Other rules shorter than two characters are dropped.
    """
    if not isinstance(rule, str):
        return ""

    normalized = rule.strip()

    if not normalized or normalized.startswith("!"):
        return normalized

    if normalized.startswith("@@"):
        return normalized

    if len(normalized) < 2:
        return ""

    return normalized


def dedup_rules(rules: Any) -> List[str]:
    """Normalize and de-duplicate rules, keeping first occurrences in order.

    Comment lines are always kept, even when repeated.
    """
    if not isinstance(rules, (list, tuple)):
        return []

    seen = set()
    deduped = []

    for rule in rules:
        normalized = normalize_rule(rule)
        if not normalized:
            continue

        if normalized.startswith("!"):
            deduped.append(normalized)
            continue

        if normalized not in seen:
            seen.add(normalized)
            deduped.append(normalized)

    return deduped


def classify_rule(rule: Any) -> str:
    """Return 'disabled', 'allow', 'block' or 'unknown'."""
    if not isinstance(rule, str):
        return "unknown"

    trimmed = rule.strip()

    if not trimmed or trimmed.startswith("!") or trimmed.startswith("#"):
        return "disabled"
    if trimmed.startswith("@@"):
        return "allow"
    # Blocking syntax, hosts-style and bare domains all block
    return "block"


def classify_rules(rules: Any) -> Dict[str, List[str]]:
    classified: Dict[str, List[str]] = {"allow": [], "block": [], "disabled": []}
    if not isinstance(rules, (list, tuple)):
        return classified

    for rule in rules:
        kind = classify_rule(rule)
        if kind == "allow":
            classified["allow"].append(rule)
        elif kind == "disabled":
            classified["disabled"].append(rule)
        else:
            classified["block"].append(rule)

    return classified


def get_rule_counts(rules: Any) -> Dict[str, int]:
    classified = classify_rules(rules)
    return {
        "allow": len(classified["allow"]),
        "block": len(classified["block"]),
        "disabled": len(classified["disabled"]),
        "total": len(rules) if isinstance(rules, (list, tuple)) else 0,
    }


def parse_input_to_hostname(value: Any) -> str:
    """Extract a hostname from a URL, FQDN or bare name."""
    if not isinstance(value, str):
        return ""

    trimmed = value.strip()
    if not trimmed:
        return ""

    try:
        if "://" in trimmed:
            return urlsplit(trimmed).hostname or trimmed
        if "." in trimmed:
            return urlsplit("http://" + trimmed).hostname or trimmed
    except ValueError:
        pass

    return trimmed


def generate_block_rule(domain: str) -> str:
    return f"||{parse_input_to_hostname(domain)}^"


def generate_allow_rule(domain: str) -> str:
    return f"@@||{parse_input_to_hostname(domain)}^"


def merge_rules(current: Iterable[str], new_rules: Iterable[str]) -> List[str]:
    """Append new rules to the current list (no de-duplication)."""
    return [*current, *new_rules]


def remove_rules(current: Iterable[str], to_remove: Iterable[str]) -> List[str]:
    """Drop every exact occurrence of the given rules."""
    removal = set(to_remove)
    return [rule for rule in current if rule not in removal]
