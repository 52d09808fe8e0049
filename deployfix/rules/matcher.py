from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from deployfix.models import BuildLogAnalysis, FixRule
from deployfix.store.rules import RuleStore

MATCH_MODES = ("regex", "substring")


def pattern_matches(pattern: str, analysis: BuildLogAnalysis, *, mode: str = "regex") -> bool:
    """
    Match a rule's errorPattern against the analysis message, excerpt and error type.

    - empty pattern: matches everything (pair it with an error_type filter)
    - regex: case-insensitive `re.search`; an invalid pattern never matches
    - substring: case-insensitive containment
    """
    if mode not in MATCH_MODES:
        raise ValueError(f"unknown rule match mode: {mode}")
    if not pattern:
        return True
    targets = (analysis.error_message or "", analysis.error_context or "", analysis.error_type.value)
    if mode == "substring":
        needle = pattern.lower()
        return any(needle in t.lower() for t in targets)
    try:
        rx = re.compile(pattern, re.IGNORECASE)
    except re.error:
        return False
    return any(rx.search(t) for t in targets)


def find_matching_rule(rules: Iterable[FixRule], analysis: BuildLogAnalysis, *, mode: str = "regex") -> Optional[FixRule]:
    """
    Best enabled rule for the analysis, or None.

    Winner: highest priority, then most recently created, then id (keeps the choice deterministic).
    """
    candidates = [
        r
        for r in rules
        if r.enabled
        and (r.error_type is None or r.error_type == analysis.error_type)
        and pattern_matches(r.error_pattern, analysis, mode=mode)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.priority, r.created_at.timestamp() if r.created_at else 0.0, r.id))


@dataclass(frozen=True)
class RuleMatcher:
    rules: RuleStore
    mode: str = "regex"

    def match(self, subscription_id: str, analysis: BuildLogAnalysis) -> Optional[FixRule]:
        return find_matching_rule(self.rules.list_enabled(subscription_id), analysis, mode=self.mode)
