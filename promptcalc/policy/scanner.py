"""Deterministic artifact scanner.

``scan_artifact(html, policy)`` is a pure function (no I/O, never raises on
string input) that checks, in order:

  1. required markers: ``content-security-policy`` plus every required CSP
     directive, then the literal safety banner. Case-insensitive substring.
     Any missing marker → ``MISSING_CSP``.
  2. banned pattern rules, in policy order. Case-insensitive unless the rule
     marks the pattern case-sensitive.
  3. banned tag rules (``<tag``), in policy order.

First match wins. The result carries the rule id as ``code``, the matched
pattern or tag as ``rule_id``, the character offset, and a context snippet
bounded to ``SNIPPET_RADIUS`` characters on each side of the match.

Case-insensitive rules are escaped literals compiled with ``re2`` and
``(?i)``; ``match_index`` is always an offset into ``html`` as given, even
where ``str.lower()`` would change the length (``İ``).
"""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Optional

import re2

from promptcalc.constants import SNIPPET_RADIUS
from promptcalc.policy.store import BannedPatternRule, Policy

MISSING_CSP = "MISSING_CSP"

CSP_MARKER = "content-security-policy"


@dataclass(frozen=True)
class ScanResult:
    """Outcome of one deterministic scan.

    Fields:
        ok:              True when no rule fired.
        code:            Refusal code (rule id or MISSING_CSP) when not ok.
        message:         Human-readable description when not ok.
        rule_id:         The literal pattern or tag that matched.
        match_index:     Character offset of the match in the original HTML.
        context_snippet: Up to SNIPPET_RADIUS chars either side of the match.
    """

    ok: bool
    code: Optional[str] = None
    message: Optional[str] = None
    rule_id: Optional[str] = None
    match_index: Optional[int] = None
    context_snippet: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"ok": True}
        result: dict[str, Any] = {"ok": False, "code": self.code, "message": self.message}
        if self.rule_id is not None:
            result["ruleId"] = self.rule_id
        if self.match_index is not None:
            result["matchIndex"] = self.match_index
        if self.context_snippet is not None:
            result["contextSnippet"] = self.context_snippet
        return result


SCAN_OK = ScanResult(ok=True)


def make_snippet(text: str, index: int, match_length: int, radius: int = SNIPPET_RADIUS) -> str:
    """Return ``text`` around ``[index, index + match_length)`` padded by ``radius``."""
    start = max(0, index - radius)
    end = min(len(text), index + match_length + radius)
    return text[start:end]


@functools.lru_cache(maxsize=256)
def _literal_pattern(literal: str) -> Any:
    return re2.compile("(?i)" + re2.escape(literal))


def find_literal(html: str, literal: str, case_sensitive: bool = False) -> tuple[int, int]:
    """Return ``(index, length)`` of the first occurrence of ``literal`` in ``html``.

    ``(-1, 0)`` when absent. The length is the matched span in ``html``.
    """
    if case_sensitive:
        index = html.find(literal)
        return (index, len(literal)) if index >= 0 else (-1, 0)
    match = _literal_pattern(literal).search(html)
    if match is None:
        return -1, 0
    return match.start(), match.end() - match.start()


def _missing_markers(lowered: str, policy: Policy) -> Optional[ScanResult]:
    markers = (CSP_MARKER, *policy.required_csp_directives)
    if not all(marker.lower() in lowered for marker in markers):
        return ScanResult(
            ok=False,
            code=MISSING_CSP,
            message="Artifact is missing the required CSP directives.",
        )
    if policy.required_banner_text.lower() not in lowered:
        return ScanResult(
            ok=False,
            code=MISSING_CSP,
            message="Artifact is missing the required safety banner.",
        )
    return None


def _pattern_hit(html: str, rule: BannedPatternRule) -> Optional[ScanResult]:
    for pattern in rule.patterns:
        index, length = find_literal(html, pattern, rule.is_case_sensitive(pattern))
        if index >= 0:
            return ScanResult(
                ok=False,
                code=rule.id,
                rule_id=pattern,
                message=f"Artifact contains banned pattern: {pattern}",
                match_index=index,
                context_snippet=make_snippet(html, index, length),
            )
    return None


def scan_artifact(html: str, policy: Policy) -> ScanResult:
    """Scan final artifact HTML against ``policy``. See module docstring."""
    lowered = html.lower()

    missing = _missing_markers(lowered, policy)
    if missing is not None:
        return missing

    for rule in policy.banned_pattern_rules:
        hit = _pattern_hit(html, rule)
        if hit is not None:
            return hit

    for tag_rule in policy.banned_tag_rules:
        for tag in tag_rule.tags:
            needle = f"<{tag}"
            index, length = find_literal(html, needle)
            if index >= 0:
                return ScanResult(
                    ok=False,
                    code=tag_rule.id,
                    rule_id=tag,
                    message=f"Artifact contains banned tag: {tag}",
                    match_index=index,
                    context_snippet=make_snippet(html, index, length),
                )

    return SCAN_OK
