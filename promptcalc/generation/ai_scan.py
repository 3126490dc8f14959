"""AI code scan: a second classifier pass over the final artifact, and its triage.

The model lists issues as free text or structured objects. Its own ``isSafe``
flag is never trusted alone; the verdict comes from ``triage_issues()``:

  1. normalise each issue into a ``ScanIssueSummary`` (field aliases, 400-char
     field cap, JSON-dump fallback for unrecognised shapes)
  2. never-fail exceptions → ``ignored``:
       - the required safety banner echoed back as evidence
       - DOM wiring APIs (addEventListener/getElementById/querySelector)
         labelled dynamic_code without real dynamic-execution evidence
  3. allow-listed category (declared or inferred) → ``allowed``
  4. ``disallowed_category(category, text)`` predicate: a declared disallowed
     category counts only if the text matches that category's evidence
     pattern; otherwise the text is re-detected against every disallowed
     pattern. A hit → ``disallowed``.
  5. anything else → ``uncategorized`` (logged, never blocks)

If the scan call itself fails, ``fail_closed`` decides between refusing and
proceeding. That choice is an operator setting (AI_SCAN_FAIL_CLOSED).

IMPORT RULES: ``import re2`` only; patterns run over model-written text.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional

import re2

from promptcalc.constants import (
    CODE_SCAN_MAX_TOKENS,
    MAX_ISSUE_FIELD_LENGTH,
    MAX_ISSUES_JSON_LENGTH,
)
from promptcalc.gateway.client import CallOptions, CompletionGateway, CompletionRequest, OutputFormat
from promptcalc.gateway.errors import GatewayError
from promptcalc.models.refusal import RefusalCode, RefusalReason, refusal
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)

AI_SCAN_SAFE_ALTERNATIVE = "Use a smaller, simpler offline calculator prompt."

# ─── Categories ───────────────────────────────────────────────────────────────

DISALLOWED_CATEGORIES: frozenset[str] = frozenset(
    {
        "networking",
        "external_resource",
        "dynamic_code",
        "navigation",
        "credential_capture",
        "data_exfiltration",
    }
)

ALLOWED_CATEGORIES: frozenset[str] = frozenset(
    {"inline_script", "inline_event_handler", "unsafe_inline_csp", "postmessage"}
)

# Evidence patterns, matched against lower-cased issue text. Order is the
# inference order used when the model supplied no category.
DISALLOWED_PATTERNS: tuple[tuple[str, Any], ...] = (
    ("networking", re2.compile(
        r"(fetch\s*\(|xmlhttprequest|websocket|sendbeacon|eventsource|rtcpeerconnection)"
    )),
    ("external_resource", re2.compile(
        r"""(<script\s+src|<img\s+src|<link\s+href|@import|url\(|\bsrc\s*=\s*["']?https?:|\bhref\s*=\s*["']?https?:)"""
    )),
    ("dynamic_code", re2.compile(
        r"""(\beval\s*\(|\bnew\s+function\b|\bfunction\s*\(\s*["'`]|\bset(timeout|interval)\s*\(\s*["'`]|createelement\s*\(\s*["']script)"""
    )),
    ("navigation", re2.compile(
        r"""(window\.open|top\.location|parent\.location|target\s*=\s*["']?_top|location\.(href|assign|replace))"""
    )),
    ("credential_capture", re2.compile(
        r"""(type\s*=\s*["']?password|password\s*(field|input|box)|<input[^>]*passw|credential|\blog\s*-?in\b|sign[-\s]?in)"""
    )),
    ("data_exfiltration", re2.compile(r"(exfil|base64|\bleak|transmit|btoa\s*\()")),
)

_DISALLOWED_PATTERN_MAP = dict(DISALLOWED_PATTERNS)

ALLOWED_PATTERNS: tuple[tuple[str, Any], ...] = (
    ("postmessage", re2.compile(r"postmessage")),
    ("inline_script", re2.compile(r"(inline script|inline javascript)")),
    ("inline_event_handler", re2.compile(r"inline event handler")),
    ("unsafe_inline_csp", re2.compile(r"unsafe-inline")),
)

_DOM_WIRING_PATTERN = re2.compile(r"(addeventlistener|getelementbyid|queryselector)")
_CATEGORY_SEPARATORS = re2.compile(r"[\s-]+")
_WHITESPACE = re2.compile(r"\s+")


def normalize_category(value: str) -> str:
    """Lowercase; runs of whitespace or hyphens become one underscore."""
    return _CATEGORY_SEPARATORS.sub("_", value.strip().lower())


def detect_category(text: str) -> Optional[str]:
    """Infer a category from free text: disallowed patterns first, then allow-listed."""
    lowered = text.lower()
    for category, pattern in DISALLOWED_PATTERNS:
        if pattern.search(lowered):
            return category
    for category, pattern in ALLOWED_PATTERNS:
        if pattern.search(lowered):
            return category
    return None


def disallowed_category(category: Optional[str], text: str) -> Optional[str]:
    """Return the disallowed category the evidence supports, or None.

    The declared category only counts when ``text`` matches its own evidence
    pattern. Otherwise ``text`` is re-detected against every disallowed
    pattern, independent of the claim.
    """
    lowered = text.lower()
    if category in _DISALLOWED_PATTERN_MAP and _DISALLOWED_PATTERN_MAP[category].search(lowered):
        return category
    for candidate, pattern in DISALLOWED_PATTERNS:
        if pattern.search(lowered):
            return candidate
    return None


def is_disallowed(category: Optional[str], text: str) -> bool:
    return disallowed_category(category, text) is not None


# ─── Summaries ────────────────────────────────────────────────────────────────


def _truncate(value: str, limit: int = MAX_ISSUE_FIELD_LENGTH) -> str:
    return value if len(value) <= limit else f"{value[:limit]}…"


def _coerce_text(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return _truncate(stripped) if stripped else None


def _first(record: dict, *keys: str) -> Any:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


@dataclass(frozen=True)
class ScanIssueSummary:
    category: Optional[str] = None
    code: Optional[str] = None
    severity: Optional[str] = None
    message: Optional[str] = None
    summary: Optional[str] = None
    evidence: Optional[str] = None
    allowed: Optional[bool] = None

    @property
    def text(self) -> str:
        """All descriptive fields joined, for pattern detection."""
        parts = (self.message, self.summary, self.evidence)
        return " ".join(part for part in parts if part)

    def to_dict(self) -> dict[str, Any]:
        fields = {
            "category": self.category,
            "code": self.code,
            "severity": self.severity,
            "message": self.message,
            "summary": self.summary,
            "evidence": self.evidence,
            "allowed": self.allowed,
        }
        return {key: value for key, value in fields.items() if value is not None}


def summarize_issue(issue: Any) -> ScanIssueSummary:
    if isinstance(issue, str):
        return ScanIssueSummary(message=_truncate(issue))
    if isinstance(issue, dict):
        allowed = issue.get("allowed")
        summary = ScanIssueSummary(
            category=_coerce_text(_first(issue, "category", "type", "kind")),
            code=_coerce_text(_first(issue, "code", "id")),
            severity=_coerce_text(_first(issue, "severity", "level")),
            message=_coerce_text(_first(issue, "message", "reason")),
            summary=_coerce_text(_first(issue, "summary", "description")),
            evidence=_coerce_text(_first(issue, "evidence", "snippet")),
            allowed=allowed if isinstance(allowed, bool) else None,
        )
        if summary.to_dict():
            return summary
        try:
            return ScanIssueSummary(message=_truncate(json.dumps(issue, default=str)))
        except (TypeError, ValueError):
            return ScanIssueSummary(message="Unrecognized AI scan issue.")
    if issue is None:
        return ScanIssueSummary(message="Unknown AI scan issue.")
    return ScanIssueSummary(message=_truncate(str(issue)))


def format_issue_summary(summary: ScanIssueSummary) -> str:
    """One-line ``key=value | key=value`` rendering for logs and refusal messages."""
    parts: list[str] = []
    if summary.category:
        parts.append(f"category={summary.category}")
    if summary.code:
        parts.append(f"code={summary.code}")
    if summary.severity:
        parts.append(f"severity={summary.severity}")
    message = summary.message or summary.summary
    if message:
        parts.append(f"message={message}")
    if summary.message and summary.summary and summary.summary != summary.message:
        parts.append(f"summary={summary.summary}")
    if summary.evidence:
        parts.append(f"evidence={summary.evidence}")
    if summary.allowed is not None:
        parts.append(f"allowed={'true' if summary.allowed else 'false'}")
    return " | ".join(parts) if parts else "Unknown AI scan issue."


def stringify_issue_summaries(
    summaries: list[ScanIssueSummary],
    max_length: int = MAX_ISSUES_JSON_LENGTH,
) -> str:
    return _truncate(json.dumps([s.to_dict() for s in summaries], ensure_ascii=False), max_length)


# ─── Triage ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TriagedIssue:
    summary: ScanIssueSummary
    category: Optional[str]
    reason: str


@dataclass(frozen=True)
class TriageResult:
    disallowed: tuple[TriagedIssue, ...] = ()
    allowed: tuple[TriagedIssue, ...] = ()
    ignored: tuple[TriagedIssue, ...] = ()
    uncategorized: tuple[TriagedIssue, ...] = ()

    @property
    def blocked(self) -> bool:
        return bool(self.disallowed)


def _collapse(text: str) -> str:
    return _WHITESPACE.sub(" ", text.strip().strip("\"'").lower()).strip()


def is_banner_echo(evidence: Optional[str], banner_text: str, text: str = "") -> bool:
    """True when the evidence quotes the whole banner and nothing disallowed is left.

    ``text`` is the full issue text (message, summary, evidence). With the
    banner removed, neither it nor the evidence may match a disallowed pattern.
    """
    if not evidence or not banner_text:
        return False
    collapsed = _collapse(evidence)
    banner = _collapse(banner_text)
    if not banner or banner not in collapsed:
        return False
    leftover = f"{collapsed} {_collapse(text)}".replace(banner, " ")
    return disallowed_category(None, leftover) is None


def is_dom_wiring_mislabel(category: Optional[str], text: str) -> bool:
    lowered = text.lower()
    if category != "dynamic_code" or not _DOM_WIRING_PATTERN.search(lowered):
        return False
    return not _DISALLOWED_PATTERN_MAP["dynamic_code"].search(lowered)


def triage_issue(issue: Any, banner_text: str) -> tuple[str, TriagedIssue]:
    """Place one raw issue into a bucket. Returns ``(bucket, triaged)``."""
    summary = summarize_issue(issue)
    declared = normalize_category(summary.category) if summary.category else None
    text = summary.text
    category = declared or detect_category(text)

    if is_banner_echo(summary.evidence or summary.message, banner_text, text):
        return "ignored", TriagedIssue(summary, category, "banner_echo")
    if is_dom_wiring_mislabel(category, text):
        return "ignored", TriagedIssue(summary, category, "dom_wiring")
    if category in ALLOWED_CATEGORIES:
        return "allowed", TriagedIssue(summary, category, "allow_listed")

    confirmed = disallowed_category(category, text)
    if confirmed is not None:
        return "disallowed", TriagedIssue(summary, confirmed, "evidence_match")
    if summary.allowed is True:
        return "allowed", TriagedIssue(summary, category, "model_allowed")
    return "uncategorized", TriagedIssue(summary, category, "no_evidence_match")


def triage_issues(issues: list[Any], banner_text: str) -> TriageResult:
    buckets: dict[str, list[TriagedIssue]] = {
        "disallowed": [],
        "allowed": [],
        "ignored": [],
        "uncategorized": [],
    }
    for issue in issues:
        bucket, triaged = triage_issue(issue, banner_text)
        buckets[bucket].append(triaged)
    return TriageResult(
        disallowed=tuple(buckets["disallowed"]),
        allowed=tuple(buckets["allowed"]),
        ignored=tuple(buckets["ignored"]),
        uncategorized=tuple(buckets["uncategorized"]),
    )


# ─── Gateway call ─────────────────────────────────────────────────────────────

_CATEGORY_ENUM = sorted(DISALLOWED_CATEGORIES | ALLOWED_CATEGORIES | {"other"})

CODE_SCAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "isSafe": {"type": "boolean"},
        "issues": {
            "type": "array",
            "items": {
                "anyOf": [
                    {"type": "string"},
                    {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "category": {"type": "string", "enum": _CATEGORY_ENUM},
                            "message": {"type": "string"},
                            "evidence": {"type": "string"},
                            "severity": {"type": ["string", "null"]},
                            "code": {"type": ["string", "null"]},
                        },
                        "required": ["category", "message", "evidence", "severity", "code"],
                    },
                ]
            },
        },
    },
    "required": ["isSafe", "issues"],
}

CODE_SCAN_SYSTEM = "\n".join(
    [
        "Review the HTML and decide if it is safe for an offline, sandboxed calculator.",
        "Flag any signs of networking, external dependencies, credential capture, eval/dynamic code,",
        "sandbox escapes, navigation/popup attempts, or data exfiltration.",
        "The following are REQUIRED by the platform and are not issues: inline scripts,",
        "inline event handlers, the 'unsafe-inline' CSP directive, window.parent.postMessage",
        "ready/pong messages, and the banner text telling users not to enter passwords.",
        "For each issue give a category from the enum and quote the offending code as evidence.",
        "Return ONLY valid JSON. No markdown. No code fences. No commentary.",
    ]
)


def _is_code_scan_payload(value: Any) -> bool:
    return isinstance(value, dict)


@dataclass(frozen=True)
class AiScanOutcome:
    """Result of the AI code scan stage.

    ``refusal`` is set when the stage must stop the pipeline (disallowed finding,
    or call failure with fail-closed). ``scan_failed`` marks a call failure.
    """

    triage: TriageResult = field(default_factory=TriageResult)
    refusal: Optional[RefusalReason] = None
    model_is_safe: Optional[bool] = None
    scan_failed: bool = False


def _extract_issues(parsed: dict) -> list[Any]:
    for key in ("issues", "findings"):
        if isinstance(parsed.get(key), list):
            return parsed[key]
    return []


async def run_ai_code_scan(
    gateway: CompletionGateway,
    html: str,
    banner_text: str,
    fail_closed: bool,
) -> AiScanOutcome:
    """Ask the model for issues in ``html`` and triage them. Never raises GatewayError."""
    request = CompletionRequest.build(
        system=CODE_SCAN_SYSTEM,
        user=f"HTML:\n{html}",
        output_format=OutputFormat.json_schema("ArtifactCodeScan", CODE_SCAN_SCHEMA),
        max_output_tokens=CODE_SCAN_MAX_TOKENS,
    )
    try:
        result = await gateway.call(
            request,
            CallOptions(validator=_is_code_scan_payload, op="openai.artifact.scan"),
        )
    except GatewayError as exc:
        logger.warning(
            "artifact.ai_scan.error",
            error_type=type(exc).__name__,
            message=str(exc)[:200],
            fail_closed=fail_closed,
        )
        if fail_closed:
            return AiScanOutcome(
                refusal=refusal(
                    RefusalCode.AI_SCAN_FAILED,
                    "AI code scan failed.",
                    AI_SCAN_SAFE_ALTERNATIVE,
                ),
                scan_failed=True,
            )
        return AiScanOutcome(scan_failed=True)

    parsed = result.parsed
    is_safe = parsed.get("isSafe", parsed.get("safe"))
    model_is_safe = is_safe if isinstance(is_safe, bool) else None
    triage = triage_issues(_extract_issues(parsed), banner_text)

    if triage.allowed or triage.ignored:
        logger.info(
            "artifact.ai_scan.tolerated",
            allowed=[format_issue_summary(t.summary) for t in triage.allowed],
            ignored=[format_issue_summary(t.summary) for t in triage.ignored],
        )
    if triage.uncategorized:
        log_method = logger.warning if model_is_safe is False else logger.info
        log_method(
            "artifact.ai_scan.uncategorized",
            anomaly=model_is_safe is False,
            issues=stringify_issue_summaries([t.summary for t in triage.uncategorized]),
        )
    elif model_is_safe is False and not triage.disallowed:
        logger.warning("artifact.ai_scan.anomaly", issue_count=0)

    if triage.disallowed:
        summaries = [t.summary for t in triage.disallowed]
        message = "; ".join(format_issue_summary(s) for s in summaries)
        logger.warning(
            "artifact.ai_scan.failed",
            categories=[t.category for t in triage.disallowed],
            findings=stringify_issue_summaries(summaries),
        )
        return AiScanOutcome(
            triage=triage,
            refusal=refusal(
                RefusalCode.AI_SCAN_FAILED,
                _truncate(message, MAX_ISSUES_JSON_LENGTH) or "AI code scan flagged the artifact.",
                AI_SCAN_SAFE_ALTERNATIVE,
                details=tuple(s.to_dict() for s in summaries),
            ),
            model_is_safe=model_is_safe,
        )

    logger.info(
        "artifact.ai_scan.passed",
        model_is_safe=model_is_safe,
        allowed=len(triage.allowed),
        ignored=len(triage.ignored),
        uncategorized=len(triage.uncategorized),
    )
    return AiScanOutcome(triage=triage, model_is_safe=model_is_safe)
