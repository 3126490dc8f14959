"""Unit tests for AI code scan normalisation and triage (promptcalc/generation/ai_scan.py).

Triage buckets:
  ignored       banner echo, DOM wiring mislabelled as dynamic_code
  allowed       allow-listed categories, or model allowed=true with no evidence
  disallowed    evidence matches a disallowed category pattern
  uncategorized everything else (never blocks)
"""

from __future__ import annotations

import json

import pytest

from promptcalc.generation.ai_scan import (
    CODE_SCAN_SCHEMA,
    ScanIssueSummary,
    detect_category,
    disallowed_category,
    format_issue_summary,
    is_banner_echo,
    is_disallowed,
    normalize_category,
    run_ai_code_scan,
    stringify_issue_summaries,
    summarize_issue,
    triage_issue,
    triage_issues,
)
from promptcalc.policy.store import REQUIRED_BANNER_TEXT

BANNER = REQUIRED_BANNER_TEXT


# ─── Summaries ────────────────────────────────────────────────────────────────


class TestSummarizeIssue:
    def test_string_issue(self) -> None:
        assert summarize_issue("Uses fetch") == ScanIssueSummary(message="Uses fetch")

    def test_field_aliases(self) -> None:
        summary = summarize_issue(
            {
                "type": "networking",
                "id": "N1",
                "level": "high",
                "reason": "Calls an API",
                "description": "Remote call",
                "snippet": "fetch('/x')",
                "allowed": False,
            }
        )
        assert summary == ScanIssueSummary(
            category="networking",
            code="N1",
            severity="high",
            message="Calls an API",
            summary="Remote call",
            evidence="fetch('/x')",
            allowed=False,
        )

    def test_primary_keys_win_over_aliases(self) -> None:
        summary = summarize_issue({"category": "navigation", "type": "networking"})
        assert summary.category == "navigation"

    def test_blank_fields_and_non_bool_allowed_dropped(self) -> None:
        summary = summarize_issue({"message": "  real  ", "evidence": "   ", "allowed": "yes"})
        assert summary == ScanIssueSummary(message="real")

    def test_unrecognised_object_is_dumped(self) -> None:
        assert summarize_issue({"foo": 1}).message == json.dumps({"foo": 1})

    def test_none_and_scalars(self) -> None:
        assert summarize_issue(None).message == "Unknown AI scan issue."
        assert summarize_issue(42).message == "42"

    def test_fields_truncated_to_400(self) -> None:
        summary = summarize_issue({"message": "m" * 500})
        assert summary.message == "m" * 400 + "…"

    def test_to_dict_omits_missing_fields(self) -> None:
        assert ScanIssueSummary(category="x", allowed=True).to_dict() == {"category": "x", "allowed": True}


class TestFormatting:
    def test_full_summary(self) -> None:
        summary = ScanIssueSummary(
            category="networking",
            code="N1",
            severity="high",
            message="Calls API",
            summary="Remote",
            evidence="fetch(",
            allowed=False,
        )
        assert format_issue_summary(summary) == (
            "category=networking | code=N1 | severity=high | message=Calls API"
            " | summary=Remote | evidence=fetch( | allowed=false"
        )

    def test_summary_used_as_message_fallback(self) -> None:
        assert format_issue_summary(ScanIssueSummary(summary="Only summary")) == "message=Only summary"

    def test_identical_summary_not_repeated(self) -> None:
        summary = ScanIssueSummary(message="same", summary="same")
        assert format_issue_summary(summary) == "message=same"

    def test_empty_summary(self) -> None:
        assert format_issue_summary(ScanIssueSummary()) == "Unknown AI scan issue."

    def test_stringify_is_bounded(self) -> None:
        summaries = [ScanIssueSummary(message="x" * 400) for _ in range(20)]
        text = stringify_issue_summaries(summaries)
        assert len(text) <= 4096 + 1
        assert text.startswith('[{"message": "xxx')

    def test_stringify_small_list_is_valid_json(self) -> None:
        text = stringify_issue_summaries([ScanIssueSummary(category="a")])
        assert json.loads(text) == [{"category": "a"}]


# ─── Categories ───────────────────────────────────────────────────────────────


class TestCategories:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("Credential Capture", "credential_capture"),
            ("data-exfiltration", "data_exfiltration"),
            ("  NETWORKING ", "networking"),
            ("unsafe - inline  csp", "unsafe_inline_csp"),
        ],
    )
    def test_normalize(self, raw: str, expected: str) -> None:
        assert normalize_category(raw) == expected

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("Calls fetch( against an API", "networking"),
            ("new WebSocket connection", "networking"),
            ('Loads <script src="cdn">', "external_resource"),
            ("Uses eval(input)", "dynamic_code"),
            ("Opens window.open popup", "navigation"),
            ('Has <input type="password">', "credential_capture"),
            ("Encodes with btoa( and leaks", "data_exfiltration"),
            ("Uses postMessage to the parent", "postmessage"),
            ("Contains inline script blocks", "inline_script"),
            ("An inline event handler on the button", "inline_event_handler"),
            ("CSP allows unsafe-inline", "unsafe_inline_csp"),
            ("Adds two numbers", None),
        ],
    )
    def test_detect(self, text: str, expected: str) -> None:
        assert detect_category(text) == expected

    def test_declared_category_needs_matching_evidence(self) -> None:
        assert disallowed_category("networking", "fetch('/x')") == "networking"
        assert disallowed_category("credential_capture", "navigator.sendBeacon('/x')") == "networking"
        assert disallowed_category("networking", "const total = a + b;") is None
        assert not is_disallowed("dynamic_code", "function add(a, b) { return a + b; }")

    def test_string_function_constructor_is_dynamic(self) -> None:
        assert disallowed_category(None, "Function('return 1')") == "dynamic_code"
        assert disallowed_category(None, "new Function(body)") == "dynamic_code"
        assert disallowed_category(None, "setTimeout('tick()', 10)") == "dynamic_code"


# ─── Triage ───────────────────────────────────────────────────────────────────


class TestNeverFail:
    def test_exact_banner_evidence_is_ignored(self) -> None:
        bucket, triaged = triage_issue(
            {"category": "credential_capture", "message": "Mentions passwords", "evidence": BANNER},
            BANNER,
        )
        assert bucket == "ignored"
        assert triaged.reason == "banner_echo"

    def test_partial_banner_evidence_is_not_an_echo(self) -> None:
        assert not is_banner_echo("Do not enter passwords.", BANNER)
        bucket, triaged = triage_issue(
            {"category": "credential_capture", "message": "Password text", "evidence": "Do not enter passwords."},
            BANNER,
        )
        assert bucket == "uncategorized"
        assert triaged.reason == "no_evidence_match"

    def test_banner_word_evidence_does_not_hide_disallowed_message(self) -> None:
        bucket, triaged = triage_issue(
            {
                "category": "data_exfiltration",
                "message": "Sends values via navigator['send'+'Beacon'] after btoa(values)",
                "evidence": "calculator",
                "severity": "high",
                "code": None,
            },
            BANNER,
        )
        assert bucket == "disallowed"
        assert triaged.category == "data_exfiltration"
        assert triaged.reason == "evidence_match"

    def test_full_banner_evidence_with_disallowed_message_is_not_ignored(self) -> None:
        assert not is_banner_echo(BANNER, BANNER, f"Encodes input with btoa( then shows {BANNER}")
        bucket, _ = triage_issue(
            {"category": "data_exfiltration", "message": "Encodes input with btoa(", "evidence": BANNER},
            BANNER,
        )
        assert bucket == "disallowed"

    def test_banner_wrapped_in_markup_is_ignored(self) -> None:
        assert is_banner_echo(f"<p class='banner'>{BANNER}</p>", BANNER)

    def test_banner_plus_password_input_is_not_ignored(self) -> None:
        evidence = f'<p>{BANNER}</p><input type="password">'
        assert not is_banner_echo(evidence, BANNER)
        bucket, triaged = triage_issue(
            {"category": "credential_capture", "message": "Password field", "evidence": evidence},
            BANNER,
        )
        assert bucket == "disallowed"
        assert triaged.category == "credential_capture"

    def test_dom_wiring_labelled_dynamic_code_is_ignored(self) -> None:
        bucket, triaged = triage_issue(
            {
                "category": "dynamic_code",
                "message": "Uses addEventListener to wire buttons",
                "evidence": "document.getElementById('go').addEventListener('click', calc)",
            },
            BANNER,
        )
        assert bucket == "ignored"
        assert triaged.reason == "dom_wiring"

    def test_dom_wiring_with_real_eval_is_disallowed(self) -> None:
        bucket, _ = triage_issue(
            {
                "category": "dynamic_code",
                "message": "Handler evaluates input",
                "evidence": "btn.addEventListener('click', () => eval(input.value))",
            },
            BANNER,
        )
        assert bucket == "disallowed"

    @pytest.mark.parametrize(
        "category",
        ["inline_script", "Inline Event Handler", "unsafe-inline-csp", "postmessage"],
    )
    def test_allow_listed_categories(self, category: str) -> None:
        bucket, _ = triage_issue({"category": category, "message": "Required by platform"}, BANNER)
        assert bucket == "allowed"

    def test_inferred_allow_listed_category(self) -> None:
        bucket, triaged = triage_issue("The page uses postMessage to notify the parent frame", BANNER)
        assert bucket == "allowed"
        assert triaged.category == "postmessage"


class TestDisallowedPredicate:
    def test_confirmed_disallowed(self) -> None:
        bucket, triaged = triage_issue(
            {"category": "networking", "message": "Calls remote API", "evidence": "fetch('https://api.example.com')"},
            BANNER,
        )
        assert bucket == "disallowed"
        assert triaged.category == "networking"

    def test_mislabelled_category_is_redetected(self) -> None:
        bucket, triaged = triage_issue(
            {"category": "credential_capture", "message": "Sends data", "evidence": "navigator.sendBeacon('/x', d)"},
            BANNER,
        )
        assert bucket == "disallowed"
        assert triaged.category == "networking"

    def test_claim_without_evidence_is_uncategorized(self) -> None:
        bucket, _ = triage_issue(
            {"category": "networking", "message": "Might be unsafe", "evidence": "const total = a + b;"},
            BANNER,
        )
        assert bucket == "uncategorized"

    def test_model_allowed_flag_never_clears_evidence(self) -> None:
        bucket, _ = triage_issue(
            {"category": "networking", "evidence": "fetch('/x')", "allowed": True},
            BANNER,
        )
        assert bucket == "disallowed"

    def test_model_allowed_flag_without_evidence(self) -> None:
        bucket, triaged = triage_issue(
            {"category": "other", "message": "Minor styling concern", "allowed": True},
            BANNER,
        )
        assert bucket == "allowed"
        assert triaged.reason == "model_allowed"

    def test_unknown_category_is_uncategorized(self) -> None:
        bucket, _ = triage_issue({"category": "performance", "message": "Heavy loop"}, BANNER)
        assert bucket == "uncategorized"

    def test_triage_issues_buckets(self) -> None:
        result = triage_issues(
            [
                {"category": "networking", "evidence": "fetch('/x')"},
                {"category": "inline_script", "message": "inline"},
                {"category": "credential_capture", "evidence": BANNER},
                {"category": "other", "message": "Hmm"},
            ],
            BANNER,
        )
        assert len(result.disallowed) == 1
        assert len(result.allowed) == 1
        assert len(result.ignored) == 1
        assert len(result.uncategorized) == 1
        assert result.blocked


# ─── Gateway call ─────────────────────────────────────────────────────────────


class TestRunAiCodeScan:
    def test_schema_category_enum_is_closed(self) -> None:
        item = CODE_SCAN_SCHEMA["properties"]["issues"]["items"]["anyOf"][1]
        assert "networking" in item["properties"]["category"]["enum"]
        assert "other" in item["properties"]["category"]["enum"]
        assert item["additionalProperties"] is False

    @pytest.mark.asyncio
    async def test_clean_scan(self, make_gateway) -> None:
        gateway, provider = make_gateway([{"isSafe": True, "issues": []}])
        outcome = await run_ai_code_scan(gateway, "<html></html>", BANNER, fail_closed=False)
        assert outcome.refusal is None
        assert outcome.model_is_safe is True
        assert provider.user_text(0) == "HTML:\n<html></html>"
        assert provider.requests[0]["max_output_tokens"] == 600
        assert provider.requests[0]["text"]["format"]["name"] == "ArtifactCodeScan"

    @pytest.mark.asyncio
    async def test_disallowed_finding_refuses(self, make_gateway) -> None:
        issue = {
            "category": "networking",
            "message": "Fetches remote data",
            "evidence": "fetch('https://x')",
            "severity": "high",
            "code": None,
        }
        gateway, _ = make_gateway([{"isSafe": False, "issues": [issue]}])
        outcome = await run_ai_code_scan(gateway, "<html></html>", BANNER, fail_closed=False)
        reason = outcome.refusal
        assert reason.code == "AI_SCAN_FAILED"
        assert "category=networking" in reason.message
        assert reason.safe_alternative == "Use a smaller, simpler offline calculator prompt."
        assert reason.to_dict()["details"] == [
            {
                "category": "networking",
                "severity": "high",
                "message": "Fetches remote data",
                "evidence": "fetch('https://x')",
            }
        ]

    @pytest.mark.asyncio
    async def test_unsafe_verdict_without_disallowed_findings_passes(self, make_gateway) -> None:
        gateway, _ = make_gateway(
            [{"isSafe": False, "issues": [{"category": "credential_capture", "evidence": BANNER}, "Looks odd"]}]
        )
        outcome = await run_ai_code_scan(gateway, "<html></html>", BANNER, fail_closed=True)
        assert outcome.refusal is None
        assert outcome.model_is_safe is False
        assert len(outcome.triage.ignored) == 1
        assert len(outcome.triage.uncategorized) == 1

    @pytest.mark.asyncio
    async def test_safe_and_findings_aliases(self, make_gateway) -> None:
        gateway, _ = make_gateway([{"safe": False, "findings": ["Uses eval( on input"]}])
        outcome = await run_ai_code_scan(gateway, "<html></html>", BANNER, fail_closed=False)
        assert outcome.refusal is not None
        assert outcome.triage.disallowed[0].category == "dynamic_code"

    @pytest.mark.asyncio
    async def test_gateway_failure_fails_open(self, make_gateway) -> None:
        gateway, _ = make_gateway([(500, {})] * 3)
        outcome = await run_ai_code_scan(gateway, "<html></html>", BANNER, fail_closed=False)
        assert outcome.refusal is None
        assert outcome.scan_failed

    @pytest.mark.asyncio
    async def test_gateway_failure_fails_closed(self, make_gateway) -> None:
        gateway, _ = make_gateway([(500, {})] * 3)
        outcome = await run_ai_code_scan(gateway, "<html></html>", BANNER, fail_closed=True)
        assert outcome.scan_failed
        assert outcome.refusal.code == "AI_SCAN_FAILED"
        assert outcome.refusal.message == "AI code scan failed."
