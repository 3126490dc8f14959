"""Artifact generator: prompt → finalised, embedded, scanned calculator HTML.

One ``generate()`` call runs these steps (a "round"):

  1. generation call (2 attempts, shape validator). A parse failure or a
     payload that fails shape analysis gets exactly one repair call.
  2. refusal checks: REFUSE sentinel, size ceiling, manifest invariants
  3. postprocessing rewrites, then manifest embedding with the two-pass hash;
     size ceiling again on the embedded HTML
  4. expression model only: the safe evaluator ``computeExpr(`` must appear
  5. deterministic scan
  6. AI code scan

If round one fails step 5 on the dynamic-constructor rule (``new Function`` /
``Function(``), one more round runs with a corrective instruction naming the
construct. Any other failure is final.

Policy refusals come back as ``RefusalReason`` values. Gateway failures
(``GatewayError`` and subclasses, including ``ParseError`` after the repair
call) propagate to the caller.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Optional, Union

from promptcalc.constants import GENERATION_MAX_ATTEMPTS, REPAIR_MAX_ATTEMPTS
from promptcalc.gateway.client import CallOptions, CompletionGateway, CompletionRequest, OutputFormat
from promptcalc.gateway.errors import ParseError
from promptcalc.generation.ai_scan import run_ai_code_scan
from promptcalc.generation.artifact_output import (
    ArtifactOutputAnalysis,
    analyze_generation_output,
    embed_with_hash,
    is_acceptable_generation_result,
    is_valid_manifest,
    utf8_length,
)
from promptcalc.generation.execution_model import (
    EXPRESSION,
    execution_model_rule_text,
    select_execution_model,
)
from promptcalc.generation.postprocess import apply_postprocessing
from promptcalc.generation.redteam_dump import GenerationTrace
from promptcalc.models.refusal import (
    SCANNER_SAFE_ALTERNATIVE,
    RefusalCode,
    RefusalReason,
    refusal,
)
from promptcalc.policy.scanner import ScanResult, scan_artifact
from promptcalc.policy.store import Policy
from promptcalc.utils.logger import PerformanceLogger, get_logger

logger = get_logger(__name__)

SAFE_EVALUATOR_TOKEN = "computeExpr("

# Scanner hits that earn one corrective round: (rule id, matched pattern).
RETRYABLE_SCAN_HITS: frozenset[tuple[str, str]] = frozenset(
    {
        (RefusalCode.DISALLOWED_EVAL.value, "new Function"),
        (RefusalCode.DISALLOWED_EVAL.value, "Function("),
    }
)

# The manifest is open-ended and notes is optional, which strict json_schema
# rejects; the schema is sent non-strict and is_valid_manifest enforces shape.
GENERATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "artifactHtml": {"type": "string"},
        "manifest": {"type": "object", "additionalProperties": True},
        "notes": {"type": "string"},
    },
    "required": ["artifactHtml", "manifest"],
}


# ─── Instructions ─────────────────────────────────────────────────────────────


def _manifest_example(execution_model: str) -> str:
    example = {
        "artifactHtml": "<!doctype html>...",
        "manifest": {
            "specVersion": "1.1",
            "title": "...",
            "executionModel": execution_model,
            "capabilities": {"network": False},
        },
    }
    return json.dumps(example, separators=(",", ":"))


def _execution_model_rules(execution_model: str) -> list[str]:
    if execution_model == EXPRESSION:
        return [
            "- Execution model: expression. The user types an arithmetic expression.",
            "- Implement a function named computeExpr(expression) that tokenizes and parses",
            "  the expression with a small recursive-descent parser (numbers, + - * / ^, parentheses).",
            "- Evaluate only through computeExpr(...). Never use eval, new Function, Function(,",
            "  or string arguments to setTimeout/setInterval.",
        ]
    return [
        "- Execution model: form. Use labelled numeric inputs and a Calculate button.",
        "- Compute results with plain arithmetic in event handlers; never build code from strings.",
    ]


def build_generation_system(
    execution_model: str,
    policy: Policy,
    corrective_construct: Optional[str] = None,
) -> str:
    """System instructions for one generation round."""
    lines = [
        "You generate a single-file offline calculator HTML artifact for PromptCalc.",
        "Rules:",
        "- Output must be a single HTML file and a manifest JSON object.",
        "- Output MUST be a single JSON object with no markdown, code fences, or commentary.",
        "- Return JSON only. No markdown. No prose.",
        '- If you cannot comply, output exactly: {"error":"REFUSE"}.',
        f"- Include a CSP meta tag with: {'; '.join(policy.required_csp_directives)}.",
        "- No external scripts, links, fonts, images, iframes, or network requests.",
        "- No popups or navigation changes. No storage APIs (localStorage, cookies).",
        f'- Include this banner text in the body: "{policy.required_banner_text}"',
        "- Embed the manifest JSON in the HTML inside:",
        '  <script type="application/json" id="promptcalc-manifest">...</script>.',
        '- The manifest specVersion must be "1.1" and capabilities.network must be false.',
        f"- {execution_model_rule_text()}",
        *_execution_model_rules(execution_model),
    ]
    if corrective_construct:
        lines.append(
            f'- Your previous artifact was rejected for using "{corrective_construct}". '
            "Do not use it or any other way of building code from strings."
        )
    lines += [
        "Return JSON that exactly matches the schema.",
        "JSON schema example:",
        _manifest_example(execution_model),
    ]
    return "\n".join(lines)


def build_generation_user(prompt: str) -> str:
    return f"Prompt:\n{prompt}\n\nIf you need a title, use a short descriptive one."


def build_repair_user(prompt: str) -> str:
    return (
        "You returned invalid JSON. Return ONLY valid JSON for this schema. No extra text.\n"
        f"Prompt:\n{prompt}"
    )


# ─── Results ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ArtifactGenerationSuccess:
    manifest: dict[str, Any]
    artifact_html: str
    execution_model: str
    rounds: int = 1


GenerationOutcome = Union[ArtifactGenerationSuccess, RefusalReason]


@dataclass(frozen=True)
class _RoundResult:
    outcome: GenerationOutcome
    scan: Optional[ScanResult] = None


def is_retryable_scan_failure(scan: Optional[ScanResult]) -> bool:
    if scan is None or scan.ok:
        return False
    return (scan.code, scan.rule_id) in RETRYABLE_SCAN_HITS


def _too_large(size: int, limit: int) -> RefusalReason:
    return refusal(
        RefusalCode.TOO_LARGE_ARTIFACT,
        "Generated artifact exceeds size limits.",
        "Request a smaller, simpler calculator layout.",
        details=({"bytes": size, "maxBytes": limit},),
    )


def scan_refusal(scan: ScanResult) -> RefusalReason:
    """Turn a failed deterministic scan into a refusal carrying its location."""
    return refusal(
        scan.code or RefusalCode.MISSING_CSP,
        scan.message or "Artifact failed the policy scan.",
        SCANNER_SAFE_ALTERNATIVE,
        match_index=scan.match_index,
        context_snippet=scan.context_snippet,
    )


# ─── Generator ────────────────────────────────────────────────────────────────


class ArtifactGenerator:
    """Runs generation rounds against one gateway and one policy."""

    def __init__(
        self,
        gateway: CompletionGateway,
        policy: Policy,
        ai_scan_fail_closed: bool = False,
    ) -> None:
        self.gateway = gateway
        self.policy = policy
        self.ai_scan_fail_closed = ai_scan_fail_closed

    async def generate(
        self,
        prompt: str,
        trace: Optional[GenerationTrace] = None,
    ) -> GenerationOutcome:
        """Generate an artifact for ``prompt``.

        Raises:
            GatewayError: a generation or repair call failed.
        """
        trace = trace if trace is not None else GenerationTrace()
        execution_model = select_execution_model(prompt)
        logger.info("artifact.generate.start", execution_model=execution_model)

        corrective: Optional[str] = None
        rounds = 0
        while True:
            rounds += 1
            with PerformanceLogger("artifact.generate.round", logger):
                result = await self._round(prompt, execution_model, corrective, trace)

            if isinstance(result.outcome, ArtifactGenerationSuccess):
                return ArtifactGenerationSuccess(
                    manifest=result.outcome.manifest,
                    artifact_html=result.outcome.artifact_html,
                    execution_model=execution_model,
                    rounds=rounds,
                )
            if rounds == 1 and is_retryable_scan_failure(result.scan):
                corrective = result.scan.rule_id
                logger.warning(
                    "artifact.generate.corrective_retry",
                    rule_id=result.scan.code,
                    construct=corrective,
                    match_index=result.scan.match_index,
                )
                continue

            logger.info("artifact.generate.refused", code=result.outcome.code, rounds=rounds)
            return result.outcome

    # ── Steps ─────────────────────────────────────────────────────────────────

    async def _request_output(
        self,
        prompt: str,
        system: str,
        trace: GenerationTrace,
    ) -> ArtifactOutputAnalysis:
        """Generation call plus at most one repair call."""
        output_format = OutputFormat.json_schema("ArtifactGeneration", GENERATION_SCHEMA, strict=False)
        request = CompletionRequest.build(system, build_generation_user(prompt), output_format)
        trace.gen_request = {"system": system, "user": build_generation_user(prompt)}

        analysis: Optional[ArtifactOutputAnalysis] = None
        try:
            result = await self.gateway.call(
                request,
                CallOptions(
                    max_attempts=GENERATION_MAX_ATTEMPTS,
                    validator=is_acceptable_generation_result,
                    op="openai.artifact.generate",
                ),
            )
            trace.gen_response_raw = result.parsed
            analysis = analyze_generation_output(result.parsed)
        except ParseError as exc:
            logger.warning(
                "artifact.generate.parse_failed",
                attempt=exc.attempt,
                parse_error=exc.parse_error,
            )

        if analysis is not None and (analysis.refused or analysis.ok):
            return analysis

        if analysis is not None:
            logger.warning(
                "artifact.generate.shape_invalid",
                issues=[issue.to_dict() for issue in analysis.issues],
            )
        repair = CompletionRequest.build(system, build_repair_user(prompt), output_format)
        result = await self.gateway.call(
            repair,
            CallOptions(
                max_attempts=REPAIR_MAX_ATTEMPTS,
                validator=is_acceptable_generation_result,
                op="openai.artifact.generate.repair",
            ),
        )
        trace.gen_response_raw = result.parsed
        return analyze_generation_output(result.parsed)

    async def _round(
        self,
        prompt: str,
        execution_model: str,
        corrective: Optional[str],
        trace: GenerationTrace,
    ) -> _RoundResult:
        system = build_generation_system(execution_model, self.policy, corrective)
        trace.system = system
        analysis = await self._request_output(prompt, system, trace)

        if analysis.refused:
            trace.skipped_steps.append("scan")
            return _RoundResult(
                refusal(RefusalCode.MODEL_REFUSED, "Artifact generation refused.")
            )
        if analysis.output is None:
            trace.validation = {"issues": [issue.to_dict() for issue in analysis.issues]}
            return _RoundResult(
                refusal(RefusalCode.INVALID_MODEL_OUTPUT, "Artifact output failed validation.")
            )

        limit = self.policy.max_artifact_bytes
        html = analysis.output.artifact_html
        trace.html = html
        if utf8_length(html) > limit:
            return _RoundResult(_too_large(utf8_length(html), limit))

        manifest = analysis.output.manifest
        if not is_valid_manifest(manifest):
            trace.validation = {"manifest": manifest}
            logger.warning(
                "artifact.manifest.invalid",
                spec_version=manifest.get("specVersion"),
                execution_model=manifest.get("executionModel"),
            )
            return _RoundResult(
                refusal(RefusalCode.INVALID_MODEL_OUTPUT, "Artifact manifest missing required fields.")
            )

        embedded = embed_with_hash(apply_postprocessing(html), manifest)
        trace.html = embedded.html
        size = utf8_length(embedded.html)
        if size > limit:
            return _RoundResult(_too_large(size, limit))

        if execution_model == EXPRESSION and SAFE_EVALUATOR_TOKEN not in embedded.html:
            return _RoundResult(
                refusal(
                    RefusalCode.MISSING_SAFE_EVALUATOR,
                    "Expression calculator is missing the safe evaluator.",
                    "Request a form-based calculator with explicit inputs.",
                )
            )

        scan = scan_artifact(embedded.html, self.policy)
        trace.validation = {"scan": scan.to_dict()}
        if not scan.ok:
            logger.warning(
                "artifact.scan.failed",
                code=scan.code,
                rule_id=scan.rule_id,
                match_index=scan.match_index,
            )
            return _RoundResult(scan_refusal(scan), scan=scan)

        ai_scan = await run_ai_code_scan(
            self.gateway,
            embedded.html,
            self.policy.required_banner_text,
            self.ai_scan_fail_closed,
        )
        if ai_scan.scan_failed and ai_scan.refusal is None:
            trace.skipped_steps.append("ai_scan")
        if ai_scan.refusal is not None:
            return _RoundResult(ai_scan.refusal, scan=scan)

        return _RoundResult(
            ArtifactGenerationSuccess(
                manifest=embedded.manifest,
                artifact_html=embedded.html,
                execution_model=execution_model,
            ),
            scan=scan,
        )
