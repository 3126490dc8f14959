"""Prompt classifier: one strict-schema gateway call deciding if a prompt is in policy.

Gateway failures propagate as exceptions. A failed classification is never
read as "allowed".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from promptcalc.constants import PROMPT_SCAN_MAX_TOKENS
from promptcalc.gateway.client import CallOptions, CompletionGateway, CompletionRequest, OutputFormat
from promptcalc.models.refusal import RefusalCode
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)

# Strict mode requires every property in ``required``; nullability encodes
# "refusalCode optional".
PROMPT_SCAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "allowed": {"type": "boolean"},
        "refusalCode": {"type": ["string", "null"]},
        "reason": {"type": "string"},
        "safeAlternative": {"type": "string"},
    },
    "required": ["allowed", "refusalCode", "reason", "safeAlternative"],
}

PROMPT_SCAN_SYSTEM = "\n".join(
    [
        "You are a strict policy classifier for PromptCalc generation prompts.",
        "Disallow any intent that requests:",
        "- networking, URL fetching, scraping, or external data sources",
        "- external dependencies or CDN scripts",
        "- credential capture (login pages, password inputs)",
        "- analytics, tracking, or user fingerprinting",
        "- attempts to escape the sandboxed iframe (top navigation, popups)",
        "- eval/dynamic code generation requests",
        "Return ONLY valid JSON. No markdown. No code fences. No commentary.",
        "Return a JSON object that conforms exactly to the schema.",
        "If allowed, set refusalCode to null.",
        "If disallowed, set allowed=false and set refusalCode to the best matching policy code:",
        ", ".join(
            code.value
            for code in (
                RefusalCode.DISALLOWED_NETWORK,
                RefusalCode.DISALLOWED_EXTERNAL_DEPENDENCY,
                RefusalCode.DISALLOWED_CREDENTIAL_UI,
                RefusalCode.DISALLOWED_EVAL,
                RefusalCode.DISALLOWED_SCRAPING,
                RefusalCode.DISALLOWED_RESOURCE_CONSUMPTION,
                RefusalCode.TOO_COMPLEX_V1_SCOPE,
            )
        ),
    ]
)

DEFAULT_DENY_CODE = RefusalCode.DISALLOWED_NETWORK.value


@dataclass(frozen=True)
class PromptScanDecision:
    """Classifier verdict. ``refusal_code`` is None iff ``allowed``."""

    allowed: bool
    refusal_code: Optional[str]
    reason: str
    safe_alternative: str
    categories: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "refusalCode": self.refusal_code,
            "reason": self.reason,
            "safeAlternative": self.safe_alternative,
            "categories": list(self.categories),
        }


def is_prompt_scan_decision(value: Any) -> bool:
    """Shape predicate handed to the gateway as its result validator."""
    if not isinstance(value, dict):
        return False
    if not isinstance(value.get("allowed"), bool):
        return False
    if not isinstance(value.get("reason"), str):
        return False
    if not isinstance(value.get("safeAlternative"), str):
        return False
    code = value.get("refusalCode")
    return code is None or isinstance(code, str)


def decision_from_dict(value: dict) -> PromptScanDecision:
    """Build a normalised decision: allowed → no code; denied → code always set."""
    allowed = value["allowed"]
    code = value.get("refusalCode")
    if allowed:
        code = None
    elif not code or not str(code).strip():
        code = DEFAULT_DENY_CODE
    categories = value.get("categories")
    return PromptScanDecision(
        allowed=allowed,
        refusal_code=code,
        reason=value["reason"],
        safe_alternative=value["safeAlternative"],
        categories=tuple(c for c in categories if isinstance(c, str)) if isinstance(categories, list) else (),
    )


def build_prompt_scan_request(prompt: str) -> CompletionRequest:
    return CompletionRequest.build(
        system=PROMPT_SCAN_SYSTEM,
        user=f"Prompt:\n{prompt}",
        output_format=OutputFormat.json_schema("PromptScanDecision", PROMPT_SCAN_SCHEMA),
        max_output_tokens=PROMPT_SCAN_MAX_TOKENS,
    )


async def classify_prompt(gateway: CompletionGateway, prompt: str) -> PromptScanDecision:
    """Classify ``prompt``.

    Raises:
        GatewayError (or a subclass): the classifier call failed.
    """
    result = await gateway.call(
        build_prompt_scan_request(prompt),
        CallOptions(validator=is_prompt_scan_decision, op="openai.prompt.scan"),
    )
    decision = decision_from_dict(result.parsed)
    logger.info(
        "prompt.scan.result",
        allowed=decision.allowed,
        refusal_code=decision.refusal_code,
        used_fallback=result.used_fallback,
    )
    return decision
