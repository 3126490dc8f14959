"""Refusal codes and the RefusalReason contract.

A RefusalReason is an expected, terminal outcome: "your content was rejected".
It is returned as a value, never raised. Every refusal carries a
``safe_alternative`` suggestion for the caller's UI.

Serialised form (camelCase, stable for machine parsing)::

    {
      "code": "DISALLOWED_NETWORK",
      "message": "Artifact contains banned pattern: fetch(",
      "safeAlternative": "Use a simple offline calculator without external data or scripts.",
      "matchIndex": 1042,
      "contextSnippet": "...",
      "details": [{"category": "networking", ...}]
    }
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class RefusalCode(str, Enum):
    """Known refusal codes. Policy rule ids may add codes outside this set."""

    AI_SCAN_FAILED = "AI_SCAN_FAILED"
    DISALLOWED_NETWORK = "DISALLOWED_NETWORK"
    DISALLOWED_EXTERNAL_DEPENDENCY = "DISALLOWED_EXTERNAL_DEPENDENCY"
    DISALLOWED_CREDENTIAL_UI = "DISALLOWED_CREDENTIAL_UI"
    DISALLOWED_EVAL = "DISALLOWED_EVAL"
    DISALLOWED_SCRAPING = "DISALLOWED_SCRAPING"
    DISALLOWED_RESOURCE_CONSUMPTION = "DISALLOWED_RESOURCE_CONSUMPTION"
    GENERATION_DISABLED = "GENERATION_DISABLED"
    INVALID_MODEL_OUTPUT = "INVALID_MODEL_OUTPUT"
    MISSING_CSP = "MISSING_CSP"
    MISSING_OPENAI_KEY = "MISSING_OPENAI_KEY"
    MISSING_SAFE_EVALUATOR = "MISSING_SAFE_EVALUATOR"
    MODEL_REFUSED = "MODEL_REFUSED"
    OPENAI_BAD_REQUEST = "OPENAI_BAD_REQUEST"
    OPENAI_ERROR = "OPENAI_ERROR"
    TOO_COMPLEX_V1_SCOPE = "TOO_COMPLEX_V1_SCOPE"
    TOO_LARGE_ARTIFACT = "TOO_LARGE_ARTIFACT"


# Default suggestion for deterministic-scanner refusals.
SCANNER_SAFE_ALTERNATIVE = "Use a simple offline calculator without external data or scripts."
GENERIC_SAFE_ALTERNATIVE = "Try a simpler offline calculator prompt."


@dataclass(frozen=True)
class RefusalReason:
    code: str
    message: str
    safe_alternative: str
    match_index: Optional[int] = None
    context_snippet: Optional[str] = None
    details: Optional[tuple[dict[str, Any], ...]] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "safeAlternative": self.safe_alternative,
        }
        if self.match_index is not None:
            payload["matchIndex"] = self.match_index
        if self.context_snippet is not None:
            payload["contextSnippet"] = self.context_snippet
        if self.details is not None:
            payload["details"] = [dict(detail) for detail in self.details]
        return payload


def refusal(
    code: RefusalCode | str,
    message: str,
    safe_alternative: str = GENERIC_SAFE_ALTERNATIVE,
    **extra: Any,
) -> RefusalReason:
    """Build a RefusalReason, accepting either an enum member or a raw rule id."""
    code_value = code.value if isinstance(code, RefusalCode) else str(code)
    return RefusalReason(code=code_value, message=message, safe_alternative=safe_alternative, **extra)
