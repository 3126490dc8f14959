"""Execution-model selection from prompt keywords.

Deterministic and case-insensitive:

  - any FORCE_FORM keyword        → "form" (wins over everything else)
  - else any EXPRESSION keyword   → "expression"
  - else                          → "form"
"""

from __future__ import annotations

FORM = "form"
EXPRESSION = "expression"
EXECUTION_MODELS = frozenset({FORM, EXPRESSION})

FORCE_FORM_KEYWORDS: tuple[str, ...] = ("cnc", "mortgage", "beam")

EXPRESSION_KEYWORDS: tuple[str, ...] = (
    "standard calculator",
    "expression",
    "evaluate",
    "formula input",
    "type an expression",
)


def select_execution_model(prompt: str) -> str:
    normalized = prompt.lower()
    if any(keyword in normalized for keyword in FORCE_FORM_KEYWORDS):
        return FORM
    if any(keyword in normalized for keyword in EXPRESSION_KEYWORDS):
        return EXPRESSION
    return FORM


def execution_model_rule_text() -> str:
    """Human-readable selection rule, included in generation instructions."""
    return " ".join(
        [
            f'Force "form" when prompt includes: {", ".join(FORCE_FORM_KEYWORDS)}.',
            f'Choose "expression" when prompt includes: {", ".join(EXPRESSION_KEYWORDS)}.',
            'Otherwise default to "form".',
        ]
    )
