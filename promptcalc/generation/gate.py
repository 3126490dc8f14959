"""Generation gate: refuse before any provider call when generation is unavailable."""

from __future__ import annotations

from typing import Optional

from promptcalc.config import Config
from promptcalc.models.refusal import RefusalCode, RefusalReason, refusal


def resolve_generation_gate(config: Config) -> Optional[RefusalReason]:
    """Return a refusal when generation is disabled or no API key is set, else None."""
    if not config.generation.enabled:
        return refusal(
            RefusalCode.GENERATION_DISABLED,
            "Generation is currently disabled.",
            "Use a saved calculator or try again later.",
        )
    if not config.openai.api_key:
        return refusal(
            RefusalCode.MISSING_OPENAI_KEY,
            "OpenAI generation is not configured.",
            "Save an existing calculator or configure an OpenAI key.",
        )
    return None
