"""Red-team collateral dumps.

When the red-team capability is on (PROMPTCALC_REDKIT=1) and the request's
profile sets ``dumpCollateral``, every stage of one request is written to
``.promptcalc_artifacts/<traceId>/``:

    00_profile.json          trace id, profile id, effective profile, env flags
    01_prompt.txt            raw prompt
    02_system.txt            generation system instructions
    03_scan_request.json     prompt-scan request payload
    04_scan_response.json    prompt-scan decision
    05_gen_request.json      generation request payload
    06_gen_response_raw.json generation output as parsed
    07_extracted.html        final (or last extracted) HTML
    08_validation.json       validation issues / scan results, skipped steps
    09_error.json            only when the request failed

These files contain raw prompts and model output. They are a local debugging
aid and must never be enabled in production.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from promptcalc.constants import REDTEAM_ARTIFACT_DIR, REDTEAM_ENV_FLAG
from promptcalc.models.redteam import RedTeamProfile, profile_id
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class GenerationTrace:
    """Per-request record, filled in as pipeline stages run."""

    system: Optional[str] = None
    scan_request: Optional[dict[str, Any]] = None
    scan_response: Optional[dict[str, Any]] = None
    gen_request: Optional[dict[str, Any]] = None
    gen_response_raw: Any = None
    html: Optional[str] = None
    validation: Optional[dict[str, Any]] = None
    skipped_steps: list[str] = field(default_factory=list)
    error: Optional[dict[str, Any]] = None


def _to_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False, default=str) + "\n"


class CollateralDumper:
    """Writes one bundle per trace id under ``root``."""

    def __init__(self, capability: bool, root: Optional[Path] = None) -> None:
        self.capability = capability
        self.root = root or Path.cwd() / REDTEAM_ARTIFACT_DIR

    def should_dump(self, profile: RedTeamProfile) -> bool:
        return self.capability and profile.dump_collateral

    def dump(
        self,
        trace_id: str,
        profile: RedTeamProfile,
        prompt: str,
        trace: GenerationTrace,
    ) -> list[Path]:
        """Write the bundle. Returns the written paths (empty when disabled or on I/O failure)."""
        if not self.should_dump(profile):
            return []

        trace_dir = self.root / trace_id
        files: list[tuple[str, str]] = [
            (
                "00_profile.json",
                _to_json(
                    {
                        "traceId": trace_id,
                        "profileId": profile_id(profile),
                        "effectiveProfile": profile.to_dict(),
                        "envFlags": {REDTEAM_ENV_FLAG: os.environ.get(REDTEAM_ENV_FLAG) == "1"},
                        "skippedSteps": trace.skipped_steps,
                    }
                ),
            ),
            ("01_prompt.txt", prompt),
            ("02_system.txt", trace.system or ""),
            ("03_scan_request.json", _to_json({"scanRequest": trace.scan_request})),
            ("04_scan_response.json", _to_json({"scanResponseRaw": trace.scan_response})),
            ("05_gen_request.json", _to_json({"genRequest": trace.gen_request})),
            ("06_gen_response_raw.json", _to_json({"genResponseRaw": trace.gen_response_raw})),
            ("07_extracted.html", trace.html or ""),
            (
                "08_validation.json",
                _to_json({"validation": trace.validation, "skippedSteps": trace.skipped_steps}),
            ),
        ]
        if trace.error is not None:
            files.append(("09_error.json", _to_json({"error": trace.error})))

        written: list[Path] = []
        try:
            trace_dir.mkdir(parents=True, exist_ok=True)
            for name, content in files:
                path = trace_dir / name
                path.write_text(content, encoding="utf-8")
                written.append(path)
        except OSError as exc:
            logger.warning("redteam.dump.failed", trace_dir=str(trace_dir), error=str(exc))
            return written

        logger.info(
            "redteam.dump",
            profile_id=profile_id(profile),
            files=len(written),
            trace_dir=str(trace_dir),
        )
        return written
