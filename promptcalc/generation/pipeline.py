"""Generation pipeline: arbiter decision, prompt scan, deferred generation.

The classifier and generator are injected as coroutine factories so the
pipeline itself holds no I/O and can be exercised with plain stubs.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from promptcalc.generation.classifier import PromptScanDecision
from promptcalc.generation.scan_policy import (
    ScanAction,
    ScanPolicyMode,
    evaluate_scan_policy,
    needs_classifier,
)
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class PipelineResult(Generic[T]):
    """One of ``ok``, ``scan_block``, ``scan_warn``, ``scan_skipped``.

    ``payload`` is set only for ``ok``; ``prompt_scan`` whenever the
    classifier ran.
    """

    kind: str
    payload: Optional[T] = None
    prompt_scan: Optional[PromptScanDecision] = None
    override_used: bool = False
    scan_outcome: Optional[str] = None
    requires_user_proceed: bool = False


async def run_generation_pipeline(
    mode: ScanPolicyMode,
    capability: bool,
    armed: bool,
    proceed: bool,
    run_prompt_scan: Callable[[], Awaitable[PromptScanDecision]],
    run_generator: Callable[[], Awaitable[T]],
) -> PipelineResult[T]:
    """Run the classifier (unless skipped) and, if the arbiter continues, the generator.

    Classifier and generator exceptions propagate unchanged.
    """
    prompt_scan: Optional[PromptScanDecision] = None
    if needs_classifier(mode, capability, armed):
        prompt_scan = await run_prompt_scan()

    decision = evaluate_scan_policy(
        mode,
        capability,
        armed,
        proceed,
        prompt_denied=None if prompt_scan is None else not prompt_scan.allowed,
    )
    logger.info(
        "scan_policy.decision",
        action=decision.action.value,
        runtime_mode=decision.runtime_mode.value,
        scan_outcome=decision.scan_outcome,
        override_used=decision.override_used,
    )

    if decision.action == ScanAction.SCAN_BLOCK:
        return PipelineResult(kind="scan_block", prompt_scan=prompt_scan, scan_outcome="deny")
    if decision.action == ScanAction.SCAN_WARN:
        return PipelineResult(
            kind="scan_warn",
            prompt_scan=prompt_scan,
            scan_outcome="deny",
            requires_user_proceed=True,
        )
    if decision.action == ScanAction.SCAN_SKIPPED:
        return PipelineResult(kind="scan_skipped", scan_outcome="skipped", requires_user_proceed=True)

    payload = await run_generator()
    return PipelineResult(
        kind="ok",
        payload=payload,
        prompt_scan=prompt_scan,
        override_used=decision.override_used,
        scan_outcome=decision.scan_outcome,
    )
