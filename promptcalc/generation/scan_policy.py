"""Scan-policy arbiter: may a request skip or override the prompt scan?

Modes:

  enforce  the prompt classifier runs and a denial blocks (production)
  warn     a denial returns ``scan_warn``; resubmitting with proceed=true
           continues with ``overrideUsed``
  off      the classifier is skipped; the first response is ``scan_skipped``
           and a proceed=true resubmission continues

Both non-enforce modes need the red-team capability (PROMPTCALC_REDKIT=1 in
the process environment) AND a request that arms the override. Anything
else is silently downgraded to ``enforce``.

``evaluate_scan_policy`` is a pure function. It never reads the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional

from promptcalc.constants import REDTEAM_ENV_FLAG


class ScanPolicyMode(str, Enum):
    ENFORCE = "enforce"
    WARN = "warn"
    OFF = "off"


class ScanAction(str, Enum):
    CONTINUE = "continue"
    SCAN_BLOCK = "scan_block"
    SCAN_WARN = "scan_warn"
    SCAN_SKIPPED = "scan_skipped"


DEFAULT_WARN_REASON = "Prompt scan denied this request."


@dataclass(frozen=True)
class ScanPolicyConfig:
    mode: ScanPolicyMode
    capability: bool


@dataclass(frozen=True)
class ScanOverrideDecision:
    """Arbiter verdict.

    ``scan_outcome`` is "allow", "deny" or "skipped". ``requires_proceed`` is
    True exactly for scan_warn and scan_skipped.
    """

    action: ScanAction
    scan_outcome: str
    override_used: bool = False
    requires_proceed: bool = False
    runtime_mode: ScanPolicyMode = ScanPolicyMode.ENFORCE


def is_redteam_capable(env: Optional[Mapping[str, str]] = None) -> bool:
    source = os.environ if env is None else env
    return source.get(REDTEAM_ENV_FLAG) == "1"


def resolve_scan_policy_config(env: Optional[Mapping[str, str]] = None) -> ScanPolicyConfig:
    """Capability on → default mode warn; off → enforce."""
    if not is_redteam_capable(env):
        return ScanPolicyConfig(mode=ScanPolicyMode.ENFORCE, capability=False)
    return ScanPolicyConfig(mode=ScanPolicyMode.WARN, capability=True)


def resolve_runtime_scan_policy_mode(mode: ScanPolicyMode, armed: bool) -> ScanPolicyMode:
    if mode == ScanPolicyMode.ENFORCE:
        return ScanPolicyMode.ENFORCE
    return mode if armed else ScanPolicyMode.ENFORCE


def coerce_mode(value: object) -> ScanPolicyMode:
    """Map untrusted input to a mode; unknown values become enforce."""
    try:
        return ScanPolicyMode(value)
    except ValueError:
        return ScanPolicyMode.ENFORCE


def needs_classifier(mode: ScanPolicyMode, capability: bool, armed: bool) -> bool:
    """False only when the prompt scan is skipped (off + capability + armed)."""
    effective = resolve_runtime_scan_policy_mode(coerce_mode(mode), capability and armed)
    return effective != ScanPolicyMode.OFF


def evaluate_scan_policy(
    mode: ScanPolicyMode,
    capability: bool,
    armed: bool,
    proceed: bool,
    prompt_denied: Optional[bool],
) -> ScanOverrideDecision:
    """Decide the next step for one request.

    ``prompt_denied`` is None when the classifier has not run. It is only
    read when the effective mode is not ``off``; a None there is treated as
    a denial so a missing verdict can never let a request through.
    """
    if not capability:
        armed = False
        proceed = False
    effective = resolve_runtime_scan_policy_mode(coerce_mode(mode), armed)

    if effective == ScanPolicyMode.OFF:
        if not proceed:
            return ScanOverrideDecision(
                action=ScanAction.SCAN_SKIPPED,
                scan_outcome="skipped",
                requires_proceed=True,
                runtime_mode=effective,
            )
        return ScanOverrideDecision(
            action=ScanAction.CONTINUE,
            scan_outcome="skipped",
            override_used=True,
            runtime_mode=effective,
        )

    if prompt_denied is False:
        return ScanOverrideDecision(
            action=ScanAction.CONTINUE,
            scan_outcome="allow",
            runtime_mode=effective,
        )

    if effective == ScanPolicyMode.WARN:
        if not proceed:
            return ScanOverrideDecision(
                action=ScanAction.SCAN_WARN,
                scan_outcome="deny",
                requires_proceed=True,
                runtime_mode=effective,
            )
        return ScanOverrideDecision(
            action=ScanAction.CONTINUE,
            scan_outcome="deny",
            override_used=True,
            runtime_mode=effective,
        )

    return ScanOverrideDecision(
        action=ScanAction.SCAN_BLOCK,
        scan_outcome="deny",
        runtime_mode=effective,
    )
