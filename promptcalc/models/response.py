"""Generate-response builders.

Five response shapes, discriminated by ``kind``:

  ok           artifact accepted and persisted
  scan_block   prompt or artifact refused (``status: "refused"``)
  scan_warn    prompt denied under dev override; resubmit with proceed=true
  scan_skipped prompt scan skipped under dev override; resubmit with proceed=true
  error        system failure (parse, storage, config); distinct from refusals

Keys are camelCase; the dicts are the wire contract.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence

from promptcalc.models.refusal import RefusalReason

SCAN_OUTCOMES = frozenset({"allow", "deny", "skipped"})


def build_ok_response(
    calc_id: str,
    version_id: str,
    manifest: dict[str, Any],
    artifact_html: str,
    scan_outcome: str,
    override_used: bool,
) -> dict[str, Any]:
    if scan_outcome not in SCAN_OUTCOMES:
        raise ValueError(f"Unknown scan outcome: {scan_outcome!r}")
    return {
        "kind": "ok",
        "status": "ok",
        "calcId": calc_id,
        "versionId": version_id,
        "manifest": manifest,
        "artifactHtml": artifact_html,
        "scanOutcome": scan_outcome,
        "overrideUsed": override_used,
    }


def build_scan_block_response(reason: RefusalReason) -> dict[str, Any]:
    return {
        "kind": "scan_block",
        "status": "refused",
        "refusalReason": reason.to_dict(),
    }


def build_scan_warn_response(
    refusal_code: Optional[str],
    categories: Sequence[str],
    reason: str,
) -> dict[str, Any]:
    return {
        "kind": "scan_warn",
        "status": "scan_warn",
        "requiresUserProceed": True,
        "scanDecision": {
            "refusalCode": refusal_code,
            "categories": list(categories),
            "reason": reason,
        },
    }


def build_scan_skipped_response() -> dict[str, Any]:
    return {
        "kind": "scan_skipped",
        "status": "scan_skipped",
        "requiresUserProceed": True,
    }


def build_error_response(error_code: str, message: str) -> dict[str, Any]:
    return {
        "kind": "error",
        "status": "error",
        "errorCode": error_code,
        "message": message,
    }
