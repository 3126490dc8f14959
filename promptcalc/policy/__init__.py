"""Artifact policy: cached rule store and the deterministic scanner."""

from promptcalc.policy.scanner import ScanResult, scan_artifact
from promptcalc.policy.store import Policy, get_policy, reset_policy_cache

__all__ = ["Policy", "ScanResult", "get_policy", "reset_policy_cache", "scan_artifact"]
