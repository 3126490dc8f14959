"""Red-team debug profile.

A profile arrives from an untrusted client. ``normalize_profile`` coerces it
into a fully populated, typed value: non-boolean flags fall back to their
defaults and unknown scan modes collapse to ``enforce``. The profile only has
effect when the red-team capability is on in the process environment.

``profile_id`` is a deterministic, non-secret 8-hex-digit label (FNV-1a 32-bit
over a key-sorted serialisation) that lets collateral dumps and logs be
grouped by configuration.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

SCAN_MODES = ("enforce", "warn", "off")

_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619


@dataclass(frozen=True)
class RedTeamProfile:
    enabled: bool = False
    scan_mode: str = "enforce"
    dump_collateral: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "scanMode": self.scan_mode,
            "dumpCollateral": self.dump_collateral,
        }


def normalize_profile(raw: Any) -> RedTeamProfile:
    """Coerce untrusted input into a RedTeamProfile."""
    data = raw if isinstance(raw, dict) else {}
    defaults = RedTeamProfile()

    def flag(key: str, fallback: bool) -> bool:
        value = data.get(key)
        return value if isinstance(value, bool) else fallback

    scan_mode = data.get("scanMode")
    return RedTeamProfile(
        enabled=flag("enabled", defaults.enabled),
        scan_mode=scan_mode if scan_mode in SCAN_MODES else "enforce",
        dump_collateral=flag("dumpCollateral", defaults.dump_collateral),
    )


def stable_stringify(value: Any) -> str:
    """JSON serialisation with object keys sorted at every level, no whitespace."""
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(entry) for entry in value) + "]"
    if isinstance(value, dict):
        entries = sorted(value.items(), key=lambda item: item[0])
        return "{" + ",".join(
            f"{json.dumps(key)}:{stable_stringify(entry)}" for key, entry in entries
        ) + "}"
    return json.dumps(value)


def profile_id(profile: RedTeamProfile) -> str:
    """FNV-1a 32-bit hash of the profile's stable serialisation, as 8 hex chars."""
    digest = _FNV_OFFSET
    for char in stable_stringify(profile.to_dict()):
        digest ^= ord(char)
        digest = (digest * _FNV_PRIME) & 0xFFFFFFFF
    return f"{digest:08x}"
