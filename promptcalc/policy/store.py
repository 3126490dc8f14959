"""Artifact policy store for PromptCalc.

Supplies the read-only rule set the deterministic scanner enforces:

  - ``required_banner_text``:   literal safety banner every artifact must show
  - ``required_csp_directives``: CSP directives the artifact meta tag must carry
  - ``banned_pattern_rules``:   ordered substring rules; first match wins
  - ``banned_tag_rules``:       ordered ``<tag`` rules, checked after patterns
  - ``max_artifact_bytes``:     UTF-8 size ceiling

Loading: ``PROMPTCALC_POLICY`` env var path, then ``.promptcalc/policy.yaml`` in the
working directory, then built-in defaults. A file that exists but cannot be
parsed is logged and skipped. Legacy ``required``/``banned`` flat lists are
normalised into the structured form.

The policy is a lazily initialised process-wide singleton guarded by a lock:
``get_policy()`` loads once, ``reset_policy_cache()`` clears it (tests only).
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Optional

import yaml

from promptcalc.constants import DEFAULT_MAX_ARTIFACT_BYTES, DEFAULT_POLICY_SPEC_VERSION
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_POLICY_PATHS = [
    ".promptcalc/policy.yaml",
]

REQUIRED_BANNER_TEXT = "Generated calculator (offline). Do not enter passwords."

REQUIRED_CSP_DIRECTIVES: tuple[str, ...] = (
    "default-src 'none'",
    "connect-src 'none'",
    "img-src 'none'",
    "script-src 'unsafe-inline'",
    "style-src 'unsafe-inline'",
    "base-uri 'none'",
    "form-action 'none'",
    "object-src 'none'",
)

# Patterns containing this token are matched case-sensitively so that
# ``new Function(`` is caught without flagging ordinary ``function(`` usage.
CASE_SENSITIVE_TOKEN = "Function("

_CSP_DIRECTIVE_PREFIXES: tuple[str, ...] = tuple(
    directive.split(" ", 1)[0] for directive in REQUIRED_CSP_DIRECTIVES
)


# ─── Rule types ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class BannedPatternRule:
    """Substring rule. ``id`` doubles as the refusal code on a match."""

    id: str
    patterns: tuple[str, ...]
    case_sensitive: tuple[str, ...] = ()

    def is_case_sensitive(self, pattern: str) -> bool:
        return pattern in self.case_sensitive or CASE_SENSITIVE_TOKEN in pattern


@dataclass(frozen=True)
class BannedTagRule:
    """Tag rule; each tag is matched as ``<tag`` case-insensitively."""

    id: str
    tags: tuple[str, ...]


@dataclass(frozen=True)
class Policy:
    spec_version: str = DEFAULT_POLICY_SPEC_VERSION
    max_artifact_bytes: int = DEFAULT_MAX_ARTIFACT_BYTES
    required_banner_text: str = REQUIRED_BANNER_TEXT
    required_csp_directives: tuple[str, ...] = REQUIRED_CSP_DIRECTIVES
    banned_pattern_rules: tuple[BannedPatternRule, ...] = field(
        default_factory=lambda: DEFAULT_BANNED_PATTERN_RULES
    )
    banned_tag_rules: tuple[BannedTagRule, ...] = field(
        default_factory=lambda: DEFAULT_BANNED_TAG_RULES
    )
    path: Optional[str] = None

    def with_max_artifact_bytes(self, max_artifact_bytes: Optional[int]) -> "Policy":
        """Return a copy with the size ceiling overridden (None keeps it)."""
        if max_artifact_bytes is None:
            return self
        return replace(self, max_artifact_bytes=max_artifact_bytes)


# ─── Default rules ────────────────────────────────────────────────────────────
#
# Order matters: the scanner reports the first matching rule.

DEFAULT_BANNED_PATTERN_RULES: tuple[BannedPatternRule, ...] = (
    BannedPatternRule(
        id="DISALLOWED_NETWORK",
        patterns=(
            "fetch(",
            "XMLHttpRequest",
            "WebSocket",
            "EventSource",
            "sendBeacon",
            "RTCPeerConnection",
        ),
    ),
    BannedPatternRule(
        id="DISALLOWED_EXTERNAL_DEPENDENCY",
        patterns=(
            "<script src",
            "<link",
            "@import",
            'src="http',
            "src='http",
            'href="http',
            "href='http",
            "url(http",
        ),
    ),
    BannedPatternRule(
        id="DISALLOWED_EVAL",
        patterns=(
            "eval(",
            "new Function",
            "Function(",
            'setTimeout("',
            "setTimeout('",
            'setInterval("',
            "setInterval('",
        ),
        case_sensitive=("new Function",),
    ),
    BannedPatternRule(
        id="DISALLOWED_CREDENTIAL_UI",
        patterns=(
            'type="password"',
            "type='password'",
            'autocomplete="current-password"',
        ),
    ),
    BannedPatternRule(
        id="DISALLOWED_NAVIGATION",
        patterns=(
            "window.open(",
            "top.location",
            "parent.location",
            'target="_top"',
            'http-equiv="refresh"',
        ),
    ),
    BannedPatternRule(
        id="DISALLOWED_STORAGE",
        patterns=(
            "localStorage",
            "sessionStorage",
            "indexedDB",
            "document.cookie",
        ),
    ),
)

DEFAULT_BANNED_TAG_RULES: tuple[BannedTagRule, ...] = (
    BannedTagRule(
        id="DISALLOWED_EXTERNAL_DEPENDENCY",
        tags=("iframe", "frame", "object", "embed", "base", "applet"),
    ),
)

DEFAULT_POLICY = Policy()


# ─── File normalisation ──────────────────────────────────────────────────────


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, str)]


def _normalize_required(raw: dict) -> tuple[str, tuple[str, ...]]:
    """Derive banner and CSP directives from a legacy flat ``required`` list."""
    entries = _as_str_list(raw.get("required"))
    banner = next(
        (entry for entry in entries if "generated calculator" in entry.lower()),
        REQUIRED_BANNER_TEXT,
    )
    directives = tuple(
        entry
        for entry in entries
        if entry.lower() != "content-security-policy"
        and entry.lower().startswith(_CSP_DIRECTIVE_PREFIXES)
    )
    return banner, directives or REQUIRED_CSP_DIRECTIVES


def _pattern_rules_from(raw: dict) -> tuple[BannedPatternRule, ...]:
    structured = raw.get("bannedPatterns")
    if isinstance(structured, list):
        rules = []
        for entry in structured:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            rules.append(
                BannedPatternRule(
                    id=str(entry["id"]),
                    patterns=tuple(_as_str_list(entry.get("patterns"))),
                    case_sensitive=tuple(_as_str_list(entry.get("caseSensitive"))),
                )
            )
        return tuple(rules)

    legacy = _as_str_list(raw.get("banned"))
    if legacy:
        return (BannedPatternRule(id="DISALLOWED_PATTERN", patterns=tuple(legacy)),)
    return DEFAULT_BANNED_PATTERN_RULES


def _tag_rules_from(raw: dict) -> tuple[BannedTagRule, ...]:
    structured = raw.get("bannedTags")
    if not isinstance(structured, list):
        return DEFAULT_BANNED_TAG_RULES
    rules = []
    for entry in structured:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        rules.append(BannedTagRule(id=str(entry["id"]), tags=tuple(_as_str_list(entry.get("tags")))))
    return tuple(rules)


def policy_from_dict(raw: Optional[dict], path: Optional[str] = None) -> Policy:
    """Build a Policy from a parsed policy document, filling gaps from defaults."""
    if not isinstance(raw, dict):
        return DEFAULT_POLICY

    legacy_banner, legacy_directives = _normalize_required(raw)

    spec_version = raw.get("specVersion")
    if spec_version is None:
        spec_version = raw.get("version", DEFAULT_POLICY_SPEC_VERSION)

    banner = raw.get("requiredBannerText")
    directives = raw.get("requiredCspDirectives")
    max_bytes = raw.get("maxArtifactBytes")

    return Policy(
        spec_version=str(spec_version),
        max_artifact_bytes=max_bytes if isinstance(max_bytes, int) and max_bytes > 0 else DEFAULT_MAX_ARTIFACT_BYTES,
        required_banner_text=banner if isinstance(banner, str) else legacy_banner,
        required_csp_directives=(
            tuple(_as_str_list(directives)) if isinstance(directives, list) else legacy_directives
        ),
        banned_pattern_rules=_pattern_rules_from(raw),
        banned_tag_rules=_tag_rules_from(raw),
        path=path,
    )


def load_policy_file(path: str) -> Policy:
    """Parse one policy file.

    Raises:
        OSError:        File unreadable.
        yaml.YAMLError: File is not valid YAML.
    """
    with open(path) as fh:
        raw = yaml.safe_load(fh)
    return policy_from_dict(raw, path=path)


# ─── Cached accessor ──────────────────────────────────────────────────────────


class PolicyStore:
    """Thread-safe, load-once holder for the active Policy."""

    def __init__(self, search_paths: Optional[list[str]] = None) -> None:
        self._search_paths = search_paths
        self._lock = threading.Lock()
        self._policy: Optional[Policy] = None

    def _candidates(self) -> list[str]:
        if self._search_paths is not None:
            return list(self._search_paths)
        candidates: list[str] = []
        env_path = os.environ.get("PROMPTCALC_POLICY")
        if env_path:
            candidates.append(env_path)
        candidates.extend(DEFAULT_POLICY_PATHS)
        return candidates

    def _load(self) -> Policy:
        for candidate in self._candidates():
            expanded = os.path.expanduser(candidate)
            if not os.path.isfile(expanded):
                continue
            try:
                policy = load_policy_file(expanded)
            except (OSError, yaml.YAMLError) as exc:
                logger.warning(
                    "policy.read.failed",
                    path=expanded,
                    error=str(exc)[:200],
                )
                continue
            logger.info(
                "policy.loaded",
                path=expanded,
                spec_version=policy.spec_version,
                pattern_rules=len(policy.banned_pattern_rules),
                tag_rules=len(policy.banned_tag_rules),
            )
            return policy
        logger.info("policy.defaults", searched=self._candidates())
        return DEFAULT_POLICY

    def get(self) -> Policy:
        if self._policy is not None:
            return self._policy
        with self._lock:
            if self._policy is None:
                self._policy = self._load()
            return self._policy

    def reset(self) -> None:
        with self._lock:
            self._policy = None


_store = PolicyStore()


def get_policy() -> Policy:
    """Return the process-wide Policy, loading it on first use."""
    return _store.get()


def reset_policy_cache() -> None:
    """Forget the cached Policy so the next ``get_policy()`` reloads."""
    _store.reset()
