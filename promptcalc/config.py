"""Config loading for PromptCalc.

Reads `.promptcalc/config.yaml` (or `~/.promptcalc/config.yaml`).
Raises SystemExit on parse errors or missing `version` field.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided, for testing or explicit override)
  2. PROMPTCALC_CONFIG environment variable (if set)
  3. `.promptcalc/config.yaml` (working directory, for development)
  4. `~/.promptcalc/config.yaml` (home directory, for deployments)

Environment variable overrides (always win over file values):
  OPENAI_API_KEY, OPENAI_MODEL, OPENAI_BASE_URL, OPENAI_TIMEOUT_MS,
  OPENAI_MAX_TOKENS, GENERATION_ENABLED, AI_SCAN_FAIL_CLOSED, MAX_ARTIFACT_BYTES

The red-team capability (PROMPTCALC_REDKIT) is deliberately NOT part of this
file: it is read from the process environment only, by
``promptcalc.generation.scan_policy.resolve_scan_policy_config``.
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Optional

import yaml

from promptcalc.constants import (
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_OPENAI_MAX_TOKENS,
    DEFAULT_OPENAI_TIMEOUT_MS,
)
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".promptcalc/config.yaml",
    os.path.expanduser("~/.promptcalc/config.yaml"),
]


class ConfigError(ValueError):
    """Raised when configuration is present but unusable at call time."""


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class OpenAIConfig:
    """Completion provider settings.

    api_key:    Bearer token. Empty means generation is not configured.
    model:      Model id. Required before any gateway call.
    base_url:   Provider base URL; ``responses`` is appended per request.
    timeout_ms: Per-attempt timeout.
    max_tokens: Token ceiling for artifact generation.
    """

    api_key: str = ""
    model: str = ""
    base_url: str = DEFAULT_OPENAI_BASE_URL
    timeout_ms: int = DEFAULT_OPENAI_TIMEOUT_MS
    max_tokens: int = DEFAULT_OPENAI_MAX_TOKENS


@dataclass
class GenerationConfig:
    """Generation gate and artifact ceiling.

    max_artifact_bytes of None defers to the policy document's ceiling.
    """

    enabled: bool = True
    max_artifact_bytes: Optional[int] = None


@dataclass
class ScanConfig:
    """AI code scan behaviour when the scan call itself fails."""

    ai_scan_fail_closed: bool = False


@dataclass
class Config:
    """Root configuration object populated from .promptcalc/config.yaml.

    All fields have safe defaults; PromptCalc can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    path: Optional[str] = None

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a non-positive generation.max_artifact_bytes.
        """
        # ── OpenAI ────────────────────────────────────────────────────────────
        openai_raw = raw.get("openai") or {}
        openai = OpenAIConfig(
            api_key=str(openai_raw.get("api_key", "")),
            model=str(openai_raw.get("model", "")),
            base_url=openai_raw.get("base_url", DEFAULT_OPENAI_BASE_URL),
            timeout_ms=openai_raw.get("timeout_ms", DEFAULT_OPENAI_TIMEOUT_MS),
            max_tokens=openai_raw.get("max_tokens", DEFAULT_OPENAI_MAX_TOKENS),
        )

        # ── Generation ────────────────────────────────────────────────────────
        generation_raw = raw.get("generation") or {}
        max_bytes = generation_raw.get("max_artifact_bytes")
        if max_bytes is not None and (not isinstance(max_bytes, int) or max_bytes <= 0):
            msg = (
                f"CONFIG ERROR: Invalid generation.max_artifact_bytes: '{max_bytes}'. "
                "Expected a positive integer."
            )
            print(msg, file=sys.stderr)
            raise SystemExit(1)
        generation = GenerationConfig(
            enabled=bool(generation_raw.get("enabled", True)),
            max_artifact_bytes=max_bytes,
        )

        # ── Scan ──────────────────────────────────────────────────────────────
        scan_raw = raw.get("scan") or {}
        scan = ScanConfig(
            ai_scan_fail_closed=bool(scan_raw.get("ai_scan_fail_closed", False)),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            openai=openai,
            generation=generation,
            scan=scan,
            path=path,
        )


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate PromptCalc configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).
    Environment overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, or an invalid numeric override.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PROMPTCALC_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        msg = (
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "PromptCalc refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    except OSError as exc:
        msg = f"CONFIG ERROR: Could not read {found_path}: {exc}"
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if not isinstance(raw, dict):
        if raw is None:
            msg = (
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        else:
            msg = (
                f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
                "The config file must be a YAML dictionary at the top level."
            )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    version = raw.get("version")
    if version is None:
        msg = (
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    if version not in SUPPORTED_VERSIONS:
        msg = (
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )
        print(msg, file=sys.stderr)
        raise SystemExit(1)

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.openai.api_key and found_path:
        logger.warning(
            "OpenAI API key read from config file; prefer OPENAI_API_KEY",
            path=found_path,
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        generation_enabled=config.generation.enabled,
        ai_scan_fail_closed=config.scan.ai_scan_fail_closed,
    )
    return config


def _env_flag(name: str) -> Optional[bool]:
    value = os.environ.get(name)
    if value is None:
        return None
    return value.strip().lower() == "true"


def _env_positive_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    try:
        parsed = int(value)
    except ValueError:
        parsed = 0
    if parsed <= 0:
        msg = f"CONFIG ERROR: {name} environment variable is not a positive integer: '{value}'"
        print(msg, file=sys.stderr)
        raise SystemExit(1)
    return parsed


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Called for both file-loaded and default configs so env vars always take
    precedence over any file value.

    Raises:
        SystemExit(1): If a numeric override is set but not a positive integer.
    """
    api_key = os.environ.get("OPENAI_API_KEY")
    if api_key is not None:
        config.openai.api_key = api_key.strip()
    model = os.environ.get("OPENAI_MODEL")
    if model is not None:
        config.openai.model = model.strip()
    base_url = os.environ.get("OPENAI_BASE_URL")
    if base_url:
        config.openai.base_url = base_url.strip()

    timeout_ms = _env_positive_int("OPENAI_TIMEOUT_MS")
    if timeout_ms is not None:
        config.openai.timeout_ms = timeout_ms
    max_tokens = _env_positive_int("OPENAI_MAX_TOKENS")
    if max_tokens is not None:
        config.openai.max_tokens = max_tokens
    max_bytes = _env_positive_int("MAX_ARTIFACT_BYTES")
    if max_bytes is not None:
        config.generation.max_artifact_bytes = max_bytes

    enabled = _env_flag("GENERATION_ENABLED")
    if enabled is not None:
        config.generation.enabled = enabled
    fail_closed = _env_flag("AI_SCAN_FAIL_CLOSED")
    if fail_closed is not None:
        config.scan.ai_scan_fail_closed = fail_closed


def validate_openai_config(config: Config) -> None:
    """Raise ConfigError unless a model id and API key are configured."""
    if not config.openai.model:
        raise ConfigError("OPENAI_MODEL is required for generation.")
    if not config.openai.api_key:
        raise ConfigError("OPENAI_API_KEY is required for generation.")
