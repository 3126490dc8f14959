"""Shared constants for PromptCalc.

All size limits, token ceilings and retry budgets used across modules are
defined here. No magic numbers in other modules; import from here.
"""

# ─── Artifact Limits ─────────────────────────────────────────────────────────

# Maximum UTF-8 encoded size of a generated artifact, checked both before and
# after the manifest is embedded. Overridable via MAX_ARTIFACT_BYTES.
DEFAULT_MAX_ARTIFACT_BYTES: int = 200_000

# Manifest specVersion emitted and accepted by the generator.
MANIFEST_SPEC_VERSION: str = "1.1"

# Policy document version when no policy file is found.
DEFAULT_POLICY_SPEC_VERSION: str = "1.0"

# ─── Completion Gateway ──────────────────────────────────────────────────────

DEFAULT_OPENAI_BASE_URL: str = "https://api.openai.com/v1"

# Per-attempt timeout for one provider request.
DEFAULT_OPENAI_TIMEOUT_MS: int = 25_000

# Default token ceiling for artifact generation.
DEFAULT_OPENAI_MAX_TOKENS: int = 2_500

# HTTP statuses retried with backoff.
RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})

DEFAULT_MAX_ATTEMPTS: int = 3

# Exponential backoff base: base × 2^(attempt − 1).
DEFAULT_BACKOFF_BASE_MS: int = 150

# Bounded diagnostics: raw model text prefix/suffix logged on parse failure.
PARSE_SNIPPET_CHARS: int = 200

# Provider error messages are truncated to this length before logging.
ERROR_MESSAGE_MAX_CHARS: int = 200

# ─── Classifier / Generator / AI Scan Token Ceilings ─────────────────────────

PROMPT_SCAN_MAX_TOKENS: int = 350

CODE_SCAN_MAX_TOKENS: int = 600

GENERATION_MAX_ATTEMPTS: int = 2

REPAIR_MAX_ATTEMPTS: int = 1

# ─── Scanner / Triage Bounds ─────────────────────────────────────────────────

# Radius (chars) on each side of a banned-pattern match for contextSnippet.
SNIPPET_RADIUS: int = 80

# Per-field cap for ScanIssueSummary text.
MAX_ISSUE_FIELD_LENGTH: int = 400

# Cap for serialised issue lists attached to refusal details.
MAX_ISSUES_JSON_LENGTH: int = 4_096

# ─── Red-Team Collateral ─────────────────────────────────────────────────────

REDTEAM_ENV_FLAG: str = "PROMPTCALC_REDKIT"

REDTEAM_ARTIFACT_DIR: str = ".promptcalc_artifacts"
