"""Normalisation, validation, manifest embedding and hashing of generator output.

Model output is heterogeneous. ``analyze_generation_output()`` takes whatever
the gateway parsed (object or JSON text) and:

  1. parses it flexibly (object passthrough, lenient JSON otherwise)
  2. unwraps wrapper objects using UNWRAP_STRATEGIES, tried in order:
       - a preferred key (``result``, ``data``, ``output``) holding an object
       - a single key holding an object
  3. normalises aliases: ``html`` → ``artifactHtml``; ``manifestJson``
     (object or JSON string) → ``manifest``
  4. reports structural issues (``invalid_json``, ``result_not_object``,
     ``artifactHtml_missing``, ``manifest_missing``)

The refusal sentinel ``{"error": "REFUSE"}`` is recognised before any
structural check so a refusal never triggers the repair call.

Manifest invariants (``is_valid_manifest``) are separate from structure: a
structurally sound payload with a bad manifest is refused, not repaired.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import re2

from promptcalc.constants import MANIFEST_SPEC_VERSION
from promptcalc.gateway.json_extract import JsonExtractionError, parse_json_flexible
from promptcalc.generation.execution_model import EXECUTION_MODELS

MANIFEST_ELEMENT_ID = "promptcalc-manifest"

_MANIFEST_BLOCK_PATTERN = re2.compile(
    r"""(?is)<script[^>]*\bid\s*=\s*["']promptcalc-manifest["'][^>]*>.*?</script\s*>"""
)
_MANIFEST_BODY_PATTERN = re2.compile(
    r"""(?is)<script[^>]*\bid\s*=\s*["']promptcalc-manifest["'][^>]*>(.*?)</script\s*>"""
)
_BODY_CLOSE_PATTERN = re2.compile(r"(?i)</body\s*>")

REFUSAL_SENTINEL = "REFUSE"


# ─── Types ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ArtifactGenerationOutput:
    artifact_html: str
    manifest: dict[str, Any]
    notes: Optional[str] = None


@dataclass(frozen=True)
class ValidationIssue:
    kind: str  # "parse_error" | "schema_error"
    code: str
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "code": self.code, "path": self.path, "message": self.message}


@dataclass(frozen=True)
class ArtifactOutputAnalysis:
    parsed: Any = None
    output: Optional[ArtifactGenerationOutput] = None
    issues: tuple[ValidationIssue, ...] = field(default_factory=tuple)
    refused: bool = False

    @property
    def ok(self) -> bool:
        return self.output is not None and not self.issues


# ─── Unwrapping ───────────────────────────────────────────────────────────────

UnwrapStrategy = Callable[[dict], Optional[dict]]

PREFERRED_WRAPPER_KEYS: tuple[str, ...] = ("result", "data", "output")


def _unwrap_preferred_key(value: dict) -> Optional[dict]:
    for key in PREFERRED_WRAPPER_KEYS:
        candidate = value.get(key)
        if isinstance(candidate, dict):
            return candidate
    return None


def _unwrap_single_key(value: dict) -> Optional[dict]:
    if len(value) != 1:
        return None
    (candidate,) = value.values()
    return candidate if isinstance(candidate, dict) else None


UNWRAP_STRATEGIES: tuple[UnwrapStrategy, ...] = (_unwrap_preferred_key, _unwrap_single_key)


def unwrap_wrapper_object(value: dict) -> dict:
    """Return the payload inside a wrapper object, or ``value`` unchanged."""
    if "artifactHtml" in value or "html" in value:
        return value
    for strategy in UNWRAP_STRATEGIES:
        unwrapped = strategy(value)
        if unwrapped is not None:
            return unwrapped
    return value


def normalize_artifact_payload(value: dict) -> dict:
    normalized = dict(value)
    if "artifactHtml" not in normalized and isinstance(value.get("html"), str):
        normalized["artifactHtml"] = value["html"]
    if "manifest" not in normalized:
        manifest_json = value.get("manifestJson")
        if isinstance(manifest_json, dict):
            normalized["manifest"] = manifest_json
        elif isinstance(manifest_json, str):
            try:
                parsed = parse_json_flexible(manifest_json)
            except JsonExtractionError:
                parsed = None
            if isinstance(parsed, dict):
                normalized["manifest"] = parsed
    return normalized


def is_refusal_sentinel(value: Any) -> bool:
    return isinstance(value, dict) and value.get("error") == REFUSAL_SENTINEL


# ─── Analysis ─────────────────────────────────────────────────────────────────


def _type_name(value: Any) -> str:
    if isinstance(value, list):
        return "array"
    if value is None:
        return "null"
    return type(value).__name__


def analyze_generation_output(value: Any) -> ArtifactOutputAnalysis:
    """Parse, unwrap, normalise and structurally validate generator output."""
    try:
        parsed = parse_json_flexible(value)
    except JsonExtractionError as exc:
        return ArtifactOutputAnalysis(
            issues=(ValidationIssue("parse_error", "invalid_json", "$", str(exc)),)
        )

    if not isinstance(parsed, dict):
        return ArtifactOutputAnalysis(
            parsed=parsed,
            issues=(
                ValidationIssue(
                    "schema_error",
                    "result_not_object",
                    "$",
                    f"Root JSON value must be an object, got {_type_name(parsed)}.",
                ),
            ),
        )

    if is_refusal_sentinel(parsed):
        return ArtifactOutputAnalysis(parsed=parsed, refused=True)

    payload = normalize_artifact_payload(unwrap_wrapper_object(parsed))
    if is_refusal_sentinel(payload):
        return ArtifactOutputAnalysis(parsed=parsed, refused=True)

    issues: list[ValidationIssue] = []
    html = payload.get("artifactHtml")
    if not isinstance(html, str) or not html.strip():
        issues.append(
            ValidationIssue(
                "schema_error",
                "artifactHtml_missing",
                "$.artifactHtml",
                "artifactHtml is required and must be a non-empty string.",
            )
        )
    manifest = payload.get("manifest")
    if not isinstance(manifest, dict):
        issues.append(
            ValidationIssue(
                "schema_error",
                "manifest_missing",
                "$.manifest",
                f"manifest is required and must be an object, got {_type_name(manifest)}.",
            )
        )
    if issues:
        return ArtifactOutputAnalysis(parsed=parsed, issues=tuple(issues))

    notes = payload.get("notes")
    return ArtifactOutputAnalysis(
        parsed=parsed,
        output=ArtifactGenerationOutput(
            artifact_html=html,
            manifest=manifest,
            notes=notes if isinstance(notes, str) and notes else None,
        ),
    )


def is_acceptable_generation_result(value: Any) -> bool:
    """Gateway validator: a structurally valid payload or the refusal sentinel."""
    analysis = analyze_generation_output(value)
    return analysis.refused or analysis.ok


# ─── Manifest invariants ──────────────────────────────────────────────────────


def is_valid_manifest(manifest: Any) -> bool:
    """True iff every manifest invariant holds.

    ``specVersion`` equals MANIFEST_SPEC_VERSION, ``title`` is a non-empty
    string, ``executionModel`` is form/expression and
    ``capabilities.network`` is the literal boolean False.
    """
    if not isinstance(manifest, dict):
        return False
    if manifest.get("specVersion") != MANIFEST_SPEC_VERSION:
        return False
    title = manifest.get("title")
    if not isinstance(title, str) or not title.strip():
        return False
    if manifest.get("executionModel") not in EXECUTION_MODELS:
        return False
    capabilities = manifest.get("capabilities")
    if not isinstance(capabilities, dict):
        return False
    return capabilities.get("network") is False


# ─── Embedding and hashing ────────────────────────────────────────────────────


def serialize_manifest(manifest: dict[str, Any]) -> str:
    """Pretty JSON safe to place inside a ``<script>`` element."""
    return json.dumps(manifest, indent=2, ensure_ascii=False).replace("</", "<\\/")


def build_manifest_block(manifest: dict[str, Any]) -> str:
    return (
        f'<script type="application/json" id="{MANIFEST_ELEMENT_ID}">'
        f"{serialize_manifest(manifest)}</script>"
    )


def embed_manifest(html: str, manifest: dict[str, Any]) -> str:
    """Place the manifest block in ``html``.

    Replaces the first existing manifest block (and drops any others), else
    inserts before ``</body>``, else appends.
    """
    block = build_manifest_block(manifest)
    matches = list(_MANIFEST_BLOCK_PATTERN.finditer(html))
    if matches:
        pieces: list[str] = []
        cursor = 0
        for index, match in enumerate(matches):
            pieces.append(html[cursor: match.start()])
            if index == 0:
                pieces.append(block)
            cursor = match.end()
        pieces.append(html[cursor:])
        return "".join(pieces)

    body_close = _BODY_CLOSE_PATTERN.search(html)
    if body_close is not None:
        return html[: body_close.start()] + block + html[body_close.start():]
    return f"{html}\n{block}"


def extract_manifest(html: str) -> Optional[dict[str, Any]]:
    """Parse the embedded manifest block back out of ``html``."""
    match = _MANIFEST_BODY_PATTERN.search(html)
    if match is None:
        return None
    try:
        value = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def utf8_length(text: str) -> int:
    return len(text.encode("utf-8"))


@dataclass(frozen=True)
class EmbeddedArtifact:
    html: str
    manifest: dict[str, Any]


def embed_with_hash(html: str, manifest: dict[str, Any]) -> EmbeddedArtifact:
    """Two-pass hash: embed with ``hash: ""``, hash that HTML, embed again with the hash."""
    capabilities = manifest.get("capabilities")
    base = {
        **manifest,
        "capabilities": {**(capabilities if isinstance(capabilities, dict) else {}), "network": False},
        "hash": "",
    }
    placeholder_html = embed_manifest(html, base)
    final_manifest = {**base, "hash": sha256_hex(placeholder_html)}
    return EmbeddedArtifact(html=embed_manifest(html, final_manifest), manifest=final_manifest)


def verify_manifest_hash(html: str) -> bool:
    """Recompute the two-pass hash of a finalised artifact and compare."""
    manifest = extract_manifest(html)
    if manifest is None or not isinstance(manifest.get("hash"), str):
        return False
    placeholder_html = embed_manifest(html, {**manifest, "hash": ""})
    return sha256_hex(placeholder_html) == manifest["hash"]
