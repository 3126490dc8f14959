"""Lenient JSON extraction from model output text.

Models wrap JSON in Markdown fences or prose despite instructions. Extraction
is attempted in order:

  1. strip a leading ```lang fence and a trailing ``` fence
  2. ``json.loads`` on the stripped text
  3. first balanced ``{...}`` candidate found by ``iter_object_candidates()``,
     a string- and escape-aware brace scanner (no regex)

``parse_json_from_output_texts()`` applies this to each provider output
segment and returns the first value accepted by the caller's validator.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Sequence

_FENCE = "```"


class JsonExtractionError(ValueError):
    """No JSON value could be extracted from the text."""


class JsonShapeError(ValueError):
    """JSON was extracted but no candidate matched the expected shape."""


def strip_code_fences(text: str) -> str:
    """Remove a surrounding Markdown code fence, if present."""
    stripped = text.strip()
    if not stripped.startswith(_FENCE):
        return stripped
    index = len(_FENCE)
    # language tag: [A-Za-z0-9_-]*
    while index < len(stripped) and (stripped[index].isalnum() or stripped[index] in "_-"):
        index += 1
    stripped = stripped[index:]
    if stripped.endswith(_FENCE):
        stripped = stripped[: -len(_FENCE)]
    return stripped.strip()


def iter_object_candidates(text: str) -> Iterator[str]:
    """Yield balanced top-level ``{...}`` substrings in order of appearance.

    Braces inside JSON string literals are ignored; backslash escapes inside
    strings are honoured. An unterminated object yields nothing.
    """
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            if depth > 0:
                in_string = True
        elif char == "{":
            if depth == 0:
                start = index
            depth += 1
        elif char == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start: index + 1]
                start = -1


def extract_first_json_object(text: str) -> Optional[str]:
    """Return the first balanced object substring, or None."""
    for candidate in iter_object_candidates(text):
        return candidate
    return None


def parse_json_lenient(text: str) -> Any:
    """Parse model text as JSON, tolerating fences and surrounding prose.

    Raises:
        JsonExtractionError: When neither a direct parse nor any balanced
                             object candidate yields valid JSON.
    """
    stripped = strip_code_fences(text)
    try:
        return json.loads(stripped)
    except json.JSONDecodeError as exc:
        direct_error = exc

    for candidate in iter_object_candidates(stripped):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise JsonExtractionError(f"Unable to parse JSON: {direct_error.msg}")


@dataclass(frozen=True)
class ExtractedJson:
    """A parsed value and the output text it came from."""

    value: Any
    text: str


def parse_json_from_output_texts(
    texts: Sequence[str],
    validator: Optional[Callable[[Any], bool]] = None,
) -> ExtractedJson:
    """Return the first output text whose parsed JSON satisfies ``validator``.

    Args:
        texts:     Output text segments in provider order. The concatenation
                   of all segments is tried last.
        validator: Shape predicate; None accepts any parsed value.

    Raises:
        JsonShapeError:      Something parsed but nothing passed the validator.
        JsonExtractionError: Nothing parsed at all.
    """
    candidates = [t for t in texts if t and t.strip()]
    if len(candidates) > 1:
        candidates.append("".join(candidates))

    parsed_any = False
    last_error: Optional[JsonExtractionError] = None
    for text in candidates:
        try:
            value = parse_json_lenient(text)
        except JsonExtractionError as exc:
            last_error = exc
            continue
        parsed_any = True
        if validator is None or validator(value):
            return ExtractedJson(value=value, text=text)

    if parsed_any:
        raise JsonShapeError("Parsed JSON did not match expected schema.")
    if last_error is not None:
        raise last_error
    raise JsonExtractionError("Model returned no output text.")


def parse_json_flexible(value: Any) -> Any:
    """Accept an already-structured object or lenient-parse a JSON string."""
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        return parse_json_lenient(value)
    raise JsonExtractionError("Value did not contain JSON text or object content.")
