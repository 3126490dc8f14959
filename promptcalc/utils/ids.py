"""Identifier helpers for PromptCalc.

Provides:
  - ``generate_ulid()``: 26-character ULID used for calc ids, version ids and
    fallback trace ids.
  - ``get_trace_id()``: accept the caller's W3C ``traceparent`` trace id when
    it is well formed, otherwise mint a fresh ULID.

Uses the ``python-ulid`` library; ULIDs are not hand-rolled here.
"""

from __future__ import annotations

from typing import Optional

import re2
from ulid import ULID

# traceparent: version-traceid-parentid-flags; trace id is 32 lowercase hex chars
_TRACE_ID_PATTERN = re2.compile(r"^[0-9a-f]{32}$")


def generate_ulid() -> str:
    """Generate a new ULID as a 26-character uppercase string.

    Example::

        calc_id = generate_ulid()
        # "01KJ0JRVHYA7KX32VPN5ZSCTMV"
    """
    return str(ULID())


def get_trace_id(traceparent: Optional[str] = None) -> str:
    """Return the trace id carried by ``traceparent`` or a new ULID.

    Args:
        traceparent: Raw ``traceparent`` header value, if the caller sent one.

    Returns:
        The 32-hex-char trace id segment when valid; otherwise a fresh ULID.
    """
    if traceparent:
        parts = traceparent.strip().split("-")
        if len(parts) >= 2 and _TRACE_ID_PATTERN.search(parts[1].lower()):
            return parts[1].lower()
    return generate_ulid()
