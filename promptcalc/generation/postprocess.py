"""Deterministic safety rewrites applied to artifact HTML before embedding and scanning.

Every rewrite is idempotent: applying it twice gives the same HTML as once.

  - ``ensure_form_safety()``:       when a ``<form>`` exists, give every bare
                                    ``<button>`` ``type="button"`` and inject a
                                    capture-phase submit preventer.
  - ``ensure_ready_bootstrap()``:   inject the parent-frame ready/ping handshake.
  - ``normalize_csp_meta_content()``: drop a trailing period from the CSP meta
                                    ``content`` value, which browsers would
                                    otherwise fold into the last directive.

IMPORT RULES: ``import re2`` only; these patterns run over untrusted HTML.
re2 has no lookahead, so the button rewrite inspects each match's attributes
and splices manually.
"""

from __future__ import annotations

from dataclasses import dataclass

import re2

# ─── Patterns ─────────────────────────────────────────────────────────────────

_FORM_PATTERN = re2.compile(r"(?i)<form\b")
_BUTTON_PATTERN = re2.compile(r"(?i)<button\b([^>]*)>")
_TYPE_ATTR_PATTERN = re2.compile(r"(?i)\btype\s*=")
_BODY_CLOSE_PATTERN = re2.compile(r"(?i)</body\s*>")
_CSP_META_PATTERN = re2.compile(
    r"""(?i)<meta[^>]+http-equiv\s*=\s*["']?Content-Security-Policy["']?[^>]*>"""
)
_CONTENT_ATTR_PATTERN = re2.compile(r"""(?i)\bcontent\s*=\s*("[^"]*"|'[^']*')""")
_HEAD_OPEN_PATTERN = re2.compile(r"(?i)<head\b[^>]*>")
_BODY_OPEN_PATTERN = re2.compile(r"(?i)<body\b[^>]*>")

# ─── Injected scripts ─────────────────────────────────────────────────────────

SUBMIT_PREVENTER_ID = "promptcalc-prevent-form-submit"
SUBMIT_PREVENTER_SCRIPT = (
    f'<script id="{SUBMIT_PREVENTER_ID}">'
    "document.addEventListener('submit', e => e.preventDefault(), true);"
    "</script>"
)
_SUBMIT_PREVENTER_PRESENT = re2.compile(
    r"""(?i)<script[^>]*\bid\s*=\s*["']promptcalc-prevent-form-submit["']"""
)

READY_BOOTSTRAP_ID = "promptcalc-ready"
READY_BOOTSTRAP_SCRIPT = (
    f'<script id="{READY_BOOTSTRAP_ID}">'
    "(function(){"
    'const sendReady=()=>{try{window.parent.postMessage({type:"ready"},"*");}catch{}};'
    "const handlePing=(event)=>{try{if(event&&event.data&&event.data.type===\"ping\")"
    '{window.parent.postMessage({type:"pong"},"*");}}catch{}};'
    'if(document.readyState==="loading"){document.addEventListener("DOMContentLoaded",sendReady,{once:true});}'
    "else{sendReady();}"
    'window.addEventListener("message",handlePing);'
    "})();"
    "</script>"
)
_READY_BOOTSTRAP_PRESENT = re2.compile(
    r"""(?i)<script[^>]*\bid\s*=\s*["']promptcalc-ready["']"""
)


# ─── Form safety ──────────────────────────────────────────────────────────────


def contains_form(html: str) -> bool:
    return _FORM_PATTERN.search(html) is not None


def _typed_buttons(html: str) -> str:
    pieces: list[str] = []
    cursor = 0
    for match in _BUTTON_PATTERN.finditer(html):
        attrs = match.group(1)
        if _TYPE_ATTR_PATTERN.search(attrs) is not None:
            continue
        pieces.append(html[cursor: match.start()])
        pieces.append(f'<button type="button"{attrs}>')
        cursor = match.end()
    if not pieces:
        return html
    pieces.append(html[cursor:])
    return "".join(pieces)


def insert_before_body_close(html: str, fragment: str) -> str:
    """Insert ``fragment`` before the first ``</body>``, else append on a new line."""
    match = _BODY_CLOSE_PATTERN.search(html)
    if match is None:
        return f"{html}\n{fragment}"
    return html[: match.start()] + fragment + html[match.start():]


def ensure_form_safety(html: str) -> str:
    """Neutralise accidental form submission. No-op when there is no ``<form>``."""
    if not contains_form(html):
        return html
    rewritten = _typed_buttons(html)
    if _SUBMIT_PREVENTER_PRESENT.search(rewritten) is not None:
        return rewritten
    return insert_before_body_close(rewritten, SUBMIT_PREVENTER_SCRIPT)


# ─── Ready bootstrap ──────────────────────────────────────────────────────────


def ensure_ready_bootstrap(html: str) -> str:
    """Inject the ready/ping bootstrap once.

    Placement: after the CSP meta tag, else after ``<head>``, else after
    ``<body>``, else at the very start.
    """
    if _READY_BOOTSTRAP_PRESENT.search(html) is not None:
        return html
    for pattern in (_CSP_META_PATTERN, _HEAD_OPEN_PATTERN, _BODY_OPEN_PATTERN):
        match = pattern.search(html)
        if match is not None:
            return html[: match.end()] + READY_BOOTSTRAP_SCRIPT + html[match.end():]
    return READY_BOOTSTRAP_SCRIPT + html


# ─── CSP meta ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CspNormalization:
    html: str
    normalized: bool


def normalize_csp_meta_content(html: str) -> CspNormalization:
    """Strip trailing periods from the CSP meta tag's ``content`` value."""
    meta = _CSP_META_PATTERN.search(html)
    if meta is None:
        return CspNormalization(html=html, normalized=False)

    tag = meta.group(0)
    content = _CONTENT_ATTR_PATTERN.search(tag)
    if content is None:
        return CspNormalization(html=html, normalized=False)

    quoted = content.group(1)
    quote, value = quoted[0], quoted[1:-1]
    cleaned = value.rstrip()
    if not cleaned.endswith("."):
        return CspNormalization(html=html, normalized=False)
    cleaned = cleaned.rstrip(".").rstrip()

    new_tag = tag[: content.start(1)] + f"{quote}{cleaned}{quote}" + tag[content.end(1):]
    new_html = html[: meta.start()] + new_tag + html[meta.end():]
    return CspNormalization(html=new_html, normalized=True)


def apply_postprocessing(html: str) -> str:
    """Run every rewrite in order: CSP cleanup, form safety, ready bootstrap."""
    html = normalize_csp_meta_content(html).html
    html = ensure_form_safety(html)
    return ensure_ready_bootstrap(html)
