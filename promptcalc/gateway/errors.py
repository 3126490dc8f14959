"""Completion gateway error taxonomy.

  - ``GatewayError``:        base; transport/provider failure after retries exhaust.
  - ``BadRequestError``:     provider rejected the request (HTTP 400); never retried.
  - ``ParseError``:          model text could not be coerced into the expected JSON.
  - ``RequestTimeoutError``: one attempt exceeded its deadline; retried like transport errors.
"""

from __future__ import annotations

from typing import Optional


class GatewayError(Exception):
    """Completion request failed after the attempt budget was spent."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BadRequestError(GatewayError):
    """The provider rejected the request as malformed (HTTP 400)."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message, status_code=status_code)


class ParseError(GatewayError):
    """The model produced text that is not the expected JSON.

    Carries bounded prefix/suffix snippets of the raw text for diagnostics.
    ``raw_text`` itself must never be logged at info level.
    """

    def __init__(
        self,
        message: str,
        raw_text: str,
        attempt: int,
        parse_error: str,
        snippet_prefix: str = "",
        snippet_suffix: str = "",
    ) -> None:
        super().__init__(message)
        self.raw_text = raw_text
        self.attempt = attempt
        self.parse_error = parse_error
        self.snippet_prefix = snippet_prefix
        self.snippet_suffix = snippet_suffix


class RequestTimeoutError(GatewayError):
    """A single attempt was aborted by its per-call timeout."""

    classification = "timeout"

    def __init__(
        self,
        message: str,
        timeout_ms: int,
        elapsed_ms: float,
        model: str,
        max_output_tokens: int,
    ) -> None:
        super().__init__(message)
        self.timeout_ms = timeout_ms
        self.elapsed_ms = elapsed_ms
        self.model = model
        self.max_output_tokens = max_output_tokens
