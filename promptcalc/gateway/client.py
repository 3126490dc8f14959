"""Completion gateway for the OpenAI Responses API.

Sends one structured-output request, retrying transient failures:

  - HTTP 429/500/502/503/504, transport errors and per-attempt timeouts are
    retried with exponential backoff (base × 2^(attempt − 1)).
  - HTTP 400 is never retried, except that a strict ``json_schema`` request
    rejected with a message naming ``response_format``/``text.format``/
    ``json_schema`` is downgraded once to ``json_object`` with one extra
    attempt. That trigger list is a provider compatibility shim.
  - Model text is parsed leniently (see ``json_extract``). A parse failure is
    retried; the final one surfaces as ``ParseError``.

Logging: one ``openai.responses`` event per attempt with status, model,
latency, token usage and attempt. Prompt and output text are never logged,
except bounded prefix/suffix snippets on parse failure.

Usage::

    async with CompletionGateway(GatewayConfig.from_config(config)) as gateway:
        result = await gateway.call(request, CallOptions(max_attempts=2))
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx

from promptcalc.config import Config
from promptcalc.constants import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_OPENAI_MAX_TOKENS,
    DEFAULT_OPENAI_TIMEOUT_MS,
    ERROR_MESSAGE_MAX_CHARS,
    PARSE_SNIPPET_CHARS,
    RETRYABLE_STATUSES,
)
from promptcalc.gateway.errors import (
    BadRequestError,
    GatewayError,
    ParseError,
    RequestTimeoutError,
)
from promptcalc.gateway.json_extract import (
    JsonExtractionError,
    JsonShapeError,
    parse_json_from_output_texts,
)
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Connection pool ──────────────────────────────────────────────────────────

POOL_MAX_CONNECTIONS: int = 20
POOL_MAX_KEEPALIVE: int = 10
POOL_KEEPALIVE_EXPIRY: float = 30.0

# Lower-cased substrings of a 400 error message meaning "structured output unsupported".
SCHEMA_UNSUPPORTED_MARKERS: tuple[str, ...] = ("response_format", "text.format", "json_schema")

BAD_REQUEST_MESSAGE = "OpenAI request invalid (400). Check server configuration."


# ─── Request model ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OutputFormat:
    """Output-format descriptor sent as ``text.format``."""

    type: str  # "text" | "json_object" | "json_schema"
    name: Optional[str] = None
    schema: Optional[dict] = None
    strict: bool = True

    @classmethod
    def text(cls) -> "OutputFormat":
        return cls(type="text")

    @classmethod
    def json_object(cls) -> "OutputFormat":
        return cls(type="json_object")

    @classmethod
    def json_schema(cls, name: str, schema: dict, strict: bool = True) -> "OutputFormat":
        return cls(type="json_schema", name=name, schema=schema, strict=strict)

    @classmethod
    def from_response_format(cls, legacy: Any) -> Optional["OutputFormat"]:
        """Map a legacy ``response_format`` descriptor onto a text format.

        A json_schema descriptor missing its name or schema degrades to
        ``json_object``. Unknown shapes map to None.
        """
        if not isinstance(legacy, dict):
            return None
        kind = legacy.get("type")
        if kind == "json_object":
            return cls.json_object()
        if kind == "text":
            return cls.text()
        if kind != "json_schema":
            return None
        nested = legacy.get("json_schema") or {}
        name = nested.get("name") or legacy.get("name")
        schema = nested.get("schema") or legacy.get("schema")
        strict = nested.get("strict", legacy.get("strict", True))
        if not name or not schema:
            return cls.json_object()
        return cls.json_schema(name, schema, strict=bool(strict))

    def to_payload(self) -> dict[str, Any]:
        if self.type != "json_schema":
            return {"type": self.type}
        return {
            "type": "json_schema",
            "name": self.name,
            "schema": self.schema,
            "strict": self.strict,
        }


@dataclass(frozen=True)
class Message:
    role: str  # "system" | "user" | "assistant"
    content: str

    def to_payload(self) -> dict[str, Any]:
        return {"role": self.role, "content": [{"type": "input_text", "text": self.content}]}


@dataclass(frozen=True)
class CompletionRequest:
    """One immutable completion request."""

    messages: tuple[Message, ...]
    output_format: Optional[OutputFormat] = None
    max_output_tokens: Optional[int] = None
    model: Optional[str] = None

    @classmethod
    def build(
        cls,
        system: str,
        user: str,
        output_format: Optional[OutputFormat] = None,
        max_output_tokens: Optional[int] = None,
        model: Optional[str] = None,
    ) -> "CompletionRequest":
        """Convenience constructor for the common system + user pair."""
        return cls(
            messages=(Message("system", system), Message("user", user)),
            output_format=output_format,
            max_output_tokens=max_output_tokens,
            model=model,
        )


@dataclass(frozen=True)
class CallOptions:
    """Per-call knobs.

    max_attempts:          Attempt budget before the last error is raised.
    allow_schema_fallback: Permit the one-time json_schema → json_object downgrade.
    validator:             Shape predicate applied to the parsed JSON.
    op:                    Operation label attached to every log event.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    allow_schema_fallback: bool = True
    validator: Optional[Callable[[Any], bool]] = None
    op: str = "completion"


@dataclass(frozen=True)
class CompletionResult:
    """Parsed value plus the raw provider payload.

    With strict json_schema accepted, ``parsed`` conforms to the schema. After
    ``used_fallback`` it is only guaranteed to be syntactically valid JSON.
    """

    parsed: Any
    raw: dict
    attempts: int = 1
    used_fallback: bool = False


@dataclass(frozen=True)
class GatewayConfig:
    api_key: str
    model: str
    base_url: str = DEFAULT_OPENAI_BASE_URL
    timeout_ms: int = DEFAULT_OPENAI_TIMEOUT_MS
    max_output_tokens: int = DEFAULT_OPENAI_MAX_TOKENS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    extra_headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Config) -> "GatewayConfig":
        return cls(
            api_key=config.openai.api_key,
            model=config.openai.model,
            base_url=config.openai.base_url,
            timeout_ms=config.openai.timeout_ms,
            max_output_tokens=config.openai.max_tokens,
        )

    @property
    def responses_url(self) -> str:
        base = self.base_url if self.base_url.endswith("/") else f"{self.base_url}/"
        return f"{base}responses"


# ─── Payload helpers ──────────────────────────────────────────────────────────


def build_responses_payload(
    config: GatewayConfig,
    request: CompletionRequest,
    format_override: Optional[OutputFormat] = None,
) -> dict[str, Any]:
    """Build the provider payload ``{model, input, max_output_tokens, text}``."""
    payload: dict[str, Any] = {
        "model": request.model or config.model,
        "input": [message.to_payload() for message in request.messages],
        "max_output_tokens": request.max_output_tokens or config.max_output_tokens,
    }
    output_format = format_override or request.output_format
    if output_format is not None:
        payload["text"] = {"format": output_format.to_payload()}
    return payload


def extract_output_texts(payload: dict) -> list[str]:
    """Collect ``output[].content[].text`` parts, else top-level ``output_text``."""
    parts: list[str] = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
    if parts:
        return parts
    output_text = payload.get("output_text")
    if isinstance(output_text, str):
        return [output_text]
    return []


def extract_output_object(payload: dict) -> Optional[dict]:
    """Return the first inline structured ``content[].value`` object, if any."""
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and isinstance(part.get("value"), dict):
                return part["value"]
    return None


def is_json_schema_unsupported(error_message: Optional[str]) -> bool:
    if not error_message:
        return False
    lowered = error_message.lower()
    return any(marker in lowered for marker in SCHEMA_UNSUPPORTED_MARKERS)


def _truncate(value: str, limit: int = ERROR_MESSAGE_MAX_CHARS) -> str:
    return value if len(value) <= limit else f"{value[:limit]}…"


def _extract_error_message(payload: dict) -> Optional[str]:
    error = payload.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return _truncate(error["message"])
    return None


def create_http_client(
    timeout_ms: int = DEFAULT_OPENAI_TIMEOUT_MS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create the gateway's shared httpx.AsyncClient with pooling configured.

    ``transport`` is injected by tests (``httpx.MockTransport``).
    """
    return httpx.AsyncClient(
        limits=httpx.Limits(
            max_connections=POOL_MAX_CONNECTIONS,
            max_keepalive_connections=POOL_MAX_KEEPALIVE,
            keepalive_expiry=POOL_KEEPALIVE_EXPIRY,
        ),
        timeout=httpx.Timeout(timeout_ms / 1000),
        follow_redirects=False,
        transport=transport,
    )


# ─── Gateway ──────────────────────────────────────────────────────────────────


class CompletionGateway:
    """Retrying client for one provider endpoint.

    One instance owns one pooled ``httpx.AsyncClient`` unless a client is
    passed in, in which case the caller owns its lifecycle.
    """

    def __init__(
        self,
        config: GatewayConfig,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or create_http_client(config.timeout_ms, transport=transport)

    async def __aenter__(self) -> "CompletionGateway":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _backoff_seconds(self, attempt: int) -> float:
        return self.config.backoff_base_ms * (2 ** (attempt - 1)) / 1000

    async def _post(self, body: dict[str, Any]) -> httpx.Response:
        headers = {
            "authorization": f"Bearer {self.config.api_key}",
            "content-type": "application/json",
            **self.config.extra_headers,
        }
        return await asyncio.wait_for(
            self._client.post(self.config.responses_url, json=body, headers=headers),
            timeout=self.config.timeout_ms / 1000,
        )

    async def call(
        self,
        request: CompletionRequest,
        options: Optional[CallOptions] = None,
    ) -> CompletionResult:
        """Send ``request`` and return the parsed result.

        Raises:
            BadRequestError:     Provider returned 400 (after any format fallback).
            ParseError:          Final attempt produced unparseable or mis-shaped JSON.
            RequestTimeoutError: Final attempt timed out.
            GatewayError:        Any other failure once the budget is spent.
        """
        options = options or CallOptions()
        max_attempts = max(1, options.max_attempts)
        used_fallback = False
        last_error: Optional[GatewayError] = None
        requested_format = request.output_format

        attempt = 0
        while attempt < max_attempts:
            attempt += 1
            override = OutputFormat.json_object() if used_fallback else None
            body = build_responses_payload(self.config, request, override)
            effective_format = override or requested_format
            started = time.perf_counter()

            try:
                response = await self._post(body)
            except (asyncio.TimeoutError, httpx.TimeoutException):
                elapsed_ms = (time.perf_counter() - started) * 1000
                last_error = RequestTimeoutError(
                    "OpenAI request aborted.",
                    timeout_ms=self.config.timeout_ms,
                    elapsed_ms=elapsed_ms,
                    model=body["model"],
                    max_output_tokens=body["max_output_tokens"],
                )
                logger.warning(
                    "openai.responses.aborted",
                    op=options.op,
                    attempt=attempt,
                    timeout_ms=self.config.timeout_ms,
                    elapsed_ms=round(elapsed_ms, 1),
                    model=body["model"],
                    max_output_tokens=body["max_output_tokens"],
                )
                await self._sleep_before_retry(attempt, max_attempts)
                continue
            except httpx.HTTPError as exc:
                last_error = GatewayError(_truncate(f"OpenAI request failed: {exc}"))
                logger.warning(
                    "openai.responses.error",
                    op=options.op,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                )
                await self._sleep_before_retry(attempt, max_attempts)
                continue

            latency_ms = (time.perf_counter() - started) * 1000
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if not isinstance(payload, dict):
                payload = {}

            usage = payload.get("usage") or {}
            log_method = logger.info if response.is_success else logger.warning
            log_method(
                "openai.responses",
                op=options.op,
                status=response.status_code,
                model=payload.get("model") or body["model"],
                latency_ms=round(latency_ms, 1),
                input_tokens=usage.get("input_tokens"),
                output_tokens=usage.get("output_tokens"),
                total_tokens=usage.get("total_tokens"),
                attempt=attempt,
            )

            # ── Non-2xx ───────────────────────────────────────────────────────
            if not response.is_success:
                if response.status_code == 400:
                    error_message = _extract_error_message(payload)
                    logger.warning(
                        "openai.responses.bad_request",
                        op=options.op,
                        error_message=error_message,
                        request_keys=sorted(body.keys()),
                        schema_name=requested_format.name if requested_format else None,
                    )
                    if (
                        not used_fallback
                        and options.allow_schema_fallback
                        and requested_format is not None
                        and requested_format.type == "json_schema"
                        and is_json_schema_unsupported(error_message)
                    ):
                        logger.info(
                            "openai.responses.format_fallback",
                            op=options.op,
                            attempt=attempt,
                        )
                        used_fallback = True
                        max_attempts += 1
                        continue
                    raise BadRequestError(BAD_REQUEST_MESSAGE, status_code=400)

                last_error = GatewayError(
                    f"OpenAI responded with status {response.status_code}",
                    status_code=response.status_code,
                )
                if response.status_code not in RETRYABLE_STATUSES:
                    raise last_error
                await self._sleep_before_retry(attempt, max_attempts)
                continue

            # ── 2xx: extract ──────────────────────────────────────────────────
            texts = extract_output_texts(payload)
            output_text = "".join(texts) if texts else None

            if effective_format is not None and effective_format.type == "text":
                if output_text:
                    return CompletionResult(
                        parsed=output_text,
                        raw=payload,
                        attempts=attempt,
                        used_fallback=used_fallback,
                    )
                last_error = GatewayError("OpenAI response missing output text")
                await self._sleep_before_retry(attempt, max_attempts)
                continue

            output_object = extract_output_object(payload)
            if output_text is None and output_object is None:
                last_error = GatewayError("OpenAI response missing output text")
                await self._sleep_before_retry(attempt, max_attempts)
                continue

            try:
                parsed = self._parse(output_object, texts, options.validator)
            except (JsonExtractionError, JsonShapeError) as exc:
                text = output_text or ""
                prefix = text[:PARSE_SNIPPET_CHARS]
                suffix = text[-PARSE_SNIPPET_CHARS:] if len(text) > PARSE_SNIPPET_CHARS else text
                logger.warning(
                    "openai.responses.parse_failed",
                    op=options.op,
                    attempt=attempt,
                    parse_error=str(exc),
                    output_prefix_sample=prefix or None,
                    output_suffix_sample=suffix or None,
                )
                last_error = ParseError(
                    f"JSON parse failed. parseError={exc}",
                    raw_text=text,
                    attempt=attempt,
                    parse_error=str(exc),
                    snippet_prefix=prefix,
                    snippet_suffix=suffix,
                )
                await self._sleep_before_retry(attempt, max_attempts)
                continue

            return CompletionResult(
                parsed=parsed,
                raw=payload,
                attempts=attempt,
                used_fallback=used_fallback,
            )

        raise last_error or GatewayError("OpenAI request failed")

    @staticmethod
    def _parse(
        output_object: Optional[dict],
        texts: list[str],
        validator: Optional[Callable[[Any], bool]],
    ) -> Any:
        if output_object is not None:
            if validator is not None and not validator(output_object):
                raise JsonShapeError("Parsed JSON did not match expected schema.")
            return output_object
        return parse_json_from_output_texts(texts, validator).value

    async def _sleep_before_retry(self, attempt: int, max_attempts: int) -> None:
        if attempt < max_attempts:
            await asyncio.sleep(self._backoff_seconds(attempt))

