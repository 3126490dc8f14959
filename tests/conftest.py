"""Root test configuration for PromptCalc.

Autouse fixtures strip every environment variable the pipeline reads so a
developer's shell (a real OPENAI_API_KEY, PROMPTCALC_REDKIT=1) can never leak
into a test, and reset the process-wide policy cache between tests.

Provider traffic is faked with ``httpx.MockTransport``: ``make_gateway``
returns a gateway wired to a ``ScriptedProvider`` that answers each request
with the next scripted step.
"""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from promptcalc.gateway.client import CompletionGateway, GatewayConfig
from promptcalc.policy.store import REQUIRED_BANNER_TEXT, REQUIRED_CSP_DIRECTIVES, reset_policy_cache

_ENV_VARS = (
    "PROMPTCALC_REDKIT",
    "PROMPTCALC_CONFIG",
    "PROMPTCALC_POLICY",
    "AI_SCAN_FAIL_CLOSED",
    "GENERATION_ENABLED",
    "MAX_ARTIFACT_BYTES",
    "OPENAI_API_KEY",
    "OPENAI_MODEL",
    "OPENAI_BASE_URL",
    "OPENAI_TIMEOUT_MS",
    "OPENAI_MAX_TOKENS",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def fresh_policy_cache() -> Any:
    reset_policy_cache()
    yield
    reset_policy_cache()


# ─── Scripted provider ────────────────────────────────────────────────────────


def output_payload(text: str) -> dict[str, Any]:
    """Responses-API body carrying ``text`` as the only output part."""
    return {
        "model": "test-model",
        "output": [{"type": "message", "content": [{"type": "output_text", "text": text}]}],
        "usage": {"input_tokens": 10, "output_tokens": 20, "total_tokens": 30},
    }


class ScriptedProvider:
    """Answers requests with scripted steps, in order.

    A step is one of:
      - ``(status, payload)``: a raw HTTP response
      - an exception instance: raised from the transport
      - a ``str``: 200 with that exact output text
      - anything else: 200 with ``json.dumps(step)`` as output text
    """

    def __init__(self, steps: list[Any]) -> None:
        self.steps = list(steps)
        self.requests: list[dict[str, Any]] = []
        self.headers: list[dict[str, str]] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        self.headers.append(dict(request.headers))
        if not self.steps:
            raise AssertionError("ScriptedProvider ran out of steps")
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, tuple):
            status, payload = step
            return httpx.Response(status, json=payload)
        text = step if isinstance(step, str) else json.dumps(step)
        return httpx.Response(200, json=output_payload(text))

    @property
    def formats(self) -> list[str]:
        return [body.get("text", {}).get("format", {}).get("type") for body in self.requests]

    def system_text(self, index: int) -> str:
        return self.requests[index]["input"][0]["content"][0]["text"]

    def user_text(self, index: int) -> str:
        return self.requests[index]["input"][1]["content"][0]["text"]


@pytest.fixture
def make_gateway() -> Callable[..., tuple[CompletionGateway, ScriptedProvider]]:
    def factory(steps: list[Any], **config: Any) -> tuple[CompletionGateway, ScriptedProvider]:
        provider = ScriptedProvider(steps)
        settings = {"api_key": "test-key", "model": "test-model", "backoff_base_ms": 0, **config}
        gateway = CompletionGateway(
            GatewayConfig(**settings),
            transport=httpx.MockTransport(provider.handler),
        )
        return gateway, provider

    return factory


# ─── Artifacts ────────────────────────────────────────────────────────────────


def build_artifact_html(body: str = "", script: str = "") -> str:
    csp = "; ".join(REQUIRED_CSP_DIRECTIVES)
    return (
        "<!doctype html><html><head>"
        f'<meta http-equiv="Content-Security-Policy" content="{csp}">'
        "<title>Calc</title></head><body>"
        f"<p>{REQUIRED_BANNER_TEXT}</p>"
        f"{body}"
        f"<script>{script}</script>"
        "</body></html>"
    )


def build_manifest(execution_model: str = "form", **overrides: Any) -> dict[str, Any]:
    manifest: dict[str, Any] = {
        "specVersion": "1.1",
        "title": "Tip Calculator",
        "executionModel": execution_model,
        "capabilities": {"network": False},
    }
    manifest.update(overrides)
    return manifest


FORM_SCRIPT = (
    "document.getElementById('go').addEventListener('click', () => {"
    "const a = Number(document.getElementById('a').value);"
    "document.getElementById('out').textContent = String(a * 0.15);});"
)

EXPRESSION_SCRIPT = (
    "function computeExpr(expr) { return parse(tokenize(expr)); }"
    "document.getElementById('go').addEventListener('click', () => {"
    "document.getElementById('out').textContent = String(computeExpr(document.getElementById('e').value));});"
)


@pytest.fixture
def form_artifact() -> dict[str, Any]:
    """A generation payload that passes every deterministic check."""
    html = build_artifact_html(
        '<input id="a"><button id="go">Calculate</button><output id="out"></output>',
        FORM_SCRIPT,
    )
    return {"artifactHtml": html, "manifest": build_manifest("form")}


@pytest.fixture
def expression_artifact() -> dict[str, Any]:
    html = build_artifact_html(
        '<input id="e"><button id="go">=</button><output id="out"></output>',
        EXPRESSION_SCRIPT,
    )
    return {"artifactHtml": html, "manifest": build_manifest("expression")}


@pytest.fixture
def artifact_html() -> Callable[..., str]:
    return build_artifact_html


@pytest.fixture
def manifest_factory() -> Callable[..., dict[str, Any]]:
    return build_manifest
