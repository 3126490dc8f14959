"""Integration tests for ArtifactGenerator against a scripted provider.

Each test scripts the provider traffic of one ``generate()`` call:
generation (+ repair) calls, then the AI code scan call when the
deterministic checks pass.
"""

from __future__ import annotations

import re
from typing import Any

import httpx
import pytest

from promptcalc.gateway.errors import ParseError
from promptcalc.generation.artifact_output import utf8_length, verify_manifest_hash
from promptcalc.generation.generator import ArtifactGenerationSuccess, ArtifactGenerator
from promptcalc.generation.postprocess import READY_BOOTSTRAP_ID
from promptcalc.generation.redteam_dump import GenerationTrace
from promptcalc.policy.store import DEFAULT_POLICY

CLEAN_SCAN = {"isSafe": True, "issues": []}


@pytest.fixture
def make_generator(make_gateway):
    def factory(steps: list[Any], policy=DEFAULT_POLICY, fail_closed: bool = False):
        gateway, provider = make_gateway(steps)
        return ArtifactGenerator(gateway, policy, ai_scan_fail_closed=fail_closed), provider

    return factory


@pytest.fixture
def make_artifact(artifact_html, manifest_factory):
    def factory(script: str = "", body: str = "", execution_model: str = "form", **manifest: Any) -> dict:
        return {
            "artifactHtml": artifact_html(body, script),
            "manifest": manifest_factory(execution_model, **manifest),
        }

    return factory


# ─── Success paths ────────────────────────────────────────────────────────────


class TestSuccess:
    @pytest.mark.asyncio
    async def test_simple_standard_calculator_uses_expression_model(
        self, make_generator, expression_artifact
    ) -> None:
        generator, provider = make_generator([expression_artifact, CLEAN_SCAN])
        outcome = await generator.generate("Simple standard calculator")

        assert isinstance(outcome, ArtifactGenerationSuccess)
        assert outcome.execution_model == "expression"
        assert outcome.rounds == 1
        assert "computeExpr(" in outcome.artifact_html
        assert "Execution model: expression" in provider.system_text(0)
        assert provider.formats == ["json_schema", "json_schema"]

    @pytest.mark.asyncio
    async def test_cnc_prompt_uses_form_model(self, make_generator, form_artifact) -> None:
        generator, provider = make_generator([form_artifact, CLEAN_SCAN])
        outcome = await generator.generate("CNC feed rate calculator")

        assert isinstance(outcome, ArtifactGenerationSuccess)
        assert outcome.execution_model == "form"
        assert "Execution model: form" in provider.system_text(0)
        assert provider.user_text(0).startswith("Prompt:\nCNC feed rate calculator")

    @pytest.mark.asyncio
    async def test_final_artifact_is_embedded_and_hashed(self, make_generator, form_artifact) -> None:
        generator, provider = make_generator([form_artifact, CLEAN_SCAN])
        outcome = await generator.generate("Tip calculator")

        html = outcome.artifact_html
        assert 'id="promptcalc-manifest"' in html
        assert f'id="{READY_BOOTSTRAP_ID}"' in html
        assert re.fullmatch(r"[0-9a-f]{64}", outcome.manifest["hash"])
        assert outcome.manifest["capabilities"]["network"] is False
        assert verify_manifest_hash(html)
        # the AI code scan sees the final HTML
        assert provider.user_text(1) == f"HTML:\n{html}"

    @pytest.mark.asyncio
    async def test_generation_schema_is_non_strict(self, make_generator, form_artifact) -> None:
        generator, provider = make_generator([form_artifact, CLEAN_SCAN])
        await generator.generate("Tip calculator")
        generation_format = provider.requests[0]["text"]["format"]
        assert generation_format["name"] == "ArtifactGeneration"
        assert generation_format["strict"] is False
        assert provider.requests[1]["text"]["format"]["strict"] is True

    @pytest.mark.asyncio
    async def test_wrapped_output_is_unwrapped(self, make_generator, form_artifact) -> None:
        generator, _ = make_generator([{"result": form_artifact}, CLEAN_SCAN])
        assert isinstance(await generator.generate("Tip calculator"), ArtifactGenerationSuccess)


# ─── Refusals before scanning ─────────────────────────────────────────────────


class TestEarlyRefusals:
    @pytest.mark.asyncio
    async def test_refuse_sentinel(self, make_generator) -> None:
        generator, provider = make_generator([{"error": "REFUSE"}])
        trace = GenerationTrace()
        outcome = await generator.generate("Tip calculator", trace)

        assert outcome.code == "MODEL_REFUSED"
        assert outcome.message == "Artifact generation refused."
        assert len(provider.requests) == 1
        assert trace.skipped_steps == ["scan"]

    @pytest.mark.asyncio
    async def test_invalid_manifest_is_refused_not_repaired(self, make_generator, make_artifact) -> None:
        generator, provider = make_generator([make_artifact(capabilities={"network": True})])
        outcome = await generator.generate("Tip calculator")

        assert outcome.code == "INVALID_MODEL_OUTPUT"
        assert outcome.message == "Artifact manifest missing required fields."
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_too_large_before_embedding(self, make_generator, form_artifact) -> None:
        policy = DEFAULT_POLICY.with_max_artifact_bytes(100)
        generator, _ = make_generator([form_artifact], policy=policy)
        outcome = await generator.generate("Tip calculator")

        assert outcome.code == "TOO_LARGE_ARTIFACT"
        assert outcome.to_dict()["details"] == [
            {"bytes": utf8_length(form_artifact["artifactHtml"]), "maxBytes": 100}
        ]

    @pytest.mark.asyncio
    async def test_too_large_after_embedding(self, make_generator, form_artifact) -> None:
        limit = utf8_length(form_artifact["artifactHtml"]) + 10
        generator, provider = make_generator([form_artifact], policy=DEFAULT_POLICY.with_max_artifact_bytes(limit))
        outcome = await generator.generate("Tip calculator")

        assert outcome.code == "TOO_LARGE_ARTIFACT"
        assert outcome.details[0]["bytes"] > limit
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_expression_without_safe_evaluator(self, make_generator, form_artifact) -> None:
        generator, provider = make_generator([form_artifact])
        outcome = await generator.generate("Simple standard calculator")

        assert outcome.code == "MISSING_SAFE_EVALUATOR"
        assert outcome.safe_alternative == "Request a form-based calculator with explicit inputs."
        assert len(provider.requests) == 1


# ─── Repair ───────────────────────────────────────────────────────────────────


class TestRepair:
    @pytest.mark.asyncio
    async def test_parse_failure_gets_one_repair_call(self, make_generator, form_artifact) -> None:
        generator, provider = make_generator(["not json", "still not json", form_artifact, CLEAN_SCAN])
        outcome = await generator.generate("Tip calculator")

        assert isinstance(outcome, ArtifactGenerationSuccess)
        assert len(provider.requests) == 4
        assert provider.user_text(2).startswith("You returned invalid JSON.")

    @pytest.mark.asyncio
    async def test_failed_repair_raises_parse_error(self, make_generator) -> None:
        generator, provider = make_generator(["nope", "nope", "nope"])
        with pytest.raises(ParseError):
            await generator.generate("Tip calculator")
        assert len(provider.requests) == 3

    @pytest.mark.asyncio
    async def test_missing_manifest_is_repaired(self, make_generator, form_artifact) -> None:
        shapeless = {"artifactHtml": form_artifact["artifactHtml"]}
        generator, provider = make_generator([shapeless, shapeless, form_artifact, CLEAN_SCAN])
        assert isinstance(await generator.generate("Tip calculator"), ArtifactGenerationSuccess)
        assert provider.user_text(2).startswith("You returned invalid JSON.")


# ─── Deterministic scan ───────────────────────────────────────────────────────


class TestDeterministicScan:
    @pytest.mark.asyncio
    async def test_function_constructor_earns_one_corrective_round(
        self, make_generator, make_artifact, form_artifact
    ) -> None:
        bad = make_artifact(script="const f = new Function('a', 'return a');")
        generator, provider = make_generator([bad, form_artifact, CLEAN_SCAN])
        outcome = await generator.generate("Tip calculator")

        assert isinstance(outcome, ArtifactGenerationSuccess)
        assert outcome.rounds == 2
        assert 'rejected for using "new Function"' in provider.system_text(1)
        assert "rejected for using" not in provider.system_text(0)

    @pytest.mark.asyncio
    async def test_corrective_round_runs_only_once(self, make_generator, make_artifact) -> None:
        bad = make_artifact(script="const f = new Function('a', 'return a');")
        generator, provider = make_generator([bad, bad])
        outcome = await generator.generate("Tip calculator")

        assert outcome.code == "DISALLOWED_EVAL"
        assert len(provider.requests) == 2

    @pytest.mark.asyncio
    async def test_other_scan_hits_are_final(self, make_generator, make_artifact) -> None:
        generator, provider = make_generator([make_artifact(script="fetch('/rates');")])
        outcome = await generator.generate("Tip calculator")

        assert outcome.code == "DISALLOWED_NETWORK"
        assert outcome.message == "Artifact contains banned pattern: fetch("
        assert "fetch(" in outcome.context_snippet
        assert outcome.match_index is not None
        assert len(provider.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_csp(self, make_generator, manifest_factory) -> None:
        payload = {"artifactHtml": "<html><body><p>Hi</p></body></html>", "manifest": manifest_factory()}
        generator, _ = make_generator([payload])
        assert (await generator.generate("Tip calculator")).code == "MISSING_CSP"


# ─── AI code scan ─────────────────────────────────────────────────────────────


class TestAiCodeScanStage:
    @pytest.mark.asyncio
    async def test_disallowed_finding_refuses(self, make_generator, form_artifact) -> None:
        verdict = {
            "isSafe": False,
            "issues": [
                {
                    "category": "navigation",
                    "message": "Opens a popup",
                    "evidence": "window.open('x')",
                    "severity": "high",
                    "code": None,
                }
            ],
        }
        generator, _ = make_generator([form_artifact, verdict])
        outcome = await generator.generate("Tip calculator")
        assert outcome.code == "AI_SCAN_FAILED"
        assert "category=navigation" in outcome.message

    @pytest.mark.asyncio
    async def test_banner_echo_does_not_block(self, make_generator, form_artifact) -> None:
        verdict = {
            "isSafe": False,
            "issues": [
                {
                    "category": "credential_capture",
                    "message": "Mentions passwords",
                    "evidence": DEFAULT_POLICY.required_banner_text,
                    "severity": "low",
                    "code": None,
                }
            ],
        }
        generator, _ = make_generator([form_artifact, verdict])
        assert isinstance(await generator.generate("Tip calculator"), ArtifactGenerationSuccess)

    @pytest.mark.asyncio
    async def test_banner_fragment_evidence_still_refuses(self, make_generator, form_artifact) -> None:
        verdict = {
            "isSafe": False,
            "issues": [
                {
                    "category": "data_exfiltration",
                    "message": "Encodes the inputs with btoa(values) before sending",
                    "evidence": "calculator",
                    "severity": "high",
                    "code": None,
                }
            ],
        }
        generator, _ = make_generator([form_artifact, verdict])
        outcome = await generator.generate("Tip calculator")
        assert outcome.code == "AI_SCAN_FAILED"
        assert "category=data_exfiltration" in outcome.message

    @pytest.mark.asyncio
    async def test_scan_failure_fails_open(self, make_generator, form_artifact) -> None:
        generator, _ = make_generator([form_artifact, (500, {}), (500, {}), (500, {})])
        trace = GenerationTrace()
        outcome = await generator.generate("Tip calculator", trace)
        assert isinstance(outcome, ArtifactGenerationSuccess)
        assert trace.skipped_steps == ["ai_scan"]

    @pytest.mark.asyncio
    async def test_scan_failure_fails_closed(self, make_generator, form_artifact) -> None:
        generator, _ = make_generator(
            [form_artifact, httpx.ConnectError("down"), httpx.ConnectError("down"), httpx.ConnectError("down")],
            fail_closed=True,
        )
        outcome = await generator.generate("Tip calculator")
        assert outcome.code == "AI_SCAN_FAILED"
        assert outcome.message == "AI code scan failed."
