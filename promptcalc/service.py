"""PromptCalcService: the full generate request flow.

    gate → arbiter/classifier → generator → persistence → response

``generate()`` always returns a response dict (see models/response.py) and
never raises for expected failures. Mapping of failures:

    GatewayError (classifier)      scan_block, OPENAI_ERROR "Prompt classification failed."
    GatewayError (generator)       scan_block, OPENAI_ERROR "Artifact generation failed."
    BadRequestError (either)       scan_block, OPENAI_BAD_REQUEST
    ParseError after repair        error, OPENAI_PARSE_FAILED
    StorageError                   error, STORAGE_FAILED
    empty prompt                   error, BAD_REQUEST

A key without a model id is a deployment error: ``ConfigError`` propagates.

Every response carries the request's ``traceId``.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional, Union

from promptcalc.config import Config, validate_openai_config
from promptcalc.gateway.client import CompletionGateway, GatewayConfig
from promptcalc.gateway.errors import BadRequestError, GatewayError, ParseError
from promptcalc.generation.classifier import (
    PromptScanDecision,
    build_prompt_scan_request,
    classify_prompt,
)
from promptcalc.generation.gate import resolve_generation_gate
from promptcalc.generation.generator import ArtifactGenerationSuccess, ArtifactGenerator, GenerationOutcome
from promptcalc.generation.pipeline import run_generation_pipeline
from promptcalc.generation.redteam_dump import CollateralDumper, GenerationTrace
from promptcalc.generation.scan_policy import (
    DEFAULT_WARN_REASON,
    ScanOverrideDecision,
    ScanPolicyMode,
    evaluate_scan_policy,
    resolve_scan_policy_config,
)
from promptcalc.models.redteam import RedTeamProfile, normalize_profile
from promptcalc.models.refusal import (
    GENERIC_SAFE_ALTERNATIVE,
    RefusalCode,
    RefusalReason,
    refusal,
)
from promptcalc.models.response import (
    build_error_response,
    build_ok_response,
    build_scan_block_response,
    build_scan_skipped_response,
    build_scan_warn_response,
)
from promptcalc.policy.scanner import ScanResult, scan_artifact
from promptcalc.policy.store import Policy, get_policy
from promptcalc.storage.protocol import ArtifactStore, InMemoryArtifactStore, StorageError
from promptcalc.utils.ids import get_trace_id
from promptcalc.utils.logger import PerformanceLogger, clear_trace_id, get_logger, set_trace_id

logger = get_logger(__name__)


def _bad_request_refusal() -> RefusalReason:
    return refusal(
        RefusalCode.OPENAI_BAD_REQUEST,
        "OpenAI request rejected",
        "Try again after updating server config.",
    )


def _error_payload(exc: Exception) -> dict[str, Any]:
    return {"type": type(exc).__name__, "message": str(exc)[:200]}


class _StageFailure(Exception):
    """Internal: carries a finished response out of a pipeline stage."""

    def __init__(self, response: dict[str, Any]) -> None:
        super().__init__(response.get("kind"))
        self.response = response


class PromptCalcService:
    """Wires configuration, policy, gateway and storage into one request flow.

    The gateway is created lazily from ``config`` unless one is injected, so a
    service without an API key can still answer with the gate refusal.
    """

    def __init__(
        self,
        config: Config,
        gateway: Optional[CompletionGateway] = None,
        store: Optional[ArtifactStore] = None,
        policy: Optional[Policy] = None,
        dumper: Optional[CollateralDumper] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config
        self.policy = (policy or get_policy()).with_max_artifact_bytes(
            config.generation.max_artifact_bytes
        )
        self.store = store if store is not None else InMemoryArtifactStore()
        self.scan_policy = resolve_scan_policy_config(env)
        self.dumper = dumper or CollateralDumper(self.scan_policy.capability)
        self._gateway = gateway
        self._owns_gateway = gateway is None

    @property
    def gateway(self) -> CompletionGateway:
        """Raises ConfigError when no gateway was injected and the model or key is unset."""
        if self._gateway is None:
            validate_openai_config(self.config)
            logger.info(
                "openai.config",
                model=self.config.openai.model,
                base_url=self.config.openai.base_url,
            )
            self._gateway = CompletionGateway(GatewayConfig.from_config(self.config))
        return self._gateway

    async def aclose(self) -> None:
        if self._owns_gateway and self._gateway is not None:
            await self._gateway.aclose()

    # ─── Component operations ─────────────────────────────────────────────────

    async def classify_prompt(self, prompt: str) -> PromptScanDecision:
        return await classify_prompt(self.gateway, prompt)

    async def generate_artifact(
        self,
        prompt: str,
        trace: Optional[GenerationTrace] = None,
    ) -> GenerationOutcome:
        generator = ArtifactGenerator(
            self.gateway,
            self.policy,
            ai_scan_fail_closed=self.config.scan.ai_scan_fail_closed,
        )
        return await generator.generate(prompt, trace)

    @staticmethod
    def evaluate_scan_policy(
        mode: ScanPolicyMode,
        capability: bool,
        armed: bool,
        proceed: bool,
        prompt_denied: Optional[bool],
    ) -> ScanOverrideDecision:
        return evaluate_scan_policy(mode, capability, armed, proceed, prompt_denied)

    def scan_artifact(self, html: str) -> ScanResult:
        return scan_artifact(html, self.policy)

    # ─── Request flow ─────────────────────────────────────────────────────────

    def _runtime_mode(self, profile: RedTeamProfile) -> ScanPolicyMode:
        if profile.enabled:
            return ScanPolicyMode(profile.scan_mode)
        return self.scan_policy.mode

    async def generate(
        self,
        prompt: Any,
        armed: bool = False,
        proceed: bool = False,
        profile: Union[RedTeamProfile, dict, None] = None,
        traceparent: Optional[str] = None,
    ) -> dict[str, Any]:
        """Run one generate request end to end and return its response payload.

        ``profile`` (raw dict or RedTeamProfile) and ``armed``/``proceed`` only
        take effect when the red-team capability is on; an enabled profile
        arms the override by itself.
        """
        trace_id = get_trace_id(traceparent)
        set_trace_id(trace_id)
        try:
            response = await self._generate(prompt, armed, proceed, profile, trace_id)
        finally:
            clear_trace_id()
        response["traceId"] = trace_id
        return response

    async def _generate(
        self,
        prompt: Any,
        armed: bool,
        proceed: bool,
        raw_profile: Union[RedTeamProfile, dict, None],
        trace_id: str,
    ) -> dict[str, Any]:
        if not isinstance(prompt, str) or not prompt.strip():
            return build_error_response("BAD_REQUEST", "prompt is required.")

        gate = resolve_generation_gate(self.config)
        if gate is not None:
            logger.info("generation.gate.refused", code=gate.code)
            return build_scan_block_response(gate)

        profile = raw_profile if isinstance(raw_profile, RedTeamProfile) else normalize_profile(raw_profile)
        capability = self.scan_policy.capability
        mode = self._runtime_mode(profile) if capability else ScanPolicyMode.ENFORCE
        trace = GenerationTrace()

        async def run_prompt_scan() -> PromptScanDecision:
            trace.scan_request = {"user": build_prompt_scan_request(prompt).messages[1].content}
            try:
                with PerformanceLogger("prompt.scan", logger):
                    decision = await self.classify_prompt(prompt)
            except BadRequestError as exc:
                trace.error = _error_payload(exc)
                raise _StageFailure(build_scan_block_response(_bad_request_refusal())) from exc
            except GatewayError as exc:
                logger.error("prompt.scan.failed", error_type=type(exc).__name__, message=str(exc)[:200])
                trace.error = _error_payload(exc)
                raise _StageFailure(
                    build_scan_block_response(
                        refusal(
                            RefusalCode.OPENAI_ERROR,
                            "Prompt classification failed.",
                            GENERIC_SAFE_ALTERNATIVE,
                        )
                    )
                ) from exc
            trace.scan_response = decision.to_dict()
            return decision

        async def run_generator() -> GenerationOutcome:
            try:
                with PerformanceLogger("artifact.generate", logger):
                    return await self.generate_artifact(prompt, trace)
            except BadRequestError as exc:
                trace.error = _error_payload(exc)
                raise _StageFailure(build_scan_block_response(_bad_request_refusal())) from exc
            except ParseError as exc:
                logger.warning("artifact.generate.parse_failed", message=str(exc)[:200])
                trace.error = _error_payload(exc)
                raise _StageFailure(
                    build_error_response("OPENAI_PARSE_FAILED", "Model output could not be parsed.")
                ) from exc
            except GatewayError as exc:
                logger.error("artifact.generate.failed", error_type=type(exc).__name__, message=str(exc)[:200])
                trace.error = _error_payload(exc)
                raise _StageFailure(
                    build_scan_block_response(
                        refusal(
                            RefusalCode.OPENAI_ERROR,
                            "Artifact generation failed.",
                            GENERIC_SAFE_ALTERNATIVE,
                        )
                    )
                ) from exc

        try:
            result = await run_generation_pipeline(
                mode,
                capability,
                armed or profile.enabled,
                proceed,
                run_prompt_scan,
                run_generator,
            )
            response = await self._respond(prompt, result)
        except _StageFailure as failure:
            response = failure.response
        finally:
            self.dumper.dump(trace_id, profile, prompt, trace)

        return response

    async def _respond(self, prompt: str, result: Any) -> dict[str, Any]:
        scan = result.prompt_scan
        if result.kind == "scan_skipped":
            return build_scan_skipped_response()
        if result.kind == "scan_warn":
            return build_scan_warn_response(
                scan.refusal_code if scan else None,
                scan.categories if scan else (),
                (scan.reason if scan else None) or DEFAULT_WARN_REASON,
            )
        if result.kind == "scan_block":
            return build_scan_block_response(
                refusal(
                    scan.refusal_code or RefusalCode.DISALLOWED_NETWORK,
                    scan.reason,
                    scan.safe_alternative or GENERIC_SAFE_ALTERNATIVE,
                )
            )

        outcome = result.payload
        if not isinstance(outcome, ArtifactGenerationSuccess):
            return build_scan_block_response(outcome)

        try:
            stored = await self.store.save_artifact(prompt, outcome.manifest, outcome.artifact_html)
        except StorageError as exc:
            logger.error("storage.save.failed", message=str(exc)[:200])
            return build_error_response("STORAGE_FAILED", "Failed to persist the calculator.")

        logger.info(
            "artifact.generate.ok",
            calc_id=stored.calc_id,
            version_id=stored.version_id,
            scan_outcome=result.scan_outcome,
            override_used=result.override_used,
        )
        return build_ok_response(
            stored.calc_id,
            stored.version_id,
            outcome.manifest,
            outcome.artifact_html,
            result.scan_outcome,
            result.override_used,
        )
