from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .cache import LayerCache, cache_key, cache_prefix
from .config import PipelineConfig
from .gate import GateFailedError, evaluate_gate
from .models import (
    FAILURE,
    SKIPPED,
    SUCCESS,
    GateDecision,
    ImageRef,
    RunReport,
    RunTrigger,
    StepResult,
    derive_image_name,
)
from .sarif import SarifUploader
from .tools import Toolchain
from .utils import PipelineError, dump_json, ensure_directory

logger = logging.getLogger(__name__)

LATEST = "latest"
REPORT_NAME = "run-report.json"

SARIF_FILES: Dict[str, str] = {
    "hadolint": "hadolint-results.sarif",
    "dockle": "dockle-results.sarif",
    "trivy": "trivy-results.sarif",
    "grype": "grype-results.sarif",
}
SBOM_NAME = "sbom.spdx.json"


@dataclass
class RunContext:
    """Everything a step can read or write during one run."""

    config: PipelineConfig
    trigger: RunTrigger
    toolchain: Toolchain
    uploader: Optional[SarifUploader] = None
    cache: Optional[LayerCache] = None
    started_at: float = field(default_factory=time.time)
    variables: Dict[str, str] = field(default_factory=dict)
    results: List[StepResult] = field(default_factory=list)
    gate: Optional[GateDecision] = None

    def __post_init__(self) -> None:
        ensure_directory(self.workspace)

    @property
    def workspace(self) -> Path:
        return self.config.workspace_path

    @property
    def artifacts_dir(self) -> Path:
        return ensure_directory(self.workspace / "artifacts")

    def result_path(self, tool: str) -> Path:
        return self.workspace / SARIF_FILES[tool]

    def image(self, tag: str) -> ImageRef:
        return ImageRef(self.variables["IMAGE_NAME"], tag)

    @property
    def image_refs(self) -> List[ImageRef]:
        return [self.image(LATEST), self.image(self.variables["TAG"])]

    def outcome(self, step_id: str) -> Optional[str]:
        for result in reversed(self.results):
            if result.step == step_id:
                return result.status
        return None


StepAction = Callable[[RunContext], Dict[str, str]]
StepCondition = Callable[[RunContext], bool]


@dataclass(frozen=True)
class Step:
    id: str
    name: str
    action: StepAction
    condition: Optional[StepCondition] = None
    continue_on_error: bool = False


def build_tag(started_at: float) -> str:
    return str(int(started_at))


def _is_primary_push(context: RunContext) -> bool:
    return context.trigger.is_primary_push(context.config.primary_branch)


def _upload_enabled(context: RunContext) -> bool:
    return context.config.sarif_upload and context.uploader is not None


def _step_image_name(context: RunContext) -> Dict[str, str]:
    try:
        image_name = derive_image_name(context.config.registry, context.trigger.repository)
    except ValueError as exc:
        raise PipelineError(f"{exc}; set GITHUB_REPOSITORY or pass --repository") from exc
    logger.info("will build & push: %s", image_name)
    return {"IMAGE_NAME": image_name}


def _step_hadolint(context: RunContext) -> Dict[str, str]:
    exit_code = context.toolchain.hadolint(context.config.dockerfile, context.result_path("hadolint"))
    if exit_code != 0:
        logger.warning("hadolint reported findings (exit %s)", exit_code)
    return {"HADOLINT_EXIT": str(exit_code)}


def _step_build(context: RunContext) -> Dict[str, str]:
    config = context.config
    trigger = context.trigger
    tag = build_tag(context.started_at)
    refs = [context.image(LATEST), context.image(tag)]
    cache_dir = Path(config.cache_dir)

    key = cache_key(trigger.runner_os, trigger.sha)
    restored = None
    if context.cache is not None:
        restored = context.cache.restore(key, cache_prefix(trigger.runner_os))

    build_start = time.perf_counter()
    context.toolchain.build_image(
        refs,
        dockerfile=config.dockerfile,
        context=config.build_context,
        cache_dir=cache_dir,
    )
    logger.info("built %s in %.1fs", ", ".join(str(ref) for ref in refs), time.perf_counter() - build_start)

    if context.cache is not None:
        context.cache.save(key)

    image_ids = {str(ref): context.toolchain.image_id(ref) for ref in refs}
    if len(set(image_ids.values())) != 1:
        raise PipelineError(f"Tags resolve to different images: {image_ids}", outputs={"TAG": tag})
    return {
        "TAG": tag,
        "IMAGE_ID": next(iter(image_ids.values())),
        "CACHE_HIT": restored or "",
    }


def _step_dockle(context: RunContext) -> Dict[str, str]:
    exit_code = context.toolchain.dockle(context.image(LATEST), context.result_path("dockle"))
    if exit_code != 0:
        logger.warning("dockle reported findings (exit %s)", exit_code)
    return {"DOCKLE_EXIT": str(exit_code)}


def _step_sbom(context: RunContext) -> Dict[str, str]:
    sbom_path = context.artifacts_dir / SBOM_NAME
    context.toolchain.syft(context.image(LATEST), sbom_path)
    return {"SBOM_FILE": str(sbom_path)}


def _step_trivy(context: RunContext) -> Dict[str, str]:
    # Trivy is told to exit 0 on findings, so any other code is a tool failure.
    exit_code = context.toolchain.trivy(
        context.image(LATEST),
        context.result_path("trivy"),
        severity=context.config.severity,
    )
    outputs = {"TRIVY_EXIT": str(exit_code)}
    if exit_code != 0:
        raise PipelineError(f"trivy exited with {exit_code}", outputs=outputs)
    return outputs


def _step_grype(context: RunContext) -> Dict[str, str]:
    ref = context.image(LATEST)
    if context.config.grype_only_fixed:
        summary_exit = context.toolchain.grype_summary(ref)
        if summary_exit != 0:
            raise PipelineError(f"grype exited with {summary_exit}", outputs={"GRYPE_EXIT": str(summary_exit)})
    # The uploaded SARIF always carries every finding, fixed or not.
    exit_code = context.toolchain.grype(ref, context.result_path("grype"))
    outputs = {"GRYPE_EXIT": str(exit_code)}
    if exit_code != 0:
        raise PipelineError(f"grype exited with {exit_code}", outputs=outputs)
    return outputs


def _upload_step(tool: str) -> StepAction:
    def action(context: RunContext) -> Dict[str, str]:
        assert context.uploader is not None
        data = context.uploader.upload(
            context.result_path(tool),
            commit_sha=context.trigger.sha,
            ref=context.trigger.ref,
            tool_name=tool,
        )
        return {f"{tool.upper()}_SARIF_ID": str(data.get("id", ""))}

    return action


def _step_login(context: RunContext) -> Dict[str, str]:
    token = context.config.registry_token
    if not token:
        raise PipelineError("REGISTRY_TOKEN or GITHUB_TOKEN is required to push images")
    context.toolchain.login(context.config.registry, context.trigger.actor, token)
    return {}


def _step_push(context: RunContext) -> Dict[str, str]:
    for tag in (context.variables["TAG"], LATEST):
        context.toolchain.push(context.image(tag))
    return {}


def _step_sign(context: RunContext) -> Dict[str, str]:
    sbom_file = context.variables.get("SBOM_FILE")
    if not sbom_file:
        raise PipelineError("No SBOM available to attest")
    for ref in context.image_refs:
        logger.info("signing %s", ref)
        context.toolchain.sign(ref)
        logger.info("attesting SBOM for %s", ref)
        context.toolchain.attest(ref, Path(sbom_file))
    return {}


def _step_gate(context: RunContext) -> Dict[str, str]:
    decision = evaluate_gate(context.config.gate_rules, context.variables, context.results)
    context.gate = decision
    if not decision.passed:
        for label, observed in decision.signals.items():
            logger.error("%s: %s", label, observed)
        raise GateFailedError(decision)
    return {"GATE": "passed"}


def default_steps() -> List[Step]:
    """The fixed build -> lint -> SBOM -> scan -> publish -> sign -> gate order."""
    steps = [
        Step("image-name", "Set IMAGE_NAME (lower-case repo path)", _step_image_name),
        Step("hadolint", "Dockerfile lint (Hadolint)", _step_hadolint, continue_on_error=True),
        Step("upload-hadolint", "Upload Hadolint SARIF", _upload_step("hadolint"), _upload_enabled),
        Step("build", "Build image", _step_build),
        Step("dockle", "Image lint (Dockle)", _step_dockle, continue_on_error=True),
        Step("upload-dockle", "Upload Dockle SARIF", _upload_step("dockle"), _upload_enabled),
        Step("sbom", "Generate SBOM (Syft)", _step_sbom),
        Step("trivy", "Trivy vulnerability scan", _step_trivy, continue_on_error=True),
        Step("upload-trivy", "Upload Trivy SARIF", _upload_step("trivy"), _upload_enabled),
        Step("grype", "Grype vulnerability scan", _step_grype, continue_on_error=True),
        Step("upload-grype", "Upload Grype SARIF", _upload_step("grype"), _upload_enabled),
        Step("login", "Log in to registry", _step_login, _is_primary_push),
        Step("push", "Push image tags", _step_push, _is_primary_push),
        Step("sign", "Sign & attest images", _step_sign, _is_primary_push),
        Step("gate", "Enforce lint & vuln gates", _step_gate),
    ]
    return steps


class SecurePipeline:
    """Runs steps in declaration order and collects one result per step."""

    def __init__(self, context: RunContext, steps: Optional[Sequence[Step]] = None) -> None:
        self.context = context
        self.steps: List[Step] = list(steps if steps is not None else default_steps())
        self.aborted_at: Optional[str] = None

    def run(self) -> RunReport:
        for step in self.steps:
            result = self.run_step(step)
            self.context.results.append(result)
        report = self.report()
        dump_json(self.context.workspace / REPORT_NAME, report.to_dict())
        logger.info("run %s", report.status)
        return report

    def run_step(self, step: Step) -> StepResult:
        context = self.context
        if self.aborted_at is not None:
            logger.info("skip %s: run aborted at %s", step.id, self.aborted_at)
            return StepResult(step.id, SKIPPED, details={"reason": "aborted"})
        if step.condition is not None and not step.condition(context):
            logger.info("skip %s: condition not met", step.id)
            return StepResult(step.id, SKIPPED, details={"reason": "condition"})

        logger.info("step %s: %s", step.id, step.name)
        started = time.perf_counter()
        try:
            outputs = step.action(context)
        except PipelineError as exc:
            context.variables.update(exc.outputs)
            details = {"message": str(exc), "duration_s": round(time.perf_counter() - started, 3)}
            if step.continue_on_error:
                logger.warning("step %s failed, continuing: %s", step.id, exc)
            else:
                logger.error("step %s failed: %s", step.id, exc)
                self.aborted_at = step.id
            return StepResult(
                step.id,
                FAILURE,
                outputs=dict(exc.outputs),
                details=details,
                continued=step.continue_on_error,
            )

        context.variables.update(outputs)
        details = {"duration_s": round(time.perf_counter() - started, 3)}
        return StepResult(step.id, SUCCESS, outputs=dict(outputs), details=details)

    def report(self) -> RunReport:
        return RunReport(
            trigger=self.context.trigger,
            variables=dict(self.context.variables),
            results=list(self.context.results),
            gate=self.context.gate,
            aborted_at=self.aborted_at,
        )
