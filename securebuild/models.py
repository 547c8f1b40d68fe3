from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"

PULL_REQUEST = "pull_request"


@dataclass
class RunTrigger:
    """What started the run: event, git ref/revision and repository identity."""

    event: str
    ref: str
    sha: str
    repository: str
    actor: str = ""
    runner_os: str = "Linux"

    @classmethod
    def from_environ(cls, environ: Mapping[str, str], **overrides: Optional[str]) -> "RunTrigger":
        values = {
            "event": environ.get("GITHUB_EVENT_NAME", "push"),
            "ref": environ.get("GITHUB_REF", ""),
            "sha": environ.get("GITHUB_SHA", ""),
            "repository": environ.get("GITHUB_REPOSITORY", ""),
            "actor": environ.get("GITHUB_ACTOR", ""),
            "runner_os": environ.get("RUNNER_OS", "Linux"),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def is_primary_push(self, primary_branch: str) -> bool:
        """True for non-PR runs whose ref is the primary branch."""
        if self.event == PULL_REQUEST:
            return False
        return self.ref == f"refs/heads/{primary_branch}"

    def to_dict(self) -> Dict[str, str]:
        return {
            "event": self.event,
            "ref": self.ref,
            "sha": self.sha,
            "repository": self.repository,
            "actor": self.actor,
            "runner_os": self.runner_os,
        }


@dataclass(frozen=True)
class ImageRef:
    name: str
    tag: str

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


def derive_image_name(registry: str, repository: str) -> str:
    """Registry-qualified image name; registries only accept lowercase paths."""
    if not repository:
        raise ValueError("Repository identifier is required to derive the image name")
    return f"{registry.rstrip('/')}/{repository.strip('/')}".lower()


@dataclass
class StepResult:
    """Outcome recorded for one pipeline step."""

    step: str
    status: str
    outputs: Dict[str, str] = field(default_factory=dict)
    details: Dict[str, Any] = field(default_factory=dict)
    continued: bool = False

    @property
    def failed(self) -> bool:
        return self.status == FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status,
            "outputs": self.outputs,
            "details": self.details,
            "continued": self.continued,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepResult":
        return cls(
            step=data.get("step", ""),
            status=data.get("status", "unknown"),
            outputs=dict(data.get("outputs", {})),
            details=dict(data.get("details", {})),
            continued=bool(data.get("continued", False)),
        )


@dataclass
class GateDecision:
    passed: bool
    failures: List[str] = field(default_factory=list)
    signals: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"passed": self.passed, "failures": self.failures, "signals": self.signals}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GateDecision":
        return cls(
            passed=bool(data.get("passed", False)),
            failures=list(data.get("failures", [])),
            signals=dict(data.get("signals", {})),
        )


@dataclass
class RunReport:
    """Summary of one run, written to disk once the sequencer finishes."""

    trigger: RunTrigger
    variables: Dict[str, str]
    results: List[StepResult]
    gate: Optional[GateDecision] = None
    aborted_at: Optional[str] = None

    @property
    def status(self) -> str:
        if self.aborted_at is not None:
            return "failed"
        if self.gate is not None and not self.gate.passed:
            return "failed"
        return "passed"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "trigger": self.trigger.to_dict(),
            "variables": self.variables,
            "steps": [result.to_dict() for result in self.results],
            "gate": self.gate.to_dict() if self.gate is not None else None,
            "aborted_at": self.aborted_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunReport":
        gate = data.get("gate")
        return cls(
            trigger=RunTrigger(**data.get("trigger", {})),
            variables=dict(data.get("variables", {})),
            results=[StepResult.from_dict(entry) for entry in data.get("steps", [])],
            gate=GateDecision.from_dict(gate) if gate else None,
            aborted_at=data.get("aborted_at"),
        )
