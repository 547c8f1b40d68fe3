from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .models import FAILURE, GateDecision, StepResult
from .utils import PipelineError

EXIT_CODE = "exit_code"
OUTCOME = "outcome"
_KINDS = (EXIT_CODE, OUTCOME)


class GateFailedError(PipelineError):
    """Raised by the terminal gate step when the decision is negative."""

    def __init__(self, decision: GateDecision) -> None:
        super().__init__("Gate failed: " + "; ".join(decision.failures))
        self.decision = decision


@dataclass(frozen=True)
class GateRule:
    """One failure source checked by the gate.

    ``exit_code`` rules read a run variable that must equal ``0``; ``outcome``
    rules read a step result that must not be a failure. ``on_missing`` decides
    what an unset variable (or a step that never ran) means.
    """

    kind: str
    target: str
    label: str = ""
    on_missing: str = "fail"

    def __post_init__(self) -> None:
        if self.kind not in _KINDS:
            raise ValueError(f"Unknown gate rule kind: {self.kind}")
        if self.on_missing not in ("fail", "pass"):
            raise ValueError(f"on_missing must be 'fail' or 'pass', got {self.on_missing!r}")

    @property
    def display(self) -> str:
        if self.label:
            return self.label
        return f"{self.target} exit" if self.kind == EXIT_CODE else f"{self.target} status"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GateRule":
        target = data.get("variable") or data.get("step") or data.get("target")
        if not target:
            raise ValueError(f"Gate rule needs a variable or step: {dict(data)}")
        kind = data.get("kind") or (EXIT_CODE if "variable" in data else OUTCOME)
        return cls(
            kind=kind,
            target=str(target),
            label=str(data.get("label", "")),
            on_missing=str(data.get("on_missing", "fail")),
        )

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "target": self.target, "label": self.label, "on_missing": self.on_missing}


DEFAULT_RULES: Sequence[GateRule] = (
    GateRule(EXIT_CODE, "HADOLINT_EXIT", label="Hadolint exit"),
    GateRule(EXIT_CODE, "DOCKLE_EXIT", label="Dockle exit"),
    GateRule(OUTCOME, "trivy", label="Trivy status"),
)

# Known failure sources that are not gated unless configured.
OPTIONAL_RULES: Mapping[str, GateRule] = {
    "grype": GateRule(OUTCOME, "grype", label="Grype status"),
    "sbom": GateRule(OUTCOME, "sbom", label="SBOM status"),
}


def _latest_outcomes(results: Iterable[StepResult]) -> Dict[str, str]:
    outcomes: Dict[str, str] = {}
    for result in results:
        outcomes[result.step] = result.status
    return outcomes


def _check(rule: GateRule, variables: Mapping[str, str], outcomes: Mapping[str, str]) -> tuple[str, Optional[bool]]:
    """Return the observed signal and whether it passes (None when missing)."""
    if rule.kind == EXIT_CODE:
        value = variables.get(rule.target)
        if value is None or value == "":
            return "unset", None
        return value, value.strip() == "0"
    status = outcomes.get(rule.target)
    if status is None:
        return "not run", None
    return status, status != FAILURE


def evaluate_gate(
    rules: Sequence[GateRule],
    variables: Mapping[str, str],
    results: Iterable[StepResult],
) -> GateDecision:
    """Pure gate function: fails when any rule's signal is a failure."""
    outcomes = _latest_outcomes(results)
    failures: List[str] = []
    signals: Dict[str, str] = {}
    for rule in rules:
        observed, ok = _check(rule, variables, outcomes)
        signals[rule.display] = observed
        if ok is None:
            ok = rule.on_missing == "pass"
        if not ok:
            failures.append(f"{rule.display}: {observed}")
    return GateDecision(passed=not failures, failures=failures, signals=signals)
