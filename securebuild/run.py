from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional

from .cache import LayerCache
from .config import ConfigError, PipelineConfig, load_config
from .gate import evaluate_gate
from .log import setup_logging
from .models import RunReport, RunTrigger, derive_image_name
from .pipeline import REPORT_NAME, RunContext, SecurePipeline, default_steps
from .sarif import SarifUploader
from .tools import Toolchain


def _load_config(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(args.config)
    if args.workspace:
        config.workspace = args.workspace
    return config


def _trigger(args: argparse.Namespace) -> RunTrigger:
    return RunTrigger.from_environ(
        os.environ,
        event=args.event,
        ref=args.ref,
        sha=args.sha,
        repository=args.repository,
        actor=args.actor,
    )


def _load_report(config: PipelineConfig) -> RunReport:
    report_path = config.workspace_path / REPORT_NAME
    if not report_path.exists():
        raise ConfigError(f"No run report at {report_path}; execute 'run' first")
    return RunReport.from_dict(json.loads(report_path.read_text()))


def build_context(config: PipelineConfig, trigger: RunTrigger, *, upload: bool = True) -> RunContext:
    uploader = None
    if upload and config.sarif_upload:
        uploader = SarifUploader(api_url=config.api_url, repository=trigger.repository, token=config.github_token)
    return RunContext(
        config=config,
        trigger=trigger,
        toolchain=Toolchain(config.tools, timeout_s=config.command_timeout_s),
        uploader=uploader,
        cache=LayerCache(store=config.cache_store_path, cache_dir=Path(config.cache_dir)),
    )


def cmd_run(args: argparse.Namespace) -> int:
    config = _load_config(args)
    context = build_context(config, _trigger(args), upload=not args.no_upload)
    report = SecurePipeline(context).run()
    summary = {
        "status": report.status,
        "aborted_at": report.aborted_at,
        "gate": report.gate.to_dict() if report.gate else None,
        "steps": {result.step: result.status for result in report.results},
    }
    print(json.dumps(summary, indent=2))
    return 0 if report.status == "passed" else 1


def cmd_steps(args: argparse.Namespace) -> int:
    for step in default_steps():
        flags = []
        if step.continue_on_error:
            flags.append("continue-on-error")
        if step.condition is not None:
            flags.append(f"if:{step.condition.__name__.lstrip('_')}")
        print(f"{step.id}\t{step.name}\t{','.join(flags)}")
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    report = _load_report(_load_config(args))
    statuses = {result.step: result.status for result in report.results}
    print(json.dumps({"status": report.status, "steps": statuses}, indent=2))
    return 0


def cmd_gate(args: argparse.Namespace) -> int:
    config = _load_config(args)
    report = _load_report(config)
    decision = evaluate_gate(config.gate_rules, report.variables, report.results)
    for label, observed in decision.signals.items():
        print(f"{label}: {observed}")
    print("gate: " + ("passed" if decision.passed else "failed"))
    return 0 if decision.passed else 1


def cmd_image_name(args: argparse.Namespace) -> int:
    config = _load_config(args)
    trigger = _trigger(args)
    try:
        print(derive_image_name(config.registry, trigger.repository))
    except ValueError as exc:
        raise ConfigError(f"{exc}; set GITHUB_REPOSITORY or pass --repository") from exc
    return 0


def _add_trigger_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--event", help="Trigger event (push, pull_request, schedule).")
    parser.add_argument("--ref", help="Git ref, e.g. refs/heads/main.")
    parser.add_argument("--sha", help="Source revision.")
    parser.add_argument("--repository", help="Repository identifier, e.g. Org/Repo.")
    parser.add_argument("--actor", help="User the registry login is performed as.")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Secure container build, scan & sign pipeline")
    parser.add_argument("--config", default=None, help="Path to a YAML or JSON config file.")
    parser.add_argument("--workspace", default=None, help="Directory for results, SBOM and run report.")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-format", choices=("text", "json"), default="text")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute the full pipeline")
    _add_trigger_arguments(run_parser)
    run_parser.add_argument("--no-upload", action="store_true", help="Skip SARIF uploads.")
    run_parser.set_defaults(func=cmd_run)

    steps_parser = subparsers.add_parser("steps", help="List pipeline steps in execution order")
    steps_parser.set_defaults(func=cmd_steps)

    status_parser = subparsers.add_parser("status", help="Show step outcomes of the last run")
    status_parser.set_defaults(func=cmd_status)

    gate_parser = subparsers.add_parser("gate", help="Re-evaluate the gate against the last run")
    gate_parser.set_defaults(func=cmd_gate)

    name_parser = subparsers.add_parser("image-name", help="Print the derived image name")
    _add_trigger_arguments(name_parser)
    name_parser.set_defaults(func=cmd_image_name)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level, args.log_format)
    try:
        return args.func(args)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
