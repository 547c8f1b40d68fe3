from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set

from .config import ToolPin
from .models import ImageRef
from .utils import PipelineError, run_command, which_or_raise

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]
Locator = Callable[..., str]


class Toolchain:
    """Resolves tool binaries and runs them through an injectable runner."""

    def __init__(
        self,
        pins: Optional[Mapping[str, ToolPin]] = None,
        *,
        runner: CommandRunner = run_command,
        locate: Locator = which_or_raise,
        timeout_s: Optional[int] = None,
    ) -> None:
        self.pins: Dict[str, ToolPin] = dict(pins or {})
        self.runner = runner
        self.locate = locate
        self.timeout_s = timeout_s
        self._resolved: Dict[str, str] = {}
        self._version_checked: Set[str] = set()

    def binary(self, name: str) -> str:
        if name not in self._resolved:
            pin = self.pins.get(name, ToolPin())
            self._resolved[name] = self.locate(name, pin.fallbacks)
            self._check_version(name)
        return self._resolved[name]

    def _run(
        self,
        tool: str,
        args: List[str],
        *,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[Path] = None,
        input_text: Optional[str] = None,
    ) -> "subprocess.CompletedProcess[str]":
        command = [self.binary(tool), *args]
        return self.runner(
            command,
            cwd=cwd,
            env=env,
            check=check,
            input_text=input_text,
            timeout_s=self.timeout_s,
        )

    def _check_version(self, name: str) -> None:
        pin = self.pins.get(name)
        if pin is None or not pin.version or name in self._version_checked:
            return
        self._version_checked.add(name)
        try:
            result = self.runner(
                [self._resolved[name], "--version"],
                check=False,
                timeout_s=self.timeout_s,
            )
        except PipelineError as exc:
            logger.warning("could not query %s version: %s", name, exc)
            return
        reported = (result.stdout or result.stderr).strip()
        if pin.version not in reported:
            logger.warning("%s version mismatch: pinned %s, found %r", name, pin.version, reported)

    # -- build ------------------------------------------------------------

    def build_image(
        self,
        refs: List[ImageRef],
        *,
        dockerfile: str,
        context: str,
        cache_dir: Path,
    ) -> None:
        args = ["buildx", "build", "--file", dockerfile]
        for ref in refs:
            args.extend(["--tag", str(ref)])
        args.extend(
            [
                "--cache-from",
                f"type=local,src={cache_dir}",
                "--cache-to",
                f"type=local,dest={cache_dir},mode=max",
                "--load",
                context,
            ]
        )
        self._run("docker", args, env={"DOCKER_CONTENT_TRUST": "1"})

    def image_id(self, ref: ImageRef) -> str:
        result = self._run("docker", ["image", "inspect", "--format", "{{.Id}}", str(ref)])
        return result.stdout.strip()

    # -- lint / scan ------------------------------------------------------

    def hadolint(self, dockerfile: str, output: Path) -> int:
        result = self._run("hadolint", ["-f", "sarif", dockerfile], check=False)
        Path(output).write_text(result.stdout)
        return result.returncode

    def dockle(self, ref: ImageRef, output: Path) -> int:
        result = self._run(
            "dockle",
            ["--exit-code", "1", "--format", "sarif", "--output", str(output), str(ref)],
            check=False,
        )
        return result.returncode

    def syft(self, ref: ImageRef, output: Path) -> None:
        self._run("syft", [str(ref), "--output", f"spdx-json={output}"])

    def trivy(self, ref: ImageRef, output: Path, *, severity: str) -> int:
        result = self._run(
            "trivy",
            [
                "image",
                "--format",
                "sarif",
                "--output",
                str(output),
                "--severity",
                severity,
                "--exit-code",
                "0",
                str(ref),
            ],
            check=False,
        )
        return result.returncode

    def grype_summary(self, ref: ImageRef) -> int:
        result = self._run("grype", [str(ref), "--scope", "all-layers", "--only-fixed"], check=False)
        if result.stdout:
            logger.info("grype findings with available fixes:\n%s", result.stdout.rstrip())
        return result.returncode

    def grype(self, ref: ImageRef, output: Path) -> int:
        result = self._run(
            "grype",
            [str(ref), "--scope", "all-layers", "--output", "sarif", "--file", str(output)],
            check=False,
        )
        return result.returncode

    # -- publish / sign ---------------------------------------------------

    def login(self, registry: str, username: str, token: str) -> None:
        self._run("docker", ["login", registry, "--username", username, "--password-stdin"], input_text=token)

    def push(self, ref: ImageRef) -> None:
        self._run("docker", ["push", str(ref)])

    def sign(self, ref: ImageRef) -> None:
        self._run("cosign", ["sign", "--yes", str(ref)], env={"COSIGN_EXPERIMENTAL": "1"})

    def attest(self, ref: ImageRef, predicate: Path, *, predicate_type: str = "spdxjson") -> None:
        self._run(
            "cosign",
            ["attest", "--yes", "--predicate", str(predicate), "--type", predicate_type, str(ref)],
            env={"COSIGN_EXPERIMENTAL": "1"},
        )
