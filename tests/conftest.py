from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from securebuild.config import PipelineConfig
from securebuild.models import RunTrigger
from securebuild.pipeline import RunContext
from securebuild.sarif import UploadError
from securebuild.tools import Toolchain
from securebuild.utils import CommandError

STARTED_AT = 1700000000.0


class FakeRunner:
    """Stands in for run_command; records every command instead of executing it."""

    def __init__(
        self,
        returncodes: Optional[Dict[str, int]] = None,
        stdout: Optional[Dict[str, str]] = None,
        image_ids: Optional[Dict[str, str]] = None,
    ) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.returncodes = returncodes or {}
        self.stdout = stdout or {}
        self.image_ids = image_ids or {}

    def __call__(self, command, *, cwd=None, env=None, check=True, input_text=None, timeout_s=None):
        command = list(command)
        self.calls.append({"command": command, "env": env, "input_text": input_text})
        if command[1:3] == ["image", "inspect"]:
            returncode, stdout = 0, self.image_ids.get(command[-1], "sha256:feedbeef")
        elif command[1:] == ["--version"]:
            returncode, stdout = 0, f"{command[0]} version 0.0.0"
        else:
            returncode = self.returncodes.get(command[0], 0)
            stdout = self.stdout.get(command[0], "")
        if check and returncode != 0:
            raise CommandError(command, returncode, stdout, "")
        return subprocess.CompletedProcess(command, returncode, stdout, "")

    def commands(self, tool: str) -> List[List[str]]:
        return [call["command"] for call in self.calls if call["command"][0] == tool and call["command"][1:] != ["--version"]]


class FakeUploader:
    def __init__(self, failing: tuple = ()) -> None:
        self.uploads: List[Dict[str, str]] = []
        self.failing = failing

    def upload(self, sarif_path: Path, *, commit_sha: str, ref: str, tool_name: str) -> Dict[str, Any]:
        if tool_name in self.failing:
            raise UploadError(f"upload of {tool_name} rejected")
        self.uploads.append({"path": str(sarif_path), "sha": commit_sha, "ref": ref, "tool": tool_name})
        return {"id": f"{tool_name}-1"}


def locate_anything(name: str, fallbacks: Optional[List[str]] = None) -> str:
    return name


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_context(tmp_path: Path):
    def factory(
        *,
        runner: FakeRunner,
        event: str = "push",
        ref: str = "refs/heads/main",
        uploader: Optional[FakeUploader] = None,
        config: Optional[PipelineConfig] = None,
    ) -> RunContext:
        config = config or PipelineConfig()
        config.workspace = str(tmp_path / "workspace")
        config.cache_dir = str(tmp_path / "buildx-cache")
        config.registry_token = config.registry_token or "registry-token"
        trigger = RunTrigger(
            event=event,
            ref=ref,
            sha="0123abcd",
            repository="Org/My-Repo",
            actor="octocat",
        )
        return RunContext(
            config=config,
            trigger=trigger,
            toolchain=Toolchain(config.tools, runner=runner, locate=locate_anything),
            uploader=uploader,
            started_at=STARTED_AT,
        )

    return factory


@pytest.fixture(autouse=True)
def _reset_package_logger():
    yield
    logger = logging.getLogger("securebuild")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
