from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


class PipelineError(RuntimeError):
    """Base class for failures a pipeline step can report.

    ``outputs`` carries variables the failing action still managed to produce;
    the sequencer records them even though the step failed.
    """

    def __init__(self, message: str, *, outputs: Optional[Mapping[str, str]] = None) -> None:
        super().__init__(message)
        self.outputs: Dict[str, str] = dict(outputs or {})


class CommandError(PipelineError):
    """Raised when a subprocess exits with a non-zero status code."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command {' '.join(command)} failed with exit code {returncode}\nSTDOUT:{stdout}\nSTDERR:{stderr}"
        )


class ToolNotFoundError(PipelineError):
    """Raised when a required executable is not available."""


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    input_text: str | None = None,
    timeout_s: int | None = None,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process."""

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    logger.debug("exec: %s", " ".join(command))
    try:
        result = subprocess.run(
            list(command),
            cwd=str(cwd) if cwd else None,
            env=process_env,
            input=input_text,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=timeout_s,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"Executable '{command[0]}' not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise PipelineError(f"Command {' '.join(command)} timed out after {timeout_s}s") from exc
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stdout, result.stderr)
    return result


def which_or_raise(bin_name: str, fallbacks: Optional[List[str]] = None) -> str:
    """Locate an executable on PATH or in one of the fallback locations."""

    found = shutil.which(bin_name)
    if found:
        return found
    for candidate in fallbacks or []:
        path = Path(candidate)
        if path.exists() and os.access(str(path), os.X_OK):
            return str(path)
    raise ToolNotFoundError(
        f"Executable '{bin_name}' not found on PATH (tried fallbacks: {fallbacks or []})"
    )


def ensure_directory(path: str | Path) -> Path:
    """Create a directory and return its Path object."""

    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write structured JSON to disk with a trailing newline for readability."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")
