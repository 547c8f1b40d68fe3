from __future__ import annotations

import base64
import gzip
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from .utils import PipelineError

logger = logging.getLogger(__name__)


class UploadError(PipelineError):
    """Raised when a SARIF file cannot be delivered."""


def encode_sarif(payload: bytes) -> str:
    return base64.b64encode(gzip.compress(payload)).decode("ascii")


@dataclass
class SarifUploader:
    """Delivers SARIF files as opaque bytes, gzip + base64 encoded for transport."""

    api_url: str
    repository: str
    token: Optional[str]
    timeout_s: int = 60

    def upload(self, sarif_path: Path, *, commit_sha: str, ref: str, tool_name: str) -> Dict[str, Any]:
        sarif_path = Path(sarif_path)
        if not sarif_path.is_file():
            raise UploadError(f"SARIF file {sarif_path} was not produced")
        if not self.token:
            raise UploadError("GITHUB_TOKEN is required to upload SARIF results")

        url = f"{self.api_url.rstrip('/')}/repos/{self.repository}/code-scanning/sarifs"
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }
        body = {
            "commit_sha": commit_sha,
            "ref": ref,
            "sarif": encode_sarif(sarif_path.read_bytes()),
            "tool_name": tool_name,
        }
        try:
            resp = requests.post(url, headers=headers, json=body, timeout=self.timeout_s)
            resp.raise_for_status()
            data = resp.json() if resp.content else {}
        except requests.RequestException as exc:
            raise UploadError(f"SARIF upload of {sarif_path.name} failed: {exc}") from exc

        logger.info("uploaded %s (%s)", sarif_path.name, data.get("id", "no id"))
        return data
