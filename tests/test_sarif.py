from __future__ import annotations

import base64
import gzip
from pathlib import Path

import pytest
import requests

from securebuild import sarif
from securebuild.sarif import SarifUploader, UploadError


class _Response:
    def __init__(self, status_code: int, payload: dict) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = b"{}"

    def json(self) -> dict:
        return self._payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


def test_upload_posts_compressed_sarif(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    payload = b'{"version": "2.1.0", "runs": []}'
    sarif_path = tmp_path / "trivy-results.sarif"
    sarif_path.write_bytes(payload)
    captured = {}

    def fake_post(url, headers, json, timeout):
        captured.update(url=url, headers=headers, body=json, timeout=timeout)
        return _Response(202, {"id": "47177e22"})

    monkeypatch.setattr(sarif.requests, "post", fake_post)
    uploader = SarifUploader(api_url="https://api.github.com/", repository="Org/My-Repo", token="t0k")
    data = uploader.upload(sarif_path, commit_sha="abc", ref="refs/heads/main", tool_name="trivy")

    assert data == {"id": "47177e22"}
    assert captured["url"] == "https://api.github.com/repos/Org/My-Repo/code-scanning/sarifs"
    assert captured["headers"]["Authorization"] == "Bearer t0k"
    assert captured["body"]["commit_sha"] == "abc"
    assert captured["body"]["ref"] == "refs/heads/main"
    assert gzip.decompress(base64.b64decode(captured["body"]["sarif"])) == payload


def test_http_error_becomes_upload_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sarif_path = tmp_path / "dockle-results.sarif"
    sarif_path.write_text("{}")
    monkeypatch.setattr(sarif.requests, "post", lambda *args, **kwargs: _Response(403, {}))
    uploader = SarifUploader(api_url="https://api.github.com", repository="o/r", token="t0k")
    with pytest.raises(UploadError):
        uploader.upload(sarif_path, commit_sha="abc", ref="refs/heads/main", tool_name="dockle")


def test_missing_file_or_token_is_rejected(tmp_path: Path) -> None:
    uploader = SarifUploader(api_url="https://api.github.com", repository="o/r", token="t0k")
    with pytest.raises(UploadError):
        uploader.upload(tmp_path / "absent.sarif", commit_sha="abc", ref="r", tool_name="grype")

    sarif_path = tmp_path / "grype-results.sarif"
    sarif_path.write_text("{}")
    anonymous = SarifUploader(api_url="https://api.github.com", repository="o/r", token=None)
    with pytest.raises(UploadError):
        anonymous.upload(sarif_path, commit_sha="abc", ref="r", tool_name="grype")


def test_unparseable_success_body_becomes_upload_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sarif_path = tmp_path / "trivy-results.sarif"
    sarif_path.write_text("{}")

    class _HtmlResponse(_Response):
        def json(self) -> dict:
            raise requests.JSONDecodeError("Expecting value", "<html>", 0)

    monkeypatch.setattr(sarif.requests, "post", lambda *args, **kwargs: _HtmlResponse(200, {}))
    uploader = SarifUploader(api_url="https://api.github.com", repository="o/r", token="t0k")
    with pytest.raises(UploadError):
        uploader.upload(sarif_path, commit_sha="abc", ref="refs/heads/main", tool_name="trivy")
