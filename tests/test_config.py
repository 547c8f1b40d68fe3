from pathlib import Path

import pytest

from securebuild.config import ConfigError, load_config
from securebuild.gate import DEFAULT_RULES, GateRule


def test_defaults_when_no_config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    config = load_config(environ={"GITHUB_TOKEN": "t0k"})
    assert config.registry == "ghcr.io"
    assert config.severity == "CRITICAL"
    assert config.dockerfile == "Containerfile.lite"
    assert config.tool("dockle").version == "0.4.15"
    assert config.gate_rules == list(DEFAULT_RULES)
    assert config.github_token == "t0k"
    assert config.registry_token == "t0k"


def test_loads_yaml_config(tmp_path: Path) -> None:
    config_path = tmp_path / "securebuild.yaml"
    config_path.write_text(
        """
registry: registry.example.com
primary_branch: trunk
dockerfile: Dockerfile
cache:
  dir: /var/cache/buildx
tools:
  trivy:
    version: "0.50.0"
gate:
  extra: [grype, sbom]
"""
    )
    config = load_config(config_path, environ={})
    assert config.registry == "registry.example.com"
    assert config.primary_branch == "trunk"
    assert config.cache_dir == "/var/cache/buildx"
    assert config.tool("trivy").version == "0.50.0"
    assert config.tool("dockle").version == "0.4.15"
    assert [rule.target for rule in config.gate_rules] == ["HADOLINT_EXIT", "DOCKLE_EXIT", "trivy", "grype", "sbom"]
    assert config.github_token is None


def test_loads_json_config_with_explicit_rules(tmp_path: Path) -> None:
    config_path = tmp_path / "pipeline.json"
    config_path.write_text('{"sarif_upload": false, "gate": {"rules": [{"variable": "GRYPE_EXIT"}]}}')
    config = load_config(config_path, environ={})
    assert config.sarif_upload is False
    assert config.gate_rules == [GateRule("exit_code", "GRYPE_EXIT")]


def test_unknown_optional_rule_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "securebuild.yaml"
    config_path.write_text("gate:\n  extra: [codeql]\n")
    with pytest.raises(ConfigError):
        load_config(config_path, environ={})


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "absent.yaml", environ={})


def test_non_mapping_config_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "securebuild.yaml"
    config_path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(config_path, environ={})


def test_partial_tool_entry_keeps_default_fallbacks(tmp_path: Path) -> None:
    config_path = tmp_path / "securebuild.yaml"
    config_path.write_text("tools:\n  dockle:\n    version: '0.4.16'\n  grype: {fallbacks: []}\n")
    config = load_config(config_path, environ={})
    assert config.tool("dockle").version == "0.4.16"
    assert config.tool("dockle").fallbacks == ["/usr/local/bin/dockle"]
    assert config.tool("grype").fallbacks == []


@pytest.mark.parametrize(
    "text",
    [
        "gate:\n  rules: HADOLINT_EXIT\n",
        "gate:\n  rules: [HADOLINT_EXIT]\n",
        "gate:\n  extra: grype\n",
        "tools:\n  dockle: '0.4.16'\n",
    ],
)
def test_malformed_sections_are_rejected(tmp_path: Path, text: str) -> None:
    config_path = tmp_path / "securebuild.yaml"
    config_path.write_text(text)
    with pytest.raises(ConfigError):
        load_config(config_path, environ={})
