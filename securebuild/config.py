from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .gate import DEFAULT_RULES, OPTIONAL_RULES, GateRule

DEFAULT_CONFIG_PATH = "securebuild.yaml"


class ConfigError(RuntimeError):
    """Raised when the pipeline configuration cannot be parsed."""


@dataclass
class ToolPin:
    """Expected version of an external tool; mismatches only warn."""

    version: Optional[str] = None
    fallbacks: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ToolPin":
        version = data.get("version")
        return cls(
            version=str(version) if version is not None else None,
            fallbacks=[str(item) for item in data.get("fallbacks", [])],
        )

    def merged(self, data: Mapping[str, Any]) -> "ToolPin":
        """Overlay a partial config entry; keys it omits keep their current value."""
        override = ToolPin.from_dict(data)
        return ToolPin(
            version=override.version if "version" in data else self.version,
            fallbacks=override.fallbacks if "fallbacks" in data else list(self.fallbacks),
        )


def _default_tools() -> Dict[str, ToolPin]:
    return {
        "docker": ToolPin(),
        "hadolint": ToolPin(fallbacks=["/usr/local/bin/hadolint"]),
        "dockle": ToolPin(version="0.4.15", fallbacks=["/usr/local/bin/dockle"]),
        "syft": ToolPin(),
        "trivy": ToolPin(),
        "grype": ToolPin(fallbacks=["/usr/local/bin/grype"]),
        "cosign": ToolPin(),
    }


@dataclass
class PipelineConfig:
    """Settings for one pipeline run; every field has a workable default."""

    registry: str = "ghcr.io"
    primary_branch: str = "main"
    dockerfile: str = "Containerfile.lite"
    build_context: str = "."
    workspace: str = ".securebuild"
    cache_dir: str = "/tmp/.buildx-cache"
    cache_store: Optional[str] = None
    severity: str = "CRITICAL"
    grype_only_fixed: bool = True
    sarif_upload: bool = True
    api_url: str = "https://api.github.com"
    command_timeout_s: Optional[int] = None
    tools: Dict[str, ToolPin] = field(default_factory=_default_tools)
    gate_rules: List[GateRule] = field(default_factory=lambda: list(DEFAULT_RULES))
    github_token: Optional[str] = field(default=None, repr=False)
    registry_token: Optional[str] = field(default=None, repr=False)

    @property
    def workspace_path(self) -> Path:
        return Path(self.workspace)

    @property
    def cache_store_path(self) -> Path:
        if self.cache_store:
            return Path(self.cache_store)
        return self.workspace_path / "cache"

    def tool(self, name: str) -> ToolPin:
        return self.tools.get(name, ToolPin())

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        config = cls()
        for key in (
            "registry",
            "primary_branch",
            "dockerfile",
            "build_context",
            "workspace",
            "severity",
            "api_url",
        ):
            if key in data:
                setattr(config, key, str(data[key]))
        if "grype_only_fixed" in data:
            config.grype_only_fixed = bool(data["grype_only_fixed"])
        if "sarif_upload" in data:
            config.sarif_upload = bool(data["sarif_upload"])
        if data.get("command_timeout_s") is not None:
            config.command_timeout_s = int(data["command_timeout_s"])

        cache = data.get("cache", {}) or {}
        if not isinstance(cache, dict):
            raise ConfigError("'cache' must be a mapping")
        config.cache_dir = str(cache.get("dir", config.cache_dir))
        if cache.get("store"):
            config.cache_store = str(cache["store"])

        tools = data.get("tools", {}) or {}
        if not isinstance(tools, dict):
            raise ConfigError("'tools' must be a mapping of tool name to settings")
        for name, settings in tools.items():
            if not isinstance(settings, dict) and settings is not None:
                raise ConfigError(f"'tools.{name}' must be a mapping")
            config.tools[str(name)] = config.tool(str(name)).merged(settings or {})

        gate = data.get("gate", {}) or {}
        if not isinstance(gate, dict):
            raise ConfigError("'gate' must be a mapping")
        rules = gate.get("rules")
        if rules is not None and (
            not isinstance(rules, list) or not all(isinstance(entry, dict) for entry in rules)
        ):
            raise ConfigError("'gate.rules' must be a list of mappings")
        extra = gate.get("extra") or []
        if not isinstance(extra, list) or not all(isinstance(name, str) for name in extra):
            raise ConfigError("'gate.extra' must be a list of rule names")
        try:
            if rules is not None:
                config.gate_rules = [GateRule.from_dict(entry) for entry in rules]
            for name in extra:
                config.gate_rules.append(OPTIONAL_RULES[name])
        except KeyError as exc:
            raise ConfigError(f"Unknown optional gate rule: {exc.args[0]}") from exc
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid gate configuration: {exc}") from exc
        return config

    def apply_environ(self, environ: Mapping[str, str]) -> "PipelineConfig":
        """Pick up secrets, which are only ever read from the environment."""
        self.github_token = environ.get("GITHUB_TOKEN") or self.github_token
        self.registry_token = environ.get("REGISTRY_TOKEN") or self.github_token
        return self


def load_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> PipelineConfig:
    """Load a YAML (or JSON) config file; a missing default file means defaults."""
    environ = os.environ if environ is None else environ
    config_path = Path(path or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        if path is not None:
            raise ConfigError(f"Config file not found: {config_path}")
        return PipelineConfig().apply_environ(environ)

    try:
        raw_data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Cannot parse {config_path}: {exc}") from exc
    if not isinstance(raw_data, dict):
        raise ConfigError("Config must be a mapping at the top level")
    return PipelineConfig.from_dict(raw_data).apply_environ(environ)
