"""Build, lint, scan, sign and gate a container image in one ordered run."""

from .config import PipelineConfig, load_config
from .pipeline import RunContext, SecurePipeline, Step

__all__ = ["PipelineConfig", "load_config", "RunContext", "SecurePipeline", "Step"]
