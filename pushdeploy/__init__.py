"""Build and publish container images for qualifying repository pushes."""

from .config import DeployConfig
from .pipeline import DeployPipeline, PipelineRun, PipelineState, Stage, qualifies

__all__ = ["DeployConfig", "DeployPipeline", "PipelineRun", "PipelineState", "Stage", "qualifies"]
