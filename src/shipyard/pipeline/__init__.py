"""Pipeline module - stage graphs and their execution."""

from shipyard.pipeline.domain.enums import FailurePolicy, RunStatus, SkipPolicy, StageStatus
from shipyard.pipeline.domain.graph import StageGraph, build_graph
from shipyard.pipeline.domain.models import (
    PipelineConfig,
    PipelineRun,
    RunContext,
    StageDefinition,
    StageResult,
)

__all__ = [
    "FailurePolicy",
    "RunStatus",
    "SkipPolicy",
    "StageStatus",
    "StageGraph",
    "build_graph",
    "PipelineConfig",
    "PipelineRun",
    "RunContext",
    "StageDefinition",
    "StageResult",
]
