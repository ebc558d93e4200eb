"""Pipeline domain package."""

from shipyard.pipeline.domain.conditions import StageCondition
from shipyard.pipeline.domain.enums import (
    FailurePolicy,
    RunStatus,
    SkipPolicy,
    StageKind,
    StageStatus,
)
from shipyard.pipeline.domain.graph import StageGraph, build_graph
from shipyard.pipeline.domain.models import (
    ApprovalConfig,
    PipelineConfig,
    PipelineRun,
    RetryPolicy,
    RunContext,
    StageDefinition,
    StageResult,
)

__all__ = [
    "ApprovalConfig",
    "FailurePolicy",
    "PipelineConfig",
    "PipelineRun",
    "RetryPolicy",
    "RunContext",
    "RunStatus",
    "SkipPolicy",
    "StageCondition",
    "StageDefinition",
    "StageGraph",
    "StageKind",
    "StageResult",
    "StageStatus",
    "build_graph",
]
