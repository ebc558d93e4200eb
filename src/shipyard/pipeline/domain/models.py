"""
Pipeline domain models.

Core entities for deployment pipeline orchestration: stage definitions,
the run context handed to external actions, and the run/stage records that
are kept for post-mortem after a run ends.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from shipyard.pipeline.domain.enums import (
    FailurePolicy,
    RunStatus,
    SkipPolicy,
    StageKind,
    StageStatus,
)
from shipyard.shared.domain.base_model import BaseDomainModel

OUTPUT_TAIL_CHARS = 2000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour of a retryable stage."""

    max_attempts: int = 3
    backoff: str = "exponential"  # "fixed" or "exponential"
    delay: float = 5.0
    max_delay: float = 300.0


@dataclass(frozen=True)
class ApprovalConfig:
    """Manual approval required before a stage's action runs."""

    message: str = "Proceed?"
    timeout: Optional[float] = None  # None waits indefinitely


@dataclass(frozen=True)
class StageDefinition:
    """
    Declarative definition of one pipeline stage.

    ``depends_on`` may name stages or parallel groups; a group name stands
    for all of its members. ``action`` is any object implementing
    ``StageAction`` (see pipeline.application.actions); a stage without an
    action only waits for its dependencies and optional approval gate.
    """

    name: str
    action: Any = None
    depends_on: tuple[str, ...] = ()
    condition: Optional[Callable[..., bool]] = None
    parallel_group: Optional[str] = None
    retryable: bool = False
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    skip_policy: SkipPolicy = SkipPolicy.SKIP_IS_SUCCESS
    non_blocking: bool = False
    approval: Optional[ApprovalConfig] = None
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.name or not isinstance(self.name, str):
            raise ValueError("Stage name must be a non-empty string")
        object.__setattr__(self, "depends_on", tuple(self.depends_on))

    @property
    def kind(self) -> StageKind:
        return StageKind.PARALLEL if self.parallel_group else StageKind.SEQUENTIAL

    @property
    def max_attempts(self) -> int:
        return max(1, self.retry.max_attempts) if self.retryable else 1


@dataclass
class PipelineConfig(BaseDomainModel):
    """Execution policy of a pipeline."""

    failure_policy: FailurePolicy = FailurePolicy.FAIL_AT_END
    parallel_limit: int = 4
    approval_timeout: Optional[float] = None  # Default for gates without their own timeout


@dataclass
class RunContext(BaseDomainModel):
    """
    Explicit per-run state visible to conditions and external actions.

    Replaces process-wide environment flags so concurrent runs cannot
    interfere. Secrets are passed to actions but never serialized.
    """

    branch: str = "main"
    build_id: str = ""
    commit: str = ""
    build_url: str = ""
    environment: str = "staging"
    variables: Dict[str, str] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict, metadata={"serialize": False}, repr=False)

    def template_vars(self) -> Dict[str, str]:
        """Names available to ``${NAME}`` substitution in command templates."""
        values = {str(k): str(v) for k, v in self.variables.items()}
        values.update(
            {
                "BRANCH_NAME": self.branch,
                "BUILD_ID": self.build_id,
                "GIT_COMMIT": self.commit,
                "BUILD_URL": self.build_url,
                "TARGET_ENV": self.environment,
            }
        )
        return values

    def to_env(self) -> Dict[str, str]:
        """Environment variables passed to external actions."""
        env = self.template_vars()
        env.update({str(k): str(v) for k, v in self.secrets.items()})
        return env

    def __str__(self) -> str:
        return (
            f"RunContext(branch={self.branch!r}, build_id={self.build_id!r}, "
            f"commit={self.commit!r}, environment={self.environment!r})"
        )


@dataclass
class StageResult(BaseDomainModel):
    """
    Execution record of one stage within a run.
    """

    stage: str
    status: StageStatus = StageStatus.PENDING
    parallel_group: Optional[str] = None
    non_blocking: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    skip_reason: Optional[str] = None
    gate_id: Optional[str] = None
    output_ref: Optional[str] = None
    output_tail: str = ""

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    @property
    def is_blocking_failure(self) -> bool:
        return self.status == StageStatus.FAILED and not self.non_blocking

    def start(self) -> None:
        self.status = StageStatus.RUNNING
        self.started_at = utcnow()

    def finish(self, status: StageStatus, **details: Any) -> None:
        """Move to a terminal status, recording any extra fields given."""
        self.status = status
        self.completed_at = utcnow()
        for key, value in details.items():
            setattr(self, key, value)

    def capture_output(self, output: str) -> None:
        self.output_tail = output[-OUTPUT_TAIL_CHARS:] if output else ""

    def to_json(self) -> Dict[str, Any]:
        data = super().to_json()
        data["duration"] = self.duration
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> StageResult:
        data = {k: v for k, v in data.items() if k != "duration"}
        return super().from_json(data)


@dataclass
class PipelineRun(BaseDomainModel):
    """
    A single execution of a pipeline.

    Stage results are ordered by the graph's topological order and are kept
    after the run ends, including for failed runs.
    """

    pipeline: str = "pipeline"
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    context: RunContext = field(default_factory=RunContext)
    status: RunStatus = RunStatus.PENDING
    results: List[StageResult] = field(default_factory=list)
    reason: Optional[str] = None
    fatal: bool = False
    fatal_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def environment(self) -> str:
        return self.context.environment

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def current(self) -> List[str]:
        """Names of stages whose action is currently executing."""
        return [r.stage for r in self.results if r.status == StageStatus.RUNNING]

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    def result(self, stage: str) -> StageResult:
        for r in self.results:
            if r.stage == stage:
                return r
        raise KeyError(stage)

    def group_status(self, group: str) -> StageStatus:
        """
        Status of a parallel group: SUCCESS only if every member succeeded,
        FAILED as soon as any member failed.
        """
        members = [r.status for r in self.results if r.parallel_group == group]
        if not members:
            raise KeyError(group)
        if StageStatus.FAILED in members:
            return StageStatus.FAILED
        if StageStatus.ABORTED in members:
            return StageStatus.ABORTED
        if StageStatus.RUNNING in members:
            return StageStatus.RUNNING
        if StageStatus.PENDING in members:
            return StageStatus.PENDING
        if all(s == StageStatus.SUCCESS for s in members):
            return StageStatus.SUCCESS
        return StageStatus.SKIPPED

    def start(self) -> None:
        self.status = RunStatus.RUNNING
        self.started_at = utcnow()

    def terminal_status(self) -> RunStatus:
        """
        Status a run ends with, by precedence:
        failed > aborted > unstable > success.
        """
        if self.fatal or any(r.is_blocking_failure for r in self.results):
            return RunStatus.FAILED
        if any(r.status == StageStatus.ABORTED for r in self.results):
            return RunStatus.ABORTED
        if any(r.status == StageStatus.FAILED for r in self.results):
            return RunStatus.UNSTABLE
        return RunStatus.SUCCESS

    def finalize(self) -> None:
        self.status = self.terminal_status()
        self.completed_at = utcnow()

    def to_json(self) -> Dict[str, Any]:
        data = super().to_json()
        data["environment"] = self.environment
        data["duration"] = self.duration
        return data

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> PipelineRun:
        payload = {k: v for k, v in data.items() if k not in ("environment", "duration", "context", "results")}
        run = super().from_json(payload)
        run.context = RunContext.from_json(data.get("context") or {})
        run.results = [StageResult.from_json(r) for r in data.get("results") or []]
        return run
