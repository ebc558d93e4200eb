"""
Pipeline domain enums.

Defines stage and run states and the execution policies.
"""

from enum import Enum


class StageStatus(Enum):
    """Lifecycle of a single stage within a run."""

    PENDING = "pending"  # Waiting for dependencies or an approval gate
    RUNNING = "running"  # External action in flight
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # Condition false, or blocked by a skipped dependency
    ABORTED = "aborted"  # Never ran (or was cancelled) because of a failure/abort

    @property
    def is_terminal(self) -> bool:
        return self not in (StageStatus.PENDING, StageStatus.RUNNING)


class RunStatus(Enum):
    """Overall pipeline run status."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"  # Only pending approval gates remain
    SUCCESS = "success"
    UNSTABLE = "unstable"  # Finished; only non-blocking stages failed
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.UNSTABLE, RunStatus.FAILED, RunStatus.ABORTED)


class StageKind(Enum):
    """How a stage is scheduled relative to its siblings."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"  # Member of a parallel group


class SkipPolicy(Enum):
    """How dependents treat a skipped stage."""

    SKIP_IS_SUCCESS = "skip_is_success"
    SKIP_BLOCKS = "skip_blocks"


class FailurePolicy(Enum):
    """
    What a blocking stage failure does to the rest of the run.

    FAIL_FAST cancels in-flight stages and aborts everything pending.
    FAIL_AT_END only aborts the failed stage's dependents and lets
    independent branches finish.
    """

    FAIL_FAST = "fail_fast"
    FAIL_AT_END = "fail_at_end"
