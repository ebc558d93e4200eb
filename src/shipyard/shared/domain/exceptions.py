"""
Domain exceptions for Shipyard.

All orchestrator errors inherit from ShipyardError and carry an optional
context dict for structured logging.
"""


class ShipyardError(Exception):
    """Base class for all Shipyard exceptions."""

    def __init__(self, message: str, context: dict = None):
        super().__init__(message)
        self.context = context or {}


class ConfigurationError(ShipyardError):
    """Raised when configuration is invalid or corrupt."""

    pass


class PipelineDefinitionError(ShipyardError):
    """Raised when a pipeline definition file cannot be parsed."""

    pass


# ---------------------------------------------------------------------------
# Graph validation (raised before any stage executes)
# ---------------------------------------------------------------------------


class GraphValidationError(ShipyardError):
    """Stage graph is not a valid DAG."""

    pass


class CycleDetected(GraphValidationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            context={"cycle": self.cycle},
        )


class UnknownDependency(GraphValidationError):
    """A stage depends on a name that is neither a stage nor a group."""

    def __init__(self, stage: str, dependency: str):
        self.stage = stage
        self.dependency = dependency
        super().__init__(
            f"Stage '{stage}' depends on unknown stage '{dependency}'",
            context={"stage": stage, "dependency": dependency},
        )


class DuplicateStage(GraphValidationError):
    """Two stages (or a stage and a group) share a name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Duplicate stage name '{name}'", context={"stage": name})


# ---------------------------------------------------------------------------
# Stage execution
# ---------------------------------------------------------------------------


class StageExecutionError(ShipyardError):
    """Wraps the failure of a stage's external action."""

    def __init__(
        self,
        stage: str,
        message: str,
        exit_code: int | None = None,
        output: str = "",
    ):
        self.stage = stage
        self.exit_code = exit_code
        self.output = output
        super().__init__(message, context={"stage": stage, "exit_code": exit_code})


# ---------------------------------------------------------------------------
# Approval gates
# ---------------------------------------------------------------------------


class ApprovalError(ShipyardError):
    """Base class for approval gate errors."""

    pass


class GateNotFound(ApprovalError):
    """No gate exists with the requested id."""

    def __init__(self, gate_id: str):
        self.gate_id = gate_id
        super().__init__(f"Approval gate '{gate_id}' not found", context={"gate_id": gate_id})


class AlreadyResolved(ApprovalError):
    """The gate already received its single accepted decision."""

    def __init__(self, gate_id: str, decision: str):
        self.gate_id = gate_id
        self.decision = decision
        super().__init__(
            f"Approval gate '{gate_id}' already resolved with '{decision}'",
            context={"gate_id": gate_id, "decision": decision},
        )


class ApprovalAborted(ApprovalError):
    """An actor resolved the gate with an abort decision."""

    non_retryable = True


class ApprovalTimeout(ApprovalError):
    """The gate timed out and was auto-resolved to abort."""

    non_retryable = True


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class DeploymentError(ShipyardError):
    """Base class for deployment errors."""

    pass


class DeploymentInProgress(DeploymentError):
    """Another deploy or rollback already holds the target."""

    non_retryable = True

    def __init__(self, target: str):
        self.target = target
        super().__init__(
            f"A deployment to '{target}' is already in progress",
            context={"target": target},
        )


class DeploymentHealthCheckFailed(DeploymentError):
    """The deployed version never reported healthy."""

    non_retryable = True

    def __init__(self, target: str, version: str, reason: str, rolled_back: bool = False):
        self.target = target
        self.version = version
        self.reason = reason
        self.rolled_back = rolled_back
        super().__init__(
            f"Health check for '{target}' at version '{version}' failed: {reason}",
            context={"target": target, "version": version, "rolled_back": rolled_back},
        )


class RollbackFailed(DeploymentError):
    """Rollback could not restore a healthy version. Requires a human."""

    non_retryable = True
    fatal = True


class RunNotFound(ShipyardError):
    """No run exists with the requested id."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run '{run_id}' not found", context={"run_id": run_id})
