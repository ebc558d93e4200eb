"""
Pipeline execution engine.

Walks a StageGraph, starting each stage as an asyncio task as soon as its
dependencies are in an accepted terminal state. All stage-state bookkeeping
happens on the event loop, so dependency checks never race; the external
work itself runs in subprocesses or worker threads.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import structlog

from shipyard.approval.application.manager import ApprovalGateManager
from shipyard.approval.domain.models import RUN_ABORTED, TIMEOUT_EXPIRED, Decision
from shipyard.notifications.notifier import NotificationSink, RunEvent, notify_all
from shipyard.pipeline.application.actions import ActionContext, ActionResult
from shipyard.pipeline.domain.enums import FailurePolicy, RunStatus, SkipPolicy, StageStatus
from shipyard.pipeline.domain.graph import StageGraph
from shipyard.pipeline.domain.models import (
    PipelineConfig,
    PipelineRun,
    RunContext,
    StageDefinition,
    StageResult,
)
from shipyard.shared.domain.exceptions import (
    AlreadyResolved,
    ApprovalAborted,
    ApprovalTimeout,
    StageExecutionError,
)
from shipyard.shared.infrastructure.logging import forget_secrets, get_logger, redact_string, register_secrets
from shipyard.shared.infrastructure.resilience import (
    OperationTimeoutError,
    RetryConfig,
    RetryExhausted,
    with_retry_async,
    with_timeout_async,
)

logger = get_logger(__name__)


class _Verdict(Enum):
    READY = "ready"
    WAIT = "wait"
    SKIP = "skip"
    ABORT = "abort"


@dataclass
class _Execution:
    """Mutable bookkeeping of one in-flight run."""

    graph: StageGraph
    run: PipelineRun
    config: PipelineConfig
    loop: asyncio.AbstractEventLoop
    semaphore: asyncio.Semaphore
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)
    tasks: dict[asyncio.Task, str] = field(default_factory=dict)
    open_gates: set[str] = field(default_factory=set)
    approvals: dict[str, str] = field(default_factory=dict)
    blocking_skips: set[str] = field(default_factory=set)
    halted: bool = False
    abort_requested: bool = False
    fatal_error: Optional[BaseException] = None
    failure_reason: Optional[str] = None
    gate_reason: Optional[str] = None
    unstable_reason: Optional[str] = None

    @property
    def running(self) -> set[str]:
        return set(self.tasks.values())


class PipelineEngine:
    """
    Executes stage graphs.

    One engine may execute several runs concurrently; each run keeps its
    own context, so runs never share mutable state.
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        gate_manager: Optional[ApprovalGateManager] = None,
        deployments: Any = None,
        store: Any = None,
        notifiers: Optional[Iterable[NotificationSink]] = None,
        progress_callback: Optional[Callable[[str, dict], None]] = None,
    ):
        """
        Args:
            config: Default execution policy
            gate_manager: Approval gate manager (a private one if omitted)
            deployments: DeploymentController used by deploy/rollback actions
            store: Optional RunStore for snapshots and stage logs
            notifiers: Sinks that receive the run-completion event
            progress_callback: Called as ``callback(event, payload)``
        """
        self.config = config or PipelineConfig()
        self.gates = gate_manager or ApprovalGateManager()
        self.deployments = deployments
        self.store = store
        self.notifiers = list(notifiers or [])
        self.progress_callback = progress_callback
        self._executions: dict[str, _Execution] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_run(self, graph: StageGraph, context: RunContext) -> PipelineRun:
        """Create a pending run with one result per stage, in topological order."""
        run = PipelineRun(pipeline=graph.name, context=context)
        for definition in graph:
            run.results.append(
                StageResult(
                    stage=definition.name,
                    parallel_group=definition.parallel_group,
                    non_blocking=definition.non_blocking,
                )
            )
        self._persist(run)
        return run

    async def run(
        self,
        graph: StageGraph,
        context: RunContext,
        config: Optional[PipelineConfig] = None,
    ) -> PipelineRun:
        """Create and execute a run to completion."""
        return await self.execute(graph, self.create_run(graph, context), config)

    async def execute(
        self,
        graph: StageGraph,
        run: PipelineRun,
        config: Optional[PipelineConfig] = None,
    ) -> PipelineRun:
        """Execute a run created by ``create_run`` until it reaches a terminal status."""
        config = config or self.config
        ex = _Execution(
            graph=graph,
            run=run,
            config=config,
            loop=asyncio.get_running_loop(),
            semaphore=asyncio.Semaphore(max(1, config.parallel_limit)),
        )
        self._executions[run.id] = ex
        secrets = list(run.context.secrets.values())
        register_secrets(secrets)
        try:
            return await self._execute(ex)
        finally:
            forget_secrets(secrets)

    async def _execute(self, ex: _Execution) -> PipelineRun:
        run, graph, config = ex.run, ex.graph, ex.config
        with structlog.contextvars.bound_contextvars(run_id=run.id, pipeline=graph.name):
            logger.info(
                "run_started",
                branch=run.context.branch,
                build_id=run.context.build_id,
                environment=run.context.environment,
                stages=len(graph),
                failure_policy=config.failure_policy.value,
            )
            run.start()
            self._persist(run)
            self._progress("run_started", {"run_id": run.id})

            abort_waiter = asyncio.create_task(ex.abort_event.wait())
            try:
                await self._drive(ex, abort_waiter)
            finally:
                abort_waiter.cancel()
                self._executions.pop(run.id, None)

            self._finalize(ex)
            await self._notify(run)

        return run

    def abort(self, run_id: str) -> bool:
        """
        Request cancellation of a run. Safe to call from any thread.

        Returns:
            False if the run is not executing in this engine
        """
        ex = self._executions.get(run_id)
        if ex is None or ex.run.is_terminal:
            return False
        ex.loop.call_soon_threadsafe(ex.abort_event.set)
        logger.warning("run_abort_requested", run_id=run_id)
        return True

    def get_run(self, run_id: str) -> Optional[PipelineRun]:
        ex = self._executions.get(run_id)
        return ex.run if ex else None

    def active_runs(self) -> list[PipelineRun]:
        return [ex.run for ex in self._executions.values()]

    # ------------------------------------------------------------------
    # Scheduling loop
    # ------------------------------------------------------------------

    async def _drive(self, ex: _Execution, abort_waiter: asyncio.Task) -> None:
        while True:
            if not ex.halted:
                self._schedule(ex)
            self._refresh_status(ex)

            if not ex.tasks:
                break

            waiting = set(ex.tasks)
            if not abort_waiter.done():
                waiting.add(abort_waiter)
            done, _ = await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

            if abort_waiter in done and not ex.abort_requested:
                ex.abort_requested = True
                self._halt(ex, "run aborted by operator")

            for task in done:
                if task is abort_waiter:
                    continue
                name = ex.tasks.pop(task)
                self._stage_finished(ex, name, task)

        if ex.halted or ex.abort_requested:
            error_type = RUN_ABORTED if ex.abort_requested else "RunHalted"
            for result in ex.run.results:
                if result.status == StageStatus.PENDING:
                    result.finish(StageStatus.ABORTED, error="run halted before stage started", error_type=error_type)

    def _schedule(self, ex: _Execution) -> None:
        """
        Resolve every pending stage whose dependencies allow a decision.

        Iterating in topological order lets aborts and skips cascade in a
        single pass.
        """
        running = ex.running
        for name in ex.graph.order:
            result = ex.run.result(name)
            if result.status != StageStatus.PENDING or name in running:
                continue

            verdict, cause = self._dependency_verdict(ex, name)
            if verdict is _Verdict.WAIT:
                continue
            if verdict is _Verdict.ABORT:
                result.finish(
                    StageStatus.ABORTED,
                    error=f"dependency '{cause}' did not succeed",
                    error_type="DependencyFailed",
                )
                logger.info("stage_aborted", stage=name, dependency=cause)
                self._progress("stage_aborted", {"stage": name, "dependency": cause})
                continue
            if verdict is _Verdict.SKIP:
                result.finish(StageStatus.SKIPPED, skip_reason="dependency_skipped")
                ex.blocking_skips.add(name)
                logger.info("stage_skipped", stage=name, reason="dependency_skipped", dependency=cause)
                self._progress("stage_skipped", {"stage": name, "reason": "dependency_skipped"})
                continue

            stage = ex.graph.stage(name)
            if stage.condition is not None:
                try:
                    allowed = bool(stage.condition(ex.run.context, dict(ex.approvals)))
                except Exception as e:
                    result.finish(
                        StageStatus.FAILED,
                        error=f"condition raised {type(e).__name__}: {e}",
                        error_type="ConditionError",
                    )
                    self._record_failure(ex, result)
                    logger.error("stage_condition_failed", stage=name, error=str(e))
                    self._apply_failure_policy(ex, name, result)
                    if ex.halted:
                        break
                    continue
                if not allowed:
                    result.finish(StageStatus.SKIPPED, skip_reason="condition_not_met")
                    if stage.skip_policy is SkipPolicy.SKIP_BLOCKS:
                        ex.blocking_skips.add(name)
                    logger.info("stage_skipped", stage=name, reason="condition_not_met")
                    self._progress("stage_skipped", {"stage": name, "reason": "condition_not_met"})
                    continue

            task = asyncio.create_task(self._run_stage(ex, stage, result), name=f"stage:{name}")
            ex.tasks[task] = name
            running.add(name)

        self._persist(ex.run)

    def _dependency_verdict(self, ex: _Execution, name: str) -> tuple[_Verdict, Optional[str]]:
        verdict, cause = _Verdict.READY, None
        for dependency in sorted(ex.graph.dependencies[name]):
            dep = ex.run.result(dependency)
            if dep.status == StageStatus.SUCCESS:
                continue
            if dep.status == StageStatus.FAILED and dep.non_blocking:
                continue
            if dep.status in (StageStatus.FAILED, StageStatus.ABORTED):
                return _Verdict.ABORT, dependency
            if dep.status == StageStatus.SKIPPED:
                if dependency in ex.blocking_skips:
                    verdict, cause = _Verdict.SKIP, dependency
                continue
            if verdict is _Verdict.READY:
                verdict, cause = _Verdict.WAIT, dependency
        return verdict, cause

    def _stage_finished(self, ex: _Execution, name: str, task: asyncio.Task) -> None:
        result = ex.run.result(name)

        if not task.cancelled() and task.exception() is not None:
            error = task.exception()
            logger.error("stage_task_crashed", stage=name, error=str(error))
            if not result.status.is_terminal:
                result.finish(StageStatus.FAILED, error=str(error), error_type=type(error).__name__)

        if result.status == StageStatus.FAILED:
            self._record_failure(ex, result)

        self._progress(
            "stage_completed",
            {"stage": name, "status": result.status.value, "duration": result.duration},
        )
        self._persist(ex.run)
        self._apply_failure_policy(ex, name, result)

    def _apply_failure_policy(self, ex: _Execution, name: str, result: StageResult) -> None:
        if ex.fatal_error is not None:
            self._halt(ex, "fatal condition")
        elif ex.config.failure_policy is FailurePolicy.FAIL_FAST and (
            result.is_blocking_failure or (result.status == StageStatus.ABORTED and result.gate_id)
        ):
            self._halt(ex, f"stage '{name}' did not succeed (fail_fast)")

    def _record_failure(self, ex: _Execution, result: StageResult) -> None:
        if result.non_blocking:
            ex.unstable_reason = ex.unstable_reason or result.error_type
        else:
            ex.failure_reason = ex.failure_reason or result.error_type

    def _halt(self, ex: _Execution, why: str) -> None:
        if not ex.halted:
            logger.warning("run_halting", reason=why, in_flight=sorted(ex.running))
        ex.halted = True
        for task in ex.tasks:
            task.cancel()

    # ------------------------------------------------------------------
    # Stage execution
    # ------------------------------------------------------------------

    async def _run_stage(self, ex: _Execution, stage: StageDefinition, result: StageResult) -> None:
        output = ""
        try:
            if stage.approval is not None and not await self._await_gate(ex, stage, result):
                return

            async with ex.semaphore:
                result.start()
                logger.info("stage_started", stage=stage.name, kind=stage.kind.value)
                self._progress("stage_started", {"stage": stage.name})
                self._refresh_status(ex)
                self._persist(ex.run)

                action_result = await self._execute_action(ex, stage, result)
                output = action_result.output

            result.finish(StageStatus.SUCCESS, exit_code=action_result.exit_code)
            logger.info("stage_succeeded", stage=stage.name, attempts=result.attempts, duration=result.duration)

        except asyncio.CancelledError:
            result.finish(
                StageStatus.ABORTED,
                error="cancelled",
                error_type=RUN_ABORTED if ex.abort_requested else "RunHalted",
            )
            logger.warning("stage_cancelled", stage=stage.name)
            raise

        except Exception as e:
            error = e.last_error if isinstance(e, RetryExhausted) else e
            if isinstance(error, StageExecutionError):
                output = error.output
            result.finish(
                StageStatus.FAILED,
                error=redact_string(str(error)),
                error_type=type(error).__name__,
                exit_code=getattr(error, "exit_code", None),
            )
            if getattr(error, "fatal", False):
                ex.fatal_error = error
                ex.run.fatal = True
                ex.run.fatal_message = str(error)
                logger.critical(
                    "fatal_condition",
                    stage=stage.name,
                    error=str(error),
                    error_type=type(error).__name__,
                    action="manual intervention required",
                )
            else:
                logger.error(
                    "stage_failed",
                    stage=stage.name,
                    error=str(error),
                    error_type=type(error).__name__,
                    attempts=result.attempts,
                    non_blocking=stage.non_blocking,
                )

        finally:
            if output:
                output = redact_string(output)
                result.capture_output(output)
                if self.store is not None:
                    result.output_ref = self.store.write_stage_log(ex.run.id, stage.name, output)
            self._persist(ex.run)

    async def _execute_action(self, ex: _Execution, stage: StageDefinition, result: StageResult) -> ActionResult:
        if stage.action is None:
            result.attempts = 1
            return ActionResult()

        async def attempt() -> ActionResult:
            result.attempts += 1
            ctx = ActionContext(
                run_id=ex.run.id,
                stage=stage.name,
                context=ex.run.context,
                attempt=result.attempts,
                deployments=self.deployments,
            )
            return await with_timeout_async(stage.action.execute(ctx), stage.timeout, f"Stage '{stage.name}'")

        if stage.max_attempts == 1:
            return await attempt()

        def on_retry(failed_attempt: int, error: Exception, delay: float) -> None:
            self._progress(
                "stage_retrying",
                {"stage": stage.name, "attempt": failed_attempt, "delay": delay, "error": str(error)},
            )

        retry_config = RetryConfig(
            max_attempts=stage.max_attempts,
            initial_delay=stage.retry.delay,
            max_delay=stage.retry.max_delay,
            backoff=stage.retry.backoff,
            jitter=False,
            retryable_exceptions=(StageExecutionError, OperationTimeoutError),
        )
        return await with_retry_async(attempt, retry_config, operation_name=f"stage:{stage.name}", on_retry=on_retry)

    async def _await_gate(self, ex: _Execution, stage: StageDefinition, result: StageResult) -> bool:
        """Open the stage's approval gate and wait. Returns True to proceed."""
        timeout = stage.approval.timeout if stage.approval.timeout is not None else ex.config.approval_timeout
        gate = self.gates.open_gate(ex.run.id, stage.name, stage.approval.message, timeout)
        result.gate_id = gate.id
        ex.open_gates.add(gate.id)
        self._refresh_status(ex)
        self._persist(ex.run)
        self._progress("approval_requested", {"stage": stage.name, "gate_id": gate.id, "message": gate.message})

        try:
            decision = await self.gates.await_approval(gate)
        except asyncio.CancelledError:
            try:
                self.gates.resolve(gate.id, Decision.ABORT, notes="run aborted", actor="system", reason=RUN_ABORTED)
            except AlreadyResolved:
                pass
            raise
        finally:
            ex.open_gates.discard(gate.id)

        ex.approvals[stage.name] = decision.value
        if decision is Decision.PROCEED:
            logger.info("approval_granted", stage=stage.name, gate_id=gate.id, actor=gate.actor)
            return True

        if gate.reason == TIMEOUT_EXPIRED:
            error = ApprovalTimeout(f"Approval for '{stage.name}' timed out after {gate.timeout}s")
        else:
            error = ApprovalAborted(f"Approval for '{stage.name}' was aborted by {gate.actor}: {gate.notes or ''}".rstrip(": "))
        result.finish(StageStatus.ABORTED, error=str(error), error_type=type(error).__name__)
        ex.gate_reason = ex.gate_reason or type(error).__name__
        logger.warning("approval_denied", stage=stage.name, gate_id=gate.id, reason=type(error).__name__)
        return False

    # ------------------------------------------------------------------
    # Status, persistence, notification
    # ------------------------------------------------------------------

    def _refresh_status(self, ex: _Execution) -> None:
        run = ex.run
        if run.is_terminal:
            return
        if any(r.status == StageStatus.RUNNING for r in run.results):
            status = RunStatus.RUNNING
        elif ex.open_gates:
            status = RunStatus.AWAITING_APPROVAL
        else:
            status = RunStatus.RUNNING
        if status is not run.status:
            run.status = status
            self._progress("run_status_changed", {"status": status.value})
            self._persist(run)

    def _finalize(self, ex: _Execution) -> None:
        run = ex.run
        run.finalize()
        if ex.fatal_error is not None:
            run.reason = type(ex.fatal_error).__name__
        elif run.status is RunStatus.FAILED:
            run.reason = ex.failure_reason
        elif run.status is RunStatus.ABORTED:
            run.reason = RUN_ABORTED if ex.abort_requested else ex.gate_reason
        elif run.status is RunStatus.UNSTABLE:
            run.reason = ex.unstable_reason
        self._persist(run)

        log = logger.critical if run.fatal else logger.info if run.status is RunStatus.SUCCESS else logger.warning
        log(
            "run_completed",
            status=run.status.value,
            reason=run.reason,
            duration=run.duration,
            stages={r.stage: r.status.value for r in run.results},
        )
        self._progress("run_completed", {"run_id": run.id, "status": run.status.value, "reason": run.reason})

    async def _notify(self, run: PipelineRun) -> None:
        if self.notifiers:
            await notify_all(self.notifiers, RunEvent.from_run(run))

    def _persist(self, run: PipelineRun) -> None:
        if self.store is not None:
            self.store.save_run(run)

    def _progress(self, event: str, payload: dict) -> None:
        if self.progress_callback:
            try:
                self.progress_callback(event, payload)
            except Exception as e:
                logger.warning("progress_callback_failed", progress_event=event, error=str(e))
