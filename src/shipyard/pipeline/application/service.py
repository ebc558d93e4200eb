"""
Operator-facing pipeline service.

Wires the engine, gate manager, deployment controller and run store
together and exposes the operations the CLI offers: trigger, status,
list runs, pending gates, resolve gate, abort and rollback.

Requests for runs owned by another process (resolve, abort) are queued in
the run store and applied by that process's RunControlWatcher.
"""

from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import Callable
from typing import Optional

from shipyard.approval.application.manager import ApprovalGateManager
from shipyard.approval.domain.models import ApprovalGate, Decision
from shipyard.deployment.application.controller import DeploymentController
from shipyard.deployment.application.deployers import Deployer
from shipyard.deployment.application.health import HealthChecker
from shipyard.deployment.domain.models import DeploymentTarget
from shipyard.notifications.notifier import LogNotifier, NotificationSink, WebhookNotifier
from shipyard.pipeline.application.engine import PipelineEngine
from shipyard.pipeline.application.loader import PipelineDefinition
from shipyard.pipeline.domain.models import PipelineRun, RunContext
from shipyard.runs.store import RunStore
from shipyard.runs.watcher import RunControlWatcher
from shipyard.shared.domain.exceptions import GateNotFound
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def default_notifiers() -> list[NotificationSink]:
    """Log sink, plus a webhook sink when SHIPYARD_NOTIFICATION_WEBHOOK_URL is set."""
    sinks: list[NotificationSink] = [LogNotifier()]
    if settings.notification_webhook_url:
        sinks.append(WebhookNotifier(settings.notification_webhook_url))
    return sinks


class PipelineService:
    """Facade over one process's engine, gates, deployments and run store."""

    def __init__(
        self,
        store: Optional[RunStore] = None,
        notifiers: Optional[list[NotificationSink]] = None,
        deployer: Optional[Deployer] = None,
        health_checker: Optional[HealthChecker] = None,
        progress_callback: Optional[Callable[[str, dict], None]] = None,
    ):
        self.store = store if store is not None else RunStore()
        self.gates = ApprovalGateManager(store=self.store, default_timeout=settings.approval_timeout)
        self.deployments = DeploymentController(
            deployer=deployer,
            health_checker=health_checker,
            on_change=self.store.save_target,
        )
        self.engine = PipelineEngine(
            gate_manager=self.gates,
            deployments=self.deployments,
            store=self.store,
            notifiers=default_notifiers() if notifiers is None else notifiers,
            progress_callback=progress_callback,
        )
        self._tasks: dict[str, asyncio.Task] = {}

    def control_watcher(self, poll_interval: Optional[float] = None) -> RunControlWatcher:
        return RunControlWatcher(self.store, self.engine, self.gates, poll_interval=poll_interval)

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def trigger(
        self,
        definition: PipelineDefinition,
        context: Optional[RunContext] = None,
        wait: bool = True,
    ) -> PipelineRun:
        """
        Start a run of ``definition``.

        The graph is validated before the run is created, so an invalid
        pipeline never produces a run record.

        Args:
            definition: Parsed pipeline
            context: Branch, build id, commit, environment; pipeline variables
                are defaults that the context's variables override
            wait: Return the finished run (True) or the just-started run (False)

        Raises:
            GraphValidationError: cyclic or inconsistent graph
        """
        graph = definition.build_graph()
        context = context or RunContext()
        context = dataclasses.replace(context, variables={**definition.variables, **context.variables})
        self.register_targets(definition.targets.values())

        run = self.engine.create_run(graph, context)
        logger.info("run_triggered", run_id=run.id, pipeline=graph.name, branch=context.branch)
        execution = self.engine.execute(graph, run, definition.config)
        if wait:
            return await execution

        task = asyncio.create_task(execution, name=f"run:{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        return run

    async def wait(self, run_id: str) -> PipelineRun:
        """Wait for a run started with ``wait=False``."""
        task = self._tasks.get(run_id)
        if task is None:
            return self.status(run_id)
        return await task

    def status(self, run_id: str) -> PipelineRun:
        """
        Raises:
            RunNotFound: no such run in memory or in the store
        """
        run = self.engine.get_run(run_id)
        if run is not None:
            return run
        return self.store.load_run(run_id)

    def list_runs(self) -> list[PipelineRun]:
        return self.store.list_runs()

    def abort(self, run_id: str, actor: str = "operator") -> bool:
        """
        Abort a run. Returns False if the run already finished.

        Raises:
            RunNotFound: unknown run
        """
        if self.engine.abort(run_id):
            return True
        run = self.store.load_run(run_id)
        if run.is_terminal:
            return False
        self.store.request_abort(run_id, actor=actor)
        logger.info("run_abort_queued", run_id=run_id, actor=actor)
        return True

    # ------------------------------------------------------------------
    # Approval gates
    # ------------------------------------------------------------------

    def pending_gates(self, run_id: Optional[str] = None) -> list[ApprovalGate]:
        gates = {gate.id: gate for gate in self.store.list_gates(pending_only=True)}
        gates.update({gate.id: gate for gate in self.gates.list_pending(run_id)})
        return sorted(
            (g for g in gates.values() if run_id is None or g.run_id == run_id),
            key=lambda g: g.created_at,
        )

    def resolve_gate(
        self,
        gate_id: str,
        decision: Decision | str,
        notes: Optional[str] = None,
        actor: str = "operator",
    ) -> ApprovalGate:
        """
        Resolve a gate of this process, or queue the decision for the
        process that owns it.

        Raises:
            GateNotFound: unknown gate
            AlreadyResolved: the gate already has a decision
        """
        try:
            return self.gates.resolve(gate_id, decision, notes=notes, actor=actor)
        except GateNotFound:
            self.store.request_gate_decision(gate_id, decision, notes=notes, actor=actor)
            logger.info("gate_decision_queued", gate_id=gate_id, decision=Decision(decision).value, actor=actor)
            return self.store.load_gate(gate_id)

    # ------------------------------------------------------------------
    # Deployments
    # ------------------------------------------------------------------

    def register_targets(self, targets) -> None:
        """
        Register pipeline targets, taking versions from the store when known.

        Targets already held by this process keep their in-memory versions.
        """
        persisted = self.store.load_targets()
        for target in targets:
            if target.name in self.deployments.targets:
                continue
            known = persisted.get(target.name)
            if known is not None:
                target = dataclasses.replace(
                    target,
                    current_version=known.current_version or target.current_version,
                    rollback_version=known.rollback_version or target.rollback_version,
                    updated_at=known.updated_at,
                )
            self.deployments.register(target)

    async def rollback(
        self,
        target: str,
        to_version: Optional[str] = None,
        definition: Optional[PipelineDefinition] = None,
    ) -> DeploymentTarget:
        """
        Roll a target back to its rollback-to version (or ``to_version``).

        Raises:
            ConfigurationError: unknown target
            RollbackFailed: no known-good version, or it never became healthy
        """
        if definition is not None:
            self.register_targets(definition.targets.values())
        return await self.deployments.rollback(target, to_version=to_version)
