"""
Applies operator requests written to the run store by other processes.

``shipyard gates resolve`` and ``shipyard abort`` run in their own process
and only touch files; the process executing the run polls for those files
and forwards them to its gate manager and engine.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from shipyard.approval.application.manager import ApprovalGateManager
from shipyard.runs.store import RunStore
from shipyard.shared.domain.exceptions import AlreadyResolved, GateNotFound
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class RunControlWatcher:
    """Polls the store for queued gate decisions and abort requests."""

    def __init__(
        self,
        store: RunStore,
        engine,
        gate_manager: ApprovalGateManager,
        poll_interval: Optional[float] = None,
    ):
        self.store = store
        self.engine = engine
        self.gates = gate_manager
        self.poll_interval = poll_interval if poll_interval is not None else settings.control_poll_interval
        self._task: Optional[asyncio.Task] = None

    def poll_once(self) -> int:
        """Apply every pending request. Returns how many were applied."""
        applied = 0

        for gate in self.gates.list_pending():
            request = self.store.take_gate_decision(gate.id)
            if request is None:
                continue
            try:
                self.gates.resolve(
                    gate.id,
                    request.get("decision", "abort"),
                    notes=request.get("notes"),
                    actor=request.get("actor") or "operator",
                )
                applied += 1
            except (AlreadyResolved, GateNotFound) as e:
                logger.warning("queued_decision_ignored", gate_id=gate.id, error=str(e))
            except ValueError as e:
                logger.warning("queued_decision_invalid", gate_id=gate.id, error=str(e))

        for run in self.engine.active_runs():
            if self.store.abort_requested(run.id):
                self.store.clear_abort(run.id)
                if self.engine.abort(run.id):
                    applied += 1

        return applied

    async def run_forever(self) -> None:
        logger.info("control_watcher_started", root=str(self.store.root), interval=self.poll_interval)
        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                self.poll_once()
            except asyncio.CancelledError:
                logger.info("control_watcher_stopped")
                raise
            except OSError as e:
                logger.warning("control_watcher_error", error=str(e))

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever(), name="control-watcher")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
