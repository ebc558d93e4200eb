"""
Approval gate manager.

Owns every open gate of the process. The engine suspends on
``await_approval``; operators (CLI, control watcher, tests) call ``resolve``,
possibly from another thread. Exactly one resolution is accepted per gate.
"""

from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from shipyard.approval.domain.models import TIMEOUT_EXPIRED, ApprovalGate, Decision
from shipyard.shared.domain.exceptions import AlreadyResolved, GateNotFound
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class ApprovalGateManager:
    """Tracks approval gates and wakes runs waiting on them."""

    def __init__(self, store: Any = None, default_timeout: Optional[float] = None):
        """
        Args:
            store: Optional persistence with a ``save_gate(gate)`` method
            default_timeout: Timeout for gates opened without one; None waits forever
        """
        self.store = store
        self.default_timeout = default_timeout
        self._gates: dict[str, ApprovalGate] = {}
        self._events: dict[str, asyncio.Event] = {}
        self._loops: dict[str, asyncio.AbstractEventLoop] = {}
        self._lock = threading.Lock()

    def open_gate(
        self,
        run_id: str,
        stage: str,
        message: str = "Proceed?",
        timeout: Optional[float] = None,
    ) -> ApprovalGate:
        gate = ApprovalGate(
            run_id=run_id,
            stage=stage,
            message=message,
            timeout=timeout if timeout is not None else self.default_timeout,
        )
        with self._lock:
            self._gates[gate.id] = gate
            self._events[gate.id] = asyncio.Event()
        self._persist(gate)
        logger.info("approval_gate_opened", gate_id=gate.id, run_id=run_id, stage=stage, timeout=gate.timeout)
        return gate

    async def await_approval(self, gate: ApprovalGate) -> Decision:
        """
        Suspend until the gate is resolved.

        With a timeout, an unresolved gate is auto-resolved to ABORT with
        reason ``TimeoutExpired``.
        """
        event = self._event(gate.id)
        self._loops[gate.id] = asyncio.get_running_loop()

        if gate.is_resolved:
            return gate.decision

        if gate.timeout is None:
            await event.wait()
        else:
            try:
                await asyncio.wait_for(event.wait(), timeout=gate.timeout)
            except asyncio.TimeoutError:
                try:
                    self.resolve(
                        gate.id,
                        Decision.ABORT,
                        notes=f"No decision within {gate.timeout}s",
                        actor="system",
                        reason=TIMEOUT_EXPIRED,
                    )
                except AlreadyResolved:
                    # Resolved concurrently with the timeout firing; that decision wins
                    pass

        return gate.decision

    def resolve(
        self,
        gate_id: str,
        decision: Decision | str,
        notes: Optional[str] = None,
        actor: str = "operator",
        reason: Optional[str] = None,
    ) -> ApprovalGate:
        """
        Record the single accepted decision for a gate.

        Raises:
            GateNotFound: unknown gate id
            AlreadyResolved: the gate already has a decision (unchanged)
        """
        decision = Decision(decision)

        with self._lock:
            gate = self._gates.get(gate_id)
            if gate is None:
                raise GateNotFound(gate_id)
            if gate.is_resolved:
                raise AlreadyResolved(gate_id, gate.decision.value)
            gate.decision = decision
            gate.notes = notes
            gate.actor = actor
            gate.reason = reason
            gate.resolved_at = datetime.now(timezone.utc)

        self._persist(gate)
        self._wake(gate_id)
        logger.info(
            "approval_gate_resolved",
            gate_id=gate_id,
            run_id=gate.run_id,
            stage=gate.stage,
            decision=decision.value,
            actor=actor,
            reason=reason,
        )
        return gate

    def get(self, gate_id: str) -> ApprovalGate:
        gate = self._gates.get(gate_id)
        if gate is None:
            raise GateNotFound(gate_id)
        return gate

    def list_pending(self, run_id: Optional[str] = None) -> list[ApprovalGate]:
        return [
            gate
            for gate in self._gates.values()
            if gate.is_pending and (run_id is None or gate.run_id == run_id)
        ]

    def gates_for_run(self, run_id: str) -> list[ApprovalGate]:
        return [gate for gate in self._gates.values() if gate.run_id == run_id]

    def _event(self, gate_id: str) -> asyncio.Event:
        with self._lock:
            if gate_id not in self._events:
                if gate_id not in self._gates:
                    raise GateNotFound(gate_id)
                self._events[gate_id] = asyncio.Event()
            return self._events[gate_id]

    def _wake(self, gate_id: str) -> None:
        event = self._events.get(gate_id)
        if event is None:
            return
        loop = self._loops.get(gate_id)
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if loop is not None and loop is not current and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)
        else:
            event.set()

    def _persist(self, gate: ApprovalGate) -> None:
        if self.store is not None:
            self.store.save_gate(gate)
