"""
Tests for the approval gate manager.
"""

import asyncio

import pytest

from shipyard.approval.application.manager import ApprovalGateManager
from shipyard.approval.domain.models import RUN_ABORTED, TIMEOUT_EXPIRED, ApprovalGate, Decision
from shipyard.shared.domain.exceptions import AlreadyResolved, GateNotFound


class TestResolve:
    """Single accepted decision per gate."""

    def test_resolve_records_decision(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve-prod", "Deploy to production?")

        resolved = manager.resolve(gate.id, "proceed", notes="release 4.2", actor="alice")

        assert resolved is gate
        assert gate.decision is Decision.PROCEED
        assert gate.notes == "release 4.2"
        assert gate.actor == "alice"
        assert gate.resolved_at is not None
        assert manager.list_pending() == []

    def test_second_resolution_is_rejected_and_changes_nothing(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve-prod")
        manager.resolve(gate.id, Decision.PROCEED, actor="alice")

        with pytest.raises(AlreadyResolved) as exc_info:
            manager.resolve(gate.id, Decision.ABORT, actor="bob")

        assert "proceed" in str(exc_info.value)
        assert gate.decision is Decision.PROCEED
        assert gate.actor == "alice"

    def test_unknown_gate(self):
        with pytest.raises(GateNotFound):
            ApprovalGateManager().resolve("nope", Decision.PROCEED)

    def test_invalid_decision(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve")

        with pytest.raises(ValueError):
            manager.resolve(gate.id, "maybe")

        assert gate.is_pending

    def test_pending_gates_filter_by_run(self):
        manager = ApprovalGateManager()
        first = manager.open_gate("run1", "approve")
        manager.open_gate("run2", "approve")

        assert manager.list_pending("run1") == [first]
        assert len(manager.list_pending()) == 2
        assert manager.gates_for_run("run2")[0].run_id == "run2"

    def test_gates_are_persisted(self):
        saved = []

        class Store:
            def save_gate(self, gate):
                saved.append((gate.id, gate.decision))

        manager = ApprovalGateManager(store=Store())
        gate = manager.open_gate("run1", "approve")
        manager.resolve(gate.id, Decision.ABORT)

        assert saved == [(gate.id, None), (gate.id, Decision.ABORT)]


class TestAwaitApproval:
    """Suspending on a gate."""

    @pytest.mark.asyncio
    async def test_resolution_wakes_waiter(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve")
        waiter = asyncio.create_task(manager.await_approval(gate))
        await asyncio.sleep(0)

        assert not waiter.done()
        manager.resolve(gate.id, Decision.PROCEED)

        assert await asyncio.wait_for(waiter, timeout=1) is Decision.PROCEED

    @pytest.mark.asyncio
    async def test_resolution_from_another_thread(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve")
        waiter = asyncio.create_task(manager.await_approval(gate))
        await asyncio.sleep(0)

        await asyncio.to_thread(manager.resolve, gate.id, Decision.ABORT, "no", "bob")

        assert await asyncio.wait_for(waiter, timeout=1) is Decision.ABORT
        assert gate.actor == "bob"

    @pytest.mark.asyncio
    async def test_already_resolved_gate_returns_immediately(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve")
        manager.resolve(gate.id, Decision.PROCEED)

        assert await manager.await_approval(gate) is Decision.PROCEED

    @pytest.mark.asyncio
    async def test_timeout_resolves_to_abort(self):
        manager = ApprovalGateManager()
        gate = manager.open_gate("run1", "approve", timeout=0.02)

        decision = await manager.await_approval(gate)

        assert decision is Decision.ABORT
        assert gate.reason == TIMEOUT_EXPIRED
        assert gate.actor == "system"
        with pytest.raises(AlreadyResolved):
            manager.resolve(gate.id, Decision.PROCEED)

    @pytest.mark.asyncio
    async def test_default_timeout_applies(self):
        manager = ApprovalGateManager(default_timeout=0.02)
        gate = manager.open_gate("run1", "approve")

        assert gate.timeout == 0.02
        assert await manager.await_approval(gate) is Decision.ABORT


class TestGateModel:
    def test_round_trip_keeps_decision_enum(self):
        gate = ApprovalGate(run_id="run1", stage="approve", timeout=30.0)
        gate.decision = Decision.ABORT
        gate.reason = RUN_ABORTED

        data = gate.to_json()
        restored = ApprovalGate.from_json(data)

        assert data["runId"] == "run1"
        assert data["decision"] == "abort"
        assert restored.decision is Decision.ABORT
        assert restored.created_at == gate.created_at
        assert restored.reason == RUN_ABORTED
