"""
Tests for the operator-facing pipeline service.
"""

import asyncio

import pytest

from shipyard.approval.domain.models import Decision
from shipyard.deployment.domain.models import DeploymentTarget
from shipyard.pipeline.application.loader import parse_pipeline
from shipyard.pipeline.application.service import PipelineService
from shipyard.pipeline.domain.enums import RunStatus, StageStatus
from shipyard.pipeline.domain.models import RunContext
from shipyard.runs.store import RunStore
from shipyard.shared.domain.exceptions import AlreadyResolved, CycleDetected, RunNotFound

RELEASE = {
    "name": "release",
    "variables": {"CHANNEL": "stable", "REGION": "eu"},
    "targets": {
        "staging": {"deployCommand": "true", "currentVersion": "1"},
        "production": {"deployCommand": "true", "currentVersion": "1"},
    },
    "stages": [
        {"name": "build"},
        {"name": "deploy-staging", "deploy": "staging"},
        {"name": "approve", "approval": "Promote?"},
        {"name": "deploy-production", "deploy": "production"},
    ],
}


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def service(store, deployer, health_checker):
    svc = PipelineService(store=store, notifiers=[], deployer=deployer, health_checker=health_checker)
    svc.deployments.health_timeout = 0.2
    svc.deployments.poll_interval = 0.01
    return svc


class TestTrigger:

    @pytest.mark.asyncio
    async def test_run_to_completion(self, service, store):
        definition = parse_pipeline({"stages": [{"name": "a"}, {"name": "b"}]})

        run = await service.trigger(definition, RunContext(build_id="5"))

        assert run.status is RunStatus.SUCCESS
        assert store.load_run(run.id).status is RunStatus.SUCCESS
        assert [r.id for r in service.list_runs()] == [run.id]

    @pytest.mark.asyncio
    async def test_invalid_graph_creates_no_run(self, service):
        definition = parse_pipeline({
            "stages": [{"name": "a", "dependsOn": "b"}, {"name": "b", "dependsOn": "a"}],
        })

        with pytest.raises(CycleDetected):
            await service.trigger(definition)

        assert service.list_runs() == []

    @pytest.mark.asyncio
    async def test_context_variables_override_pipeline_variables(self, service):
        definition = parse_pipeline({**RELEASE, "stages": [{"name": "only"}]})

        run = await service.trigger(definition, RunContext(variables={"REGION": "us"}))

        assert run.context.variables == {"CHANNEL": "stable", "REGION": "us"}

    @pytest.mark.asyncio
    async def test_promotion_flow(self, service, store):
        definition = parse_pipeline(RELEASE)

        run = await service.trigger(definition, RunContext(build_id="2"), wait=False)
        await wait_for(lambda: run.status is RunStatus.AWAITING_APPROVAL)

        gate = service.pending_gates(run.id)[0]
        assert gate.message == "Promote?"
        service.resolve_gate(gate.id, Decision.PROCEED, actor="alice")
        with pytest.raises(AlreadyResolved):
            service.resolve_gate(gate.id, Decision.ABORT)
        finished = await asyncio.wait_for(service.wait(run.id), timeout=3)

        assert finished.status is RunStatus.SUCCESS
        assert service.deployments.get_target("production").current_version == "2"
        persisted = store.load_targets()
        assert persisted["production"].current_version == "2"
        assert persisted["production"].rollback_version == "1"

    @pytest.mark.asyncio
    async def test_persisted_versions_are_reused(self, store, deployer, health_checker):
        store.save_target(DeploymentTarget(name="production", current_version="7", rollback_version="6"))
        svc = PipelineService(store=store, notifiers=[], deployer=deployer, health_checker=health_checker)

        svc.register_targets(parse_pipeline(RELEASE).targets.values())

        production = svc.deployments.get_target("production")
        assert production.current_version == "7"
        assert production.rollback_version == "6"
        assert production.deploy_command == "true"


class TestOperatorActions:

    @pytest.mark.asyncio
    async def test_status_of_unknown_run(self, service):
        with pytest.raises(RunNotFound):
            service.status("missing")

    @pytest.mark.asyncio
    async def test_abort_in_process_run(self, service):
        run = await service.trigger(parse_pipeline(RELEASE), RunContext(build_id="2"), wait=False)
        await wait_for(lambda: run.status is RunStatus.AWAITING_APPROVAL)

        assert service.abort(run.id) is True
        finished = await asyncio.wait_for(service.wait(run.id), timeout=3)

        assert finished.status is RunStatus.ABORTED
        assert finished.result("deploy-production").status is StageStatus.ABORTED
        assert service.abort(run.id) is False

    @pytest.mark.asyncio
    async def test_cross_process_requests_are_queued(self, service, store):
        run = await service.trigger(parse_pipeline(RELEASE), RunContext(build_id="2"), wait=False)
        await wait_for(lambda: run.status is RunStatus.AWAITING_APPROVAL)

        operator = PipelineService(store=RunStore(store.root), notifiers=[])
        gate = operator.pending_gates()[0]
        queued = operator.resolve_gate(gate.id, "abort", notes="freeze", actor="bob")
        assert queued.is_pending
        assert operator.abort(run.id) is True

        watcher = service.control_watcher(poll_interval=0.01)
        watcher.start()
        try:
            finished = await asyncio.wait_for(service.wait(run.id), timeout=3)
        finally:
            await watcher.stop()

        assert finished.status is RunStatus.ABORTED
        assert store.load_gate(gate.id).decision is Decision.ABORT

    @pytest.mark.asyncio
    async def test_rollback(self, service, store):
        definition = parse_pipeline(RELEASE)
        run = await service.trigger(definition, RunContext(build_id="2"), wait=False)
        await wait_for(lambda: run.status is RunStatus.AWAITING_APPROVAL)

        target = await service.rollback("staging")

        assert target.current_version == "1"
        assert store.load_targets()["staging"].current_version == "1"
        service.abort(run.id)
        await asyncio.wait_for(service.wait(run.id), timeout=3)
