"""Shared test fixtures for the Shipyard test suite."""

import asyncio
from typing import Optional

import pytest
from typer.testing import CliRunner

from shipyard.deployment.application.controller import DeploymentController
from shipyard.deployment.application.deployers import Deployer
from shipyard.deployment.application.health import HealthChecker
from shipyard.deployment.domain.models import DeploymentTarget, HealthState
from shipyard.pipeline.application.actions import ActionContext, ActionResult, StageAction
from shipyard.runs.store import RunStore
from shipyard.shared.domain.exceptions import DeploymentError, StageExecutionError


class RecordingAction(StageAction):
    """Appends ("start", stage) / ("end", stage) to a shared log."""

    def __init__(self, log: list, delay: float = 0.0, fail_times: int = 0, output: str = ""):
        self.log = log
        self.delay = delay
        self.fail_times = fail_times
        self.output = output
        self.calls = 0

    async def execute(self, ctx: ActionContext) -> ActionResult:
        self.calls += 1
        self.log.append(("start", ctx.stage))
        await asyncio.sleep(self.delay)
        self.log.append(("end", ctx.stage))
        if self.calls <= self.fail_times:
            raise StageExecutionError(ctx.stage, f"attempt {self.calls} failed", exit_code=1, output="boom")
        return ActionResult(output=self.output)


class Recorder:
    """Factory for RecordingActions sharing one log."""

    def __init__(self):
        self.log: list[tuple[str, str]] = []

    def action(self, delay: float = 0.0, fail_times: int = 0, output: str = "") -> RecordingAction:
        return RecordingAction(self.log, delay=delay, fail_times=fail_times, output=output)

    def index(self, event: str, stage: str) -> int:
        return self.log.index((event, stage))

    def started(self) -> list[str]:
        return [stage for event, stage in self.log if event == "start"]


class FakeDeployer(Deployer):
    """Tracks the live version per target instead of running commands."""

    def __init__(self):
        self.live: dict[str, str] = {}
        self.applied: list[tuple[str, str]] = []
        self.fail_versions: set[str] = set()
        self.gate: Optional[asyncio.Event] = None

    async def apply(self, target, version, env=None) -> str:
        self.applied.append((target.name, version))
        if self.gate is not None:
            await self.gate.wait()
        if version in self.fail_versions:
            raise DeploymentError(f"deploy of {version} failed", context={"target": target.name})
        self.live[target.name] = version
        return f"applied {version}"


class FakeHealthChecker(HealthChecker):
    """Healthy unless the live version is listed as unhealthy or failed."""

    def __init__(self, deployer: FakeDeployer):
        self.deployer = deployer
        self.unhealthy: set[str] = set()
        self.failed: set[str] = set()
        self.probes = 0

    async def check(self, target: DeploymentTarget, version: Optional[str] = None) -> HealthState:
        self.probes += 1
        live = self.deployer.live.get(target.name, target.current_version)
        if live in self.failed:
            return HealthState.FAILED
        if live in self.unhealthy:
            return HealthState.UNHEALTHY
        return HealthState.HEALTHY


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def deployer():
    return FakeDeployer()


@pytest.fixture
def health_checker(deployer):
    return FakeHealthChecker(deployer)


@pytest.fixture
def targets():
    return {
        "staging": DeploymentTarget(name="staging", current_version="1.0"),
        "production": DeploymentTarget(name="production", current_version="1.0"),
    }


@pytest.fixture
def controller(targets, deployer, health_checker):
    """Controller with fast health polling."""
    return DeploymentController(
        targets=targets.values(),
        deployer=deployer,
        health_checker=health_checker,
        health_timeout=0.2,
        poll_interval=0.01,
    )


@pytest.fixture
def store(tmp_path):
    return RunStore(tmp_path / ".shipyard")


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def pipeline_file(tmp_path):
    """A small pipeline that only runs local shell commands."""
    path = tmp_path / "pipeline.yaml"
    path.write_text(
        """
name: demo
failurePolicy: fail_at_end
stages:
  - name: build
    run: echo building ${BUILD_ID}
  - name: lint
    parallel: checks
    run: echo lint
  - name: unit
    parallel: checks
    run: echo unit
  - name: package
    run: echo package
""",
        encoding="utf-8",
    )
    return path
