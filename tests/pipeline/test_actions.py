"""
Tests for stage actions.
"""

import pytest

from shipyard.pipeline.application.actions import (
    ActionContext,
    ActionResult,
    CallableAction,
    CommandAction,
    DeployAction,
)
from shipyard.pipeline.domain.models import RunContext
from shipyard.shared.domain.exceptions import ConfigurationError, StageExecutionError


def make_ctx(**kwargs):
    context = RunContext(branch="main", build_id="42", variables={"REGION": "eu"}, secrets={"TOKEN": "t0k"})
    return ActionContext(run_id="run1", stage="build", context=context, **kwargs)


class TestActionContext:

    def test_render(self):
        ctx = make_ctx()

        assert ctx.render("deploy ${BUILD_ID} to ${REGION} ${MISSING}") == "deploy 42 to eu ${MISSING}"
        assert ctx.render("${TARGET}", TARGET="prod") == "prod"

    def test_env_carries_secrets(self):
        assert make_ctx().env["TOKEN"] == "t0k"


class TestCommandAction:

    @pytest.mark.asyncio
    async def test_success_captures_output(self):
        action = CommandAction('echo "build $BUILD_ID on ${BRANCH_NAME}"', timeout=10)

        result = await action.execute(make_ctx())

        assert result.exit_code == 0
        assert result.output.strip() == "build 42 on main"

    @pytest.mark.asyncio
    async def test_failure_raises_with_exit_code(self):
        action = CommandAction("echo nope >&2; exit 4", timeout=10)

        with pytest.raises(StageExecutionError) as exc_info:
            await action.execute(make_ctx())

        assert exc_info.value.exit_code == 4
        assert "nope" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_timeout(self):
        action = CommandAction("sleep 5", timeout=0.1)

        with pytest.raises(StageExecutionError) as exc_info:
            await action.execute(make_ctx())

        assert "timed out" in str(exc_info.value)


class TestCallableAction:

    @pytest.mark.asyncio
    async def test_sync_and_async_callables(self):
        async def async_step(ctx):
            return f"async {ctx.stage}"

        sync_result = await CallableAction(lambda ctx: ActionResult(output="sync")).execute(make_ctx())
        async_result = await CallableAction(async_step).execute(make_ctx())

        assert sync_result.output == "sync"
        assert async_result.output == "async build"

    @pytest.mark.asyncio
    async def test_nonzero_return_is_failure(self):
        with pytest.raises(StageExecutionError) as exc_info:
            await CallableAction(lambda ctx: 2, name="check").execute(make_ctx())

        assert exc_info.value.exit_code == 2

    @pytest.mark.asyncio
    async def test_exceptions_are_wrapped(self):
        def broken(ctx):
            raise ValueError("bad input")

        with pytest.raises(StageExecutionError) as exc_info:
            await CallableAction(broken).execute(make_ctx())

        assert "ValueError" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ValueError)


class TestDeployAction:

    @pytest.mark.asyncio
    async def test_requires_controller(self):
        with pytest.raises(ConfigurationError):
            await DeployAction("staging").execute(make_ctx())

    @pytest.mark.asyncio
    async def test_deploys_rendered_version(self, controller, deployer):
        result = await DeployAction("staging").execute(make_ctx(deployments=controller))

        assert controller.get_target("staging").current_version == "42"
        assert "Deployed 42 to staging" in result.output
