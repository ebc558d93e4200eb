"""
Stage actions.

An action is the opaque external work behind a stage. It receives the run
context and either returns an ActionResult or raises; a failing external
command is reported as StageExecutionError so the retry policy can act on it.
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from string import Template
from typing import Any, Optional

from shipyard.pipeline.domain.models import RunContext
from shipyard.shared.domain.exceptions import ConfigurationError, ShipyardError, StageExecutionError
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.execution import CommandExecutor


@dataclass
class ActionContext:
    """Everything an action may see about the run it belongs to."""

    run_id: str
    stage: str
    context: RunContext
    attempt: int = 1
    deployments: Any = None  # DeploymentController, for deploy/rollback actions

    @property
    def env(self) -> dict[str, str]:
        return self.context.to_env()

    def render(self, template: str, **extra: str) -> str:
        """Substitute ``${NAME}`` references from the run context."""
        values = self.context.template_vars()
        values.update(extra)
        return Template(template).safe_substitute(values)


@dataclass
class ActionResult:
    exit_code: int = 0
    output: str = ""


class StageAction(ABC):
    """Base class for stage actions."""

    @abstractmethod
    async def execute(self, ctx: ActionContext) -> ActionResult:
        ...

    def describe(self) -> str:
        return type(self).__name__


class CommandAction(StageAction):
    """Runs a shell command with the run context exported as environment variables."""

    def __init__(
        self,
        command: str,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        executor: Optional[CommandExecutor] = None,
    ):
        self.command = command
        self.cwd = cwd
        self.timeout = timeout if timeout is not None else settings.command_timeout
        self.executor = executor or CommandExecutor()

    async def execute(self, ctx: ActionContext) -> ActionResult:
        command = ctx.render(self.command)
        result = await self.executor.run_async(
            command,
            cwd=self.cwd,
            env=ctx.env,
            timeout=self.timeout,
            shell=True,
        )
        if not result.is_success:
            reason = "timed out" if result.is_timeout else f"exited with code {result.exit_code}"
            raise StageExecutionError(
                ctx.stage,
                f"Command '{command}' {reason}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return ActionResult(exit_code=result.exit_code, output=result.output)

    def describe(self) -> str:
        return self.command


class CallableAction(StageAction):
    """
    Wraps a Python callable (sync or async) taking the ActionContext.

    Returning an int is treated as an exit code, a string as output.
    Sync callables run in a worker thread.
    """

    def __init__(self, func: Callable[[ActionContext], Any], name: Optional[str] = None):
        self.func = func
        self.name = name or getattr(func, "__name__", "callable")

    async def execute(self, ctx: ActionContext) -> ActionResult:
        try:
            if inspect.iscoroutinefunction(self.func):
                value = await self.func(ctx)
            else:
                value = await asyncio.to_thread(self.func, ctx)
        except ShipyardError:
            raise
        except Exception as e:
            raise StageExecutionError(ctx.stage, f"{self.name} raised {type(e).__name__}: {e}") from e

        if isinstance(value, ActionResult):
            result = value
        elif isinstance(value, bool) or value is None:
            result = ActionResult()
        elif isinstance(value, int):
            result = ActionResult(exit_code=value)
        else:
            result = ActionResult(output=str(value))

        if result.exit_code != 0:
            raise StageExecutionError(
                ctx.stage,
                f"{self.name} exited with code {result.exit_code}",
                exit_code=result.exit_code,
                output=result.output,
            )
        return result

    def describe(self) -> str:
        return self.name


class DeployAction(StageAction):
    """Deploys a version (default ``${BUILD_ID}``) to a target through the DeploymentController."""

    def __init__(self, target: str, version: str = "${BUILD_ID}"):
        self.target = target
        self.version = version

    async def execute(self, ctx: ActionContext) -> ActionResult:
        if ctx.deployments is None:
            raise ConfigurationError(f"Stage '{ctx.stage}' deploys but no deployment controller is configured")
        version = ctx.render(self.version)
        target = await ctx.deployments.deploy(self.target, version, env=ctx.env)
        return ActionResult(output=f"Deployed {version} to {target.name}")

    def describe(self) -> str:
        return f"deploy {self.version} -> {self.target}"


class RollbackAction(StageAction):
    """Rolls a target back to its last known-good version."""

    def __init__(self, target: str):
        self.target = target

    async def execute(self, ctx: ActionContext) -> ActionResult:
        if ctx.deployments is None:
            raise ConfigurationError(f"Stage '{ctx.stage}' rolls back but no deployment controller is configured")
        target = await ctx.deployments.rollback(self.target, env=ctx.env)
        return ActionResult(output=f"Rolled {target.name} back to {target.current_version}")

    def describe(self) -> str:
        return f"rollback {self.target}"
