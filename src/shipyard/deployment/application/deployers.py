"""
Deployers issue the external update action for a target.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from string import Template
from typing import Optional

from shipyard.deployment.domain.models import DeploymentTarget
from shipyard.shared.domain.exceptions import ConfigurationError, DeploymentError
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.execution import CommandExecutor
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class Deployer(ABC):
    """Applies a version to a target. Raises DeploymentError on failure."""

    @abstractmethod
    async def apply(
        self,
        target: DeploymentTarget,
        version: str,
        env: Optional[dict[str, str]] = None,
    ) -> str:
        """Returns captured output of the update action."""
        ...

    def ensure_configured(self, target: DeploymentTarget) -> None:
        """Raise ConfigurationError if ``target`` cannot be updated."""


class CommandDeployer(Deployer):
    """
    Runs the target's ``deploy_command`` template.

    ``${VERSION}`` and ``${TARGET_ENV}`` are substituted, as are any names
    in ``env`` (the run context), e.g.
    ``kubectl set image deployment/web web=registry/web:${VERSION} -n ${TARGET_ENV}``.
    """

    def __init__(self, executor: Optional[CommandExecutor] = None, timeout: Optional[float] = None):
        self.executor = executor or CommandExecutor()
        self.timeout = timeout if timeout is not None else settings.command_timeout

    def ensure_configured(self, target: DeploymentTarget) -> None:
        if not target.deploy_command:
            raise ConfigurationError(
                f"Target '{target.name}' has no deploy command",
                context={"target": target.name},
            )

    async def apply(
        self,
        target: DeploymentTarget,
        version: str,
        env: Optional[dict[str, str]] = None,
    ) -> str:
        self.ensure_configured(target)

        variables = dict(env or {})
        variables.update(VERSION=version, TARGET_ENV=target.name)
        command = Template(target.deploy_command).safe_substitute(variables)

        logger.info("deploy_command_started", target=target.name, version=version)
        result = await self.executor.run_async(command, env=variables, timeout=self.timeout, shell=True)
        if not result.is_success:
            raise DeploymentError(
                f"Deploy command for '{target.name}' failed with exit code {result.exit_code}",
                context={"target": target.name, "version": version, "exit_code": result.exit_code},
            )
        return result.output
