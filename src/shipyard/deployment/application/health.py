"""
Health checkers.

A checker performs a single probe of a target; polling and the overall
timeout belong to the DeploymentController.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from string import Template
from typing import Optional

import httpx

from shipyard.deployment.domain.models import DeploymentTarget, HealthState
from shipyard.shared.domain.exceptions import ConfigurationError
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.execution import CommandExecutor
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class HealthChecker(ABC):
    """Single health probe of a deployment target."""

    @abstractmethod
    async def check(self, target: DeploymentTarget, version: Optional[str] = None) -> HealthState:
        """
        Probe ``target`` once.

        ``version`` is the version being verified; it differs from
        ``target.current_version`` until a deploy has been recorded.
        """
        ...

    def ensure_configured(self, target: DeploymentTarget) -> None:
        """Raise ConfigurationError if ``target`` cannot be probed."""


class HttpHealthChecker(HealthChecker):
    """
    GETs the target's health-check URL.

    2xx is healthy; any other status or a transport error is unhealthy
    (the service may still be starting).
    """

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.timeout = timeout if timeout is not None else settings.health_request_timeout
        self.transport = transport

    def ensure_configured(self, target: DeploymentTarget) -> None:
        if not target.health_check_url:
            raise ConfigurationError(
                f"Target '{target.name}' has no health check URL",
                context={"target": target.name},
            )

    async def check(self, target: DeploymentTarget, version: Optional[str] = None) -> HealthState:
        self.ensure_configured(target)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.get(target.health_check_url)
        except httpx.HTTPError as e:
            logger.debug("health_probe_error", target=target.name, error=str(e))
            return HealthState.UNHEALTHY

        if response.is_success:
            return HealthState.HEALTHY

        logger.debug("health_probe_unhealthy", target=target.name, status_code=response.status_code)
        return HealthState.UNHEALTHY


class CommandHealthChecker(HealthChecker):
    """
    Runs the target's health command, e.g. ``kubectl rollout status``.

    ``${VERSION}`` is the version under verification and ``${TARGET_ENV}``
    the target name. Exit code 0 is healthy, a command timeout is
    unhealthy, and any other exit code is an explicit failure.
    """

    def __init__(self, executor: Optional[CommandExecutor] = None, timeout: Optional[float] = None):
        self.executor = executor or CommandExecutor()
        self.timeout = timeout if timeout is not None else settings.health_request_timeout

    def ensure_configured(self, target: DeploymentTarget) -> None:
        if not target.health_command:
            raise ConfigurationError(
                f"Target '{target.name}' has no health command",
                context={"target": target.name},
            )

    async def check(self, target: DeploymentTarget, version: Optional[str] = None) -> HealthState:
        self.ensure_configured(target)

        command = Template(target.health_command).safe_substitute(
            TARGET_ENV=target.name,
            VERSION=version or target.current_version or "",
        )
        result = await self.executor.run_async(command, timeout=self.timeout, shell=True)
        if result.is_success:
            return HealthState.HEALTHY
        if result.is_timeout:
            return HealthState.UNHEALTHY
        logger.warning(
            "health_command_failed",
            target=target.name,
            exit_code=result.exit_code,
            stderr_snippet=result.stderr[:200],
        )
        return HealthState.FAILED


class TargetHealthChecker(HealthChecker):
    """Uses the target's health command when set, its URL otherwise."""

    def __init__(
        self,
        http: Optional[HttpHealthChecker] = None,
        command: Optional[CommandHealthChecker] = None,
    ):
        self.http = http or HttpHealthChecker()
        self.command = command or CommandHealthChecker()

    def ensure_configured(self, target: DeploymentTarget) -> None:
        if not (target.health_command or target.health_check_url):
            raise ConfigurationError(
                f"Target '{target.name}' has neither a health check URL nor a health command",
                context={"target": target.name},
            )

    async def check(self, target: DeploymentTarget, version: Optional[str] = None) -> HealthState:
        self.ensure_configured(target)
        if target.health_command:
            return await self.command.check(target, version)
        return await self.http.check(target, version)
