"""
Deployment and rollback controller.

Sole writer of a DeploymentTarget's versions. A deploy is only recorded
once its health verification passes; a deploy that never becomes healthy
is rolled back to the version that was live before it started, and a
rollback that cannot be verified is fatal.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Optional

from shipyard.deployment.application.deployers import CommandDeployer, Deployer
from shipyard.deployment.application.health import HealthChecker, TargetHealthChecker
from shipyard.deployment.domain.models import DeploymentTarget, HealthState
from shipyard.shared.domain.exceptions import (
    ConfigurationError,
    DeploymentError,
    DeploymentHealthCheckFailed,
    DeploymentInProgress,
    RollbackFailed,
)
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class DeploymentController:
    """Drives targets through update, health verification and rollback."""

    def __init__(
        self,
        targets: Optional[Iterable[DeploymentTarget]] = None,
        deployer: Optional[Deployer] = None,
        health_checker: Optional[HealthChecker] = None,
        on_change: Optional[Callable[[DeploymentTarget], None]] = None,
        health_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        """
        Args:
            targets: Known deployment targets
            deployer: Issues the update action (default: CommandDeployer)
            health_checker: Single health probe (default: TargetHealthChecker)
            on_change: Called with a target after its versions change
            health_timeout: Default verification bound for targets without one
            poll_interval: Default seconds between probes for targets without one
        """
        self.targets: dict[str, DeploymentTarget] = {t.name: t for t in targets or []}
        self.deployer = deployer or CommandDeployer()
        self.health_checker = health_checker or TargetHealthChecker()
        self.on_change = on_change
        self.health_timeout = health_timeout if health_timeout is not None else settings.health_timeout
        self.poll_interval = poll_interval if poll_interval is not None else settings.health_poll_interval
        self._busy: set[str] = set()

    def register(self, target: DeploymentTarget) -> None:
        self.targets[target.name] = target

    def get_target(self, name: str) -> DeploymentTarget:
        target = self.targets.get(name)
        if target is None:
            raise ConfigurationError(f"Unknown deployment target '{name}'", context={"target": name})
        return target

    def is_busy(self, name: str) -> bool:
        return name in self._busy

    async def deploy(
        self,
        target: str | DeploymentTarget,
        version: str,
        env: Optional[dict[str, str]] = None,
    ) -> DeploymentTarget:
        """
        Deploy ``version`` and wait for it to become healthy.

        Raises:
            ConfigurationError: the target cannot be updated or health-checked
            DeploymentInProgress: another deploy/rollback holds the target
            DeploymentHealthCheckFailed: never became healthy; rolled back
            DeploymentError: the update action failed; rolled back
            RollbackFailed: the automatic rollback could not be verified
        """
        target = self._resolve(target)
        self._ensure_configured(target)
        self._acquire(target)
        previous = target.current_version
        logger.info("deployment_started", target=target.name, version=version, previous=previous)

        try:
            try:
                await self.deployer.apply(target, version, env)
                state, detail = await self._verify(target, version)
            except asyncio.CancelledError:
                logger.warning("deployment_cancelled", target=target.name, version=version)
                await asyncio.shield(self._restore(target, previous, env, reason="deployment cancelled"))
                raise
            except DeploymentError as e:
                logger.error("deployment_action_failed", target=target.name, version=version, error=str(e))
                await self._restore(target, previous, env, reason=str(e))
                raise

            if state is HealthState.HEALTHY:
                target.rollback_version = previous
                target.current_version = version
                self._changed(target)
                logger.info("deployment_succeeded", target=target.name, version=version)
                return target

            logger.error("deployment_unhealthy", target=target.name, version=version, detail=detail)
            await self._restore(target, previous, env, reason=detail)
            raise DeploymentHealthCheckFailed(target.name, version, detail, rolled_back=True)
        finally:
            self._release(target)

    async def rollback(
        self,
        target: str | DeploymentTarget,
        to_version: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ) -> DeploymentTarget:
        """
        Redeploy the rollback-to version (or ``to_version``) and verify it.

        Raises:
            DeploymentInProgress: another deploy/rollback holds the target
            RollbackFailed: no known-good version, or it never became healthy
        """
        target = self._resolve(target)
        self._ensure_configured(target)
        self._acquire(target)
        try:
            version = to_version or target.rollback_version
            await self._restore(target, version, env, reason="rollback requested")
            return target
        finally:
            self._release(target)

    async def _restore(
        self,
        target: DeploymentTarget,
        version: Optional[str],
        env: Optional[dict[str, str]],
        reason: str,
    ) -> None:
        if not version:
            logger.critical("rollback_impossible", target=target.name, reason="no known-good version")
            raise RollbackFailed(
                f"No known-good version to roll '{target.name}' back to",
                context={"target": target.name, "reason": reason},
            )

        logger.warning("rollback_started", target=target.name, version=version, reason=reason)
        try:
            await self.deployer.apply(target, version, env)
            state, detail = await self._verify(target, version)
        except DeploymentError as e:
            state, detail = HealthState.FAILED, str(e)

        if state is not HealthState.HEALTHY:
            logger.critical(
                "rollback_failed",
                target=target.name,
                version=version,
                detail=detail,
                action="manual intervention required",
            )
            raise RollbackFailed(
                f"Rollback of '{target.name}' to '{version}' failed: {detail}",
                context={"target": target.name, "version": version},
            )

        target.current_version = version
        self._changed(target)
        logger.info("rollback_succeeded", target=target.name, version=version)

    def _ensure_configured(self, target: DeploymentTarget) -> None:
        """Refuse to touch a target that could not be verified or restored."""
        self.deployer.ensure_configured(target)
        self.health_checker.ensure_configured(target)

    async def _verify(self, target: DeploymentTarget, version: str) -> tuple[HealthState, str]:
        """Poll the health checker for ``version`` until healthy, failed, or out of time."""
        timeout = target.health_timeout if target.health_timeout is not None else self.health_timeout
        interval = target.poll_interval if target.poll_interval is not None else self.poll_interval
        deadline = time.monotonic() + timeout
        probes = 0

        while True:
            probes += 1
            try:
                state = await self.health_checker.check(target, version)
            except ConfigurationError as e:
                logger.error("health_probe_misconfigured", target=target.name, error=str(e))
                return HealthState.FAILED, str(e)
            except Exception as e:
                logger.warning("health_probe_raised", target=target.name, error=str(e))
                state = HealthState.UNHEALTHY

            if state is HealthState.HEALTHY:
                logger.info("health_check_passed", target=target.name, probes=probes)
                return state, "healthy"
            if state is HealthState.FAILED:
                return state, "health check reported failure"

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return HealthState.UNHEALTHY, f"not healthy within {timeout}s"
            await asyncio.sleep(min(interval, remaining))

    def _resolve(self, target: str | DeploymentTarget) -> DeploymentTarget:
        if isinstance(target, DeploymentTarget):
            self.targets.setdefault(target.name, target)
            return self.targets[target.name]
        return self.get_target(target)

    def _acquire(self, target: DeploymentTarget) -> None:
        if target.name in self._busy:
            raise DeploymentInProgress(target.name)
        self._busy.add(target.name)

    def _release(self, target: DeploymentTarget) -> None:
        self._busy.discard(target.name)

    def _changed(self, target: DeploymentTarget) -> None:
        target.updated_at = datetime.now(timezone.utc)
        if self.on_change is not None:
            self.on_change(target)
