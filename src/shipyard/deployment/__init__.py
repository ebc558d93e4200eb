"""Deployment targets, health verification and rollback."""

from shipyard.deployment.application.controller import DeploymentController
from shipyard.deployment.domain.models import DeploymentTarget, HealthState

__all__ = ["DeploymentController", "DeploymentTarget", "HealthState"]
