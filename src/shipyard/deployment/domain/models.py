"""
Deployment domain models.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from shipyard.shared.domain.base_model import BaseDomainModel


class HealthState(Enum):
    """Result of one health probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"  # Not ready yet; keep polling
    FAILED = "failed"  # Explicit failure signal; stop polling


@dataclass
class DeploymentTarget(BaseDomainModel):
    """
    An environment tracked with its live and last known-good versions.

    ``current_version`` changes only after a deploy (or rollback) passes
    health verification. ``rollback_version`` is the version a successful
    deploy replaced.
    """

    name: str
    current_version: Optional[str] = None
    rollback_version: Optional[str] = None
    health_check_url: Optional[str] = None
    health_command: Optional[str] = None
    deploy_command: Optional[str] = None
    health_timeout: Optional[float] = None
    poll_interval: Optional[float] = None
    updated_at: Optional[datetime] = None
