"""
Approval gate domain model.

A gate is a blocking checkpoint tied to one stage of one run. Its lifecycle
(open, resolved) is independent of stage execution: the engine only waits
on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from shipyard.shared.domain.base_model import BaseDomainModel

TIMEOUT_EXPIRED = "TimeoutExpired"
RUN_ABORTED = "RunAborted"


class Decision(Enum):
    PROCEED = "proceed"
    ABORT = "abort"


@dataclass
class ApprovalGate(BaseDomainModel):
    """Manual approval checkpoint."""

    run_id: str
    stage: str
    message: str = "Proceed?"
    timeout: Optional[float] = None
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    decision: Optional[Decision] = None
    notes: Optional[str] = None
    actor: Optional[str] = None
    reason: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.decision is not None

    @property
    def is_pending(self) -> bool:
        return self.decision is None
