"""Approval gates: manual promotion checkpoints."""

from shipyard.approval.application.manager import ApprovalGateManager
from shipyard.approval.domain.models import ApprovalGate, Decision

__all__ = ["ApprovalGate", "ApprovalGateManager", "Decision"]
