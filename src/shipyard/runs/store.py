"""
File-backed run store.

Layout under the state directory (``.shipyard`` by default):

    runs/<run_id>/run.json            run snapshot, rewritten on every transition
    runs/<run_id>/logs/<stage>.log    captured stage output
    runs/<run_id>/abort.json          operator abort request
    gates/<gate_id>.json              approval gate record
    gates/<gate_id>.decision.json     operator decision waiting to be applied
    targets.json                      deployment target versions

Operators in another process (the CLI) talk to a running pipeline only
through these files; the RunControlWatcher applies their requests.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from shipyard.approval.domain.models import ApprovalGate, Decision
from shipyard.deployment.domain.models import DeploymentTarget
from shipyard.pipeline.domain.models import PipelineRun
from shipyard.shared.domain.exceptions import AlreadyResolved, GateNotFound, RunNotFound
from shipyard.shared.infrastructure.config import settings
from shipyard.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_name(name: str) -> str:
    return _UNSAFE.sub("_", name) or "_"


class RunStore:
    """Persists runs, stage logs, gates and target versions as JSON files."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or settings.state_dir)
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        return self.root / "runs" / _safe_name(run_id)

    def save_run(self, run: PipelineRun) -> None:
        self._write_json(self.run_dir(run.id) / "run.json", run.to_json())

    def load_run(self, run_id: str) -> PipelineRun:
        path = self.run_dir(run_id) / "run.json"
        if not path.exists():
            raise RunNotFound(run_id)
        return PipelineRun.from_json(self._read_json(path))

    def list_runs(self) -> list[PipelineRun]:
        """All stored runs, newest first."""
        runs_dir = self.root / "runs"
        if not runs_dir.exists():
            return []
        runs = []
        for path in runs_dir.glob("*/run.json"):
            try:
                runs.append(PipelineRun.from_json(self._read_json(path)))
            except (ValueError, KeyError, json.JSONDecodeError) as e:
                logger.warning("run_snapshot_unreadable", path=str(path), error=str(e))
        return sorted(runs, key=lambda r: r.created_at, reverse=True)

    def latest_run(self) -> Optional[PipelineRun]:
        runs = self.list_runs()
        return runs[0] if runs else None

    def write_stage_log(self, run_id: str, stage: str, output: str) -> str:
        """Write captured output and return its reference (the file path)."""
        path = self.run_dir(run_id) / "logs" / f"{_safe_name(stage)}.log"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(output, encoding="utf-8")
        return str(path)

    def request_abort(self, run_id: str, actor: str = "operator") -> None:
        if not (self.run_dir(run_id) / "run.json").exists():
            raise RunNotFound(run_id)
        self._write_json(
            self.run_dir(run_id) / "abort.json",
            {"actor": actor, "requestedAt": datetime.now(timezone.utc).isoformat()},
        )

    def abort_requested(self, run_id: str) -> bool:
        return (self.run_dir(run_id) / "abort.json").exists()

    def clear_abort(self, run_id: str) -> None:
        (self.run_dir(run_id) / "abort.json").unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Approval gates
    # ------------------------------------------------------------------

    def _gate_path(self, gate_id: str) -> Path:
        return self.root / "gates" / f"{_safe_name(gate_id)}.json"

    def _decision_path(self, gate_id: str) -> Path:
        return self.root / "gates" / f"{_safe_name(gate_id)}.decision.json"

    def save_gate(self, gate: ApprovalGate) -> None:
        self._write_json(self._gate_path(gate.id), gate.to_json())
        if gate.is_resolved:
            self.discard_gate_decision(gate.id)

    def load_gate(self, gate_id: str) -> ApprovalGate:
        path = self._gate_path(gate_id)
        if not path.exists():
            raise GateNotFound(gate_id)
        return ApprovalGate.from_json(self._read_json(path))

    def list_gates(self, pending_only: bool = False) -> list[ApprovalGate]:
        """
        Stored gates, oldest first.

        With ``pending_only``, gates that are resolved, have a queued
        decision, or belong to a finished run are left out.
        """
        gates_dir = self.root / "gates"
        if not gates_dir.exists():
            return []
        gates = [
            ApprovalGate.from_json(self._read_json(path))
            for path in gates_dir.glob("*.json")
            if not path.name.endswith(".decision.json")
        ]
        if pending_only:
            gates = [
                g for g in gates
                if g.is_pending and not self._decision_path(g.id).exists() and not self._run_finished(g.run_id)
            ]
        return sorted(gates, key=lambda g: g.created_at)

    def request_gate_decision(
        self,
        gate_id: str,
        decision: Decision | str,
        notes: Optional[str] = None,
        actor: str = "operator",
    ) -> None:
        """
        Queue a decision for a gate owned by another process.

        The decision file is created exclusively, so only the first request
        for a gate is ever accepted.

        Raises:
            GateNotFound: unknown gate
            AlreadyResolved: the gate is resolved or already has a queued decision
        """
        decision = Decision(decision)
        gate = self.load_gate(gate_id)
        if gate.is_resolved:
            raise AlreadyResolved(gate_id, gate.decision.value)

        path = self._decision_path(gate_id)
        payload = {"decision": decision.value, "notes": notes, "actor": actor}
        try:
            with open(path, "x", encoding="utf-8") as f:
                json.dump(payload, f)
        except FileExistsError:
            queued = self._read_json(path).get("decision", "unknown")
            raise AlreadyResolved(gate_id, queued)

    def take_gate_decision(self, gate_id: str) -> Optional[dict[str, Any]]:
        """Pop a queued decision, if any."""
        path = self._decision_path(gate_id)
        with self._lock:
            if not path.exists():
                return None
            payload = self._read_json(path)
            path.unlink(missing_ok=True)
        return payload

    def discard_gate_decision(self, gate_id: str) -> None:
        """Drop a queued decision that can no longer be applied."""
        with self._lock:
            path = self._decision_path(gate_id)
            if path.exists():
                path.unlink(missing_ok=True)
                logger.info("queued_decision_discarded", gate_id=gate_id)

    def _run_finished(self, run_id: str) -> bool:
        try:
            return self.load_run(run_id).is_terminal
        except RunNotFound:
            return False
        except (ValueError, KeyError, json.JSONDecodeError) as e:
            logger.warning("run_snapshot_unreadable", run_id=run_id, error=str(e))
            return False

    # ------------------------------------------------------------------
    # Deployment targets
    # ------------------------------------------------------------------

    def load_targets(self) -> dict[str, DeploymentTarget]:
        path = self.root / "targets.json"
        if not path.exists():
            return {}
        return {name: DeploymentTarget.from_json(data) for name, data in self._read_json(path).items()}

    def save_target(self, target: DeploymentTarget) -> None:
        with self._lock:
            path = self.root / "targets.json"
            data = self._read_json(path) if path.exists() else {}
            data[target.name] = target.to_json()
            self._write_json_unlocked(path, data)

    # ------------------------------------------------------------------
    # IO helpers
    # ------------------------------------------------------------------

    def _read_json(self, path: Path) -> Any:
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _write_json(self, path: Path, data: Any) -> None:
        with self._lock:
            self._write_json_unlocked(path, data)

    def _write_json_unlocked(self, path: Path, data: Any) -> None:
        """Atomic write: temp file in the same directory, then rename."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
