"""Run persistence and cross-process run control."""

from shipyard.runs.store import RunStore
from shipyard.runs.watcher import RunControlWatcher

__all__ = ["RunStore", "RunControlWatcher"]
