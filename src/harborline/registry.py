"""Run Registry: in-memory map of run id to RunRecord.

Runs live only for the lifetime of the process. The registry is the single
source of truth for status queries, the broadcast hub and the stale-run
sweeper; every access is serialized by one lock so callers never need their
own.
"""

from __future__ import annotations

import logging
import threading

from harborline.errors import RunNotFoundError
from harborline.models import RunRecord, RunStatus

logger = logging.getLogger(__name__)


class RunRegistry:
    """Thread-safe run-id → RunRecord map."""

    def __init__(self) -> None:
        self._runs: dict[str, RunRecord] = {}
        self._lock = threading.Lock()

    def add(self, run: RunRecord) -> None:
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"duplicate run id: {run.id}")
            self._runs[run.id] = run
        logger.debug("Registered run %s", run.id)

    def get(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def require(self, run_id: str) -> RunRecord:
        """Like ``get`` but raises RunNotFoundError for unknown ids."""
        run = self.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def list(self) -> list[RunRecord]:
        """All runs, most recently started first."""
        with self._lock:
            runs = list(self._runs.values())
        return sorted(runs, key=lambda r: r.start_time, reverse=True)

    def active(self) -> list[RunRecord]:
        """Runs that have not reached a terminal status."""
        with self._lock:
            return [r for r in self._runs.values() if not r.finished]

    def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._lock:
            for run in self._runs.values():
                counts[run.status.value] = counts.get(run.status.value, 0) + 1
        return {s.value: counts[s.value] for s in RunStatus if s.value in counts}

    def __len__(self) -> int:
        with self._lock:
            return len(self._runs)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._runs
