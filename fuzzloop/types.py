"""Shared type definitions for fuzzloop.

The SupervisionContext is the single piece of state shared between the
orchestrator, the per-target runner threads and the shutdown handler. It is
created once by the orchestrator and passed around by reference.
"""

from __future__ import annotations

import subprocess
import threading
from dataclasses import dataclass, field
from datetime import datetime


class FuzzLoopError(Exception):
    """Base class for errors that main() turns into an exit status."""


class NoTargetsError(FuzzLoopError):
    """Raised when no fuzz targets were given and none could be discovered."""


@dataclass
class TargetStats:
    """Per-target counters, used for logging and the shutdown summary."""

    run_count: int = 0
    issues_found: int = 0
    last_status: int | None = None


@dataclass
class SupervisionContext:
    """Live state of one fuzzloop run.

    ``handles`` holds the Popen object of every worker process currently
    running. Runner threads register a handle right after spawning and prune
    it right after it exits; the shutdown handler only ever reads snapshots.
    """

    invocation_name: str = "fuzzloop"
    stop_event: threading.Event = field(default_factory=threading.Event)
    stats: dict[str, TargetStats] = field(default_factory=dict)
    start_time: datetime = field(default_factory=datetime.now)
    handles: set[subprocess.Popen] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def stats_for(self, target: str) -> TargetStats:
        """Return the stats entry for ``target``, creating it on first use."""
        with self._lock:
            return self.stats.setdefault(target, TargetStats())

    def record_run(self, target: str, status: int, issue: bool) -> None:
        """Fold one finished run into the target's stats.

        Several runners may share a target (duplicate explicit targets), so the
        update happens under the lock.
        """
        with self._lock:
            stats = self.stats.setdefault(target, TargetStats())
            stats.run_count += 1
            stats.last_status = status
            if issue:
                stats.issues_found += 1

    def register(self, proc: subprocess.Popen) -> bool:
        """Track a freshly spawned worker.

        Returns False when a shutdown is already in progress; the caller is
        then responsible for terminating ``proc`` itself.
        """
        with self._lock:
            self.handles.add(proc)
            return not self.stop_event.is_set()

    def unregister(self, proc: subprocess.Popen) -> None:
        with self._lock:
            self.handles.discard(proc)

    def snapshot(self) -> list[subprocess.Popen]:
        """Return a stable copy of the tracked handles, ordered by pid."""
        with self._lock:
            return sorted(self.handles, key=lambda p: p.pid)

    def live_handles(self) -> list[subprocess.Popen]:
        return [proc for proc in self.snapshot() if proc.poll() is None]

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()
