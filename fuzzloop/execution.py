"""
Supervised execution of a single fuzz target.

This module provides the SupervisedRunner class which handles:
- Building the ``go test -fuzz`` command line and its environment
- Running one fuzz iteration and reporting its outcome
- Restarting the target forever until the shared stop event is set
"""

import logging
import os
import signal
import subprocess
from pathlib import Path

from fuzzloop.killer import signal_process_tree
from fuzzloop.types import SupervisionContext
from fuzzloop.utils import timestamp

logger = logging.getLogger(__name__)

RESTART_DELAY = 1.0  # Seconds between the end of one run and the next
GOEXPERIMENT_VAR = "GOEXPERIMENT"
DEFAULT_GOEXPERIMENT = "jsonv2"
ARTIFACT_ROOT = Path("testdata") / "fuzz"

# Status reported when the fuzz command could not be started at all,
# mirroring the shell's "command not found".
SPAWN_FAILURE_STATUS = 127


def build_fuzz_env(base_env: dict[str, str] | None = None) -> dict[str, str]:
    """
    Return the environment for a fuzz run.

    GOEXPERIMENT falls back to DEFAULT_GOEXPERIMENT when it is unset or empty;
    any non-empty value from the caller is kept as is.
    """
    env = dict(os.environ if base_env is None else base_env)
    if not env.get(GOEXPERIMENT_VAR):
        env[GOEXPERIMENT_VAR] = DEFAULT_GOEXPERIMENT
    return env


def build_fuzz_command(target: str, go_binary: str = "go") -> list[str]:
    """Return the command that fuzzes exactly ``target`` and runs no unit tests."""
    return [go_binary, "test", "-run=^$", f"-fuzz=^{target}$"]


def artifact_dir(target: str) -> Path:
    """Directory where ``go test`` stores failing inputs for ``target``."""
    return ARTIFACT_ROOT / target


class SupervisedRunner:
    """
    Runs one fuzz target over and over again.

    Every iteration spawns a fresh ``go test`` process, registers it with the
    shared SupervisionContext so the shutdown handler can reach it, waits for
    it to exit and logs the outcome. A non-zero status is an expected result
    (the fuzzer found something) and never stops the loop.
    """

    def __init__(
        self,
        target: str,
        context: SupervisionContext,
        restart_delay: float = RESTART_DELAY,
        go_binary: str = "go",
    ):
        """
        Initialize the SupervisedRunner.

        Args:
            target: Name of the fuzz entry point, e.g. ``FuzzParse``.
            context: Shared state of this fuzzloop run.
            restart_delay: Pause in seconds between two runs.
            go_binary: The go executable to invoke.
        """
        self.target = target
        self.context = context
        self.restart_delay = restart_delay
        self.go_binary = go_binary
        # Own counter: duplicate targets each number their runs from 1.
        self.run_count = 0
        context.stats_for(target)

    def _spawn(self) -> subprocess.Popen:
        return subprocess.Popen(
            build_fuzz_command(self.target, self.go_binary),
            env=build_fuzz_env(),
        )

    def run_once(self) -> int:
        """Execute one fuzz iteration and return its exit status."""
        self.run_count += 1
        run_number = self.run_count
        print(f"[{self.target}] Starting fuzz run #{run_number} at {timestamp()}", flush=True)

        try:
            proc = self._spawn()
        except OSError as e:
            print(f"[{self.target}] [!] Could not start {self.go_binary}: {e}", flush=True)
            status = SPAWN_FAILURE_STATUS
        else:
            if not self.context.register(proc):
                # Shutdown began while we were spawning; don't leave it behind.
                signal_process_tree(proc, signal.SIGKILL)
            try:
                status = proc.wait()
            finally:
                self.context.unregister(proc)

        print(
            f"[{self.target}] Fuzz run #{run_number} finished with status {status} at {timestamp()}",
            flush=True,
        )

        issue = status != 0 and not self.context.stopping
        self.context.record_run(self.target, status, issue)
        if issue:
            print(
                f"[{self.target}] [!] Found issue! Check {artifact_dir(self.target)}/ for details",
                flush=True,
            )
        return status

    def run(self) -> None:
        """Restart the target until the context's stop event is set."""
        logger.debug("Runner for %s started", self.target)
        while not self.context.stopping:
            self.run_once()
            # Returns early once shutdown sets the event.
            self.context.stop_event.wait(self.restart_delay)
        logger.debug("Runner for %s stopped after %d runs", self.target, self.run_count)
