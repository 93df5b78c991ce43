"""
Shutdown handling for a running fuzzloop session.

The ShutdownHandler stops every worker tracked in the SupervisionContext:
first politely with SIGTERM, then, after a grace period, with SIGKILL. It is
installed as the SIGINT/SIGTERM handler of the orchestrator process.
"""

import signal
import sys
import time
from datetime import datetime

from fuzzloop.killer import signal_process_tree
from fuzzloop.types import SupervisionContext
from fuzzloop.utils import timestamp

GRACE_PERIOD = 1.0  # Seconds between SIGTERM and SIGKILL


class ShutdownHandler:
    """Terminate all tracked workers of one run. Safe to call repeatedly."""

    def __init__(self, context: SupervisionContext, grace_period: float = GRACE_PERIOD):
        self.context = context
        self.grace_period = grace_period

    def cleanup(self) -> None:
        """Stop the runners and terminate every live worker process."""
        # Runners check this before restarting and before reporting an issue.
        self.context.stop_event.set()

        print()
        print("=" * 42)
        print(f"Stopping fuzzing at {timestamp()}")
        print("Killing background processes...")
        print("=" * 42)

        for proc in self.context.live_handles():
            print(f"Killing PID {proc.pid}")
            signal_process_tree(proc, signal.SIGTERM)

        time.sleep(self.grace_period)

        for proc in self.context.live_handles():
            print(f"Force killing PID {proc.pid}")
            signal_process_tree(proc, signal.SIGKILL)

        print("All fuzzing processes stopped")
        self.print_summary()
        sys.stdout.flush()

    def print_summary(self) -> None:
        """Print how many runs and issues each target accumulated."""
        if not self.context.stats:
            return
        duration = datetime.now() - self.context.start_time
        print()
        print(f"Session duration: {duration}")
        for target, stats in sorted(self.context.stats.items()):
            print(f"  {target}: {stats.run_count} run(s), {stats.issues_found} issue(s)")

    def handle_signal(self, signum, frame) -> None:
        """Signal handler: clean up, then exit the orchestrator with status 0."""
        # A second Ctrl+C during cleanup should not re-enter it.
        signal.signal(signal.SIGINT, signal.SIG_IGN)
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        self.cleanup()
        sys.exit(0)

    def install(self) -> None:
        """Register handle_signal for SIGINT and SIGTERM. Main thread only."""
        signal.signal(signal.SIGINT, self.handle_signal)
        signal.signal(signal.SIGTERM, self.handle_signal)
