"""
This module contains the FuzzOrchestrator class and the ``fuzzloop`` CLI.

The orchestrator resolves the list of fuzz targets, starts one
SupervisedRunner thread per target and then waits forever. Stopping is the
job of the ShutdownHandler, which it installs for SIGINT and SIGTERM.
"""

import argparse
import sys
import threading
from pathlib import Path
from textwrap import dedent

from fuzzloop.discovery import (
    FUZZ_PREFIX,
    TEST_FILE_GLOB,
    discover_fuzz_targets,
    parse_fuzz_targets,
)
from fuzzloop.execution import SupervisedRunner
from fuzzloop.killer import kill_fuzzing
from fuzzloop.shutdown import ShutdownHandler
from fuzzloop.types import NoTargetsError, SupervisionContext
from fuzzloop.utils import TeeLogger, timestamp

PROGRAM_NAME = "fuzzloop"
JOIN_POLL_INTERVAL = 0.5


def get_invocation_name() -> str:
    """Return the name this program was started as, used to find its own instances."""
    name = Path(sys.argv[0]).name if sys.argv and sys.argv[0] else ""
    if not name or name == "-c":
        return PROGRAM_NAME
    return name


def resolve_targets(targets_csv: str | None, directory: Path | None = None) -> list[str]:
    """
    Return the targets to fuzz.

    An explicit comma-separated list is used verbatim, without discovery and
    without checking that the names exist. Otherwise the targets are
    discovered, and finding none raises NoTargetsError.
    """
    if targets_csv:
        return parse_fuzz_targets(targets_csv)

    print("Auto-discovering fuzz targets...")
    targets = discover_fuzz_targets(directory)
    if not targets:
        raise NoTargetsError(f"No {FUZZ_PREFIX}* functions found in {TEST_FILE_GLOB} files")
    print(f"Found {len(targets)} fuzz target(s): {' '.join(targets)}")
    return targets


class FuzzOrchestrator:
    """Runs every target in its own thread until the process is told to stop."""

    def __init__(
        self,
        targets: list[str],
        context: SupervisionContext,
        runner_factory=SupervisedRunner,
        shutdown_handler: ShutdownHandler | None = None,
    ):
        self.targets = targets
        self.context = context
        self.runner_factory = runner_factory
        self.shutdown_handler = shutdown_handler or ShutdownHandler(context)
        self.threads: list[threading.Thread] = []

    def print_banner(self) -> None:
        banner = f"""
            ==========================================
            Starting infinite fuzzing at {timestamp()}
            Targets: {" ".join(self.targets)}
            Press Ctrl+C to stop or run: {self.context.invocation_name} -k
            ==========================================
        """
        print(dedent(banner).strip("\n"))
        print(flush=True)

    def spawn_runners(self) -> list[threading.Thread]:
        """Start one daemon thread per target. Must be called from a single thread."""
        for target in self.targets:
            runner = self.runner_factory(target, self.context)
            thread = threading.Thread(target=runner.run, name=f"fuzz-{target}", daemon=True)
            thread.start()
            self.threads.append(thread)
        return self.threads

    def run(self, install_signal_handlers: bool = True) -> None:
        """Start all runners and block until every one of them has stopped."""
        if install_signal_handlers:
            self.shutdown_handler.install()
        self.print_banner()
        self.spawn_runners()
        # Runners only stop once the stop event is set, so normally a signal
        # (and sys.exit in its handler) gets us out of here. Timed joins keep
        # the main thread responsive to signals.
        for thread in self.threads:
            while thread.is_alive():
                thread.join(JOIN_POLL_INTERVAL)


class _ArgumentParser(argparse.ArgumentParser):
    """An ArgumentParser that shows the usage and exits 0 on bad arguments."""

    def error(self, message: str):
        print(f"Error: {message}")
        self.print_help()
        self.exit(0)


def build_parser(prog: str) -> argparse.ArgumentParser:
    epilog = f"""
        Examples:
          {prog}                    # Auto-discover and run all {FUZZ_PREFIX}* functions
          {prog} -t FuzzFoo,FuzzBar # Run specific targets
          {prog} -k                 # Kill all running fuzzing

        Auto-discovery:
          Finds all functions matching 'func {FUZZ_PREFIX}*'
          in {TEST_FILE_GLOB} files in the current directory.

        Stopping:
          Press Ctrl+C or run: {prog} -k
    """
    parser = _ArgumentParser(
        prog=prog,
        description="Run Go fuzz tests continuously in parallel until stopped.",
        epilog=dedent(epilog),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument(
        "-k",
        "--kill",
        action="store_true",
        help="Kill all running fuzzing processes and exit",
    )
    parser.add_argument(
        "-t",
        "--targets",
        type=str,
        default=None,
        help="Comma-separated list of fuzz targets (default: auto-discover)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also append fuzzloop's own status output to this file",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    """Parse command-line arguments and run fuzzloop."""
    prog = get_invocation_name()
    parser = build_parser(prog)
    args, unknown = parser.parse_known_args(argv)
    # -k wins over everything else on the command line, stray flags included.
    if args.kill:
        sys.exit(kill_fuzzing(prog))

    if unknown:
        print(f"Unknown option: {unknown[0]}")
        parser.print_help()
        sys.exit(0)

    original_stdout = sys.stdout
    original_stderr = sys.stderr
    tee_logger = None
    if args.log_file is not None:
        tee_logger = TeeLogger(args.log_file, original_stdout)
        sys.stdout = tee_logger
        sys.stderr = tee_logger

    try:
        try:
            targets = resolve_targets(args.targets)
        except NoTargetsError as e:
            print(f"Error: {e}", file=sys.stderr)
            print("Make sure you're in a directory with fuzz tests", file=sys.stderr)
            sys.exit(1)

        context = SupervisionContext(invocation_name=prog)
        FuzzOrchestrator(targets, context).run()
    finally:
        if tee_logger is not None:
            sys.stdout = original_stdout
            sys.stderr = original_stderr
            tee_logger.close()


if __name__ == "__main__":
    main()
