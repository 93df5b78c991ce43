"""
Process-table helpers built on psutil.

``kill_fuzzing`` is the best-effort ``--kill`` action: it finds fuzzing
processes left over from any fuzzloop run by matching their command lines
(like ``pgrep -f``) and kills them. Name matching is approximate and can hit
unrelated processes whose command line happens to match; processes spawned
by the current run are stopped through their exact handles instead (see
fuzzloop.shutdown).
"""

import logging
import os
import re
import signal
import subprocess
import time

import psutil

logger = logging.getLogger(__name__)

KILL_SETTLE_DELAY = 1.0  # Seconds to let the OS reap killed processes
WORKER_PATTERN = r"test\.test.*fuzz"
GO_TEST_PATTERN = r"go test.*fuzz"
LEFTOVER_PATTERN = r"fuzz"
MANUAL_REMEDY = "pkill -9 -f fuzz"


def _cmdline(proc: psutil.Process) -> str:
    cmdline = proc.info.get("cmdline") or []
    if cmdline:
        return " ".join(cmdline)
    return proc.info.get("name") or ""


def find_matching_processes(pattern: str) -> list[psutil.Process]:
    """
    Return every process whose full command line matches ``pattern``.

    The calling process is never included. Processes that vanish or deny
    access while being inspected are skipped.
    """
    regex = re.compile(pattern)
    own_pid = os.getpid()
    matches = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            if proc.info["pid"] == own_pid:
                continue
            if regex.search(_cmdline(proc)):
                matches.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
    return matches


def force_kill(processes: list[psutil.Process]) -> None:
    """Send SIGKILL to every process, ignoring those already gone or off-limits."""
    for proc in processes:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Could not kill pid %s: %s", proc.pid, e)


def signal_process_tree(proc: subprocess.Popen, sig: int) -> None:
    """
    Send ``sig`` to a worker and all of its descendants.

    ``go test -fuzz`` runs the actual fuzzing in child ``*.test`` processes,
    so signalling only the direct child would leave them running. Errors are
    swallowed: the worker may already be gone.
    """
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    try:
        proc.send_signal(sig)
    except (ProcessLookupError, OSError) as e:
        logger.debug("Could not signal pid %s: %s", proc.pid, e)
    for child in children:
        try:
            child.send_signal(sig)
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug("Could not signal child pid %s: %s", child.pid, e)


def kill_fuzzing(invocation_name: str, settle_delay: float = KILL_SETTLE_DELAY) -> int:
    """
    Kill every fuzzing process on the machine and report what is left.

    Always returns 0: this is a cleanup tool, and finding nothing to kill or
    failing to kill something is reported, not treated as an error.
    """
    print("=" * 42)
    print("Stopping all fuzzing processes...")
    print("=" * 42)

    killed = False
    searches = [
        (re.escape(invocation_name), f"Killing {invocation_name} instances..."),
        (WORKER_PATTERN, "Killing fuzz test workers..."),
        (GO_TEST_PATTERN, "Killing go test commands..."),
    ]
    for pattern, message in searches:
        matches = find_matching_processes(pattern)
        if not matches:
            continue
        print(message)
        force_kill(matches)
        killed = True

    time.sleep(settle_delay)

    survivors = find_matching_processes(LEFTOVER_PATTERN)
    if survivors:
        print()
        print("[!] Some processes may still be running:")
        for proc in survivors:
            print(f"  {proc.pid:>7}  {_cmdline(proc)}")
        print()
        print(f"If needed, manually kill with: {MANUAL_REMEDY}")
    elif killed:
        print("[+] All fuzzing processes stopped")
    else:
        print("No fuzzing processes found")
    return 0
