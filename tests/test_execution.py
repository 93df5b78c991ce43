#!/usr/bin/env python3
"""
Tests for supervised execution.

This module contains unit tests for:
- Command and environment construction in fuzzloop/execution.py
- SupervisedRunner.run_once() and the SupervisedRunner.run() restart loop
"""

import io
import signal
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from fuzzloop.execution import (
    DEFAULT_GOEXPERIMENT,
    SPAWN_FAILURE_STATUS,
    SupervisedRunner,
    artifact_dir,
    build_fuzz_command,
    build_fuzz_env,
)
from fuzzloop.types import SupervisionContext


def make_proc(returncode=0, pid=4242):
    """Build a fake Popen whose wait() returns ``returncode``."""
    proc = MagicMock()
    proc.pid = pid
    proc.wait.return_value = returncode
    proc.poll.return_value = returncode
    return proc


class TestBuildFuzzCommand(unittest.TestCase):
    def test_restricts_run_to_single_target(self):
        self.assertEqual(
            build_fuzz_command("FuzzParse"),
            ["go", "test", "-run=^$", "-fuzz=^FuzzParse$"],
        )

    def test_custom_go_binary(self):
        self.assertEqual(build_fuzz_command("FuzzX", "/opt/go/bin/go")[0], "/opt/go/bin/go")

    def test_artifact_dir_is_keyed_by_target(self):
        self.assertEqual(artifact_dir("FuzzParse"), Path("testdata") / "fuzz" / "FuzzParse")


class TestBuildFuzzEnv(unittest.TestCase):
    """GOEXPERIMENT is defaulted, but the caller's value wins."""

    def test_defaults_when_unset(self):
        env = build_fuzz_env({"PATH": "/usr/bin"})
        self.assertEqual(env["GOEXPERIMENT"], DEFAULT_GOEXPERIMENT)
        self.assertEqual(env["PATH"], "/usr/bin")

    def test_defaults_when_empty(self):
        env = build_fuzz_env({"GOEXPERIMENT": ""})
        self.assertEqual(env["GOEXPERIMENT"], DEFAULT_GOEXPERIMENT)

    def test_caller_value_takes_precedence(self):
        env = build_fuzz_env({"GOEXPERIMENT": "rangefunc"})
        self.assertEqual(env["GOEXPERIMENT"], "rangefunc")

    def test_reads_process_environment_by_default(self):
        with patch.dict("os.environ", {"GOEXPERIMENT": "arenas"}):
            self.assertEqual(build_fuzz_env()["GOEXPERIMENT"], "arenas")

    def test_does_not_mutate_base_env(self):
        base = {"HOME": "/root"}
        build_fuzz_env(base)
        self.assertNotIn("GOEXPERIMENT", base)


class TestRunOnce(unittest.TestCase):
    """Tests for a single supervised iteration."""

    def setUp(self):
        self.context = SupervisionContext()
        self.runner = SupervisedRunner("FuzzParse", self.context, restart_delay=0)

    def test_successful_run(self):
        proc = make_proc(returncode=0)
        with patch("fuzzloop.execution.subprocess.Popen", return_value=proc) as mock_popen:
            with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                status = self.runner.run_once()

        self.assertEqual(status, 0)
        self.assertEqual(self.runner.run_count, 1)
        self.assertEqual(self.context.stats["FuzzParse"].issues_found, 0)
        command = mock_popen.call_args.args[0]
        self.assertEqual(command, ["go", "test", "-run=^$", "-fuzz=^FuzzParse$"])
        self.assertIn("GOEXPERIMENT", mock_popen.call_args.kwargs["env"])

        output = mock_stdout.getvalue()
        self.assertIn("[FuzzParse] Starting fuzz run #1 at", output)
        self.assertIn("[FuzzParse] Fuzz run #1 finished with status 0 at", output)
        self.assertNotIn("Found issue", output)

    def test_handle_is_tracked_only_while_running(self):
        proc = make_proc()
        seen_during_wait = []
        proc.wait.side_effect = lambda: seen_during_wait.append(set(self.context.handles)) or 0

        with patch("fuzzloop.execution.subprocess.Popen", return_value=proc):
            with patch("sys.stdout", new_callable=io.StringIO):
                self.runner.run_once()

        self.assertEqual(seen_during_wait, [{proc}])
        self.assertEqual(self.context.handles, set())

    def test_non_zero_status_reports_artifact_path(self):
        proc = make_proc(returncode=1)
        with patch("fuzzloop.execution.subprocess.Popen", return_value=proc):
            with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                status = self.runner.run_once()

        self.assertEqual(status, 1)
        self.assertEqual(self.context.stats["FuzzParse"].issues_found, 1)
        self.assertEqual(self.context.stats["FuzzParse"].last_status, 1)
        self.assertIn(
            "[FuzzParse] [!] Found issue! Check testdata/fuzz/FuzzParse/ for details",
            mock_stdout.getvalue(),
        )

    def test_spawn_failure_is_reported_as_status_127(self):
        with patch(
            "fuzzloop.execution.subprocess.Popen",
            side_effect=FileNotFoundError("No such file or directory: 'go'"),
        ):
            with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                status = self.runner.run_once()

        self.assertEqual(status, SPAWN_FAILURE_STATUS)
        output = mock_stdout.getvalue()
        self.assertIn("Could not start go", output)
        self.assertIn("Found issue", output)
        self.assertEqual(self.context.handles, set())

    def test_worker_spawned_during_shutdown_is_killed(self):
        self.context.stop_event.set()
        proc = make_proc(returncode=-9)
        with patch("fuzzloop.execution.subprocess.Popen", return_value=proc):
            with patch("fuzzloop.execution.signal_process_tree") as mock_signal:
                with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                    self.runner.run_once()

        mock_signal.assert_called_once_with(proc, signal.SIGKILL)
        # Statuses caused by our own shutdown are not fuzzing findings.
        self.assertNotIn("Found issue", mock_stdout.getvalue())
        self.assertEqual(self.context.stats["FuzzParse"].issues_found, 0)


class TestRunLoop(unittest.TestCase):
    """Tests for the restart loop."""

    def setUp(self):
        self.context = SupervisionContext()
        self.runner = SupervisedRunner("FuzzLoop", self.context, restart_delay=0)

    def _popen_stopping_after(self, iterations, returncodes):
        """Return a fake Popen that sets the stop event after ``iterations`` runs."""
        calls = []

        def fake_popen(*args, **kwargs):
            index = len(calls)
            calls.append(args)
            proc = make_proc(returncode=returncodes[index % len(returncodes)], pid=1000 + index)
            if len(calls) == iterations:
                original_wait = proc.wait.return_value

                def wait_and_stop():
                    self.context.stop_event.set()
                    return original_wait

                proc.wait.side_effect = wait_and_stop
            return proc

        return fake_popen, calls

    def test_counter_matches_completed_iterations(self):
        fake_popen, calls = self._popen_stopping_after(3, [0])
        with patch("fuzzloop.execution.subprocess.Popen", side_effect=fake_popen):
            with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                self.runner.run()

        self.assertEqual(len(calls), 3)
        self.assertEqual(self.context.stats["FuzzLoop"].run_count, 3)
        self.assertEqual(self.runner.run_count, 3)

        lines = [line for line in mock_stdout.getvalue().splitlines() if "FuzzLoop" in line]
        expected_prefixes = []
        for n in range(1, 4):
            expected_prefixes.append(f"[FuzzLoop] Starting fuzz run #{n} at")
            expected_prefixes.append(f"[FuzzLoop] Fuzz run #{n} finished with status 0 at")
        self.assertEqual(len(lines), len(expected_prefixes))
        for line, prefix in zip(lines, expected_prefixes):
            self.assertTrue(line.startswith(prefix), f"{line!r} does not start with {prefix!r}")

    def test_non_zero_status_does_not_stop_loop(self):
        fake_popen, calls = self._popen_stopping_after(2, [2, 0])
        with patch("fuzzloop.execution.subprocess.Popen", side_effect=fake_popen):
            with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                self.runner.run()

        self.assertEqual(len(calls), 2)
        output = mock_stdout.getvalue()
        self.assertIn("Fuzz run #1 finished with status 2", output)
        self.assertIn("Check testdata/fuzz/FuzzLoop/ for details", output)
        self.assertIn("Starting fuzz run #2", output)

    def test_sleeps_between_runs_on_stop_event(self):
        runner = SupervisedRunner("FuzzLoop", self.context, restart_delay=1.0)
        fake_popen, _ = self._popen_stopping_after(1, [0])
        with patch("fuzzloop.execution.subprocess.Popen", side_effect=fake_popen):
            with patch.object(self.context.stop_event, "wait") as mock_wait:
                with patch("sys.stdout", new_callable=io.StringIO):
                    runner.run()

        mock_wait.assert_called_once_with(1.0)

    def test_returns_immediately_when_already_stopping(self):
        self.context.stop_event.set()
        with patch("fuzzloop.execution.subprocess.Popen") as mock_popen:
            self.runner.run()

        mock_popen.assert_not_called()
        self.assertEqual(self.runner.run_count, 0)


class TestDuplicateTargets(unittest.TestCase):
    """Two runners for the same target keep separate run numbers."""

    def test_each_runner_numbers_its_own_runs(self):
        context = SupervisionContext()
        first = SupervisedRunner("FuzzDup", context, restart_delay=0)
        second = SupervisedRunner("FuzzDup", context, restart_delay=0)

        with patch("fuzzloop.execution.subprocess.Popen", return_value=make_proc(returncode=1)):
            with patch("sys.stdout", new_callable=io.StringIO) as mock_stdout:
                first.run_once()
                second.run_once()

        self.assertEqual(first.run_count, 1)
        self.assertEqual(second.run_count, 1)
        output = mock_stdout.getvalue()
        self.assertEqual(output.count("[FuzzDup] Starting fuzz run #1 at"), 2)
        self.assertNotIn("#2", output)
        # The shared summary entry adds both runners up.
        self.assertEqual(list(context.stats), ["FuzzDup"])
        self.assertEqual(context.stats["FuzzDup"].run_count, 2)
        self.assertEqual(context.stats["FuzzDup"].issues_found, 2)
        self.assertEqual(context.stats["FuzzDup"].last_status, 1)

    def test_concurrent_runners_lose_no_counts(self):
        context = SupervisionContext()
        runners = [SupervisedRunner("FuzzDup", context, restart_delay=0) for _ in range(4)]

        def run_many(runner):
            for _ in range(25):
                runner.run_once()

        with patch("fuzzloop.execution.subprocess.Popen", return_value=make_proc(returncode=0)):
            with patch("sys.stdout", new_callable=io.StringIO):
                threads = [threading.Thread(target=run_many, args=(r,)) for r in runners]
                for thread in threads:
                    thread.start()
                for thread in threads:
                    thread.join()

        self.assertEqual([r.run_count for r in runners], [25, 25, 25, 25])
        self.assertEqual(context.stats["FuzzDup"].run_count, 100)


if __name__ == "__main__":
    unittest.main()
