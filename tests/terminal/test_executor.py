"""Tests for the process executor."""

import asyncio
import os
import shutil
import tempfile
import unittest
from unittest.mock import AsyncMock, patch

from helpers import TEST_ALLOWED_COMMANDS, make_config, python_command

from sandbox_terminal.terminal.errors import (
    PolicyBlockedError,
    PolicyNotAllowlistedError,
    PolicyRequiresConfirmationError,
    SpawnFailureError,
)
from sandbox_terminal.terminal.executor import ProcessExecutor
from sandbox_terminal.terminal.policy import ClassificationResult

SPAWN = "sandbox_terminal.terminal.executor.asyncio.create_subprocess_exec"


class TestProcessExecutor(unittest.IsolatedAsyncioTestCase):
    """Test cases for ProcessExecutor."""

    async def asyncSetUp(self):
        """Set up test fixtures."""
        self.test_config_dir = tempfile.mkdtemp(prefix="sandbox_terminal_test_")
        self.config = make_config(self.test_config_dir, kill_grace_ms=500)
        self.executor = ProcessExecutor(self.config)

    async def asyncTearDown(self):
        """Clean up test fixtures."""
        self.executor.kill_all()
        shutil.rmtree(self.test_config_dir, ignore_errors=True)

    async def test_echo(self):
        """Test a basic successful command."""
        result = await self.executor.execute("echo hello")

        self.assertEqual(result.stdout, "hello")
        self.assertEqual(result.stderr, "")
        self.assertEqual(result.exit_code, 0)
        self.assertTrue(result.success)
        self.assertFalse(result.timed_out)
        self.assertEqual(result.command, "echo hello")
        self.assertGreaterEqual(result.duration_ms, 0)
        self.assertTrue(result.timestamp)

    async def test_no_shell_interpretation(self):
        """Test that shell metacharacters reach the program as plain arguments."""
        result = await self.executor.execute("echo hi; ls $HOME")
        self.assertEqual(result.stdout, "hi; ls $HOME")

    async def test_quoted_arguments_are_preserved(self):
        """Test that a quoted argument with spaces stays one argument."""
        command = python_command("import sys; print(len(sys.argv) - 1, sys.argv[1])", "hello world")
        result = await self.executor.execute(command)
        self.assertEqual(result.stdout, "1 hello world")

    async def test_streams_output_while_running(self):
        """Test that chunks are delivered before the process exits."""
        code = (
            "import sys, time\n"
            "print('first', flush=True)\n"
            "time.sleep(0.5)\n"
            "print('second', flush=True)\n"
            "print('oops', file=sys.stderr, flush=True)\n"
        )
        processes = []
        chunks = []

        def on_output(channel, chunk):
            chunks.append((channel, chunk, processes[0].returncode))

        result = await self.executor.execute(
            python_command(code), on_output=on_output, on_spawn=processes.append
        )

        self.assertTrue(result.success)
        first = next(c for c in chunks if "first" in c[1])
        self.assertEqual(first[0], "stdout")
        self.assertIsNone(first[2], "first chunk should arrive while the process runs")
        self.assertIn(("stderr", "oops\n"), [(c[0], c[1]) for c in chunks])
        self.assertEqual(result.stdout, "first\nsecond")
        self.assertEqual(result.stderr, "oops")

    async def test_nonzero_exit_code(self):
        result = await self.executor.execute(python_command("import sys; sys.exit(3)"))

        self.assertEqual(result.exit_code, 3)
        self.assertFalse(result.success)
        self.assertFalse(result.timed_out)

    async def test_environment_and_cwd(self):
        """Test that the process sees the given environment and directory."""
        code = "import os; print(os.environ['TERMINAL_TEST'], os.getcwd())"
        result = await self.executor.execute(
            python_command(code),
            cwd=self.test_config_dir,
            env={**os.environ, "TERMINAL_TEST": "bar"},
        )
        value, cwd = result.stdout.split(" ", 1)
        self.assertEqual(value, "bar")
        self.assertEqual(os.path.realpath(cwd), os.path.realpath(self.test_config_dir))

    async def test_timeout(self):
        """Test that a long process is killed and reported as timed out."""
        result = await self.executor.execute("sleep 5", timeout_ms=50)

        self.assertTrue(result.timed_out)
        self.assertFalse(result.success)
        self.assertIsNone(result.exit_code)
        self.assertLess(result.duration_ms, 4000)

    async def test_timeout_keeps_partial_output(self):
        """Test that output written before the timeout is still returned."""
        code = "import time; print('partial', flush=True); time.sleep(5)"
        result = await self.executor.execute(python_command(code), timeout_ms=1000)

        self.assertTrue(result.timed_out)
        self.assertEqual(result.stdout, "partial")

    async def test_timeout_capped_at_maximum(self):
        """Test that the requested timeout never exceeds max_timeout_ms."""
        executor = ProcessExecutor(
            make_config(self.test_config_dir, max_timeout_ms=100, default_timeout_ms=50)
        )
        self.assertEqual(executor.effective_timeout_ms(60_000), 100)
        self.assertEqual(executor.effective_timeout_ms(None), 50)
        self.assertEqual(executor.effective_timeout_ms(20), 20)

        result = await executor.execute("sleep 5", timeout_ms=60_000)
        self.assertTrue(result.timed_out)
        self.assertLess(result.duration_ms, 4000)

    async def test_sigterm_ignored_escalates_to_sigkill(self):
        """Test that a process ignoring SIGTERM is killed after the grace period."""
        code = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(10)\n"
        )
        result = await self.executor.execute(python_command(code), timeout_ms=500)

        self.assertTrue(result.timed_out)
        self.assertFalse(result.success)
        self.assertLess(result.duration_ms, 5000)

    async def test_terminate_marks_result(self):
        """Test that a process terminated by its owner is flagged as such."""

        def on_spawn(process):
            asyncio.get_running_loop().call_later(0.1, self.executor.terminate, process)

        result = await self.executor.execute("sleep 5", on_spawn=on_spawn)

        self.assertTrue(result.terminated)
        self.assertFalse(result.timed_out)
        self.assertFalse(result.success)
        self.assertIsNone(result.exit_code)

    async def test_running_count(self):
        """Test that the process is tracked only while it runs."""
        counts = []
        await self.executor.execute(
            "echo hi", on_spawn=lambda p: counts.append(self.executor.running_count)
        )
        self.assertEqual(counts, [1])
        self.assertEqual(self.executor.running_count, 0)

    async def test_captured_output_is_bounded(self):
        """Test that only the trailing characters are kept in the result."""
        executor = ProcessExecutor(make_config(self.test_config_dir, max_captured_chars=10))
        result = await executor.execute(python_command("print('x' * 100 + 'TAIL')"))

        self.assertLessEqual(len(result.stdout), 10)
        self.assertTrue(result.stdout.endswith("xTAIL"))

    async def test_missing_binary_is_spawn_failure(self):
        """Test that an allowlisted but missing executable raises SpawnFailureError."""
        executor = ProcessExecutor(
            make_config(
                self.test_config_dir,
                allowed_commands=[*TEST_ALLOWED_COMMANDS, "definitely-not-a-real-binary-xyz"],
            )
        )
        with self.assertRaises(SpawnFailureError) as ctx:
            await executor.execute("definitely-not-a-real-binary-xyz --help")

        self.assertIn("not found", ctx.exception.message)
        self.assertEqual(executor.running_count, 0)

    async def test_policy_rejections_spawn_nothing(self):
        """Test that rejected commands never reach the OS."""
        cases = [
            ("sudo ls", PolicyBlockedError),
            ("rm -rf /tmp/x", PolicyRequiresConfirmationError),
            ("frobnicate", PolicyNotAllowlistedError),
            ("npx cowsay hi", PolicyBlockedError),
        ]
        with patch(SPAWN, new_callable=AsyncMock) as spawn:
            for command, error_type in cases:
                with self.subTest(command=command):
                    with self.assertRaises(error_type):
                        await self.executor.execute(command)
            spawn.assert_not_called()

    async def test_precomputed_classification_is_used(self):
        """Test that a verdict supplied by the caller is not recomputed."""
        verdict = ClassificationResult(verdict="blocked", base_command="echo", reason="no")
        with patch(SPAWN, new_callable=AsyncMock) as spawn, patch.object(
            self.executor.classifier, "classify"
        ) as classify:
            with self.assertRaises(PolicyBlockedError):
                await self.executor.execute("echo hi", classification=verdict)
            spawn.assert_not_called()
            classify.assert_not_called()

    async def test_confirmed_dangerous_command_still_needs_allowlist(self):
        """Test that confirmation alone does not admit rm."""
        with patch(SPAWN, new_callable=AsyncMock) as spawn:
            with self.assertRaises(PolicyNotAllowlistedError):
                await self.executor.execute("rm -rf /tmp/x", safety_confirmed=True)
            spawn.assert_not_called()


if __name__ == "__main__":
    unittest.main()
