"""
Spawns and supervises one OS process per command.

Commands are tokenized into an argument vector and the executable is started
directly; no shell ever sees the command text. Each child gets its own
process group so a termination signal also reaches anything it started.
"""

import asyncio
import codecs
import logging
import os
import signal
import subprocess
import sys
import time
from collections import deque
from typing import Callable, Optional

from .base import ExecutionResult, tail, utc_now
from .config import TerminalConfig
from .errors import SpawnFailureError
from .policy import ClassificationResult, CommandClassifier, tokenize

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096

# How long to wait for stdout/stderr to close once the process has exited
STREAM_DRAIN_SECONDS = 5.0

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)

OutputCallback = Callable[[str, str], None]
SpawnCallback = Callable[[asyncio.subprocess.Process], None]


def _process_group_kwargs() -> dict:
    if sys.platform.startswith("win"):
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}
    return {"start_new_session": True}


def _describe_spawn_error(error: Exception, executable: str) -> str:
    if isinstance(error, FileNotFoundError):
        return f"command or working directory not found ({executable})"
    if isinstance(error, PermissionError):
        return f"permission denied ({executable})"
    if isinstance(error, NotADirectoryError):
        return "working directory is not a directory"
    return str(error)


class _Capture:
    """Accumulates decoded output, keeping only the trailing ``limit`` characters."""

    def __init__(self, limit: int):
        self.limit = limit
        self._chunks: deque[str] = deque()
        self._size = 0

    def append(self, text: str):
        self._chunks.append(text)
        self._size += len(text)
        while self._chunks and self._size - len(self._chunks[0]) >= self.limit:
            self._size -= len(self._chunks.popleft())

    def text(self) -> str:
        return tail("".join(self._chunks), self.limit)


class ProcessExecutor:
    """Runs admitted commands with streaming output and hard timeouts."""

    def __init__(
        self,
        config: Optional[TerminalConfig] = None,
        classifier: Optional[CommandClassifier] = None,
    ):
        self.config = config or TerminalConfig()
        self.classifier = classifier or CommandClassifier.from_config(self.config)
        self._running: set[asyncio.subprocess.Process] = set()
        # pids killed by terminate() rather than by a timeout
        self._terminated_pids: set[int] = set()
        self._kill_handles: dict[int, asyncio.TimerHandle] = {}

    @property
    def running_count(self) -> int:
        """Number of tracked processes that have not exited."""
        stale = {p for p in self._running if p.returncode is not None}
        self._running -= stale
        return len(self._running)

    def effective_timeout_ms(self, timeout_ms: Optional[int] = None) -> int:
        requested = timeout_ms if timeout_ms and timeout_ms > 0 else self.config.default_timeout_ms
        return min(requested, self.config.max_timeout_ms)

    def _send_signal(self, process: asyncio.subprocess.Process, sig: int):
        if process.returncode is not None:
            return
        try:
            if sys.platform.startswith("win"):
                if sig == _SIGKILL:
                    process.kill()
                else:
                    process.terminate()
                return
            os.killpg(os.getpgid(process.pid), sig)
        except (OSError, ProcessLookupError):
            # Group already gone; fall back to the process itself
            try:
                process.send_signal(sig)
            except (OSError, ProcessLookupError):
                pass

    def _kill_if_alive(self, process: asyncio.subprocess.Process):
        self._kill_handles.pop(process.pid, None)
        if process.returncode is None:
            logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
            self._send_signal(process, _SIGKILL)

    def _signal_termination(self, process: asyncio.subprocess.Process):
        """SIGTERM the process group now, SIGKILL it after the grace period."""
        if process.returncode is not None:
            return
        self._send_signal(process, signal.SIGTERM)
        if process.pid not in self._kill_handles:
            loop = asyncio.get_running_loop()
            self._kill_handles[process.pid] = loop.call_later(
                self.config.kill_grace_ms / 1000, self._kill_if_alive, process
            )

    def terminate(self, process: asyncio.subprocess.Process) -> bool:
        """
        Terminate a process on behalf of a session being destroyed.

        Returns:
            True if the process was still running and has been signaled
        """
        if process.returncode is not None:
            return False
        self._terminated_pids.add(process.pid)
        self._signal_termination(process)
        return True

    def kill_all(self) -> int:
        """Terminate every tracked process. Returns the number signaled."""
        count = 0
        for process in list(self._running):
            if self.terminate(process):
                count += 1
        return count

    async def _pump(
        self,
        stream: asyncio.StreamReader,
        channel: str,
        capture: _Capture,
        on_output: Optional[OutputCallback],
    ):
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        def deliver(text: str):
            if not text:
                return
            capture.append(text)
            logger.debug(f"{channel}: {text.rstrip()}")
            if on_output:
                try:
                    on_output(channel, text)
                except Exception as e:
                    logger.error(f"Output callback failed on {channel}: {e}", exc_info=True)

        while True:
            data = await stream.read(CHUNK_SIZE)
            if not data:
                break
            deliver(decoder.decode(data))
        deliver(decoder.decode(b"", final=True))

    async def execute(
        self,
        command: str,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout_ms: Optional[int] = None,
        safety_confirmed: bool = False,
        on_output: Optional[OutputCallback] = None,
        on_spawn: Optional[SpawnCallback] = None,
        session_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        classification: Optional[ClassificationResult] = None,
    ) -> ExecutionResult:
        """
        Classify, spawn and supervise a single command.

        Args:
            command: Command text; tokenized with shell-word rules
            cwd: Working directory for the process
            env: Full environment for the process (default: inherit)
            timeout_ms: Requested timeout, capped at the configured maximum
            safety_confirmed: Caller accepted the risk of a dangerous command
            on_output: Called with (channel, chunk) as output arrives
            on_spawn: Called with the process right after it starts
            classification: Verdict already computed for this command by the caller

        Returns:
            ExecutionResult; a timeout is reported in the result, not raised

        Raises:
            InvalidCommandError / PolicyError: Command not admitted; nothing spawned
            SpawnFailureError: The OS could not start the process
        """
        if classification is None:
            classification = self.classifier.classify(command, safety_confirmed)
        classification.raise_for_verdict()

        argv = tokenize(command.strip())
        timeout = self.effective_timeout_ms(timeout_ms)

        logger.info(f"Executing command: {command}")
        logger.debug(f"Working directory: {cwd or os.getcwd()}, timeout: {timeout}ms")

        start_time = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_process_group_kwargs(),
            )
        except (OSError, ValueError) as e:
            logger.error(f"Process spawn failed for {command}: {e}")
            raise SpawnFailureError(command, _describe_spawn_error(e, argv[0])) from e

        self._running.add(process)
        if on_spawn:
            on_spawn(process)

        stdout = _Capture(self.config.max_captured_chars)
        stderr = _Capture(self.config.max_captured_chars)
        readers = [
            asyncio.create_task(self._pump(process.stdout, "stdout", stdout, on_output)),
            asyncio.create_task(self._pump(process.stderr, "stderr", stderr, on_output)),
        ]

        timed_out = False
        try:
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout / 1000)
            except asyncio.TimeoutError:
                timed_out = True
                logger.warning(f"Command timed out after {timeout}ms: {command}")
                self._signal_termination(process)
                await process.wait()

            _, pending = await asyncio.wait(readers, timeout=STREAM_DRAIN_SECONDS)
            if pending:
                logger.warning(
                    f"Output streams still open {STREAM_DRAIN_SECONDS}s after exit: {command}"
                )
        finally:
            if process.returncode is None:
                # Cancelled by our caller; do not leave the child behind
                self._signal_termination(process)
            for reader in readers:
                if not reader.done():
                    reader.cancel()
            if process.returncode is not None:
                handle = self._kill_handles.pop(process.pid, None)
                if handle:
                    handle.cancel()
            self._running.discard(process)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        returncode = process.returncode
        exit_code = returncode if returncode is not None and returncode >= 0 else None
        terminated = process.pid in self._terminated_pids
        self._terminated_pids.discard(process.pid)

        logger.info(
            f"Command completed: {command} (exit code {exit_code}, {duration_ms}ms"
            f"{', timed out' if timed_out else ''}{', terminated' if terminated else ''})"
        )

        return ExecutionResult(
            command=command,
            exit_code=exit_code,
            stdout=stdout.text().strip(),
            stderr=stderr.text().strip(),
            duration_ms=duration_ms,
            timed_out=timed_out,
            terminated=terminated,
            success=exit_code == 0 and not timed_out,
            timestamp=utc_now(),
            session_id=session_id,
            idempotency_key=idempotency_key,
        )
