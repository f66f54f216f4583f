"""
Multi-session terminal service.

The registry owns the sessions, their bounded output history and the mapping
from session to its active process. It ties together the classifier, the
executor, the idle timers and the event channel.

All registry state is touched only from the event loop thread that runs the
service; none of it is guarded by locks.
"""

import asyncio
import logging
import os
from typing import Any, Optional

from .base import (
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_RUNNING,
    ExecutionResult,
    OutputEntry,
    Session,
    SessionSummary,
)
from .config import TerminalConfig
from .errors import (
    CapacityExceededError,
    DuplicateSessionError,
    SessionBusyError,
    SessionNotFoundError,
    TerminalError,
)
from .events import (
    COMMAND_COMPLETE,
    COMMAND_ERROR,
    COMMAND_START,
    SESSION_CREATED,
    SESSION_DESTROYED,
    SESSION_OUTPUT,
    SESSION_TIMEOUT,
    SESSION_UPDATED,
    EventBroadcaster,
)
from .executor import OutputCallback, ProcessExecutor
from .policy import CommandClassifier
from .timeouts import SessionTimeoutManager

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Creates, runs commands in, and destroys bounded terminal sessions.
    """

    def __init__(
        self,
        config: Optional[TerminalConfig] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        executor: Optional[ProcessExecutor] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize the registry.

        Args:
            config: Terminal configuration (creates default if None)
            broadcaster: Event channel (creates one if None)
            executor: Process executor (creates one from config if None)
            loop: Event loop for idle timers (default: the running loop)
        """
        self.config = config or TerminalConfig()
        self.events = broadcaster or EventBroadcaster()
        self.executor = executor or ProcessExecutor(
            self.config, CommandClassifier.from_config(self.config)
        )
        self.timeouts = SessionTimeoutManager(
            self.config.idle_timeout_ms, self._handle_idle_timeout, loop=loop
        )
        self._sessions: dict[str, Session] = {}
        self._active_processes: dict[str, asyncio.subprocess.Process] = {}

        logger.info(
            f"Terminal service initialized: {len(self.classifier.allowed_commands)} allowed, "
            f"{len(self.classifier.dangerous_commands)} dangerous, "
            f"{len(self.classifier.blocked_commands)} blocked commands, "
            f"max sessions {self.config.max_sessions}"
        )

    @property
    def classifier(self) -> CommandClassifier:
        return self.executor.classifier

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def create_session(
        self,
        session_id: str,
        owner_id: str,
        name: str = "Terminal",
        working_directory: Optional[str] = None,
        environment: Optional[dict[str, str]] = None,
    ) -> Session:
        """
        Create a new session.

        Raises:
            CapacityExceededError: The session limit is reached
            DuplicateSessionError: ``session_id`` is already in use
        """
        if len(self._sessions) >= self.config.max_sessions:
            logger.warning(f"Session limit reached, refusing {session_id}")
            raise CapacityExceededError(self.config.max_sessions)

        if session_id in self._sessions:
            raise DuplicateSessionError(session_id)

        session = Session(
            id=session_id,
            owner_id=owner_id,
            name=name,
            working_directory=os.path.abspath(working_directory or os.getcwd()),
            environment={**os.environ, **(environment or {})},
            max_output_entries=self.config.max_output_entries,
        )
        self._sessions[session_id] = session
        self.timeouts.arm(session_id)

        logger.info(f"Session created: {session_id} for owner {owner_id}")
        self.events.emit(session_id, SESSION_CREATED, data=name)
        return session

    def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: Unknown or already destroyed session
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def has_session(self, session_id: str) -> bool:
        return session_id in self._sessions

    def list_sessions(self, owner_id: str) -> list[SessionSummary]:
        """Summaries of the sessions owned by ``owner_id``."""
        return [
            session.to_summary()
            for session in self._sessions.values()
            if session.owner_id == owner_id
        ]

    def update_session(
        self,
        session_id: str,
        name: Optional[str] = None,
        working_directory: Optional[str] = None,
    ) -> Session:
        """Rename a session or move its working directory."""
        session = self.get_session(session_id)
        if name:
            session.name = name
        if working_directory:
            session.working_directory = os.path.abspath(working_directory)
        self._touch(session)
        logger.info(f"Session updated: {session_id}")
        self.events.emit(session_id, SESSION_UPDATED, data=session.name)
        return session

    def destroy_session(self, session_id: str, reason: str = "destroyed") -> bool:
        """
        Destroy a session, killing any process it is running.

        Returns:
            True if the session existed, False if it was already gone
        """
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False

        process = self._active_processes.pop(session_id, None)
        if process is not None and self.executor.terminate(process):
            logger.info(f"Sent SIGTERM to process {process.pid} of session {session_id}")

        self.timeouts.cancel(session_id)

        logger.info(f"Session destroyed: {session_id} ({reason})")
        self.events.emit(session_id, SESSION_DESTROYED, reason=reason)
        return True

    def _handle_idle_timeout(self, session_id: str):
        if session_id not in self._sessions:
            return
        self.events.emit(
            session_id,
            SESSION_TIMEOUT,
            reason=f"idle for {self.config.idle_timeout_ms}ms",
        )
        self.destroy_session(session_id, reason="timeout")

    # ------------------------------------------------------------------
    # Output and activity
    # ------------------------------------------------------------------

    def _touch(self, session: Session):
        session.touch()
        self.timeouts.reset(session.id)

    def update_session_activity(self, session_id: str):
        """Refresh the activity timestamp and rearm the idle timer."""
        session = self._sessions.get(session_id)
        if session is not None:
            self._touch(session)

    def record_output(self, session_id: str, channel: str, content: str):
        """
        Append an entry to the session's output buffer and broadcast it.

        Output for a session that no longer exists is dropped.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return

        entry = session.append_output(channel, content)
        self.events.emit(
            session_id,
            SESSION_OUTPUT,
            output_type=channel,
            data=content,
            timestamp=entry.timestamp,
        )
        self._touch(session)

    def get_session_output(
        self, session_id: str, limit: Optional[int] = None
    ) -> list[OutputEntry]:
        """Buffered output, oldest first; ``limit`` keeps the most recent entries."""
        entries = list(self.get_session(session_id).output)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_in_session(
        self,
        session_id: str,
        command: str,
        timeout_ms: Optional[int] = None,
        safety_confirmed: bool = False,
        on_output: Optional[OutputCallback] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run a command in a session, streaming its output.

        Raises:
            SessionNotFoundError: Unknown session
            SessionBusyError: The session is already running a command
            InvalidCommandError / PolicyError: Command not admitted; nothing spawned
            SpawnFailureError: The OS could not start the process
        """
        session = self.get_session(session_id)
        if session.status == STATUS_RUNNING or session_id in self._active_processes:
            raise SessionBusyError(session_id)

        verdict = self.classifier.classify(command, safety_confirmed)
        if not verdict.allowed:
            self.record_output(session_id, "error", verdict.reason)
            self.events.emit(
                session_id,
                COMMAND_ERROR,
                command=command if isinstance(command, str) else None,
                error=verdict.reason,
            )
            verdict.raise_for_verdict()

        session.status = STATUS_RUNNING
        session.append_history(command)
        self.record_output(session_id, "command", f"$ {command}")
        self.events.emit(session_id, COMMAND_START, command=command)

        # The id may be reused by a new session once this one is destroyed;
        # everything below only touches state that still belongs to this run.
        spawned: list[asyncio.subprocess.Process] = []

        def current() -> bool:
            return self._sessions.get(session_id) is session

        def forward(channel: str, chunk: str):
            if current():
                self.record_output(session_id, channel, chunk)
            if on_output:
                on_output(channel, chunk)

        def track(process: asyncio.subprocess.Process):
            spawned.append(process)
            if current():
                self._active_processes[session_id] = process
            else:
                # Destroyed while the process was starting
                self.executor.terminate(process)

        try:
            result = await self.executor.execute(
                command,
                cwd=session.working_directory,
                env=session.environment,
                timeout_ms=timeout_ms,
                safety_confirmed=safety_confirmed,
                on_output=forward,
                on_spawn=track,
                session_id=session_id,
                idempotency_key=idempotency_key,
                classification=verdict,
            )
        except TerminalError as e:
            if current():
                session.status = STATUS_ERROR
                self.record_output(session_id, "error", e.message)
                self.events.emit(
                    session_id, COMMAND_ERROR, command=command, error=e.message
                )
            raise
        except asyncio.CancelledError:
            if current():
                session.status = STATUS_IDLE
            raise
        finally:
            if spawned and self._active_processes.get(session_id) is spawned[0]:
                del self._active_processes[session_id]

        if not current():
            logger.info(f"Session {session_id} was destroyed while running: {command}")
            return result

        session.status = STATUS_IDLE
        self._touch(session)
        self.events.emit(
            session_id, COMMAND_COMPLETE, command=command, result=result.model_dump()
        )
        return result

    # ------------------------------------------------------------------
    # Introspection and teardown
    # ------------------------------------------------------------------

    def get_allowed_commands(self) -> list[str]:
        return self.classifier.allowed_commands

    def get_dangerous_commands(self) -> list[str]:
        return self.classifier.dangerous_commands

    def get_blocked_commands(self) -> list[str]:
        return self.classifier.blocked_commands

    def get_status(self) -> dict[str, Any]:
        """Aggregate service status; read-only."""
        return {
            "is_initialized": True,
            "sessions": len(self._sessions),
            "max_sessions": self.config.max_sessions,
            "active_processes": len(self._active_processes),
            "allowed_commands": len(self.classifier.allowed_commands),
            "dangerous_commands": len(self.classifier.dangerous_commands),
            "blocked_commands": len(self.classifier.blocked_commands),
            "default_timeout_ms": self.config.default_timeout_ms,
            "max_timeout_ms": self.config.max_timeout_ms,
            "idle_timeout_ms": self.config.idle_timeout_ms,
            "max_output_entries": self.config.max_output_entries,
        }

    def kill_all_active_processes(self) -> int:
        """Terminate every running child without destroying sessions."""
        count = 0
        for session_id, process in list(self._active_processes.items()):
            if self.executor.terminate(process):
                logger.info(f"Killed process {process.pid} of session {session_id}")
                count += 1
        return count

    def shutdown(self) -> int:
        """
        Destroy every session and kill every child process.

        Returns:
            Number of sessions destroyed
        """
        count = 0
        for session_id in list(self._sessions):
            if self.destroy_session(session_id, reason="shutdown"):
                count += 1
        self.executor.kill_all()
        self.timeouts.cancel_all()
        logger.info(f"Terminal service shut down, {count} sessions destroyed")
        return count

    async def __aenter__(self) -> "SessionRegistry":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.shutdown()
