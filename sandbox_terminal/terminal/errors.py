"""
Exception types raised by the terminal service.

Admission-control errors are raised before any process is spawned. Their
``to_dict()`` payload is safe to hand to a remote caller: a short reason and
a machine-readable code, never a traceback or an internal path.
"""

from typing import Any, Optional


class TerminalError(Exception):
    """Base exception for all terminal service errors."""

    code = "terminal_error"
    requires_safety = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "requires_safety": self.requires_safety,
            **self.details,
        }


# ============================================================================
# Admission control
# ============================================================================


class InvalidCommandError(TerminalError):
    """The command is not a non-empty, tokenizable string."""

    code = "invalid_command"


class PolicyError(TerminalError):
    """Base class for commands rejected by the command policy."""

    code = "policy_error"

    def __init__(self, message: str, base_command: Optional[str] = None, **details):
        if base_command is not None:
            details["base_command"] = base_command
        super().__init__(message, details)
        self.base_command = base_command


class PolicyBlockedError(PolicyError):
    """Blocklisted base command or a blocked full-line pattern."""

    code = "policy_blocked"


class PolicyNotAllowlistedError(PolicyBlockedError):
    """Base command is absent from the allowlist."""

    code = "policy_not_allowlisted"


class PolicyRequiresConfirmationError(PolicyError):
    """Dangerous command issued without safety confirmation."""

    code = "policy_requires_confirmation"
    requires_safety = True

    def __init__(
        self,
        message: str,
        base_command: Optional[str] = None,
        safety_level: str = "high",
    ):
        super().__init__(message, base_command, safety_level=safety_level)
        self.safety_level = safety_level


# ============================================================================
# Sessions
# ============================================================================


class CapacityExceededError(TerminalError):
    """The session limit has been reached."""

    code = "capacity_exceeded"

    def __init__(self, max_sessions: int):
        super().__init__(
            f"Maximum sessions ({max_sessions}) reached",
            {"max_sessions": max_sessions},
        )
        self.max_sessions = max_sessions


class DuplicateSessionError(TerminalError):
    code = "duplicate_session"

    def __init__(self, session_id: str):
        super().__init__(
            f"Session {session_id} already exists", {"session_id": session_id}
        )
        self.session_id = session_id


class SessionNotFoundError(TerminalError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", {"session_id": session_id})
        self.session_id = session_id


class SessionBusyError(TerminalError):
    """A command is already running in the session."""

    code = "session_busy"

    def __init__(self, session_id: str):
        super().__init__(
            f"Session {session_id} is already running a command",
            {"session_id": session_id},
        )
        self.session_id = session_id


# ============================================================================
# Execution
# ============================================================================


class SpawnFailureError(TerminalError):
    """The OS could not start the process."""

    code = "spawn_failure"

    def __init__(self, command: str, reason: str):
        super().__init__(f"Process execution failed: {reason}", {"command": command})
        self.command = command
        self.reason = reason
