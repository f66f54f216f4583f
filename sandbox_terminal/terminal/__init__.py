"""
Multi-session command execution for sandbox-terminal.

Runs shell-level commands for an automation agent behind an admission policy,
inside bounded sessions that are evicted when idle.

Supports:
- Three-tier command classification (blocklist, dangerous-list, allowlist)
- Direct argv spawning (no shell) with streaming output and hard timeouts
- Bounded per-session output history with FIFO eviction
- Idle session timeouts
- Event broadcasting for streaming observers
"""

from .base import ExecutionResult, OutputEntry, Session, SessionSummary
from .config import TerminalConfig
from .errors import (
    CapacityExceededError,
    DuplicateSessionError,
    InvalidCommandError,
    PolicyBlockedError,
    PolicyError,
    PolicyNotAllowlistedError,
    PolicyRequiresConfirmationError,
    SessionBusyError,
    SessionNotFoundError,
    SpawnFailureError,
    TerminalError,
)
from .events import EventBroadcaster, SessionEvent
from .executor import ProcessExecutor
from .policy import ClassificationResult, CommandClassifier
from .registry import SessionRegistry
from .timeouts import SessionTimeoutManager

__all__ = [
    "CapacityExceededError",
    "ClassificationResult",
    "CommandClassifier",
    "DuplicateSessionError",
    "EventBroadcaster",
    "ExecutionResult",
    "InvalidCommandError",
    "OutputEntry",
    "PolicyBlockedError",
    "PolicyError",
    "PolicyNotAllowlistedError",
    "PolicyRequiresConfirmationError",
    "ProcessExecutor",
    "Session",
    "SessionBusyError",
    "SessionEvent",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionSummary",
    "SessionTimeoutManager",
    "SpawnFailureError",
    "TerminalConfig",
    "TerminalError",
]
