"""
Data model shared by the terminal components.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel

SessionStatus = Literal["idle", "running", "error"]
OutputType = Literal["stdout", "stderr", "command", "error", "info"]

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


class OutputEntry(BaseModel):
    type: OutputType
    content: str
    timestamp: str


class HistoryEntry(BaseModel):
    command: str
    timestamp: str


class SessionSummary(BaseModel):
    """Public view of a session, as listed to its owner."""

    id: str
    name: str
    status: SessionStatus
    working_directory: str
    created_at: str
    last_activity_at: str


class ExecutionResult(BaseModel):
    """Outcome of one command run.

    Attributes:
        exit_code: Process exit status, or None when the process ended by a
            signal (timeout, destroy).
        stdout / stderr: Trimmed aggregate of everything the process wrote.
        duration_ms: Wall-clock time from spawn to exit.
        timed_out: The hard timeout fired; success is then always False.
        terminated: The process was killed by session destruction or teardown.
    """

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    terminated: bool = False
    success: bool
    timestamp: str
    session_id: str | None = None
    idempotency_key: str | None = None


@dataclass
class Session:
    """A bounded context in which commands execute.

    The output buffer is a deque with ``maxlen`` so the oldest entries fall
    off first once the cap is reached.
    """

    id: str
    owner_id: str
    name: str
    working_directory: str
    environment: dict[str, str]
    max_output_entries: int = 1000
    status: str = STATUS_IDLE
    history: list[HistoryEntry] = field(default_factory=list)
    output: deque = None
    created_at: str = field(default_factory=utc_now)
    last_activity_at: str = ""

    def __post_init__(self):
        if self.output is None:
            self.output = deque(maxlen=self.max_output_entries)
        if not self.last_activity_at:
            self.last_activity_at = self.created_at

    def touch(self):
        self.last_activity_at = utc_now()

    def append_output(self, output_type: str, content: str) -> OutputEntry:
        entry = OutputEntry(type=output_type, content=content, timestamp=utc_now())
        self.output.append(entry)
        return entry

    def append_history(self, command: str) -> HistoryEntry:
        entry = HistoryEntry(command=command, timestamp=utc_now())
        self.history.append(entry)
        return entry

    def to_summary(self) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            name=self.name,
            status=self.status,
            working_directory=self.working_directory,
            created_at=self.created_at,
            last_activity_at=self.last_activity_at,
        )

    def to_dict(self, include_output: bool = True) -> dict[str, Any]:
        """Snapshot of the session; the environment is never included."""
        data = self.to_summary().model_dump()
        data["owner_id"] = self.owner_id
        data["history"] = [entry.model_dump() for entry in self.history]
        if include_output:
            data["output"] = [entry.model_dump() for entry in self.output]
        return data


def tail(text: str, limit: Optional[int]) -> str:
    """Keep at most ``limit`` trailing characters of ``text``."""
    if limit is None or limit <= 0 or len(text) <= limit:
        return text
    return text[-limit:]
