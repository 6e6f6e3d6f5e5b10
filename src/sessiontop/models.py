"""Data models for sessiontop."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

SYNTHETIC_PREFIX = "pid-"


class SessionStatus(Enum):
    """Status of a tracked session."""

    IDLE = "idle"
    RUNNING = "running"


class HookEventKind(Enum):
    """Lifecycle events pushed by the monitored application."""

    SESSION_START = "session_start"
    REQUEST_START = "request_start"
    REQUEST_STOP = "request_stop"


class ChangeKind(Enum):
    """Kinds of store change notifications."""

    UPDATED = "updated"
    METRICS = "metrics"
    REMOVED = "removed"


def is_placeholder_pid(pid: int) -> bool:
    """Placeholder pids live in the non-positive range, real OS pids never do."""
    return pid <= 0


def synthetic_session_id(pid: int) -> str:
    return f"{SYNTHETIC_PREFIX}{pid}"


def is_synthetic_session_id(session_id: str | None) -> bool:
    return session_id is None or session_id.startswith(SYNTHETIC_PREFIX)


def display_name_for(pid: int, session_id: str | None) -> str:
    """Derive the display name from the session id prefix, or the pid."""
    if is_synthetic_session_id(session_id):
        return f"PID {pid}"
    return f"Session {session_id[:8]}"


@dataclass(slots=True)
class SessionRecord:
    """Mutable state of one tracked session, keyed by pid in the store."""

    pid: int
    session_id: str
    status: SessionStatus
    cpu_usage: float
    memory_usage: float
    start_time: datetime
    first_seen_at: datetime
    last_active_time: datetime
    running_time: str = "0:00"
    working_dir: str | None = None
    display_name: str = ""
    transcript_path: str | None = None

    @property
    def is_placeholder(self) -> bool:
        return is_placeholder_pid(self.pid)

    @property
    def is_correlated(self) -> bool:
        """True once a hook has supplied a real session id."""
        return not is_synthetic_session_id(self.session_id)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for the transport layer."""
        return {
            "pid": self.pid,
            "sessionId": self.session_id,
            "displayName": self.display_name,
            "status": self.status.value,
            "cpuUsage": self.cpu_usage,
            "memoryUsage": self.memory_usage,
            "startTime": self.start_time.isoformat(),
            "firstSeenAt": self.first_seen_at.isoformat(),
            "lastActiveTime": self.last_active_time.isoformat(),
            "runningTime": self.running_time,
            "workingDir": self.working_dir,
        }


@dataclass(slots=True, frozen=True)
class ProcessSample:
    """Immutable result of one process-table row."""

    pid: int
    cpu_percent: float
    memory_percent: float
    elapsed_seconds: float
    start_time: datetime
    command: str


@dataclass(slots=True, frozen=True)
class HookEvent:
    """A lifecycle event for one session."""

    kind: HookEventKind
    session_id: str
    timestamp: datetime
    pid: int | None = None
    transcript_path: str | None = None


@dataclass(slots=True, frozen=True)
class LogInterrupt:
    """An interrupt marker found in a session's transcript log."""

    session_id: str
    timestamp: datetime
    entry: dict[str, Any] = field(default_factory=dict)
    kind: str = "log_interrupt"


Signal = HookEvent | LogInterrupt


@dataclass(slots=True, frozen=True)
class StoreChange:
    """Notification emitted after every store mutation.

    ``sessions`` is always the full current snapshot, never a diff.
    """

    kind: ChangeKind
    sessions: tuple[SessionRecord, ...]
    pid: int
    session_id: str | None = None


@dataclass(slots=True, frozen=True)
class StoreStats:
    """Aggregate counts over the store."""

    total: int
    running: int
    idle: int
    placeholders: int
