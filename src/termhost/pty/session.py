"""Terminal session record: one per shell process."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from termhost.pty.buffer import OutputBuffer
from termhost.pty.markers import MarkerProtocol
from termhost.pty.process import PtyProcess


class SessionStatus(enum.StrEnum):
    """Lifecycle states for a terminal session."""

    RUNNING = "running"
    COMPLETED = "completed"  # Exit code observed for the current command
    TERMINATED = "terminated"  # Stopped by request
    ERROR = "error"  # Spawn or write failure
    UNBLOCKED = "unblocked"  # Waiter released early, process still running
    EXITED = "exited"  # Shell process exited on its own


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TerminalSession:
    """A shell process plus everything the registry tracks about it.

    ``process`` is owned exclusively by this record and set to ``None``
    the moment the session is stopped or the shell exits; a record never
    gets a new process after that.
    """

    session_id: str
    process: PtyProcess | None
    command: str
    is_windows: bool
    protocol: MarkerProtocol
    buffer: OutputBuffer = field(default_factory=OutputBuffer)
    status: SessionStatus = SessionStatus.RUNNING
    exit_code: int | None = None
    start_time: datetime = field(default_factory=_now)
    last_unblocked_output: str | None = None
    last_unblocked_output_timestamp: datetime | None = None

    # Marker scanning state
    marker_ready: bool = field(default=False, repr=False)
    scan_tail: str = field(default="", repr=False)

    @property
    def alive(self) -> bool:
        return self.process is not None

    def reset_for_command(self, command: str) -> None:
        """Start a new command in this session: clear output and exit code."""
        self.buffer.clear()
        self.scan_tail = ""
        self.exit_code = None
        self.status = SessionStatus.RUNNING
        self.command = command
        self.start_time = _now()
        self.last_unblocked_output = None
        self.last_unblocked_output_timestamp = None

    def summary(self) -> dict[str, Any]:
        """Wire representation used by session listings."""
        return {
            "sessionId": self.session_id,
            "command": self.command,
            "status": self.status.value,
            "startTime": self.start_time.isoformat(),
            "exitCode": self.exit_code,
            "isWindows": self.is_windows,
            "pid": self.process.pid if self.process is not None else None,
            "lastUnblockedOutputTimestamp": _iso(self.last_unblocked_output_timestamp),
        }

    def result(self, output: str, status: SessionStatus | None = None) -> dict[str, Any]:
        """Wire representation of a completion / output response."""
        return {
            "sessionId": self.session_id,
            "command": self.command,
            "output": output,
            "status": (status or self.status).value,
            "startTime": self.start_time.isoformat(),
            "exitCode": self.exit_code,
            "lastUnblockedOutput": self.last_unblocked_output,
            "lastUnblockedOutputTimestamp": _iso(self.last_unblocked_output_timestamp),
        }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
