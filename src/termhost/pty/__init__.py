"""PTY process management: shell sessions with exit-code detection.

Every command runs in a managed shell on a pseudo-terminal. The registry
tracks sessions by ID, buffers their output, watches for the exit-code
marker and releases whoever is waiting on completion.
"""

from termhost.pty.buffer import OutputBuffer
from termhost.pty.errors import (
    CompletionTimeoutError,
    SessionBusyError,
    SessionDisappearedError,
    SessionError,
    SessionNotActiveError,
    SessionNotFoundError,
    SpawnError,
    WaitSupersededError,
)
from termhost.pty.manager import SessionRegistry
from termhost.pty.markers import ExitCodes, MarkerProtocol
from termhost.pty.session import SessionStatus, TerminalSession
from termhost.pty.shell import ShellConfig, ShellKind, get_shell_config

__all__ = [
    "CompletionTimeoutError",
    "ExitCodes",
    "MarkerProtocol",
    "OutputBuffer",
    "SessionBusyError",
    "SessionDisappearedError",
    "SessionError",
    "SessionNotActiveError",
    "SessionNotFoundError",
    "SessionRegistry",
    "SessionStatus",
    "ShellConfig",
    "ShellKind",
    "SpawnError",
    "TerminalSession",
    "WaitSupersededError",
    "get_shell_config",
]
