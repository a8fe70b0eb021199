"""Session registry errors."""

from __future__ import annotations


class SessionError(Exception):
    """Base class for errors tied to one terminal session."""

    def __init__(self, session_id: str, message: str) -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(session_id, f"Session {session_id} not found")


class SessionNotActiveError(SessionError):
    def __init__(self, session_id: str, status: str = "") -> None:
        detail = f" (status: {status})" if status else ""
        super().__init__(session_id, f"Session {session_id} is not active{detail}")
        self.status = status


class SessionBusyError(SessionError):
    """An unblocked command is still running in the session."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            session_id, f"Session {session_id} is still running an unblocked command"
        )


class SessionDisappearedError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            session_id,
            f"Session {session_id} disappeared unexpectedly during completion check",
        )


class WaitSupersededError(SessionError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            session_id, f"Wait on session {session_id} superseded by a newer wait"
        )


class CompletionTimeoutError(SessionError):
    def __init__(self, session_id: str, timeout: float) -> None:
        super().__init__(
            session_id,
            f"Timed out after {timeout:g}s waiting for session {session_id} to complete",
        )
        self.timeout = timeout


class SpawnError(SessionError):
    """The pty process could not be created."""

    def __init__(self, session_id: str, cause: BaseException) -> None:
        super().__init__(session_id, f"Failed to spawn shell for {session_id}: {cause}")
        self.__cause__ = cause
