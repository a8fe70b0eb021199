"""Session registry: owns every terminal session and its completion waiter."""

from __future__ import annotations

import asyncio
import functools
import itertools
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, TYPE_CHECKING

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
from termhost.pty.markers import (
    CARRY_OVER_CHARS,
    ExitCodes,
    find_exit_code,
    format_output_with_exit_code,
    get_protocol,
)
from termhost.pty.process import PtyProcess, kill_process, spawn_process
from termhost.pty.session import SessionStatus, TerminalSession
from termhost.pty.shell import ShellConfig, get_shell_config

if TYPE_CHECKING:
    from termhost.config import TerminalConfig
    from termhost.session.wire import Wire

logger = logging.getLogger(__name__)

ProcessFactory = Callable[..., PtyProcess]

CompletionResult = dict[str, Any]


class SessionRegistry:
    """Tracks terminal sessions by ID and detects when their commands finish.

    The registry guarantees:
    - Session IDs are never reused
    - Every mutation happens on the event loop that created the session
    - At most one completion waiter per session
    - ``cleanup_all()`` leaves no sessions and no waiters behind
    - Filtered output and exit notifications are fired via Wire (if attached)
    """

    POLL_INTERVAL = 0.1

    def __init__(
        self,
        wire: Wire | None = None,
        *,
        spawner: ProcessFactory = spawn_process,
        shell: ShellConfig | None = None,
        rows: int = 30,
        cols: int = 80,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        term_name: str = "xterm-color",
        poll_interval: float = POLL_INTERVAL,
        completion_timeout: float | None = None,
    ) -> None:
        self._sessions: dict[str, TerminalSession] = {}
        self._waiters: dict[str, asyncio.Future[CompletionResult]] = {}
        self._counter = itertools.count()
        self._wire = wire
        self._spawner = spawner
        self._shell = shell or get_shell_config()
        self._rows = rows
        self._cols = cols
        self._cwd = cwd
        self._env = env or {}
        self._term_name = term_name
        self._poll_interval = poll_interval
        self._completion_timeout = completion_timeout

    @classmethod
    def from_config(
        cls,
        config: TerminalConfig,
        wire: Wire | None = None,
        spawner: ProcessFactory = spawn_process,
    ) -> SessionRegistry:
        return cls(
            wire,
            spawner=spawner,
            rows=config.rows,
            cols=config.cols,
            cwd=config.cwd,
            term_name=config.term_name,
            poll_interval=config.poll_interval,
            completion_timeout=config.completion_timeout,
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def generate_session_id(self) -> str:
        return f"session_{int(time.time() * 1000)}_{next(self._counter)}"

    def get(self, session_id: str) -> TerminalSession | None:
        """Get a session by ID."""
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[dict[str, Any]]:
        """Summaries of every tracked session."""
        return [s.summary() for s in self._sessions.values()]

    def pending_waiters(self) -> list[str]:
        """Session IDs that currently have a completion waiter registered."""
        return list(self._waiters)

    def _require(self, session_id: str) -> TerminalSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _require_live(self, session_id: str) -> TerminalSession:
        session = self._require(session_id)
        if not session.alive:
            raise SessionNotActiveError(session_id, session.status.value)
        return session

    # ------------------------------------------------------------------
    # Creation and input
    # ------------------------------------------------------------------

    async def create(
        self, session_id: str | None = None, command: str | None = None
    ) -> TerminalSession:
        """Spawn a shell for a new session, optionally running ``command`` in it.

        Args:
            session_id: ID to use; generated when omitted.
            command: Command to submit right away. ``None`` opens a bare shell.

        Returns:
            The new session record.
        """
        session_id = session_id or self.generate_session_id()
        if session_id in self._sessions:
            raise SessionError(session_id, f"Session {session_id} already exists")

        shell = self._shell
        protocol = get_protocol(shell.kind)
        env = {**os.environ, **self._env, "TERM": self._term_name}

        try:
            process = self._spawner(
                shell.shell_path,
                list(shell.args),
                is_windows=shell.is_windows,
                rows=self._rows,
                cols=self._cols,
                cwd=self._cwd,
                env=env,
            )
        except Exception as e:
            logger.error("Error spawning pty process for session %s: %s", session_id, e)
            self._sessions[session_id] = TerminalSession(
                session_id=session_id,
                process=None,
                command=command or shell.shell_path,
                is_windows=shell.is_windows,
                protocol=protocol,
                status=SessionStatus.ERROR,
                exit_code=ExitCodes.PTY_SPAWN_ERROR,
            )
            raise SpawnError(session_id, e) from e

        session = TerminalSession(
            session_id=session_id,
            process=process,
            command=command or shell.shell_path,
            is_windows=shell.is_windows,
            protocol=protocol,
        )
        session.buffer.attach_loop(asyncio.get_running_loop())
        self._sessions[session_id] = session

        process.start(
            on_data=functools.partial(self._on_data, session_id, process),
            on_exit=functools.partial(self._on_exit, session_id, process),
        )
        logger.info("Created session %s (pid=%d)", session_id, process.pid)

        if self._wire:
            self._wire.send_session_created(session_id, session.command)

        if command:
            self._write_command(session, command)
        return session

    def write_input(self, session_id: str, data: str) -> None:
        """Forward raw keyboard input to the session's shell."""
        session = self._require_live(session_id)
        try:
            session.process.write(data)  # type: ignore[union-attr]
        except Exception as e:
            logger.error("Error writing input to session %s: %s", session_id, e)
            session.status = SessionStatus.ERROR
            raise SessionError(session_id, f"Failed to write to session {session_id}: {e}") from e

    def resize(self, session_id: str, cols: int, rows: int) -> None:
        session = self._require_live(session_id)
        session.process.resize(cols, rows)  # type: ignore[union-attr]

    def submit_command(self, session_id: str, command: str) -> TerminalSession:
        """Run a new command in an existing live session.

        Output and exit code from the previous command are discarded first,
        so the buffer only ever holds output of the current command.

        A session whose unblocked command has not reported an exit code yet
        is busy, since its marker still belongs to that command.
        """
        session = self._require_live(session_id)
        if session.status == SessionStatus.UNBLOCKED and session.exit_code is None:
            raise SessionBusyError(session_id)
        session.reset_for_command(command)
        self._write_command(session, command)
        return session

    def _write_command(self, session: TerminalSession, command: str) -> None:
        payload = session.protocol.command_payload(
            command, include_setup=not session.marker_ready
        )
        try:
            for chunk in payload:
                session.process.write(chunk)  # type: ignore[union-attr]
            session.marker_ready = True
        except Exception as e:
            logger.error(
                "Error writing command to session %s: %s", session.session_id, e
            )
            session.status = SessionStatus.ERROR
            session.exit_code = ExitCodes.GENERAL_ERROR
            if self._wire:
                self._wire.send_error(session.session_id, str(e))

    # ------------------------------------------------------------------
    # Process callbacks
    # ------------------------------------------------------------------

    def _on_data(self, session_id: str, process: PtyProcess, data: str) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.process is not process:
            return

        session.buffer.append(data)

        if session.exit_code is None:
            window = session.scan_tail + data
            exit_code = find_exit_code(window)
            if exit_code is not None:
                logger.debug("Exit code marker found for %s: %d", session_id, exit_code)
                session.exit_code = exit_code
            session.scan_tail = window[-CARRY_OVER_CHARS:]

        if self._wire:
            display = session.protocol.filter_for_display(data)
            if display:
                self._wire.send_output(session_id, display)

    def _on_exit(self, session_id: str, process: PtyProcess, exit_code: int | None) -> None:
        session = self._sessions.get(session_id)
        if session is None or session.process is not process:
            return

        session.process = None
        if session.exit_code is None:
            session.exit_code = exit_code if exit_code is not None else ExitCodes.GENERAL_ERROR
        if session.status != SessionStatus.TERMINATED:
            session.status = SessionStatus.EXITED
        logger.info(
            "Shell for session %s exited with code %s", session_id, session.exit_code
        )
        if self._wire:
            self._wire.send_exit(session_id, session.exit_code)

    # ------------------------------------------------------------------
    # Completion waiting
    # ------------------------------------------------------------------

    async def wait_for_completion(
        self, session_id: str, timeout: float | None = None
    ) -> CompletionResult:
        """Wait until the session's current command finishes.

        Resolves when the exit-code marker is seen (or the shell exits),
        when ``unblock()`` pushes a snapshot, or when the session is
        stopped. Raises ``SessionDisappearedError`` if the record vanishes
        first.

        Args:
            session_id: Session to wait on.
            timeout: Seconds before giving up with ``CompletionTimeoutError``.
                Defaults to the registry's ``completion_timeout`` (None = forever).
        """
        session = self._sessions.get(session_id)
        if session is not None and session.exit_code is not None:
            logger.info(
                "Command for session %s already completed with exit code %d",
                session_id,
                session.exit_code,
            )
            return self._completion_result(session)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not session.alive:
            raise SessionNotActiveError(session_id, session.status.value)

        fut: asyncio.Future[CompletionResult] = asyncio.get_running_loop().create_future()
        previous = self._waiters.pop(session_id, None)
        if previous is not None and not previous.done():
            previous.set_exception(WaitSupersededError(session_id))
        self._waiters[session_id] = fut

        poller = asyncio.create_task(self._poll_completion(session_id, session, fut))
        timeout = timeout if timeout is not None else self._completion_timeout
        try:
            if timeout is None:
                return await fut
            return await asyncio.wait_for(fut, timeout)
        except asyncio.TimeoutError:
            raise CompletionTimeoutError(session_id, timeout) from None
        finally:
            poller.cancel()
            if self._waiters.get(session_id) is fut:
                del self._waiters[session_id]

    async def _poll_completion(
        self,
        session_id: str,
        session: TerminalSession,
        fut: asyncio.Future[CompletionResult],
    ) -> None:
        """Poll for the exit code, waking early whenever output arrives."""
        while not fut.done():
            if session.exit_code is not None:
                self._resolve_waiter(session_id, self._completion_result(session))
                return
            if self._sessions.get(session_id) is not session:
                if self._waiters.get(session_id) is fut:
                    del self._waiters[session_id]
                if not fut.done():
                    fut.set_exception(SessionDisappearedError(session_id))
                return
            await session.buffer.wait_for_data(timeout=self._poll_interval)

    def _resolve_waiter(self, session_id: str, payload: CompletionResult) -> bool:
        fut = self._waiters.pop(session_id, None)
        if fut is None or fut.done():
            return False
        fut.set_result(payload)
        return True

    def _completion_result(self, session: TerminalSession) -> CompletionResult:
        if session.status in (SessionStatus.TERMINATED, SessionStatus.ERROR):
            final_status = session.status
        else:
            final_status = SessionStatus.COMPLETED
        if session.status in (SessionStatus.RUNNING, SessionStatus.UNBLOCKED):
            session.status = SessionStatus.COMPLETED
        output = format_output_with_exit_code(session.buffer.read_all(), session.exit_code)
        return session.result(output, final_status)

    def unblock(self, session_id: str, output: str) -> bool:
        """Record a consumer's snapshot of output so far and release the waiter.

        The process keeps running; a later ``wait_for_completion()`` picks
        up the eventual real exit code.

        Returns:
            True if an outstanding waiter was resolved.
        """
        session = self._require(session_id)
        session.last_unblocked_output = output
        session.last_unblocked_output_timestamp = datetime.now(timezone.utc)
        logger.info(
            "Unblocked output received for session %s (%d chars)",
            session_id,
            len(output or ""),
        )

        fut = self._waiters.get(session_id)
        if fut is None or fut.done():
            return False
        session.status = SessionStatus.UNBLOCKED
        early = format_output_with_exit_code(output, session.exit_code)
        resolved = self._resolve_waiter(session_id, session.result(early))
        logger.info("Early resolve triggered by unblock for session %s", session_id)
        return resolved

    def get_output(self, session_id: str) -> CompletionResult:
        """Current output and status, without waiting."""
        session = self._require(session_id)
        output = format_output_with_exit_code(session.buffer.read_all(), session.exit_code)
        return session.result(output)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def stop(self, session_id: str) -> TerminalSession:
        """Terminate a session's shell.

        The process handle is detached before the kill so nothing can write
        to a dying process. Stopping a session whose process is already gone
        is a no-op. The record stays in the registry until ``close()`` or
        ``cleanup_all()``.
        """
        session = self._require(session_id)
        process = session.process
        if process is None:
            logger.debug("Session %s already stopped (%s)", session_id, session.status)
            return session

        session.process = None
        try:
            kill_process(process, session.is_windows, session_id)
        finally:
            session.status = SessionStatus.TERMINATED
            if session.exit_code is None:
                session.exit_code = ExitCodes.MANUAL_TERMINATION
            output = format_output_with_exit_code(
                session.buffer.read_all(), session.exit_code
            )
            self._resolve_waiter(session_id, session.result(output))
            logger.info("Terminated session %s", session_id)
        return session

    def close(self, session_id: str) -> bool:
        """Stop a session and drop it from the registry.

        Returns False if the session was not tracked.
        """
        if session_id not in self._sessions:
            logger.warning("Attempted to close non-existent session: %s", session_id)
            return False
        try:
            self.stop(session_id)
        finally:
            self._sessions.pop(session_id, None)
            fut = self._waiters.pop(session_id, None)
            if fut is not None and not fut.done():
                fut.set_exception(SessionDisappearedError(session_id))
        return True

    def cleanup_all(self) -> None:
        """Stop every live session and clear all state. Called on shutdown."""
        logger.info("Cleaning up all terminal sessions")
        try:
            for session_id, session in list(self._sessions.items()):
                if not session.alive:
                    continue
                try:
                    self.stop(session_id)
                except Exception:
                    logger.exception("Error stopping session %s during cleanup", session_id)
        finally:
            for session_id, fut in list(self._waiters.items()):
                if not fut.done():
                    fut.set_exception(SessionDisappearedError(session_id))
            self._sessions.clear()
            self._waiters.clear()
        logger.info("All terminal sessions cleaned up")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions
