"""Process lifecycle: spawn and kill pty-backed shell processes.

POSIX hosts use the stdlib ``pty`` module with ``subprocess.Popen`` (not
``os.fork``, which deadlocks inside a running asyncio loop on macOS). Each
shell gets its own process group so a kill takes its children with it.

Windows hosts use pywinpty. Its ConPTY backend is known to raise spurious
assertion failures while creating and tearing down consoles, so spawn
falls back to the WinPTY backend once and kill swallows those assertions.

Output never goes through the loop's default executor: POSIX master fds
are watched with ``add_reader`` and each Windows console gets its own
reader thread.
"""

from __future__ import annotations

import asyncio
import codecs
import enum
import logging
import os
import select
import signal
import struct
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int | None], None]

READ_SIZE = 4096
WRITE_WAIT = 1.0


@runtime_checkable
class PtyProcess(Protocol):
    """What the session registry needs from a pty-backed process."""

    @property
    def pid(self) -> int: ...

    @property
    def alive(self) -> bool: ...

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        """Begin delivering output and the exit notification."""
        ...

    def write(self, data: str) -> None: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self) -> None: ...


class WindowsBackend(enum.StrEnum):
    CONPTY = "conpty"
    WINPTY = "winpty"


def is_backend_assertion(exc: BaseException) -> bool:
    """True for the assertion failures the Windows console backends raise spuriously."""
    if isinstance(exc, AssertionError):
        return True
    message = str(exc)
    return "Assertion failed" in message or "assertion" in message.lower()


# ---------------------------------------------------------------------------
# POSIX
# ---------------------------------------------------------------------------


@dataclass
class PosixPtyProcess:
    """A shell running on the slave side of a stdlib pty pair.

    The master fd is non-blocking and watched with ``loop.add_reader``, so
    an idle session costs no thread.
    """

    argv: list[str]
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    rows: int = 30
    cols: int = 80

    _master_fd: int = field(default=-1, init=False)
    _proc: subprocess.Popen | None = field(default=None, init=False)
    _pgid: int = field(default=0, init=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, init=False)
    _reading: bool = field(default=False, init=False)
    _exit_task: asyncio.Task | None = field(default=None, init=False)
    _reap_future: asyncio.Future | None = field(default=None, init=False)
    _killed: bool = field(default=False, init=False)
    _exited: bool = field(default=False, init=False)

    def spawn(self) -> None:
        """Create the pty pair and launch the shell in a new process group."""
        import pty

        master_fd, slave_fd = pty.openpty()
        self._master_fd = master_fd
        _set_winsize(slave_fd, self.rows, self.cols)

        try:
            self._proc = subprocess.Popen(
                self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,  # Creates new process group
                env=self.env or None,
                cwd=self.cwd,
            )
        except Exception:
            os.close(master_fd)
            self._master_fd = -1
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._pgid = os.getpgid(self._proc.pid)
        logger.info(
            "Spawned pty process pid=%d pgid=%d cmd=%s",
            self._proc.pid,
            self._pgid,
            " ".join(self.argv),
        )

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        """Watch the master fd on the running loop until EOF."""
        self._loop = asyncio.get_running_loop()
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        os.set_blocking(self._master_fd, False)
        self._loop.add_reader(self._master_fd, self._on_readable, decoder, on_data, on_exit)
        self._reading = True

    def _on_readable(
        self,
        decoder: codecs.IncrementalDecoder,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> None:
        try:
            data = os.read(self._master_fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the slave side is closed
            data = b""

        if data:
            text = decoder.decode(data)
            if text:
                try:
                    on_data(text)
                except Exception:
                    logger.exception("Error in data callback for pid %d", self.pid)
            return

        self._stop_reading()
        self._exited = True
        self._close_master()
        self._exit_task = self._loop.create_task(self._report_exit(on_exit))  # type: ignore[union-attr]

    async def _report_exit(self, on_exit: ExitCallback) -> None:
        exit_code = await asyncio.get_running_loop().run_in_executor(None, self._reap)
        if self._killed:
            return
        logger.info("pty process %d exited (code=%s)", self.pid, exit_code)
        try:
            on_exit(exit_code)
        except Exception:
            logger.exception("Error in exit callback for pid %d", self.pid)

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False

    def _close_master(self) -> None:
        if self._master_fd < 0:
            return
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1

    def _reap(self) -> int | None:
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout=2)
        except subprocess.TimeoutExpired:
            logger.warning("pty process %d did not exit in time", self.pid)
            return self._proc.poll()

    def write(self, data: str) -> None:
        if self._master_fd < 0:
            raise OSError("pty is closed")
        payload = memoryview(data.encode("utf-8"))
        while payload:
            try:
                written = os.write(self._master_fd, payload)
            except BlockingIOError:
                # Master fd is non-blocking once reading has started
                select.select([], [self._master_fd], [], WRITE_WAIT)
                continue
            payload = payload[written:]

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows
        _set_winsize(self._master_fd, rows, cols)

    def kill(self) -> None:
        """Kill the whole process group and release the pty.

        The child is reaped in the loop's executor when called from a
        running loop, so a slow exit never blocks other sessions.
        """
        if self._killed:
            return
        self._killed = True
        self._stop_reading()
        try:
            os.killpg(self._pgid, signal.SIGKILL)
            logger.info("Killed pty process group %d", self._pgid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._pgid)
        self._close_master()

        if self._proc is None or self._proc.poll() is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._reap()
            return
        self._reap_future = loop.run_in_executor(None, self._reap)

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc is not None else 0

    @property
    def alive(self) -> bool:
        return self._proc is not None and not self._killed and not self._exited


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    import fcntl
    import termios

    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


# ---------------------------------------------------------------------------
# Windows
# ---------------------------------------------------------------------------


@dataclass
class WindowsPtyProcess:
    """A shell attached to a pywinpty console."""

    argv: list[str]
    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    rows: int = 30
    cols: int = 80
    backend: WindowsBackend = WindowsBackend.CONPTY

    _proc: Any = field(default=None, init=False)
    _reader_thread: threading.Thread | None = field(default=None, init=False)
    _killed: bool = field(default=False, init=False)

    def spawn(self) -> None:
        from winpty import Backend, PtyProcess as WinPtyProcess

        backend = Backend.ConPTY if self.backend == WindowsBackend.CONPTY else Backend.WinPTY
        self._proc = WinPtyProcess.spawn(
            self.argv,
            cwd=self.cwd,
            env=self.env or None,
            dimensions=(self.rows, self.cols),
            backend=backend,
        )
        logger.info(
            "Spawned pty process pid=%d backend=%s cmd=%s",
            self.pid,
            self.backend,
            " ".join(self.argv),
        )

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        """Read the console on a dedicated thread and hand chunks to the loop."""
        loop = asyncio.get_running_loop()
        self._reader_thread = threading.Thread(
            target=self._read_loop,
            args=(loop, on_data, on_exit),
            name=f"winpty-reader-{self.pid}",
            daemon=True,
        )
        self._reader_thread.start()

    def _read_loop(
        self,
        loop: asyncio.AbstractEventLoop,
        on_data: DataCallback,
        on_exit: ExitCallback,
    ) -> None:
        try:
            while not self._killed:
                try:
                    text = self._proc.read(READ_SIZE)
                except EOFError:
                    break
                if text:
                    loop.call_soon_threadsafe(on_data, text)
                elif not self._proc.isalive():
                    break
        except Exception:
            logger.exception("pty reader for pid %d failed", self.pid)
        finally:
            if not self._killed and not loop.is_closed():
                loop.call_soon_threadsafe(self._report_exit, on_exit)

    def _report_exit(self, on_exit: ExitCallback) -> None:
        if self._killed:
            return
        exit_code = self._proc.exitstatus
        logger.info("pty process %d exited (code=%s)", self.pid, exit_code)
        try:
            on_exit(exit_code)
        except Exception:
            logger.exception("Error in exit callback for pid %d", self.pid)

    def write(self, data: str) -> None:
        self._proc.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows
        self._proc.setwinsize(rows, cols)

    def kill(self) -> None:
        if self._killed:
            return
        self._killed = True
        self._proc.terminate(force=True)
        logger.info("Killed pty process %d", self.pid)

    @property
    def pid(self) -> int:
        return self._proc.pid if self._proc is not None else 0

    @property
    def alive(self) -> bool:
        return self._proc is not None and not self._killed and self._proc.isalive()


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


def spawn_process(
    shell_path: str,
    argv: list[str],
    *,
    is_windows: bool,
    rows: int = 30,
    cols: int = 80,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> PtyProcess:
    """Spawn ``shell_path argv...`` on a new pseudo-terminal.

    On Windows a ConPTY assertion failure is retried once on WinPTY; any
    other error propagates.
    """
    cwd = cwd or os.path.expanduser("~")
    full_argv = [shell_path, *argv]
    env = env or {}

    if not is_windows:
        proc = PosixPtyProcess(argv=full_argv, cwd=cwd, env=env, rows=rows, cols=cols)
        proc.spawn()
        return proc

    try:
        win_proc = WindowsPtyProcess(
            argv=full_argv, cwd=cwd, env=env, rows=rows, cols=cols
        )
        win_proc.spawn()
        return win_proc
    except Exception as e:
        if not is_backend_assertion(e):
            raise
        logger.warning("ConPTY spawn failed (%s), retrying with WinPTY", e)

    win_proc = WindowsPtyProcess(
        argv=full_argv,
        cwd=cwd,
        env=env,
        rows=rows,
        cols=cols,
        backend=WindowsBackend.WINPTY,
    )
    win_proc.spawn()
    return win_proc


def kill_process(process: PtyProcess | None, is_windows: bool, session_id: str = "") -> None:
    """Kill a pty process with the platform's strategy.

    Windows backend assertion failures are logged and suppressed; any other
    failure is logged and re-raised.
    """
    if process is None:
        logger.warning("Attempted to kill null process for session %s", session_id)
        return
    try:
        process.kill()
    except Exception as e:
        if is_windows and is_backend_assertion(e):
            logger.warning(
                "Suppressed console assertion during kill for session %s: %s",
                session_id,
                e,
            )
            return
        logger.error("Error killing process for session %s: %s", session_id, e)
        raise
