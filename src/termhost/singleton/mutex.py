"""Launcher mutex: serialises host launches across processes.

An advisory lock file created with ``O_CREAT | O_EXCL``. The file records
its owner (pid, host, time) and a token unique to each acquisition. The
holder refreshes the file's mtime from a heartbeat thread; a lock whose
file has not been touched for ``stale`` seconds is treated as abandoned
and broken. The file is only ever deleted by whoever still finds its own
token in it (the holder on release, or a breaker checking the stale token
it saw). While the lock is held, it is released on normal interpreter
exit, on SIGINT/SIGTERM/SIGHUP and on uncaught exceptions.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import signal
import socket
import sys
import threading
import time
import uuid
from pathlib import Path
from types import FrameType, TracebackType
from typing import Any

from tenacity import (
    AsyncRetrying,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from termhost.singleton.errors import LockContentionError

logger = logging.getLogger(__name__)

_RELEASE_SIGNALS = tuple(
    getattr(signal, name) for name in ("SIGINT", "SIGTERM", "SIGHUP") if hasattr(signal, name)
)


class _LockHeld(Exception):
    pass


def _read_owner(path: Path) -> dict[str, Any] | None:
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError):
        return None


def _token_of(owner: dict[str, Any] | None) -> str | None:
    if not isinstance(owner, dict):
        return None
    return owner.get("token")


class LauncherMutex:
    """Cross-process lock file with staleness detection.

    Usage:
        with LauncherMutex(path, stale=5.0, wait=10.0):
            ...  # only one launcher at a time gets here
    """

    def __init__(
        self,
        path: str | Path,
        stale: float = 5.0,
        wait: float = 10.0,
        min_delay: float = 0.1,
        max_delay: float = 1.0,
    ) -> None:
        self.path = Path(path).expanduser()
        self.stale = stale
        self.wait = wait
        self.min_delay = min_delay
        self.max_delay = max_delay
        self._held = False
        self._token: str | None = None
        self._state_lock = threading.Lock()
        self._heartbeat_stop = threading.Event()
        self._heartbeat_thread: threading.Thread | None = None
        self._previous_handlers: dict[int, Any] = {}
        self._previous_excepthook: Any = None

    @property
    def held(self) -> bool:
        return self._held

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        """Take the lock, retrying with capped exponential backoff.

        Raises:
            LockContentionError: Still held by someone else after ``wait`` seconds.
        """
        if self._held:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            Retrying(**self._retry_policy())(self._try_acquire)
        except _LockHeld:
            raise LockContentionError(str(self.path), self.wait) from None
        self._on_acquired()

    async def acquire_async(self) -> None:
        """Like ``acquire()`` but sleeps between attempts without blocking the loop."""
        if self._held:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)

        try:
            async for attempt in AsyncRetrying(**self._retry_policy()):
                with attempt:
                    self._try_acquire()
        except _LockHeld:
            raise LockContentionError(str(self.path), self.wait) from None
        self._on_acquired()

    def _retry_policy(self) -> dict[str, Any]:
        return {
            "retry": retry_if_exception_type(_LockHeld),
            "stop": stop_after_delay(self.wait),
            "wait": wait_exponential(
                multiplier=self.min_delay, min=self.min_delay, max=self.max_delay
            ),
            "before_sleep": before_sleep_log(logger, logging.DEBUG),
            "reraise": True,
        }

    def _on_acquired(self) -> None:
        self._held = True
        self._install_release_hooks()
        self._start_heartbeat()
        logger.debug("Acquired launch lock %s", self.path)

    def _try_acquire(self) -> None:
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            if self._break_if_stale():
                # Stale or just released
                return self._try_acquire()
            raise _LockHeld() from None

        token = uuid.uuid4().hex
        info = {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "token": token,
            "acquired_at": time.time(),
        }
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info, f)
        self._token = token

    def _break_if_stale(self) -> bool:
        owner = _read_owner(self.path)
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            # Released between our open and stat
            return True
        if age <= self.stale:
            return False

        logger.info(
            "Breaking stale launch lock %s (age %.1fs, owner %s)",
            self.path,
            age,
            owner,
        )
        self._remove_if_token(_token_of(owner))
        return True

    def _remove_if_token(self, token: str | None) -> bool:
        """Delete the lock file only if it still carries ``token``.

        The file is renamed aside before its token is checked, so a lock
        created by someone else in the meantime is never deleted; it is
        linked back into place instead.
        """
        aside = self.path.with_name(f"{self.path.name}.{uuid.uuid4().hex}")
        try:
            os.rename(self.path, aside)
        except FileNotFoundError:
            return False

        try:
            if _token_of(_read_owner(aside)) == token:
                return True
            try:
                os.link(aside, self.path)
            except FileExistsError:
                logger.warning("Launch lock %s was replaced while being checked", self.path)
            return False
        finally:
            aside.unlink(missing_ok=True)

    def owner(self) -> dict[str, Any] | None:
        """Owner info recorded in the lock file, if readable."""
        return _read_owner(self.path)

    def release(self) -> None:
        """Release the lock. Safe to call more than once.

        The file is left alone if another launcher has taken it over.
        """
        with self._state_lock:
            if not self._held:
                return
            self._held = False
        self._stop_heartbeat()
        token, self._token = self._token, None
        try:
            if not self._remove_if_token(token):
                logger.warning("Launch lock %s is no longer ours, leaving it", self.path)
        except OSError as e:
            logger.warning("Could not remove launch lock %s: %s", self.path, e)
        self._uninstall_release_hooks()
        logger.debug("Released launch lock %s", self.path)

    async def __aenter__(self) -> LauncherMutex:
        await self.acquire_async()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.release()

    def __enter__(self) -> LauncherMutex:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _start_heartbeat(self) -> None:
        """Keep the lock file's mtime fresh for as long as the lock is held."""
        self._heartbeat_stop.clear()
        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat,
            args=(self._token,),
            name="termhost-launch-lock-heartbeat",
            daemon=True,
        )
        self._heartbeat_thread.start()

    def _stop_heartbeat(self) -> None:
        self._heartbeat_stop.set()
        thread, self._heartbeat_thread = self._heartbeat_thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _heartbeat(self, token: str | None) -> None:
        interval = max(self.stale / 3, 0.01)
        while not self._heartbeat_stop.wait(interval):
            owner = _read_owner(self.path)
            if owner is not None and _token_of(owner) != token:
                logger.warning("Launch lock %s was taken over, heartbeat stopped", self.path)
                return
            try:
                os.utime(self.path)
            except OSError as e:
                logger.debug("Could not refresh launch lock %s: %s", self.path, e)

    # ------------------------------------------------------------------
    # Release hooks
    # ------------------------------------------------------------------

    def _install_release_hooks(self) -> None:
        atexit.register(self.release)

        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return
        for signum in _RELEASE_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._on_signal)

    def _uninstall_release_hooks(self) -> None:
        atexit.unregister(self.release)

        if sys.excepthook == self._excepthook:
            sys.excepthook = self._previous_excepthook or sys.__excepthook__
        self._previous_excepthook = None

        if threading.current_thread() is threading.main_thread():
            for signum, handler in self._previous_handlers.items():
                signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _on_signal(self, signum: int, frame: FrameType | None) -> None:
        previous = self._previous_handlers.get(signum)
        logger.info("Signal %d received, releasing launch lock", signum)
        self.release()
        if previous is signal.SIG_IGN:
            return
        if callable(previous):
            previous(signum, frame)
            return
        raise SystemExit(128 + signum)

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        previous = self._previous_excepthook or sys.__excepthook__
        self.release()
        previous(exc_type, exc, tb)
