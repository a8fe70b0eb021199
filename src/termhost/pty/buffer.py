"""Output buffer for terminal sessions."""

from __future__ import annotations

import asyncio
import threading


class OutputBuffer:
    """Append-only accumulator for raw pty output.

    Holds everything a session printed since its last command was issued.
    Chunks are kept exactly as the pty delivered them (ANSI sequences,
    ``\\r\\n`` line endings and marker lines included); cleanup happens when
    output is formatted for a consumer.

    An ``asyncio.Event`` is set whenever new data arrives, allowing
    completion waiters to ``await`` instead of sleeping a full poll
    interval. Call ``attach_loop()`` once from the asyncio thread to
    enable this.
    """

    def __init__(self) -> None:
        self._chunks: list[str] = []
        self._lock = threading.Lock()
        self._data_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Attach an asyncio event loop so append() can signal waiters.

        Must be called from the asyncio thread (or pass an explicit loop).
        """
        self._loop = loop or asyncio.get_running_loop()
        self._data_event = asyncio.Event()

    def append(self, chunk: str) -> None:
        """Append a raw output chunk."""
        if not chunk:
            return
        with self._lock:
            self._chunks.append(chunk)
        if self._data_event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._data_event.set)

    async def wait_for_data(self, timeout: float | None = None) -> bool:
        """Wait until new data is appended (or timeout).

        Returns True if data arrived, False on timeout.
        Resets the event so the next call blocks again.
        """
        if self._data_event is None:
            await asyncio.sleep(timeout if timeout is not None else 0.05)
            return False
        try:
            await asyncio.wait_for(self._data_event.wait(), timeout=timeout)
            self._data_event.clear()
            return True
        except asyncio.TimeoutError:
            return False

    def read_all(self) -> str:
        """Everything buffered since the last clear, as one string."""
        with self._lock:
            text = "".join(self._chunks)
            # Collapse so repeated reads stay cheap
            self._chunks = [text] if text else []
            return text

    def clear(self) -> None:
        """Drop buffered output."""
        with self._lock:
            self._chunks.clear()
