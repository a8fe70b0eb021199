"""Tests for termhost.pty.buffer.OutputBuffer."""

from __future__ import annotations

import asyncio

from termhost.pty.buffer import OutputBuffer


class TestOutputBufferBasics:
    def test_empty(self) -> None:
        buf = OutputBuffer()
        assert buf.read_all() == ""

    def test_append_keeps_chunks_verbatim(self) -> None:
        buf = OutputBuffer()
        buf.append("\x1b[32mgreen\x1b[0m\r\n")
        buf.append("next")
        assert buf.read_all() == "\x1b[32mgreen\x1b[0m\r\nnext"

    def test_empty_chunk_ignored(self) -> None:
        buf = OutputBuffer()
        buf.append("")
        assert buf.read_all() == ""

    def test_repeated_reads_are_stable(self) -> None:
        buf = OutputBuffer()
        for part in ("a", "b", "c"):
            buf.append(part)
        assert buf.read_all() == "abc"
        assert buf.read_all() == "abc"
        buf.append("d")
        assert buf.read_all() == "abcd"


class TestOutputBufferClear:
    def test_clear_drops_output(self) -> None:
        buf = OutputBuffer()
        buf.append("hello")
        buf.clear()
        assert buf.read_all() == ""
        buf.append("again")
        assert buf.read_all() == "again"


class TestOutputBufferWait:
    async def test_wait_wakes_on_append(self) -> None:
        buf = OutputBuffer()
        buf.attach_loop()
        waiter = asyncio.create_task(buf.wait_for_data(timeout=2))
        await asyncio.sleep(0)
        buf.append("data")
        assert await waiter is True

    async def test_wait_times_out(self) -> None:
        buf = OutputBuffer()
        buf.attach_loop()
        assert await buf.wait_for_data(timeout=0.01) is False

    async def test_wait_without_loop_sleeps(self) -> None:
        buf = OutputBuffer()
        assert await buf.wait_for_data(timeout=0.01) is False

    async def test_event_resets_after_wake(self) -> None:
        buf = OutputBuffer()
        buf.attach_loop()
        buf.append("x")
        assert await buf.wait_for_data(timeout=1) is True
        assert await buf.wait_for_data(timeout=0.01) is False
