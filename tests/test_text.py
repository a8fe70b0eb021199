"""Tests for termhost.pty.text."""

from __future__ import annotations

from termhost.pty.text import clean_output, sanitize_binary_output, strip_ansi


class TestStripAnsi:
    def test_colors(self) -> None:
        assert strip_ansi("\x1b[31mred\x1b[0m") == "red"

    def test_private_modes(self) -> None:
        assert strip_ansi("\x1b[?2004hprompt$ ") == "prompt$ "

    def test_osc_title(self) -> None:
        assert strip_ansi("\x1b]0;user@host: ~\x07$ ") == "$ "

    def test_plain_text_unchanged(self) -> None:
        assert strip_ansi("no escapes here") == "no escapes here"


class TestSanitize:
    def test_keeps_whitespace(self) -> None:
        assert sanitize_binary_output("a\tb\r\nc") == "a\tb\r\nc"

    def test_drops_control_chars(self) -> None:
        assert sanitize_binary_output("a\x00b\x07c\x7f") == "abc"

    def test_clean_output(self) -> None:
        assert clean_output("\x1b[1mok\x1b[0m\x00\r\n") == "ok\r\n"
