"""Completion marker protocol.

Shells don't tell us over a pty when a command has finished. After each
submitted command we ask the shell to print a sentinel line carrying the
exit status::

    __EXITCODE_MARK__:0

Each shell family needs its own syntax for that, so the protocol is a small
strategy object looked up by ``ShellKind``. The same module also owns the
filters that keep marker lines out of anything a consumer sees.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from termhost.pty.shell import ShellKind

EXIT_CODE_MARK = "__EXITCODE_MARK__"
EXIT_MARK_FUNCTION = "__exitmark"

# Digits must be followed by a non-digit, otherwise a marker cut in the
# middle of the number by a read boundary would match early.
EXIT_CODE_RE = re.compile(re.escape(EXIT_CODE_MARK) + r":(-?\d+)(?=\D)")

_LINE_SPLIT_RE = re.compile(r"\r\n|\r|\n")

# Enough trailing context to re-scan a marker split across two reads.
CARRY_OVER_CHARS = len(EXIT_CODE_MARK) + 24


class ExitCodes:
    """Exit codes the host assigns itself (everything else comes from the shell)."""

    SUCCESS = 0
    MANUAL_TERMINATION = -2
    GENERAL_ERROR = 1
    PTY_SPAWN_ERROR = 2


@dataclass(frozen=True)
class MarkerProtocol:
    """Shell-specific snippets for emitting the exit-code marker.

    Attributes:
        kind: Shell family this protocol applies to.
        setup: Written once per session before the first command
            (e.g. a function definition). Empty if not needed.
        emit: Written after every command to print the marker line.
        prompt_pattern: Regex for the shell's prompt, used to keep the
            prompt visible when a chunk contained nothing but markers.
    """

    kind: ShellKind
    setup: str = ""
    emit: str = ""
    prompt_pattern: re.Pattern[str] | None = None

    def command_payload(self, command: str, include_setup: bool) -> list[str]:
        """Writes needed to run ``command`` and report its exit status, in order."""
        writes: list[str] = []
        if include_setup and self.setup:
            writes.append(self.setup)
        writes.append(f"{command}\r")
        writes.append(self.emit)
        return writes

    def filter_for_display(self, chunk: str) -> str:
        """Strip marker lines from a raw output chunk before it reaches a consumer.

        Chunks that don't mention a marker pass through untouched. If
        filtering leaves only whitespace but the chunk carried a prompt,
        just the prompt is returned so the UI doesn't get a blank update.
        """
        if EXIT_CODE_MARK not in chunk and EXIT_MARK_FUNCTION not in chunk:
            return chunk

        kept = [line for line in _LINE_SPLIT_RE.split(chunk) if not _is_marker_line(line)]
        filtered = "\r\n".join(kept)
        if filtered.strip():
            return filtered

        if self.prompt_pattern is not None:
            match = self.prompt_pattern.search(chunk)
            if match:
                return match.group(0)
        return ""


def _is_marker_line(line: str) -> bool:
    # Covers the bare sentinel, the echoed emit command, echoed function
    # definitions and prompt-prefixed invocations.
    return EXIT_CODE_MARK in line or EXIT_MARK_FUNCTION in line


_POSIX = MarkerProtocol(
    kind=ShellKind.POSIX,
    emit=f"echo {EXIT_CODE_MARK}:$?\r",
)

# $LASTEXITCODE is only updated by native executables; cmdlets report
# through $?. Both are captured before anything else runs in the function.
_POWERSHELL = MarkerProtocol(
    kind=ShellKind.POWERSHELL,
    setup=(
        f"function {EXIT_MARK_FUNCTION} {{ $ok = $?; "
        "$code = if ($LASTEXITCODE -ne $null) { $LASTEXITCODE } "
        "elseif ($ok) { 0 } else { 1 }; "
        "$global:LASTEXITCODE = $null; "
        f'Write-Host "{EXIT_CODE_MARK}:$code" }}\r'
        "clear\r"
    ),
    emit=f"{EXIT_MARK_FUNCTION}\r",
    prompt_pattern=re.compile(r"PS [^>]*>"),
)

_PROTOCOLS: dict[ShellKind, MarkerProtocol] = {
    ShellKind.POSIX: _POSIX,
    ShellKind.POWERSHELL: _POWERSHELL,
}


def get_protocol(kind: ShellKind) -> MarkerProtocol:
    """Look up the marker protocol for a shell family."""
    return _PROTOCOLS[kind]


def register_protocol(protocol: MarkerProtocol) -> None:
    """Register (or replace) the marker protocol for a shell family."""
    _PROTOCOLS[protocol.kind] = protocol


def find_exit_code(text: str) -> int | None:
    """Return the exit code from the first complete marker in ``text``."""
    match = EXIT_CODE_RE.search(text)
    if match is None:
        return None
    return int(match.group(1))


def strip_marker_lines(output: str) -> str:
    """Remove every line mentioning a marker from accumulated output."""
    lines = _LINE_SPLIT_RE.split(output or "")
    return "\r\n".join(line for line in lines if not _is_marker_line(line))


def format_output_with_exit_code(output: str, exit_code: int | None) -> str:
    """Strip markers and append an ``Exit Code: <n>`` trailer once known."""
    result = strip_marker_lines(output)
    if exit_code is not None:
        if result and not result.endswith(("\n", "\r")):
            result += "\r\n"
        result += f"Exit Code: {exit_code}\r\n"
    return result
