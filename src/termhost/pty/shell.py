"""Shell launch policy: default shell binary and arguments per OS family."""

from __future__ import annotations

import enum
import platform
from dataclasses import dataclass, field


class ShellKind(enum.StrEnum):
    POSIX = "posix"
    POWERSHELL = "powershell"


DEFAULT_SHELL: dict[str, str] = {
    "windows": "powershell.exe",
    "linux": "bash",
    "darwin": "bash",
}

DEFAULT_SHELL_ARGS: dict[ShellKind, list[str]] = {
    ShellKind.POWERSHELL: ["-NoLogo", "-NoProfile"],
    ShellKind.POSIX: [],
}

# Fallback for Unix-like systems we don't know about
_FALLBACK_SHELL = "sh"


@dataclass(frozen=True)
class ShellConfig:
    """Which shell to launch and how."""

    shell_path: str
    args: list[str] = field(default_factory=list)
    is_windows: bool = False
    kind: ShellKind = ShellKind.POSIX


def get_shell_config(system: str | None = None) -> ShellConfig:
    """Return the default shell for an OS family.

    Args:
        system: ``platform.system()``-style name ("Windows", "Linux",
            "Darwin", ...). Defaults to the host OS.
    """
    name = (system or platform.system()).lower()
    if name in ("windows", "win32"):
        return ShellConfig(
            shell_path=DEFAULT_SHELL["windows"],
            args=list(DEFAULT_SHELL_ARGS[ShellKind.POWERSHELL]),
            is_windows=True,
            kind=ShellKind.POWERSHELL,
        )
    if name in DEFAULT_SHELL:
        return ShellConfig(
            shell_path=DEFAULT_SHELL[name],
            args=list(DEFAULT_SHELL_ARGS[ShellKind.POSIX]),
        )
    return ShellConfig(shell_path=_FALLBACK_SHELL)
