"""Shared fixtures: a scriptable pty process and a registry wired to it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from termhost.pty.manager import SessionRegistry
from termhost.pty.process import DataCallback, ExitCallback
from termhost.pty.shell import get_shell_config
from termhost.session.wire import Wire


@dataclass
class FakeProcess:
    """In-memory stand-in for a pty-backed shell.

    Tests drive it with ``emit()`` (shell output) and ``exit()`` (process
    exit); everything the registry writes lands in ``writes``.
    """

    pid: int = 4242
    writes: list[str] = field(default_factory=list)
    size: tuple[int, int] | None = None
    kill_count: int = 0
    fail_write: bool = False
    kill_error: Exception | None = None
    _on_data: DataCallback | None = None
    _on_exit: ExitCallback | None = None

    @property
    def alive(self) -> bool:
        return self.kill_count == 0

    def start(self, on_data: DataCallback, on_exit: ExitCallback) -> None:
        self._on_data = on_data
        self._on_exit = on_exit

    def write(self, data: str) -> None:
        if self.fail_write:
            raise OSError("pty is closed")
        self.writes.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def kill(self) -> None:
        self.kill_count += 1
        if self.kill_error is not None:
            raise self.kill_error

    def emit(self, text: str) -> None:
        assert self._on_data is not None
        self._on_data(text)

    def exit(self, code: int | None) -> None:
        assert self._on_exit is not None
        self._on_exit(code)


class FakeSpawner:
    """Process factory recording every spawn."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.processes: list[FakeProcess] = []
        self.calls: list[tuple[str, list[str], dict[str, Any]]] = []

    def __call__(self, shell_path: str, argv: list[str], **kwargs: Any) -> FakeProcess:
        self.calls.append((shell_path, argv, kwargs))
        if self.error is not None:
            raise self.error
        process = FakeProcess(pid=1000 + len(self.processes))
        self.processes.append(process)
        return process

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def wire() -> Wire:
    return Wire()


@pytest.fixture
def registry(spawner: FakeSpawner, wire: Wire) -> SessionRegistry:
    return SessionRegistry(
        wire,
        spawner=spawner,
        shell=get_shell_config("Linux"),
        poll_interval=0.01,
    )
