"""Singleton guard errors."""

from __future__ import annotations


class LockContentionError(Exception):
    """The launcher mutex stayed held for the whole retry budget."""

    def __init__(self, path: str, waited: float) -> None:
        super().__init__(f"Could not acquire launch lock {path} within {waited:g}s")
        self.path = path
        self.waited = waited


class HostStartupError(Exception):
    """A launched host never published its port."""
