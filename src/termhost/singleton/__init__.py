"""Singleton guard: one host per user, discoverable by its siblings."""

from termhost.singleton.discovery import DiscoveryFile
from termhost.singleton.errors import HostStartupError, LockContentionError
from termhost.singleton.launcher import ensure_host
from termhost.singleton.mutex import LauncherMutex

__all__ = [
    "DiscoveryFile",
    "HostStartupError",
    "LauncherMutex",
    "LockContentionError",
    "ensure_host",
]
