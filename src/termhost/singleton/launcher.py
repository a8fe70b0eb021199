"""Launcher: make sure exactly one host is running and return its port.

    1. A discovery file whose port answers ``initialize`` means a host is up.
    2. Otherwise take the launcher mutex, look again (another launcher may
       have just finished), drop a discovery file nobody answers on, and
       spawn a detached host.
    3. Poll for the discovery file until the new host publishes its port.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from typing import Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from termhost.config import TermhostConfig
from termhost.rpc.client import probe
from termhost.singleton.discovery import DiscoveryFile
from termhost.singleton.errors import HostStartupError
from termhost.singleton.mutex import LauncherMutex

logger = logging.getLogger(__name__)

DISCOVERY_POLL_INTERVAL = 0.2

HostSpawner = Callable[[TermhostConfig], subprocess.Popen]


class _PortNotPublished(Exception):
    pass


def connect_host(config: TermhostConfig) -> str:
    """Address clients should dial for a host bound to ``config.rpc.host``."""
    host = config.rpc.host
    if host in ("0.0.0.0", "", "::"):
        return "127.0.0.1"
    return host


def spawn_host(config: TermhostConfig) -> subprocess.Popen:
    """Start ``termhost serve`` as a detached background process."""
    env = {
        **os.environ,
        "TERMHOST_DISCOVERY_FILE": str(config.singleton.discovery_path),
        "TERMHOST_RPC_HOST": config.rpc.host,
    }
    if config.rpc.port:
        env["TERMHOST_RPC_PORT"] = str(config.rpc.port)
    if config.log_file:
        env["TERMHOST_LOG_FILE"] = config.log_file

    kwargs: dict = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = (
            subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
        )
    else:
        kwargs["start_new_session"] = True

    argv = [sys.executable, "-m", "termhost", "serve"]
    process = subprocess.Popen(
        argv,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        env=env,
        **kwargs,
    )
    logger.info("Spawned host process pid=%d", process.pid)
    return process


async def find_running_host(config: TermhostConfig) -> int | None:
    """Port of a live host named by the discovery file, if any."""
    discovery = DiscoveryFile(config.singleton.discovery_path)
    port = await discovery.read_port()
    if port is None:
        return None
    if await probe(connect_host(config), port):
        return port
    logger.warning("Discovery file %s names port %d but nothing answers", discovery.path, port)
    return None


async def wait_for_port(
    discovery: DiscoveryFile,
    timeout: float,
    process: subprocess.Popen | None = None,
) -> int:
    """Poll the discovery file until it holds a port.

    Raises:
        HostStartupError: The host exited early or the timeout passed.
    """
    try:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_PortNotPublished),
            stop=stop_after_delay(timeout),
            wait=wait_fixed(DISCOVERY_POLL_INTERVAL),
        ):
            with attempt:
                if process is not None and process.poll() is not None:
                    raise HostStartupError(
                        f"Host process exited with code {process.returncode} before publishing its port"
                    )
                port = await discovery.read_port()
                if port is None:
                    raise _PortNotPublished()
    except RetryError:
        raise HostStartupError(
            f"Host did not write {discovery.path} within {timeout:g}s"
        ) from None
    return port


async def ensure_host(
    config: TermhostConfig,
    spawner: HostSpawner = spawn_host,
) -> int:
    """Return the port of the running host, launching one if needed."""
    port = await find_running_host(config)
    if port is not None:
        logger.info("Host already running on port %d", port)
        return port

    singleton = config.singleton
    discovery = DiscoveryFile(singleton.discovery_path)
    mutex = LauncherMutex(singleton.mutex_path, stale=singleton.mutex_stale, wait=singleton.mutex_wait)

    async with mutex:
        port = await find_running_host(config)
        if port is not None:
            logger.info("Host started by another launcher on port %d", port)
            return port

        if discovery.exists():
            logger.info("Removing stale discovery file %s", discovery.path)
            discovery.remove()

        process = spawner(config)
        port = await wait_for_port(discovery, singleton.startup_timeout, process)

    logger.info("Host launched on port %d", port)
    return port
