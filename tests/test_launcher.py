"""Tests for termhost.singleton.launcher."""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import AsyncIterator
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from termhost.config import TermhostConfig
from termhost.singleton.discovery import DiscoveryFile
from termhost.singleton.errors import HostStartupError
from termhost.singleton.launcher import connect_host, ensure_host, wait_for_port


@pytest.fixture
def config(tmp_path: Path) -> TermhostConfig:
    config = TermhostConfig()
    config.singleton.discovery_file = str(tmp_path / "port.lock")
    config.singleton.mutex_file = str(tmp_path / "launch.lock")
    config.singleton.startup_timeout = 1.0
    return config


@pytest.fixture
async def listener() -> AsyncIterator[int]:
    """A TCP server that answers ``initialize`` like a host would."""
    from termhost.rpc.dispatcher import RpcDispatcher
    from termhost.rpc.server import RpcServer

    server = RpcServer(RpcDispatcher(MagicMock()), port=0)
    port = await server.start()
    yield port
    await server.stop()


def _running_process() -> MagicMock:
    process = MagicMock(spec=subprocess.Popen)
    process.poll.return_value = None
    process.pid = 4321
    return process


class TestConnectHost:
    def test_wildcard_maps_to_loopback(self, config: TermhostConfig) -> None:
        config.rpc.host = "0.0.0.0"
        assert connect_host(config) == "127.0.0.1"

    def test_explicit_host_kept(self, config: TermhostConfig) -> None:
        config.rpc.host = "10.0.0.5"
        assert connect_host(config) == "10.0.0.5"


class TestWaitForPort:
    async def test_port_published_later(self, tmp_path: Path) -> None:
        discovery = DiscoveryFile(tmp_path / "port.lock")

        async def publish() -> None:
            await asyncio.sleep(0.3)
            await discovery.write_port(6000)

        publisher = asyncio.create_task(publish())
        assert await wait_for_port(discovery, timeout=2.0) == 6000
        await publisher

    async def test_timeout(self, tmp_path: Path) -> None:
        with pytest.raises(HostStartupError, match="did not write"):
            await wait_for_port(DiscoveryFile(tmp_path / "port.lock"), timeout=0.3)

    async def test_process_died(self, tmp_path: Path) -> None:
        process = MagicMock(spec=subprocess.Popen)
        process.poll.return_value = 1
        process.returncode = 1
        with pytest.raises(HostStartupError, match="exited with code 1"):
            await wait_for_port(DiscoveryFile(tmp_path / "port.lock"), 2.0, process)


class TestEnsureHost:
    async def test_existing_live_host(self, config: TermhostConfig, listener: int) -> None:
        await DiscoveryFile(config.singleton.discovery_path).write_port(listener)
        spawner = MagicMock()
        assert await ensure_host(config, spawner=spawner) == listener
        spawner.assert_not_called()

    async def test_launches_when_missing(self, config: TermhostConfig) -> None:
        discovery = DiscoveryFile(config.singleton.discovery_path)

        def spawner(cfg: TermhostConfig) -> MagicMock:
            asyncio.get_running_loop().create_task(discovery.write_port(7777))
            return _running_process()

        assert await ensure_host(config, spawner=spawner) == 7777
        assert not config.singleton.mutex_path.exists()

    async def test_stale_discovery_file_replaced(self, config: TermhostConfig) -> None:
        discovery = DiscoveryFile(config.singleton.discovery_path)
        placeholder = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
        dead_port = placeholder.sockets[0].getsockname()[1]
        placeholder.close()
        await placeholder.wait_closed()
        await discovery.write_port(dead_port)

        spawned: list[TermhostConfig] = []

        def spawner(cfg: TermhostConfig) -> MagicMock:
            spawned.append(cfg)
            # The stale file must be gone before the new host starts
            assert not discovery.exists()
            asyncio.get_running_loop().create_task(discovery.write_port(8888))
            return _running_process()

        assert await ensure_host(config, spawner=spawner) == 8888
        assert len(spawned) == 1

    async def test_startup_failure_releases_mutex(self, config: TermhostConfig) -> None:
        config.singleton.startup_timeout = 0.3
        with pytest.raises(HostStartupError):
            await ensure_host(config, spawner=lambda cfg: _running_process())
        assert not config.singleton.mutex_path.exists()
