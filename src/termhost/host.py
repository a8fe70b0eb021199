"""Host process: wires the registry, RPC server and discovery file together."""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field

from termhost.config import TermhostConfig
from termhost.pty.manager import ProcessFactory, SessionRegistry
from termhost.pty.process import spawn_process
from termhost.rpc.client import probe
from termhost.rpc.dispatcher import RpcDispatcher
from termhost.rpc.server import RpcServer
from termhost.session.wire import EventType, Wire
from termhost.singleton.discovery import DiscoveryFile
from termhost.singleton.errors import HostStartupError
from termhost.singleton.launcher import connect_host

logger = logging.getLogger(__name__)


@dataclass
class Host:
    """All components of a running host."""

    config: TermhostConfig
    wire: Wire
    registry: SessionRegistry
    dispatcher: RpcDispatcher
    server: RpcServer
    discovery: DiscoveryFile
    _wire_task: asyncio.Task | None = field(default=None, init=False)
    _published: bool = field(default=False, init=False)

    @property
    def port(self) -> int:
        return self.server.port

    async def start(self) -> int:
        """Claim the discovery file, bind the listener and publish the port.

        Raises:
            HostStartupError: Another host answers on the published port.
        """
        existing = await self.discovery.read_port()
        if existing is not None:
            if await probe(connect_host(self.config), existing):
                raise HostStartupError(f"A host is already running on port {existing}")
            logger.warning("Removing stale discovery file %s (port %d)", self.discovery.path, existing)
            self.discovery.remove()

        self._wire_task = asyncio.create_task(_log_wire_events(self.wire))
        port = await self.server.start()
        await self.discovery.write_port(port)
        self._published = True
        return port

    async def shutdown(self) -> None:
        logger.info("Shutting down host")
        try:
            await self.server.stop()
            self.registry.cleanup_all()
        finally:
            if self._published:
                self.discovery.remove()
                self._published = False
            self.wire.close()
            if self._wire_task is not None:
                await asyncio.gather(self._wire_task, return_exceptions=True)


def build_host(config: TermhostConfig, spawner: ProcessFactory = spawn_process) -> Host:
    """Set up all components of a host. Nothing is started yet."""
    wire = Wire()
    registry = SessionRegistry.from_config(config.terminal, wire=wire, spawner=spawner)
    dispatcher = RpcDispatcher(registry, config.terminal)
    server = RpcServer(dispatcher, host=config.rpc.host, port=config.rpc.port)
    discovery = DiscoveryFile(config.singleton.discovery_path)
    return Host(
        config=config,
        wire=wire,
        registry=registry,
        dispatcher=dispatcher,
        server=server,
        discovery=discovery,
    )


async def _log_wire_events(wire: Wire) -> None:
    queue = wire.subscribe()
    while True:
        event = await queue.get()
        if event is None:
            break
        d = event.data
        if event.type == EventType.SESSION_CREATED:
            logger.debug("Session %s started: %s", d.get("session_id"), d.get("command"))
        elif event.type == EventType.EXIT:
            logger.info("Session %s exited with code %s", d.get("session_id"), d.get("exit_code"))
        elif event.type == EventType.ERROR:
            logger.error("Session %s error: %s", d.get("session_id"), d.get("error"))


async def run_host(config: TermhostConfig, stop_event: asyncio.Event | None = None) -> None:
    """Run a host until SIGINT/SIGTERM (or ``stop_event``) and then clean up."""
    host = build_host(config)
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
            installed.append(signum)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C raises instead
            pass

    try:
        port = await host.start()
        logger.info("Host ready on port %d (discovery file %s)", port, host.discovery.path)
        await stop_event.wait()
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)
        await host.shutdown()
