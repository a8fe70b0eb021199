"""TCP server for the RPC front end."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from termhost.rpc.dispatcher import RpcDispatcher
from termhost.rpc.framing import FrameDecoder, encode_message

logger = logging.getLogger(__name__)

READ_SIZE = 65536


class RpcServer:
    """Accepts RPC connections and dispatches every framed message.

    Requests on one connection are handled concurrently, so a long
    ``terminal/execute`` does not hold up ``terminal/unblock`` or
    ``terminal/stop`` sent after it. Each response is written in a single
    write call.
    """

    def __init__(self, dispatcher: RpcDispatcher, host: str = "127.0.0.1", port: int = 0) -> None:
        self.dispatcher = dispatcher
        self.host = host
        self.port = port
        self._server: asyncio.Server | None = None
        self._connections: set[asyncio.Task] = set()

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.is_serving()

    async def start(self) -> int:
        """Bind the listener and return the port actually in use."""
        self._server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        sockname = self._server.sockets[0].getsockname()
        self.port = sockname[1]
        logger.info("RPC server listening on %s:%d", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for task in list(self._connections):
            task.cancel()
        if self._connections:
            await asyncio.gather(*self._connections, return_exceptions=True)
        await self._server.wait_closed()
        self._server = None
        logger.info("RPC server stopped")

    async def _handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._connections.add(task)
        peer = writer.get_extra_info("peername")
        logger.info("RPC client connected: %s", peer)

        decoder = FrameDecoder()
        pending: set[asyncio.Task] = set()
        try:
            while True:
                data = await reader.read(READ_SIZE)
                if not data:
                    break
                for message in decoder.feed(data):
                    request = asyncio.create_task(self._respond(message, writer))
                    pending.add(request)
                    request.add_done_callback(pending.discard)
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("RPC client %s dropped: %s", peer, e)
        finally:
            for request in pending:
                request.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if decoder.pending:
                logger.debug("Discarding %d undecoded bytes from %s", decoder.pending, peer)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError):
                pass
            if task is not None:
                self._connections.discard(task)
            logger.info("RPC client disconnected: %s", peer)

    async def _respond(self, message: Any, writer: asyncio.StreamWriter) -> None:
        response = await self.dispatcher.handle(message)
        if response is None or writer.is_closing():
            return
        try:
            writer.write(encode_message(response))
            await writer.drain()
        except (ConnectionResetError, BrokenPipeError) as e:
            logger.debug("Could not deliver RPC response: %s", e)
