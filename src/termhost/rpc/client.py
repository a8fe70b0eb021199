"""Async RPC client used by the CLI and the launcher's liveness probe."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Any

from termhost.rpc.errors import RpcError
from termhost.rpc.framing import FrameDecoder, encode_message

logger = logging.getLogger(__name__)


class RpcClient:
    """One connection to a termhost RPC server.

    Calls are serialised on the connection; use one client per concurrent
    caller.

    Usage:
        async with RpcClient("127.0.0.1", port) as client:
            result = await client.execute("ls -la")
    """

    def __init__(self, host: str, port: int, timeout: float | None = None) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._decoder = FrameDecoder()
        self._backlog: list[Any] = []
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.wait_for(
            asyncio.open_connection(self.host, self.port), self.timeout
        )
        logger.debug("Connected to RPC server %s:%d", self.host, self.port)

    async def close(self) -> None:
        if self._writer is None:
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionResetError, BrokenPipeError):
            pass
        self._reader = self._writer = None

    async def __aenter__(self) -> RpcClient:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """Send a request and wait for its response.

        Raises:
            RpcError: The server answered with an error object.
            ConnectionError: The server closed the connection first.
        """
        if self._writer is None:
            await self.connect()
        assert self._writer is not None

        async with self._lock:
            request_id = next(self._ids)
            request = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                request["params"] = params
            self._writer.write(encode_message(request))
            await self._writer.drain()

            response = await asyncio.wait_for(self._read_response(request_id), self.timeout)

        if "error" in response:
            raise RpcError.from_dict(response["error"])
        return response.get("result")

    async def _read_response(self, request_id: int) -> dict[str, Any]:
        assert self._reader is not None
        while True:
            while self._backlog:
                message = self._backlog.pop(0)
                if isinstance(message, RpcError):
                    raise message
                if isinstance(message, dict) and message.get("id") == request_id:
                    return message
                logger.debug("Ignoring unexpected RPC message: %s", message)

            data = await self._reader.read(65536)
            if not data:
                raise ConnectionError("RPC server closed the connection")
            self._backlog.extend(self._decoder.feed(data))

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def initialize(self) -> dict[str, Any]:
        return await self.call("initialize", {"clientInfo": {"name": "termhost-cli"}})

    async def execute(self, command: str, session_id: str | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {"command": command}
        if session_id:
            params["sessionId"] = session_id
        return await self.call("terminal/execute", params)

    async def output(self, session_id: str) -> dict[str, Any]:
        return await self.call("terminal/output", {"sessionId": session_id})

    async def stop(self, session_id: str) -> dict[str, Any]:
        return await self.call("terminal/stop", {"sessionId": session_id})

    async def sessions(self) -> list[dict[str, Any]]:
        result = await self.call("terminal/get_sessions", {})
        return result.get("sessions", [])

    async def unblock(self, session_id: str, output: str) -> dict[str, Any]:
        return await self.call("terminal/unblock", {"sessionId": session_id, "output": output})


async def probe(host: str, port: int, timeout: float = 2.0) -> bool:
    """True if an RPC server answers ``initialize`` at ``host:port``."""
    client = RpcClient(host, port, timeout=timeout)
    try:
        await client.connect()
        await client.initialize()
        return True
    except (OSError, asyncio.TimeoutError, RpcError) as e:
        logger.debug("RPC probe of %s:%d failed: %s", host, port, e)
        return False
    finally:
        await client.close()
