"""RPC dispatcher: route JSON-RPC requests to method handlers."""

from __future__ import annotations

import logging
from typing import Any

from termhost.config import TerminalConfig
from termhost.pty.manager import SessionRegistry
from termhost.rpc.errors import INVALID_REQUEST, METHOD_NOT_FOUND, SERVER_ERROR, RpcError
from termhost.rpc.methods import DEFAULT_METHODS, RpcContext, RpcMethod

logger = logging.getLogger(__name__)


def error_response(request_id: Any, error: RpcError) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error.to_dict()}


def result_response(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


class RpcDispatcher:
    """Registry of RPC methods plus the request/response envelope.

    Every request yields exactly one response carrying either ``result``
    or ``error``. Messages without an ``id`` member are notifications:
    they are dispatched but never answered.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        terminal: TerminalConfig | None = None,
        methods: list[type[RpcMethod]] | None = None,
    ) -> None:
        self.context = RpcContext(registry=registry, terminal=terminal or TerminalConfig())
        self._methods: dict[str, RpcMethod] = {}
        for method_cls in methods or DEFAULT_METHODS:
            self.register(method_cls(self.context))

    def register(self, method: RpcMethod) -> None:
        """Register a method handler instance."""
        if method.name in self._methods:
            logger.warning("RPC method %s already registered, overwriting", method.name)
        self._methods[method.name] = method

    async def handle(self, message: Any) -> dict[str, Any] | None:
        """Handle one decoded message and build its response.

        Args:
            message: A decoded JSON value, or the ``RpcError`` the framing
                layer produced for an unparseable frame.

        Returns:
            The response object, or None for notifications.
        """
        if isinstance(message, RpcError):
            return error_response(None, message)

        is_request = isinstance(message, dict)
        request_id = message.get("id") if is_request else None
        notification = is_request and "method" in message and "id" not in message

        try:
            result = await self._dispatch(message)
        except RpcError as e:
            if notification:
                logger.warning("Notification failed: %s", e.message)
                return None
            return error_response(request_id, e)
        except Exception as e:
            logger.error("Error handling RPC message: %s", e, exc_info=True)
            if notification:
                return None
            return error_response(request_id, RpcError(SERVER_ERROR, f"Internal error: {e}"))

        if notification:
            return None
        return result_response(request_id, result)

    async def _dispatch(self, message: Any) -> Any:
        if not isinstance(message, dict):
            raise RpcError(INVALID_REQUEST, "Invalid request")
        method_name = message.get("method")
        if not method_name or not isinstance(method_name, str):
            raise RpcError(INVALID_REQUEST, "Invalid request")

        method = self._methods.get(method_name)
        if method is None:
            raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method_name}")

        logger.info("Handling RPC method %s", method_name)
        return await method(message.get("params"))

    def __contains__(self, name: str) -> bool:
        return name in self._methods
