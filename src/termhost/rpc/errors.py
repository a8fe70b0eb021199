"""JSON-RPC error codes and the exception that carries them."""

from __future__ import annotations

from typing import Any

PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
SERVER_ERROR = -32000


class RpcError(Exception):
    """A failure that maps onto a JSON-RPC error object.

    Raised by method handlers inside the host, and by ``RpcClient`` when a
    response carries an ``error`` member.
    """

    def __init__(self, code: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RpcError:
        return cls(int(data.get("code", SERVER_ERROR)), str(data.get("message", "")))

    def __repr__(self) -> str:
        return f"RpcError(code={self.code}, message={self.message!r})"
