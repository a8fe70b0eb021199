"""RPC front end: JSON-RPC 2.0 over TCP with Content-Length or line framing."""

from termhost.rpc.client import RpcClient, probe
from termhost.rpc.dispatcher import RpcDispatcher
from termhost.rpc.errors import (
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    RpcError,
)
from termhost.rpc.framing import FrameDecoder, encode_message
from termhost.rpc.server import RpcServer

__all__ = [
    "FrameDecoder",
    "INVALID_PARAMS",
    "INVALID_REQUEST",
    "METHOD_NOT_FOUND",
    "PARSE_ERROR",
    "RpcClient",
    "RpcDispatcher",
    "RpcError",
    "RpcServer",
    "SERVER_ERROR",
    "encode_message",
    "probe",
]
