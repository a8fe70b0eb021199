"""Message framing for the RPC byte stream.

Two framings are accepted on input, chosen per message by looking at the
start of the buffered bytes:

    Content-Length: <n>\\r\\n\\r\\n<n bytes of JSON>
    {...one JSON object per line...}

In line mode, lines that do not look like a JSON object (start with ``{``
and end with ``}``) are skipped. Responses always use the Content-Length
form.
"""

from __future__ import annotations

import json
import re
from typing import Any

from termhost.rpc.errors import PARSE_ERROR, RpcError

_HEADER_PREFIX = b"content-length"
_HEADER_END = b"\r\n\r\n"
_CONTENT_LENGTH_RE = re.compile(rb"content-length:\s*(\d+)", re.IGNORECASE)

# Returned by _next_frame for a consumed line that carried no message
_SKIPPED = object()


class FrameDecoder:
    """Incremental decoder: feed it bytes, get back complete messages.

    Each decoded item is either the parsed JSON value or an ``RpcError``
    with code -32700 for a frame whose body was not valid JSON. Incomplete
    frames stay buffered until more bytes arrive.
    """

    def __init__(self) -> None:
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        """Number of buffered bytes not yet decoded."""
        return len(self._buffer)

    def feed(self, data: bytes) -> list[Any]:
        self._buffer.extend(data)
        messages: list[Any] = []
        while True:
            frame = self._next_frame()
            if frame is None:
                break
            if frame is not _SKIPPED:
                messages.append(frame)
        return messages

    def _next_frame(self) -> Any:
        # Drop whitespace between frames (e.g. the newline after a body)
        start = 0
        while start < len(self._buffer) and self._buffer[start] in b" \t\r\n":
            start += 1
        if start:
            del self._buffer[:start]
        if not self._buffer:
            return None

        if self._buffer[: len(_HEADER_PREFIX)].lower() == _HEADER_PREFIX:
            return self._next_length_frame()
        return self._next_line_frame()

    def _next_length_frame(self) -> Any:
        header_end = self._buffer.find(_HEADER_END)
        if header_end < 0:
            return None

        match = _CONTENT_LENGTH_RE.match(bytes(self._buffer[:header_end]))
        body_start = header_end + len(_HEADER_END)
        if match is None:
            del self._buffer[:body_start]
            return RpcError(PARSE_ERROR, "Parse error: invalid Content-Length header")

        body_end = body_start + int(match.group(1))
        if len(self._buffer) < body_end:
            return None

        body = bytes(self._buffer[body_start:body_end])
        del self._buffer[:body_end]
        return _decode(body)

    def _next_line_frame(self) -> Any:
        newline = self._buffer.find(b"\n")
        if newline < 0:
            return None

        line = bytes(self._buffer[:newline]).strip()
        del self._buffer[: newline + 1]
        if not (line.startswith(b"{") and line.endswith(b"}")):
            return _SKIPPED
        return _decode(line)


def _decode(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        return RpcError(PARSE_ERROR, f"Parse error: {e}")


def encode_message(message: dict[str, Any]) -> bytes:
    """Frame a message for the wire with a Content-Length header."""
    body = json.dumps(message).encode("utf-8")
    return b"Content-Length: %d\r\n\r\n" % len(body) + body + b"\n"
