"""Wire protocol: decouples the session registry from its consumers.

Events flow from the registry to whoever is watching the terminals (a
terminal front-end, the host's log, tests). Consumers subscribe to the wire
and receive every event on their own queue. Output on the wire has already
been through the marker filter.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    SESSION_CREATED = "session_created"
    OUTPUT = "output"
    EXIT = "exit"
    ERROR = "error"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: registry -> consumer subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_session_created(self, session_id: str, command: str) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_CREATED,
                data={"session_id": session_id, "command": command},
            )
        )

    def send_output(self, session_id: str, data: str) -> None:
        self.send(
            WireEvent(type=EventType.OUTPUT, data={"session_id": session_id, "data": data})
        )

    def send_exit(self, session_id: str, exit_code: int | None) -> None:
        """Notify subscribers that a session's shell process exited."""
        self.send(
            WireEvent(
                type=EventType.EXIT,
                data={"session_id": session_id, "exit_code": exit_code},
            )
        )

    def send_error(self, session_id: str, error: str) -> None:
        self.send(
            WireEvent(type=EventType.ERROR, data={"session_id": session_id, "error": error})
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
