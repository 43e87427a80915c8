"""Wire protocol: decouples the session manager from the UI.

The manager pushes session events (output, exit, session count) onto the
wire; a UI subscribes and feeds output into its terminal widgets.  The
same manager can then drive a desktop shell, a CLI pipe, or tests.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    OUTPUT = "output"
    EXIT = "exit"
    SESSION_COUNT = "session_count"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: manager -> UI subscribers.

    Single-producer, multi-consumer broadcast.  Implements the manager's
    event sink (``send_output`` / ``send_exit`` / ``send_session_count``).
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

    def send_output(self, session_id: str, data: str) -> None:
        self.send(
            WireEvent(type=EventType.OUTPUT, data={"session_id": session_id, "data": data})
        )

    def send_exit(self, session_id: str, exit_code: int | None) -> None:
        """Notify subscribers that a session's process exited on its own."""
        self.send(
            WireEvent(
                type=EventType.EXIT,
                data={"session_id": session_id, "exit_code": exit_code},
            )
        )

    def send_session_count(self, count: int) -> None:
        self.send(WireEvent(type=EventType.SESSION_COUNT, data={"count": count}))

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
