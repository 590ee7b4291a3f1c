"""Event channel between backend workflows and the front-end.

Workflows call ``await bus.emit(name, payload)`` to publish a named event.
The web server subscribes and forwards every event to connected WebSocket
clients, mirroring the host-application event API the front-end listens on.

Event names:
  task-planning-progress  : a planning run reached a new step
  task-planning-complete  : a planning run finished (success or failure)

Delivery is best-effort: ``emit`` awaits every listener, and if any of them
raised it reports the failures together as one ``EventDeliveryError`` after
the remaining listeners have run. Callers decide whether that is fatal.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from orcascore.core.logging import get_logger

logger = get_logger("core.events")

PLANNING_PROGRESS = "task-planning-progress"
PLANNING_COMPLETE = "task-planning-complete"


@dataclass
class ChannelEvent:
    """A single named event sent to the UI."""
    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {"event": self.name, "payload": self.payload, "ts": self.timestamp}


Listener = Callable[[ChannelEvent], Awaitable[Any]]


class EventDeliveryError(RuntimeError):
    """One or more listeners failed to accept an event."""

    def __init__(self, event_name: str, errors: list[Exception]) -> None:
        detail = "; ".join(str(e) for e in errors)
        super().__init__(f"Failed to deliver '{event_name}': {detail}")
        self.event_name = event_name
        self.errors = errors


class EventBus:
    def __init__(self, history_size: int = 1000) -> None:
        self._listeners: list[Listener] = []
        self._history: deque[ChannelEvent] = deque(maxlen=history_size)

    def subscribe(self, listener: Listener) -> None:
        """Register an async listener (e.g. WebSocket broadcast)."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def clear_listeners(self) -> None:
        """Remove all listeners (useful for testing)."""
        self._listeners.clear()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    async def emit(self, name: str, payload: dict[str, Any]) -> ChannelEvent:
        event = ChannelEvent(name=name, payload=dict(payload))
        self._history.append(event)
        logger.debug("EVENT | %s | %s", name, payload.get("status", payload.get("message", "")))

        errors: list[Exception] = []
        for listener in tuple(self._listeners):
            try:
                await listener(event)
            except Exception as exc:
                errors.append(exc)
        if errors:
            raise EventDeliveryError(name, errors)
        return event

    def history(self, limit: int = 200, name: str | None = None) -> list[dict]:
        """Return recent events as dicts, oldest first."""
        items = [e for e in self._history if name is None or e.name == name]
        return [e.to_dict() for e in items[-limit:]]
