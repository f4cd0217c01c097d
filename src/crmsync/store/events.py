"""Domain event sinks."""

import threading
from typing import Any, Dict, List, Optional, Protocol, Tuple

from crmsync.monitoring.logger import StructuredLogger


ENTITY_CREATED = "entity.created"
ENTITY_UPDATED = "entity.updated"
ENTITY_DELETED = "entity.deleted"
ENTITY_MERGED = "entity.merged"


class EventSink(Protocol):
    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        ...


class InMemoryEventSink:
    """Records emitted events; used by tests and dry runs."""

    def __init__(self):
        self._lock = threading.Lock()
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event_name, dict(payload)))

    def named(self, event_name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for name, payload in self.events if name == event_name]


class LoggingEventSink:
    """Writes each event as a structured log line."""

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self.logger = logger or StructuredLogger("crmsync.events")

    async def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        self.logger.log(event_name, **payload)
