"""Local record store interface and in-memory implementation."""

import copy
import threading
import time
from typing import Any, Dict, List, Optional, Protocol, Tuple


class RecordStore(Protocol):
    """Persistence for synced remote records, keyed by entity type and remote id."""

    async def find_by_remote_id(self, entity_type: str, remote_id: Any) -> Optional[Dict[str, Any]]:
        ...

    async def upsert(
        self, entity_type: str, remote_id: Any, fields: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        """Create or update a record; returns (record, was_created)."""
        ...

    async def delete(self, entity_type: str, remote_id: Any) -> int:
        """Delete a record; returns the number of rows removed."""
        ...


class InMemoryRecordStore:
    """Thread-safe dict-backed record store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[Tuple[str, str], Dict[str, Any]] = {}

    @staticmethod
    def _key(entity_type: str, remote_id: Any) -> Tuple[str, str]:
        return (entity_type, str(remote_id))

    async def find_by_remote_id(self, entity_type: str, remote_id: Any) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(self._key(entity_type, remote_id))
            return copy.deepcopy(record) if record is not None else None

    async def upsert(
        self, entity_type: str, remote_id: Any, fields: Dict[str, Any]
    ) -> Tuple[Dict[str, Any], bool]:
        key = self._key(entity_type, remote_id)
        with self._lock:
            was_created = key not in self._records
            record = {
                "entity_type": entity_type,
                "remote_id": remote_id,
                "data": copy.deepcopy(fields),
                "synced_at": time.time(),
            }
            self._records[key] = record
            return copy.deepcopy(record), was_created

    async def delete(self, entity_type: str, remote_id: Any) -> int:
        with self._lock:
            return 1 if self._records.pop(self._key(entity_type, remote_id), None) is not None else 0

    def count(self, entity_type: Optional[str] = None) -> int:
        with self._lock:
            if entity_type is None:
                return len(self._records)
            return sum(1 for (etype, _) in self._records if etype == entity_type)

    def all(self, entity_type: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(r) for (etype, _), r in self._records.items() if etype == entity_type]
