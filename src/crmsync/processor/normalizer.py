"""Record normalization at the transport boundary.

Remote payloads arrive in several shapes: a list of records, a single record,
a wrapper object holding a list, or SDK objects instead of plain dicts. Every
caller downstream of the transport works with ``List[Dict[str, Any]]`` only,
so the conversion happens here and nowhere else.
"""

from collections.abc import Mapping
from typing import Any, Dict, List, Optional


def normalize_value(value: Any) -> Any:
    """
    Recursively convert objects into plain dicts and lists.

    Handles mappings, sequences, pydantic models (``model_dump``) and plain
    objects (``__dict__``). Scalars are returned unchanged.
    """
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(k): normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [normalize_value(v) for v in value]
    if hasattr(value, "model_dump"):
        return normalize_value(value.model_dump())
    if hasattr(value, "__dict__"):
        return {k: normalize_value(v) for k, v in vars(value).items() if not k.startswith("_")}
    return value


def normalize_record(raw: Any) -> Optional[Dict[str, Any]]:
    """Convert a single raw record into a dict, or None if it is not record-shaped."""
    normalized = normalize_value(raw)
    return normalized if isinstance(normalized, dict) else None


def normalize_records(data: Any) -> List[Dict[str, Any]]:
    """
    Normalize a response ``data`` field into a list of record dicts.

    Args:
        data: Raw ``data`` value from an API response

    Returns:
        List of record dicts; non-record items are dropped
    """
    if data is None:
        return []

    normalized = normalize_value(data)

    if isinstance(normalized, dict):
        if "id" in normalized:
            return [normalized]
        # Wrapper objects such as {"goals": [...]}
        lists = [v for v in normalized.values() if isinstance(v, list)]
        if len(lists) == 1:
            normalized = lists[0]
        else:
            return [v for v in normalized.values() if isinstance(v, dict)]

    if not isinstance(normalized, list):
        return []

    return [item for item in normalized if isinstance(item, dict)]


def extract_remote_id(record: Dict[str, Any]) -> Any:
    """Return the record's remote id, or None when it is missing or blank."""
    remote_id = record.get("id")
    if remote_id is None or (isinstance(remote_id, str) and not remote_id.strip()):
        return None
    return remote_id
