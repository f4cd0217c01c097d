"""Test fixtures with deterministic CRM data for CI stability."""

import random
from typing import Any, Dict, List, Optional


def get_sample_records(
    entity_type: str = "deals",
    count: int = 20,
    seed: int = 42,
    start_id: int = 1,
) -> List[Dict[str, Any]]:
    """
    Generate deterministic CRM records for testing.

    Args:
        entity_type: Entity type used in record names
        count: Number of records to generate
        seed: Random seed for deterministic results
        start_id: First remote id

    Returns:
        List of record dictionaries
    """
    rng = random.Random(seed)
    label = entity_type.rstrip("s").capitalize()

    records = []
    for i in range(start_id, start_id + count):
        records.append({
            "id": i,
            "name": f"{label} {i}",
            "value": round(rng.uniform(100.0, 5000.0), 2),
            "owner_id": rng.randint(1, 5),
            "active_flag": True,
        })
    return records


def get_records_with_invalid_ids(count: int = 10) -> List[Dict[str, Any]]:
    """Records where every third one lacks a usable id."""
    records: List[Dict[str, Any]] = []
    for i in range(1, count + 1):
        if i % 3 == 0:
            records.append({"id": None if i % 2 else "  ", "name": f"Broken {i}"})
        else:
            records.append({"id": i, "name": f"Record {i}"})
    return records


def webhook_payload(
    action: str,
    entity: str,
    entity_id: Any,
    current: Optional[Dict[str, Any]] = None,
    previous: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a v1 webhook payload (meta.object / current / previous)."""
    meta: Dict[str, Any] = {"action": action, "object": entity, "id": entity_id}
    if correlation_id is not None:
        meta["correlation_id"] = correlation_id
    return {"meta": meta, "current": current, "previous": previous}


def webhook_payload_v2(
    action: str,
    entity: str,
    entity_id: Any,
    data: Optional[Dict[str, Any]] = None,
    previous: Optional[Dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build a v2 webhook payload (meta.entity / data)."""
    meta: Dict[str, Any] = {"action": action, "entity": entity, "entity_id": entity_id}
    if correlation_id is not None:
        meta["correlation_id"] = correlation_id
    return {"meta": meta, "data": data, "previous": previous}
