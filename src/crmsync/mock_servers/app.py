"""FastAPI mock CRM API for exercising the sync engine."""

import asyncio
import os
import random
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from crmsync.models.data_models import ENTITY_TYPES, MAX_PAGE_SIZE


DEFAULT_ENTITY_COUNT = 25

CURRENCIES = [
    {"id": 1, "code": "EUR", "name": "Euro", "symbol": "€"},
    {"id": 2, "code": "USD", "name": "US Dollar", "symbol": "$"},
]


def generate_records(entity_type: str, count: int, seed: int = 42) -> List[Dict[str, Any]]:
    """
    Generate deterministic records for an entity type.

    Args:
        entity_type: Plural entity type
        count: Number of records
        seed: Random seed for deterministic results

    Returns:
        Records ordered by add_time ascending
    """
    rng = random.Random(f"{seed}:{entity_type}")
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    label = entity_type[:-1].capitalize() if entity_type.endswith("s") else entity_type.capitalize()

    records = []
    for i in range(1, count + 1):
        added = base + timedelta(hours=i)
        updated = added + timedelta(minutes=rng.randint(0, 60 * 24 * 30))
        records.append({
            "id": i,
            "name": f"{label} {i}",
            "add_time": added.strftime("%Y-%m-%d %H:%M:%S"),
            "update_time": updated.strftime("%Y-%m-%d %H:%M:%S"),
            "active_flag": True,
        })
    return records


def _error(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": message},
        headers=headers,
    )


def create_mock_app(
    name: str = "mock-crm",
    entity_counts: Optional[Dict[str, int]] = None,
    random_seed: Optional[int] = 42,
    error_rate: float = 0.0,
    error_codes: Sequence[int] = (500, 502, 503),
    fail_first: int = 0,
    force_status: Optional[int] = None,
    rate_limit_after: Optional[int] = None,
    retry_after: int = 5,
    extra_latency_ms: int = 0,
) -> FastAPI:
    """
    Create a mock CRM API with configurable failure behavior.

    Args:
        name: Server name
        entity_counts: Records per entity type (default 25 for every known type)
        random_seed: Seed for deterministic data and error injection
        error_rate: Probability of answering with one of ``error_codes``
        error_codes: Status codes used for random errors
        fail_first: Number of initial requests answered with 503
        force_status: Answer every entity request with this status
        rate_limit_after: Answer 429 once this many entity requests were served
        retry_after: Retry-After value sent with 429 responses
        extra_latency_ms: Additional latency in milliseconds

    Returns:
        FastAPI application
    """
    app = FastAPI(title=f"Mock CRM API - {name}")
    rng = random.Random(random_seed)
    counts = entity_counts if entity_counts is not None else {t: DEFAULT_ENTITY_COUNT for t in ENTITY_TYPES}
    datasets = {t: generate_records(t, n, seed=random_seed or 0) for t, n in counts.items()}
    state = {"requests": 0}
    app.state.request_log = []

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy", "server": name}

    @app.get("/v1/currencies")
    async def currencies(limit: int = 100):
        return {"success": True, "data": CURRENCIES[:limit]}

    async def serve(entity_type: str, start: int, limit: int, sort: Optional[str]):
        state["requests"] += 1
        app.state.request_log.append({"entity_type": entity_type, "start": start, "limit": limit, "sort": sort})

        if extra_latency_ms > 0:
            await asyncio.sleep(extra_latency_ms / 1000.0)

        if force_status is not None:
            return _error(force_status, f"Forced status {force_status}")

        if rate_limit_after is not None and state["requests"] > rate_limit_after:
            return _error(429, "Rate limit exceeded", headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": "100",
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Used": "100",
            })

        if state["requests"] <= fail_first:
            return _error(503, "Service temporarily unavailable")

        if rng.random() < error_rate:
            return _error(rng.choice(list(error_codes)), "Simulated error")

        if entity_type not in datasets:
            return _error(404, "Item not found")

        if limit < 1 or limit > MAX_PAGE_SIZE:
            return _error(400, f"limit must be between 1 and {MAX_PAGE_SIZE}")

        records = datasets[entity_type]
        if sort and sort.lower().startswith("update_time"):
            records = sorted(records, key=lambda r: r["update_time"], reverse="desc" in sort.lower())

        page = records[start:start + limit]
        more = start + limit < len(records)
        return {
            "success": True,
            "data": page,
            "additional_data": {
                "pagination": {
                    "start": start,
                    "limit": limit,
                    "more_items_in_collection": more,
                    "next_start": start + limit if more else None,
                }
            },
        }

    @app.get("/v1/goals/find")
    async def find_goals(limit: int = 100):
        return await serve("goals", 0, limit, None)

    @app.get("/v1/{entity_type}")
    async def list_entities(entity_type: str, start: int = 0, limit: int = 100, sort: Optional[str] = None):
        """Get a page of entities in the CRM's pagination envelope."""
        return await serve(entity_type, start, limit, sort)

    return app


def create_app() -> FastAPI:
    """
    Factory function for uvicorn --factory.

    Reads error injection settings from the environment.
    """
    return create_mock_app(
        name=os.getenv("SERVER_NAME", "mock-crm"),
        random_seed=int(os.getenv("RANDOM_SEED", 42)),
        error_rate=float(os.getenv("ERROR_RATE", 0.0)),
        extra_latency_ms=int(os.getenv("EXTRA_LATENCY_MS", 0)),
    )
