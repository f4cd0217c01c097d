"""Structured logging for sync monitoring."""

import json
import logging
from typing import Any, Optional


class StructuredLogger:
    """Structured logger with uniform schema."""

    def __init__(self, name: str = "crmsync", level: str = "INFO"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, level.upper()))

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)

    def log(self, event: str, level: int = logging.INFO, **kwargs: Any) -> None:
        """
        Log structured event.

        Standard keys: event, entity_type, page, status, attempt, elapsed_ms,
                      kind, batch_size, usage_percent
        """
        log_data = {"event": event, **kwargs}
        self.logger.log(level, json.dumps(log_data, default=str))

    def debug(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.DEBUG, **kwargs)

    def warning(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.WARNING, **kwargs)

    def error(self, event: str, **kwargs: Any) -> None:
        self.log(event, level=logging.ERROR, **kwargs)

    def fetch_start(self, entity_type: str, page: int, limit: int) -> None:
        self.log("fetch_start", entity_type=entity_type, page=page, limit=limit)

    def fetch_success(self, entity_type: str, page: int, records: int, elapsed_ms: float) -> None:
        self.log("fetch_success", entity_type=entity_type, page=page, records=records, elapsed_ms=elapsed_ms)

    def fetch_error(
        self,
        entity_type: str,
        page: int,
        status: Optional[int],
        error: str,
        attempt: int,
        kind: Optional[str] = None,
    ) -> None:
        self.log(
            "fetch_error",
            level=logging.WARNING,
            entity_type=entity_type,
            page=page,
            status=status,
            error=error,
            attempt=attempt,
            kind=kind,
        )

    def circuit_breaker_state(self, kind: str, state: str, failures: int = 0) -> None:
        level = logging.WARNING if state == "open" else logging.INFO
        self.log("circuit_breaker", level=level, kind=kind, cb_state=state, failures=failures)

    def batch_processed(self, entity_type: str, batch_size: int, elapsed_ms: float) -> None:
        self.log("batch_processed", entity_type=entity_type, batch_size=batch_size, elapsed_ms=elapsed_ms)

    def memory_alert(self, usage_percent: float, threshold: float, critical: bool = False) -> None:
        self.log(
            "memory_alert",
            level=logging.ERROR if critical else logging.WARNING,
            usage_percent=usage_percent,
            threshold=threshold,
            critical=critical,
        )

    def sync_complete(self, entity_type: str, **counts: Any) -> None:
        self.log("sync_complete", entity_type=entity_type, **counts)

    def merge_detected(self, entity_type: str, merged_id: Any, surviving_id: Any, correlation_id: str) -> None:
        self.log(
            "merge_detected",
            entity_type=entity_type,
            merged_id=merged_id,
            surviving_id=surviving_id,
            correlation_id=correlation_id,
        )
