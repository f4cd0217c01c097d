"""Thread-safe aggregator for collecting sync run results."""

import threading
import time
from datetime import datetime, timezone
from typing import Dict, List

from crmsync.models.data_models import RunReport, RunSummary, SyncResult


class SyncRunAggregator:
    """
    Thread-safe aggregator for per-entity sync results.

    Uses locks to prevent race conditions when concurrent entity syncs
    report at the same time. Results for the same entity type are merged.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._results: Dict[str, SyncResult] = {}
        self._start_time: float = 0.0
        self._end_time: float = 0.0
        self._started_at: str = ""
        self._finished_at: str = ""

    def start_timer(self) -> None:
        """Start timing the run."""
        self._start_time = time.time()
        self._started_at = datetime.now(timezone.utc).isoformat()

    def stop_timer(self) -> None:
        """Stop timing the run."""
        self._end_time = time.time()
        self._finished_at = datetime.now(timezone.utc).isoformat()

    def add_result(self, result: SyncResult) -> None:
        with self._lock:
            existing = self._results.get(result.entity_type)
            self._results[result.entity_type] = existing.merge(result) if existing else result

    def get_results(self) -> List[SyncResult]:
        with self._lock:
            return [self._results[k] for k in sorted(self._results)]

    def get_summary(self) -> RunSummary:
        """
        Generate summary statistics.

        Returns:
            RunSummary with totals, processing time and success rate
        """
        with self._lock:
            results = list(self._results.values())
            processing_time = self._end_time - self._start_time if self._end_time > 0 else 0.0

        created = sum(r.created for r in results)
        updated = sum(r.updated for r in results)
        skipped = sum(r.skipped for r in results)
        errors = sum(r.errors for r in results)
        total = created + updated + skipped + errors

        return RunSummary(
            entities=len(results),
            records_fetched=sum(r.records_fetched for r in results),
            created=created,
            updated=updated,
            skipped=skipped,
            errors=errors,
            failed_entities=sum(1 for r in results if not r.success),
            processing_time_seconds=processing_time,
            success_rate=(total - errors) / total if total > 0 else 1.0,
        )

    def build_report(self) -> RunReport:
        return RunReport(
            summary=self.get_summary(),
            results=self.get_results(),
            started_at=self._started_at,
            finished_at=self._finished_at,
        )
