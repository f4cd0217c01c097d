"""Periodic API health probing."""

import threading
import time
from collections import deque
from dataclasses import asdict
from typing import Any, Callable, Deque, Dict, List, Optional

from crmsync.fetcher.transport import Transport
from crmsync.models.data_models import HealthRecord, HealthStats
from crmsync.monitoring.logger import StructuredLogger
from crmsync.store.counter_store import CounterStore


class HealthChecker:
    """
    Probes a lightweight endpoint and keeps a bounded history of results.

    The latest verdict is cached in the counter store for ``cache_ttl``
    seconds so that concurrent workers share one probe. Statistics are
    derived from the history on read.
    """

    HISTORY_SIZE = 50
    DEGRADATION_WINDOW = 5

    def __init__(
        self,
        transport: Transport,
        store: CounterStore,
        endpoint: str = "currencies",
        check_interval: float = 300.0,
        failure_threshold: int = 3,
        degradation_ms: float = 1000.0,
        cache_ttl: float = 60.0,
        enabled: bool = True,
        key_prefix: str = "crmsync:health",
        now: Callable[[], float] = time.time,
        timer: Callable[[], float] = time.perf_counter,
        logger: Optional[StructuredLogger] = None,
    ):
        self.transport = transport
        self.store = store
        self.endpoint = endpoint
        self.check_interval = check_interval
        self.failure_threshold = failure_threshold
        self.degradation_ms = degradation_ms
        self.cache_ttl = cache_ttl
        self.enabled = enabled
        self.key_prefix = key_prefix
        self._now = now
        self._timer = timer
        self.logger = logger or StructuredLogger("crmsync.health")
        self._lock = threading.Lock()
        self._history: Deque[HealthRecord] = deque(maxlen=self.HISTORY_SIZE)
        self._last_check_at: Optional[float] = None

    def _status_key(self) -> str:
        return f"{self.key_prefix}:status"

    async def is_healthy(self) -> bool:
        """Cached health verdict; probes when the cache is empty."""
        if not self.enabled:
            return True
        cached = await self.store.get(self._status_key())
        if cached is not None:
            return bool(cached)
        return (await self.check()).healthy

    async def check(self) -> HealthRecord:
        """
        Force a probe and record the outcome.

        Probe failures are recorded as unhealthy samples and never raised.
        """
        start = self._timer()
        try:
            response = await self.transport.call(self.endpoint, {"limit": 1})
            elapsed_ms = (self._timer() - start) * 1000
            record = HealthRecord(
                healthy=response.success,
                response_time_ms=round(elapsed_ms, 2),
                status_code=response.status_code,
                error=None if response.success else response.error,
                checked_at=self._now(),
                endpoint=self.endpoint,
            )
        except Exception as e:
            elapsed_ms = (self._timer() - start) * 1000
            record = HealthRecord(
                healthy=False,
                response_time_ms=round(elapsed_ms, 2),
                status_code=getattr(e, "status_code", None),
                error=str(e) or type(e).__name__,
                checked_at=self._now(),
                endpoint=self.endpoint,
            )

        with self._lock:
            self._history.append(record)
            self._last_check_at = record.checked_at

        await self.store.put(self._status_key(), record.healthy, ttl=self.cache_ttl)

        if record.healthy:
            self.logger.log(
                "health_check",
                endpoint=self.endpoint,
                healthy=True,
                elapsed_ms=record.response_time_ms,
            )
        else:
            self.logger.warning(
                "health_check",
                endpoint=self.endpoint,
                healthy=False,
                status=record.status_code,
                error=record.error,
                consecutive_failures=self.consecutive_failures(),
            )
        return record

    def should_perform_check(self) -> bool:
        if not self.enabled:
            return False
        with self._lock:
            last = self._last_check_at
        return last is None or self._now() - last >= self.check_interval

    def is_degraded(self) -> bool:
        """True when the mean latency of the last five checks exceeds the degradation threshold."""
        recent = self.recent_checks(self.DEGRADATION_WINDOW)
        if not recent:
            return False
        average = sum(r.response_time_ms for r in recent) / len(recent)
        return average > self.degradation_ms

    def consecutive_failures(self) -> int:
        with self._lock:
            history = list(self._history)
        failures = 0
        for record in reversed(history):
            if record.healthy:
                break
            failures += 1
        return failures

    def is_failure_threshold_exceeded(self) -> bool:
        return self.consecutive_failures() >= self.failure_threshold

    def recent_checks(self, limit: int = 10) -> List[HealthRecord]:
        """Newest checks last."""
        with self._lock:
            history = list(self._history)
        return history[-limit:] if limit > 0 else []

    def last_check(self) -> Optional[HealthRecord]:
        with self._lock:
            return self._history[-1] if self._history else None

    def stats(self) -> HealthStats:
        with self._lock:
            history = list(self._history)
        total = len(history)
        successful = sum(1 for r in history if r.healthy)
        times = [r.response_time_ms for r in history]
        return HealthStats(
            total_checks=total,
            successful_checks=successful,
            failed_checks=total - successful,
            success_rate=round(successful / total, 4) if total else 0.0,
            average_response_time_ms=round(sum(times) / total, 2) if total else 0.0,
            min_response_time_ms=min(times) if times else 0.0,
            max_response_time_ms=max(times) if times else 0.0,
        )

    async def status(self) -> Dict[str, Any]:
        last = self.last_check()
        cached = await self.store.get(self._status_key())
        return {
            "enabled": self.enabled,
            "endpoint": self.endpoint,
            "healthy": cached if cached is not None else (last.healthy if last else None),
            "degraded": self.is_degraded(),
            "consecutive_failures": self.consecutive_failures(),
            "failure_threshold_exceeded": self.is_failure_threshold_exceeded(),
            "last_check": last.checked_at if last else None,
            "stats": asdict(self.stats()),
        }

    async def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._last_check_at = None
        await self.store.delete(self._status_key())

    def enable(self) -> None:
        self.enabled = True

    def disable(self) -> None:
        self.enabled = False
