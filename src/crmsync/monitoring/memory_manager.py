"""Adaptive batch sizing under memory pressure."""

import gc
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import psutil

from crmsync.models.data_models import MemorySample
from crmsync.models.errors import OutOfMemoryError
from crmsync.monitoring.logger import StructuredLogger


# (used_bytes, limit_bytes)
MemoryReading = Tuple[int, int]


def psutil_sampler(limit_bytes: Optional[int] = None) -> Callable[[], MemoryReading]:
    """
    Build a sampler reading this process's RSS.

    Args:
        limit_bytes: Memory limit to measure against; total system memory when None
    """
    process = psutil.Process()

    def sample() -> MemoryReading:
        used = process.memory_info().rss
        limit = limit_bytes or psutil.virtual_memory().total
        return used, limit

    return sample


class MemoryManager:
    """
    Shrinks and grows the page size based on process memory usage.

    Above the soft threshold the batch shrinks by up to 50% per call
    (proportional to how far usage is over the threshold) and never drops
    below ``min_batch_size``. When usage is more than 20 points below the
    threshold the batch grows back by 10% per call up to ``max_batch_size``.
    """

    HISTORY_SIZE = 100

    def __init__(
        self,
        threshold_percent: float = 80.0,
        critical_percent: float = 95.0,
        min_batch_size: int = 10,
        max_batch_size: int = 500,
        force_gc: bool = True,
        gc_every_pages: int = 10,
        memory_limit_bytes: Optional[int] = None,
        sampler: Optional[Callable[[], MemoryReading]] = None,
        collector: Callable[[], int] = gc.collect,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize memory manager.

        Args:
            threshold_percent: Soft threshold where batches start shrinking
            critical_percent: Usage at which check_threshold raises
            min_batch_size: Lower bound for the adaptive batch size
            max_batch_size: Upper bound and starting batch size
            force_gc: Collect garbage whenever usage is above the soft threshold
            gc_every_pages: Interval for collect_if_due
            memory_limit_bytes: Limit used by the default psutil sampler
            sampler: Callable returning (used_bytes, limit_bytes)
            collector: Garbage collection hook (default: gc.collect)
            now: Clock for sample timestamps
            logger: Optional structured logger
        """
        if min_batch_size > max_batch_size:
            raise ValueError(
                f"min_batch_size ({min_batch_size}) must not exceed max_batch_size ({max_batch_size})"
            )
        self.threshold_percent = threshold_percent
        self.critical_percent = critical_percent
        self.min_batch_size = min_batch_size
        self.max_batch_size = max_batch_size
        self.force_gc = force_gc
        self.gc_every_pages = gc_every_pages
        self._sampler = sampler or psutil_sampler(memory_limit_bytes)
        self._collector = collector
        self._now = now
        self.logger = logger or StructuredLogger("crmsync.memory")
        self.current_batch_size = max_batch_size
        self.history: Deque[MemorySample] = deque(maxlen=self.HISTORY_SIZE)

    def sample(self, operation: str = "") -> MemorySample:
        used, limit = self._sampler()
        usage = (used / limit) * 100 if limit else 0.0
        return MemorySample(
            used_bytes=used,
            limit_bytes=limit,
            usage_percent=round(usage, 2),
            batch_size=self.current_batch_size,
            operation=operation,
            timestamp=self._now(),
        )

    def usage_percent(self) -> float:
        return self.sample().usage_percent

    def is_memory_safe(self) -> bool:
        return self.usage_percent() < self.threshold_percent

    def adaptive_batch_size(self) -> int:
        """
        Recompute the batch size from current memory usage.

        Returns:
            Batch size bounded to [min_batch_size, max_batch_size]
        """
        usage = self.usage_percent()
        current = self.current_batch_size

        if usage > self.threshold_percent:
            reduction = min(0.5, (usage - self.threshold_percent) / 20)
            new_size = max(self.min_batch_size, int(current * (1 - reduction)))
            if new_size < current:
                self.logger.log(
                    "batch_size_reduced",
                    usage_percent=usage,
                    old_batch_size=current,
                    new_batch_size=new_size,
                )
            self.current_batch_size = new_size
        elif usage < self.threshold_percent - 20 and current < self.max_batch_size:
            new_size = min(self.max_batch_size, max(current + 1, int(current * 1.1)))
            self.logger.debug(
                "batch_size_increased",
                usage_percent=usage,
                old_batch_size=current,
                new_batch_size=new_size,
            )
            self.current_batch_size = new_size

        return self.current_batch_size

    def monitor(self, operation: str = "") -> MemorySample:
        """
        Record a sample, alert on high usage and collect garbage when needed.

        Alerts are advisory; only check_threshold interrupts work.
        """
        sample = self.sample(operation)
        self.history.append(sample)
        usage = sample.usage_percent

        if usage >= self.critical_percent:
            self.logger.memory_alert(usage, self.critical_percent, critical=True)
            self.logger.error(
                "memory_critical_actions",
                operation=operation,
                suggestions=[
                    "reduce the page size",
                    "raise the memory limit",
                    "sync fewer entity types concurrently",
                ],
            )
        elif usage >= self.threshold_percent:
            self.logger.memory_alert(usage, self.threshold_percent)

        if usage > self.threshold_percent and self.force_gc:
            self.force_garbage_collection()

        return sample

    def check_threshold(self, operation: str = "", batch_len: int = 0) -> None:
        """
        Raises:
            OutOfMemoryError: If usage is at or above the critical threshold
        """
        usage = self.usage_percent()
        if usage >= self.critical_percent:
            raise OutOfMemoryError(
                f"Memory usage {usage:.1f}% reached the critical threshold of {self.critical_percent}%",
                context={
                    "operation": operation,
                    "usage_percent": usage,
                    "batch_len": batch_len,
                    "batch_size": self.current_batch_size,
                },
                suggestion="Reduce the page size or raise the memory limit",
            )

    def force_garbage_collection(self) -> int:
        before = self.usage_percent()
        collected = self._collector()
        self.logger.debug("garbage_collected", objects=collected, usage_before=before)
        return collected

    def collect_if_due(self, page: int) -> bool:
        """Force a collection every ``gc_every_pages`` pages."""
        if page > 0 and page % self.gc_every_pages == 0:
            self.force_garbage_collection()
            return True
        return False

    def reset_batch_size(self) -> None:
        self.current_batch_size = self.max_batch_size

    def stats(self) -> Dict[str, Any]:
        current = self.sample()
        usages = [s.usage_percent for s in self.history]
        return {
            "usage_percent": current.usage_percent,
            "used_bytes": current.used_bytes,
            "limit_bytes": current.limit_bytes,
            "current_batch_size": self.current_batch_size,
            "min_batch_size": self.min_batch_size,
            "max_batch_size": self.max_batch_size,
            "samples": len(usages),
            "average_usage_percent": round(sum(usages) / len(usages), 2) if usages else None,
            "peak_usage_percent": max(usages) if usages else None,
        }
