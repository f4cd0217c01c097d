"""Sync orchestrator coordinating fetch and process phases."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from crmsync.fetcher.circuit_breaker import CircuitBreaker
from crmsync.fetcher.error_classifier import ErrorClassifier
from crmsync.fetcher.rate_limiter import RateLimitManager
from crmsync.fetcher.transport import ApiResponse, Transport, TransportError
from crmsync.models.config import SyncEngineConfig
from crmsync.models.data_models import (
    ENTITY_TYPES,
    UPSTREAM_ERROR_KINDS,
    SyncOptions,
    SyncResult,
    canonical_entity_type,
)
from crmsync.models.errors import (
    ApiError,
    OutOfMemoryError,
    RateLimitError,
    SyncCancelledError,
    SyncError,
)
from crmsync.monitoring.health_checker import HealthChecker
from crmsync.monitoring.logger import StructuredLogger
from crmsync.monitoring.memory_manager import MemoryManager
from crmsync.processor.processor import RecordProcessor
from crmsync.store.counter_store import CounterStore, InMemoryCounterStore, RedisCounterStore
from crmsync.store.events import EventSink, LoggingEventSink
from crmsync.store.record_store import InMemoryRecordStore, RecordStore


LATEST_SORT = "update_time DESC"
FULL_SCAN_SORT = "add_time ASC"


def build_counter_store(config: SyncEngineConfig) -> CounterStore:
    """Redis when a URL is configured, process memory otherwise."""
    if config.redis_url:
        return RedisCounterStore.from_url(config.redis_url)
    return InMemoryCounterStore()


class SyncOrchestrator:
    """
    Drives fetch -> classify -> retry -> upsert for one entity type at a time.

    Every page request goes through the same gate:
    1. the daily token budget must admit the request
    2. no upstream circuit (server, connection, rate limit) may be open
    3. failures are classified, counted against their circuit and retried
       per the kind's policy

    Full scans paginate sequentially with a page size adapted to memory
    pressure; a failing page propagates its classified error with the
    records collected so far attached as ``partial_records``.
    """

    def __init__(
        self,
        transport: Transport,
        record_store: RecordStore,
        events: EventSink,
        rate_limiter: RateLimitManager,
        classifier: ErrorClassifier,
        memory: MemoryManager,
        health: Optional[HealthChecker] = None,
        entity_types: Optional[Iterable[str]] = None,
        max_pages: int = 100,
        max_concurrency: int = 3,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        cancel_event: Optional[asyncio.Event] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize orchestrator with its collaborators.

        Args:
            transport: Remote API transport
            record_store: Local record store
            events: Domain event sink
            rate_limiter: Daily token budget
            classifier: Error classifier (owns the circuit breaker)
            memory: Adaptive batch sizing
            health: Optional health checker used by initialize()
            entity_types: Supported entity types (defaults to all known types)
            max_pages: Hard cap on pages per full scan
            max_concurrency: Entity types synced concurrently by sync_many
            sleeper: Async sleep used between retries
            cancel_event: Event checked between attempts and pages
            logger: Optional structured logger
        """
        self.transport = transport
        self.record_store = record_store
        self.events = events
        self.rate_limiter = rate_limiter
        self.classifier = classifier
        self.memory = memory
        self.health = health
        self.entity_types = [canonical_entity_type(t) for t in (entity_types or ENTITY_TYPES)]
        self.max_pages = max_pages
        self.max_concurrency = max_concurrency
        self._sleep = sleeper
        self.cancel_event = cancel_event
        self.logger = logger or StructuredLogger("crmsync.orchestrator")
        self.processor = RecordProcessor(
            record_store,
            events,
            classifier,
            memory=memory,
            logger=self.logger,
        )

    @classmethod
    def from_config(
        cls,
        config: SyncEngineConfig,
        transport: Transport,
        record_store: Optional[RecordStore] = None,
        events: Optional[EventSink] = None,
        counter_store: Optional[CounterStore] = None,
        logger: Optional[StructuredLogger] = None,
        **kwargs: Any,
    ) -> "SyncOrchestrator":
        """Wire every component from configuration."""
        logger = logger or StructuredLogger("crmsync", level=config.log_level)
        counter_store = counter_store or build_counter_store(config)

        rate_limiter = RateLimitManager(
            counter_store,
            daily_budget=config.daily_token_budget,
            token_costs=config.token_costs,
            max_delay=config.rate_limit_max_delay,
            jitter=config.rate_limit_jitter,
            enabled=config.rate_limit_enabled,
            key_prefix=f"{config.key_prefix}:rate_limit",
            logger=logger,
        )
        circuit_breaker = CircuitBreaker(
            counter_store,
            failure_threshold=config.circuit_breaker_failure_threshold,
            window_seconds=config.circuit_breaker_window,
            cooldown_seconds=config.circuit_breaker_cooldown,
            key_prefix=f"{config.key_prefix}:circuit",
            logger=logger,
        )
        memory = MemoryManager(
            threshold_percent=config.memory_threshold_percent,
            critical_percent=config.memory_critical_percent,
            min_batch_size=config.min_batch_size,
            max_batch_size=config.max_batch_size,
            force_gc=config.force_gc,
            gc_every_pages=config.gc_every_pages,
            memory_limit_bytes=config.memory_limit_mb * 1024 * 1024 if config.memory_limit_mb else None,
            logger=logger,
        )
        health = HealthChecker(
            transport,
            counter_store,
            endpoint=config.health_check_endpoint,
            check_interval=config.health_check_interval,
            failure_threshold=config.health_failure_threshold,
            degradation_ms=config.health_degradation_ms,
            cache_ttl=config.health_cache_ttl,
            enabled=config.health_check_enabled,
            key_prefix=f"{config.key_prefix}:health",
            logger=logger,
        )
        return cls(
            transport=transport,
            record_store=record_store or InMemoryRecordStore(),
            events=events or LoggingEventSink(logger),
            rate_limiter=rate_limiter,
            classifier=ErrorClassifier(circuit_breaker, logger=logger),
            memory=memory,
            health=health,
            entity_types=config.enabled_entities,
            max_pages=config.max_pages,
            max_concurrency=config.max_concurrent_syncs,
            logger=logger,
            **kwargs,
        )

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self.classifier.circuit_breaker

    def supported_entity_types(self) -> List[str]:
        return list(self.entity_types)

    def is_entity_type_supported(self, entity_type: str) -> bool:
        return canonical_entity_type(entity_type) in self.entity_types

    def cancel(self) -> None:
        """Request cancellation; running syncs stop at the next attempt or page boundary."""
        if self.cancel_event is None:
            self.cancel_event = asyncio.Event()
        self.cancel_event.set()

    def _check_cancelled(self, entity_type: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise SyncCancelledError(
                f"Sync of {entity_type} cancelled",
                context={"entity_type": entity_type},
            )

    async def initialize(self) -> bool:
        """
        Run a scheduled health check before syncing.

        Returns:
            False only when a probe ran and found the API unhealthy
        """
        if self.health is None or not self.health.should_perform_check():
            return True
        record = await self.health.check()
        if not record.healthy:
            self.logger.warning(
                "api_unhealthy",
                endpoint=record.endpoint,
                status=record.status_code,
                error=record.error,
            )
        elif self.health.is_degraded():
            self.logger.warning("api_degraded", endpoint=record.endpoint, elapsed_ms=record.response_time_ms)
        return record.healthy

    async def fetch(self, entity_type: str, options: SyncOptions) -> List[Dict[str, Any]]:
        """
        Fetch remote records for ``entity_type``.

        Latest mode (default) fetches a single page sorted by update time.
        Full scan paginates by add time until a short page or the page cap.

        Raises:
            SyncError: Classified error of the failing page, with partial_records
        """
        entity_type = canonical_entity_type(entity_type)
        if not self.is_entity_type_supported(entity_type):
            raise ApiError(
                f"Unsupported entity type: {entity_type}",
                context={"entity_type": entity_type},
                suggestion=f"Supported entity types: {', '.join(self.entity_types)}",
            )

        if options.full_scan:
            return await self._fetch_all_pages(entity_type, options)
        return await self._fetch_latest(entity_type, options)

    async def _fetch_latest(self, entity_type: str, options: SyncOptions) -> List[Dict[str, Any]]:
        self.memory.monitor(f"fetch:{entity_type}")
        params = {"limit": options.page_size, "sort": LATEST_SORT}
        response = await self._call_with_retry(entity_type, params, page=1)
        return response.data

    async def _fetch_all_pages(self, entity_type: str, options: SyncOptions) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        start = 0
        page = 0

        while True:
            if page >= self.max_pages:
                self.logger.warning(
                    "max_pages_reached",
                    entity_type=entity_type,
                    max_pages=self.max_pages,
                    records=len(records),
                )
                break

            self._check_cancelled(entity_type)
            page += 1
            self.memory.monitor(f"fetch:{entity_type}")
            limit = min(options.page_size, self.memory.adaptive_batch_size())
            params = {"start": start, "limit": limit, "sort": FULL_SCAN_SORT}

            try:
                response = await self._call_with_retry(entity_type, params, page=page)
            except SyncError as e:
                e.partial_records = records
                e.add_context(page=page, records_fetched=len(records))
                raise

            page_records = response.data
            records.extend(page_records)
            start += len(page_records)
            self.memory.collect_if_due(page)

            try:
                self.memory.check_threshold(f"fetch:{entity_type}", len(records))
            except OutOfMemoryError as e:
                self.logger.error(
                    "pagination_aborted",
                    entity_type=entity_type,
                    page=page,
                    records=len(records),
                    error=e.message,
                )
                break

            if not response.paginated:
                self.logger.debug("single_page_endpoint", entity_type=entity_type, records=len(records))
                break
            if len(page_records) < limit or response.more_items is False:
                break

        return records

    async def _call_with_retry(self, entity_type: str, params: Dict[str, Any], page: int) -> ApiResponse:
        attempt = 0
        while True:
            attempt += 1
            self._check_cancelled(entity_type)

            if attempt == 1 and not await self.rate_limiter.can_admit(entity_type):
                raise RateLimitError(
                    f"Daily token budget exhausted; request for {entity_type} not sent",
                    retryable=False,
                    retry_after=self.rate_limiter.time_until_reset(),
                    context={"entity_type": entity_type, "page": page, "reason": "daily_budget_exhausted"},
                    suggestion="Wait for the budget to reset at UTC midnight or raise the daily budget",
                )

            open_kind = await self.circuit_breaker.first_open(UPSTREAM_ERROR_KINDS)
            if open_kind is not None:
                raise SyncError.for_kind(
                    open_kind,
                    f"Circuit open for {open_kind.value} errors; request for {entity_type} not sent",
                    retryable=False,
                    context={"entity_type": entity_type, "page": page, "circuit_open": True},
                )

            self.logger.fetch_start(entity_type, page, params.get("limit", 0))
            started = time.perf_counter()
            try:
                response = await self.transport.call(entity_type, params)
                if not response.success:
                    if response.status_code == 429:
                        raise await self.rate_limiter.handle_rate_limit_response(response.headers, entity_type)
                    raise TransportError.from_response(response, entity_type)
            except Exception as e:
                error = self.classifier.classify(
                    e,
                    {"operation": "fetch", "entity_type": entity_type, "page": page, "attempt": attempt},
                )
                await self.classifier.record_failure(error)
                self.logger.fetch_error(
                    entity_type, page, error.status_code, error.message, attempt, kind=error.kind.value
                )

                if not await self.classifier.should_retry(error, attempt):
                    if error is e:
                        raise
                    raise error from e

                if isinstance(error, RateLimitError) and error.retry_after_hint:
                    delay = self.rate_limiter.wait_delay(attempt, error.retry_after)
                else:
                    delay = self.classifier.retry_delay(error, attempt)
                self.logger.log(
                    "retry_scheduled",
                    entity_type=entity_type,
                    page=page,
                    attempt=attempt,
                    kind=error.kind.value,
                    delay=round(delay, 3),
                )
                await self._sleep(delay)
                continue

            await self.rate_limiter.consume(entity_type)
            for kind in UPSTREAM_ERROR_KINDS:
                await self.classifier.record_success(kind)
            self.logger.fetch_success(
                entity_type, page, len(response.data), round((time.perf_counter() - started) * 1000, 2)
            )
            return response

    async def process(
        self, entity_type: str, records: List[Dict[str, Any]], options: SyncOptions
    ) -> SyncResult:
        """Upsert fetched records; per-record failures never abort the batch."""
        return await self.processor.process(canonical_entity_type(entity_type), records, options)

    async def sync(self, options: SyncOptions) -> SyncResult:
        """
        Fetch and process one entity type.

        A classified fetch failure becomes a result carrying ``error_message``
        after any partial records have been processed. Cancellation propagates.

        Returns:
            SyncResult for the entity type
        """
        entity_type = options.entity_type
        started = time.perf_counter()

        try:
            records = await self.fetch(entity_type, options)
        except SyncCancelledError:
            raise
        except SyncError as e:
            partial = e.partial_records
            result = await self.process(entity_type, partial, options) if partial else SyncResult(entity_type)
            result.records_fetched = len(partial)
            result.errors += 1
            result.error_message = e.message
            result.error_items.append({"kind": e.kind.value, "error": e.message, "context": e.context})
            result.execution_time = time.perf_counter() - started
            self.logger.error(
                "sync_failed",
                entity_type=entity_type,
                kind=e.kind.value,
                error=e.message,
                suggestion=e.suggestion,
                partial_records=len(partial),
            )
            return result

        result = await self.process(entity_type, records, options)
        result.execution_time = time.perf_counter() - started
        self.logger.sync_complete(
            entity_type,
            fetched=result.records_fetched,
            created=result.created,
            updated=result.updated,
            skipped=result.skipped,
            errors=result.errors,
            elapsed_ms=round(result.execution_time * 1000, 2),
        )
        return result

    async def sync_many(
        self,
        options_list: List[SyncOptions],
        concurrency: Optional[int] = None,
        on_complete: Optional[Callable[[SyncResult], None]] = None,
    ) -> List[SyncResult]:
        """Sync independent entity types concurrently; results keep input order."""
        semaphore = asyncio.Semaphore(concurrency or self.max_concurrency)

        async def run(options: SyncOptions) -> SyncResult:
            async with semaphore:
                result = await self.sync(options)
            if on_complete is not None:
                on_complete(result)
            return result

        return list(await asyncio.gather(*(run(options) for options in options_list)))

    async def status(self) -> Dict[str, Any]:
        return {
            "rate_limit": await self.rate_limiter.status(),
            "circuits": await self.circuit_breaker.status(),
            "health": await self.health.status() if self.health else None,
            "memory": self.memory.stats(),
        }
