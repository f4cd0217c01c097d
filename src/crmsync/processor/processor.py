"""Per-record upsert processing with partial-failure semantics."""

import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from crmsync.models.data_models import SyncOptions, SyncResult
from crmsync.monitoring.logger import StructuredLogger
from crmsync.processor.normalizer import extract_remote_id, normalize_record
from crmsync.store.events import ENTITY_CREATED, ENTITY_UPDATED, EventSink
from crmsync.store.record_store import RecordStore

if TYPE_CHECKING:
    from crmsync.fetcher.error_classifier import ErrorClassifier
    from crmsync.monitoring.memory_manager import MemoryManager


class RecordProcessor:
    """
    Upserts fetched records into the local store.

    A failing record is classified, logged and counted; the rest of the batch
    is still processed. Records without an id, and existing records when
    ``overwrite_existing`` is off, are skipped.
    """

    def __init__(
        self,
        store: RecordStore,
        events: EventSink,
        classifier: 'ErrorClassifier',
        memory: Optional['MemoryManager'] = None,
        gc_every_records: int = 100,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize processor.

        Args:
            store: Local record store
            events: Sink for entity.created / entity.updated events
            classifier: Classifies per-record failures
            memory: Optional memory manager monitored while processing
            gc_every_records: Force a garbage collection every N records
            logger: Optional structured logger
        """
        self.store = store
        self.events = events
        self.classifier = classifier
        self.memory = memory
        self.gc_every_records = gc_every_records
        self.logger = logger or StructuredLogger("crmsync.processor")

    async def process(
        self,
        entity_type: str,
        records: List[Dict[str, Any]],
        options: SyncOptions,
    ) -> SyncResult:
        """
        Process a batch of records.

        Args:
            entity_type: Entity type the records belong to
            records: Normalized remote records
            options: Sync options (overwrite_existing, emit_events, context)

        Returns:
            SyncResult with created/updated/skipped/errors counts
        """
        start = time.perf_counter()
        result = SyncResult(entity_type=entity_type, records_fetched=len(records))

        for index, raw in enumerate(records, start=1):
            record = normalize_record(raw) or {}
            remote_id = extract_remote_id(record)

            if remote_id is None:
                result.skipped += 1
                self.logger.debug("record_skipped", entity_type=entity_type, reason="missing_id")
            else:
                await self._process_one(entity_type, remote_id, record, options, result)

            if self.memory is not None and index % self.gc_every_records == 0:
                self.memory.monitor(f"process:{entity_type}")
                self.memory.force_garbage_collection()

        result.execution_time = time.perf_counter() - start
        self.logger.batch_processed(
            entity_type=entity_type,
            batch_size=len(records),
            elapsed_ms=round(result.execution_time * 1000, 2),
        )
        return result

    async def _process_one(
        self,
        entity_type: str,
        remote_id: Any,
        record: Dict[str, Any],
        options: SyncOptions,
        result: SyncResult,
    ) -> None:
        try:
            existing = await self.store.find_by_remote_id(entity_type, remote_id)
            if existing is not None and not options.overwrite_existing:
                result.skipped += 1
                return

            _, created = await self.store.upsert(entity_type, remote_id, record)
            if created:
                result.created += 1
            else:
                result.updated += 1

            if options.emit_events:
                await self.events.emit(
                    ENTITY_CREATED if created else ENTITY_UPDATED,
                    {
                        "entity_type": entity_type,
                        "remote_id": remote_id,
                        "data": record,
                        "source": options.context,
                    },
                )
        except Exception as e:
            error = self.classifier.classify(
                e,
                {"operation": "process_record", "entity_type": entity_type, "remote_id": remote_id},
            )
            result.errors += 1
            result.error_items.append({
                "remote_id": remote_id,
                "kind": error.kind.value,
                "error": error.message,
            })
            self.logger.warning(
                "record_failed",
                entity_type=entity_type,
                remote_id=remote_id,
                kind=error.kind.value,
                error=error.message,
            )
