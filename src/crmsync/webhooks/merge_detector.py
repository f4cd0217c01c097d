"""Heuristic merge inference from correlated webhook events.

The CRM announces a merge of entity B into entity A as a burst of webhooks
sharing one correlation id: updates for A and a delete for B. Events are
collected per correlation id for a short window; a group with exactly one
deleted id and at least one other updated id is reported as a merge.
"""

import time
from dataclasses import asdict
from typing import Any, Callable, Dict, List, Optional, Union

from crmsync.models.data_models import (
    MergeInference,
    MigrationResult,
    MigrationStrategy,
    WebhookAction,
    WebhookEvent,
)
from crmsync.monitoring.logger import StructuredLogger
from crmsync.store.counter_store import CounterStore
from crmsync.store.events import ENTITY_MERGED, EventSink
from crmsync.webhooks.entity_links import EntityLinkStore


class MergeDetector:
    """Groups webhook events by correlation id and infers merges."""

    def __init__(
        self,
        store: CounterStore,
        enabled: bool = True,
        window_seconds: float = 30.0,
        auto_migrate: bool = True,
        strategy: Union[MigrationStrategy, str] = MigrationStrategy.BOTH,
        links: Optional[EntityLinkStore] = None,
        events: Optional[EventSink] = None,
        key_prefix: str = "crmsync:merge",
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize merge detector.

        Args:
            store: Shared counter store holding pending groups
            enabled: When False no event is tracked
            window_seconds: How long events of one correlation id are grouped
            auto_migrate: Re-point relations of the merged entity
            strategy: Conflict strategy for relation migration
            links: Entity link store used for migration
            events: Sink for entity.merged events
            key_prefix: Prefix for counter store keys
            now: Clock returning epoch seconds
            logger: Optional structured logger
        """
        self.store = store
        self.enabled = enabled
        self.window_seconds = window_seconds
        self.auto_migrate = auto_migrate
        self.strategy = MigrationStrategy.parse(strategy)
        self.links = links
        self.events = events
        self.key_prefix = key_prefix
        self._now = now
        self.logger = logger or StructuredLogger("crmsync.merge")

    def _key(self, correlation_id: str) -> str:
        return f"{self.key_prefix}:{correlation_id}"

    async def observe(self, event: WebhookEvent) -> List[MergeInference]:
        """
        Track an event and report merges completed by it.

        Only the observer that claims the group (by deleting its key) reports
        the inference, so a merge is emitted at most once.

        Returns:
            Inferred merges; empty when nothing was detected
        """
        if not self.enabled:
            return []
        if not event.correlation_id or not event.entity_type or event.entity_id is None:
            return []

        raw_events = await self.store.append(
            self._key(event.correlation_id), event.to_dict(), ttl=self.window_seconds
        )
        inferences = self.analyze(self._within_window(raw_events), event.correlation_id)
        if not inferences:
            return []

        if not await self.store.delete(self._key(event.correlation_id)):
            return []

        for inference in inferences:
            await self._apply(inference)
        return inferences

    def _within_window(self, raw_events: List[Dict[str, Any]]) -> List[WebhookEvent]:
        cutoff = self._now() - self.window_seconds
        events = [WebhookEvent.from_dict(raw) for raw in raw_events]
        return [e for e in events if e.timestamp >= cutoff]

    @staticmethod
    def analyze(events: List[WebhookEvent], correlation_id: str) -> List[MergeInference]:
        """Find merge patterns per entity type in one correlation group."""
        by_type: Dict[str, Dict[Any, set]] = {}
        for event in events:
            actions = by_type.setdefault(event.entity_type, {})
            actions.setdefault(event.entity_id, set()).add(event.action)

        inferences = []
        for entity_type, actions_by_id in by_type.items():
            deleted = [i for i, actions in actions_by_id.items() if WebhookAction.DELETE in actions]
            updated = [i for i, actions in actions_by_id.items() if WebhookAction.UPDATE in actions]
            if len(deleted) != 1:
                continue
            survivors = [i for i in updated if i != deleted[0]]
            if not survivors:
                continue
            inferences.append(MergeInference(
                entity_type=entity_type,
                merged_id=deleted[0],
                surviving_id=survivors[0],
                correlation_id=correlation_id,
            ))
        return inferences

    async def _apply(self, inference: MergeInference) -> None:
        self.logger.merge_detected(
            inference.entity_type,
            inference.merged_id,
            inference.surviving_id,
            inference.correlation_id,
        )

        if self.auto_migrate and self.links is not None:
            try:
                inference.migration = await self.links.migrate(
                    inference.entity_type,
                    inference.merged_id,
                    inference.surviving_id,
                    self.strategy,
                )
            except Exception as e:
                self.logger.error(
                    "relation_migration_failed",
                    entity_type=inference.entity_type,
                    merged_id=inference.merged_id,
                    surviving_id=inference.surviving_id,
                    error=str(e),
                )
                inference.migration = MigrationResult(errors=1)

        if self.events is not None:
            await self.events.emit(ENTITY_MERGED, {
                "entity_type": inference.entity_type,
                "merged_id": inference.merged_id,
                "surviving_id": inference.surviving_id,
                "correlation_id": inference.correlation_id,
                "detection_method": "heuristic",
                "migration": asdict(inference.migration) if inference.migration else None,
            })

    async def pending(self, correlation_id: str) -> List[WebhookEvent]:
        return self._within_window(await self.store.get_list(self._key(correlation_id)))

    async def clear(self, correlation_id: str) -> bool:
        return await self.store.delete(self._key(correlation_id))
