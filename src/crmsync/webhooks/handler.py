"""Application of received webhook payloads to the local store."""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from crmsync.models.config import SyncEngineConfig
from crmsync.models.data_models import (
    ENTITY_TYPES,
    MergeInference,
    WebhookAction,
    WebhookEvent,
    canonical_entity_type,
)
from crmsync.monitoring.logger import StructuredLogger
from crmsync.processor.normalizer import normalize_record
from crmsync.store.counter_store import CounterStore
from crmsync.store.events import (
    ENTITY_CREATED,
    ENTITY_DELETED,
    ENTITY_MERGED,
    ENTITY_UPDATED,
    EventSink,
)
from crmsync.store.record_store import RecordStore
from crmsync.webhooks.entity_links import EntityLinkStore
from crmsync.webhooks.merge_detector import MergeDetector


# v1 and v2 action names
ACTION_ALIASES: Dict[str, WebhookAction] = {
    "added": WebhookAction.ADD,
    "create": WebhookAction.ADD,
    "updated": WebhookAction.UPDATE,
    "change": WebhookAction.UPDATE,
    "deleted": WebhookAction.DELETE,
    "delete": WebhookAction.DELETE,
}

MERGED_ACTION = "merged"


@dataclass
class WebhookOutcome:
    processed: bool
    action: str
    entity_type: Optional[str] = None
    entity_id: Any = None
    reason: Optional[str] = None
    merges: List[MergeInference] = field(default_factory=list)


class WebhookHandler:
    """
    Applies webhook payloads (v1 ``meta.object``/``current``/``previous`` and
    v2 ``meta.entity``/``data``) to the record store and feeds tracked
    add/update/delete events to the merge detector.
    """

    def __init__(
        self,
        record_store: RecordStore,
        events: EventSink,
        merge_detector: Optional[MergeDetector] = None,
        auto_sync: bool = True,
        entity_types: Optional[Iterable[str]] = None,
        now: Callable[[], float] = time.time,
        logger: Optional[StructuredLogger] = None,
    ):
        self.record_store = record_store
        self.events = events
        self.merge_detector = merge_detector
        self.auto_sync = auto_sync
        self.entity_types = {canonical_entity_type(t) for t in (entity_types or ENTITY_TYPES)}
        self._now = now
        self.logger = logger or StructuredLogger("crmsync.webhooks")

    @classmethod
    def from_config(
        cls,
        config: SyncEngineConfig,
        record_store: RecordStore,
        events: EventSink,
        counter_store: CounterStore,
        links: Optional[EntityLinkStore] = None,
        now: Callable[[], float] = time.time,
    ) -> "WebhookHandler":
        """Wire the handler and its merge detector from configuration."""
        logger = StructuredLogger("crmsync.webhooks", level=config.log_level)
        detector = MergeDetector(
            counter_store,
            enabled=config.merge_detection_enabled,
            window_seconds=config.merge_detection_window,
            auto_migrate=config.merge_auto_migrate_relations,
            strategy=config.merge_strategy,
            links=links,
            events=events,
            key_prefix=f"{config.key_prefix}:merge",
            now=now,
            logger=logger,
        )
        return cls(
            record_store,
            events,
            merge_detector=detector,
            auto_sync=config.webhook_auto_sync,
            entity_types=config.enabled_entities,
            now=now,
            logger=logger,
        )

    async def handle(self, payload: Dict[str, Any]) -> WebhookOutcome:
        """
        Apply one webhook payload.

        Returns:
            Outcome describing what was done or why the payload was skipped

        Raises:
            ValueError: If the payload lacks the data its action needs
        """
        meta = payload.get("meta") or {}
        is_v2 = "entity" in meta
        raw_action = str(meta.get("action", "")).lower()
        raw_object = meta.get("entity") if is_v2 else meta.get("object")
        entity_id = meta.get("entity_id") if is_v2 else meta.get("id")
        current = normalize_record(payload.get("data") if is_v2 else payload.get("current"))
        previous = normalize_record(payload.get("previous"))
        correlation_id = meta.get("correlation_id")

        if not self.auto_sync:
            return self._skipped(raw_action, None, "auto_sync_disabled")

        entity_type = canonical_entity_type(str(raw_object)) if raw_object else None
        if entity_type not in self.entity_types:
            return self._skipped(raw_action, entity_type, "unsupported_object")

        if raw_action == MERGED_ACTION:
            return await self._handle_merge(entity_type, current, previous)

        action = ACTION_ALIASES.get(raw_action)
        if action is None:
            return self._skipped(raw_action, entity_type, "unsupported_action")

        if action is WebhookAction.DELETE:
            remote_id = (previous or {}).get("id", entity_id)
            if remote_id is None:
                raise ValueError(f"Delete webhook for {entity_type} has no previous data or entity id")
            await self.record_store.delete(entity_type, remote_id)
            await self.events.emit(ENTITY_DELETED, {
                "entity_type": entity_type,
                "remote_id": remote_id,
                "source": "webhook",
            })
        else:
            if not current:
                raise ValueError(f"{raw_action} webhook for {entity_type} has no current data")
            remote_id = current.get("id", entity_id)
            _, created = await self.record_store.upsert(entity_type, remote_id, current)
            await self.events.emit(ENTITY_CREATED if created else ENTITY_UPDATED, {
                "entity_type": entity_type,
                "remote_id": remote_id,
                "data": current,
                "source": "webhook",
            })

        merges: List[MergeInference] = []
        if self.merge_detector is not None and correlation_id:
            merges = await self.merge_detector.observe(WebhookEvent(
                correlation_id=str(correlation_id),
                action=action,
                entity_type=entity_type,
                entity_id=remote_id,
                timestamp=self._now(),
            ))

        self.logger.log("webhook_processed", action=raw_action, entity_type=entity_type, entity_id=remote_id)
        return WebhookOutcome(
            processed=True,
            action=raw_action,
            entity_type=entity_type,
            entity_id=remote_id,
            merges=merges,
        )

    async def _handle_merge(
        self,
        entity_type: str,
        current: Optional[Dict[str, Any]],
        previous: Optional[Dict[str, Any]],
    ) -> WebhookOutcome:
        if not current or not previous:
            raise ValueError(f"Merge webhook for {entity_type} needs both current and previous data")

        surviving_id = current.get("id")
        merged_id = previous.get("id")
        await self.record_store.upsert(entity_type, surviving_id, current)
        await self.record_store.delete(entity_type, merged_id)
        await self.events.emit(ENTITY_MERGED, {
            "entity_type": entity_type,
            "merged_id": merged_id,
            "surviving_id": surviving_id,
            "detection_method": "webhook",
        })
        self.logger.merge_detected(entity_type, merged_id, surviving_id, correlation_id="")
        return WebhookOutcome(processed=True, action=MERGED_ACTION, entity_type=entity_type, entity_id=surviving_id)

    def _skipped(self, action: str, entity_type: Optional[str], reason: str) -> WebhookOutcome:
        self.logger.debug("webhook_skipped", action=action, entity_type=entity_type, reason=reason)
        return WebhookOutcome(processed=False, action=action, entity_type=entity_type, reason=reason)
