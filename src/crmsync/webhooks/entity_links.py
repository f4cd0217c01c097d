"""Links between local models and remote entities, and their migration on merge."""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Union

from crmsync.models.data_models import MigrationResult, MigrationStrategy
from crmsync.monitoring.logger import StructuredLogger


@dataclass
class EntityLink:
    """A local object (linkable) associated with a remote entity."""
    id: int
    entity_type: str
    entity_id: Any
    linkable_type: str
    linkable_id: Any
    is_primary: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


class EntityLinkStore(Protocol):
    async def migrate(
        self,
        entity_type: str,
        merged_id: Any,
        surviving_id: Any,
        strategy: Union[MigrationStrategy, str] = MigrationStrategy.BOTH,
    ) -> MigrationResult:
        ...


def _same(a: Any, b: Any) -> bool:
    return str(a) == str(b)


class InMemoryEntityLinkStore:
    """Thread-safe in-memory entity links."""

    def __init__(self, logger: Optional[StructuredLogger] = None):
        self._lock = threading.Lock()
        self._links: Dict[int, EntityLink] = {}
        self._next_id = 1
        self.logger = logger or StructuredLogger("crmsync.links")

    def link(
        self,
        entity_type: str,
        entity_id: Any,
        linkable_type: str,
        linkable_id: Any,
        is_primary: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> EntityLink:
        with self._lock:
            link = EntityLink(
                id=self._next_id,
                entity_type=entity_type,
                entity_id=entity_id,
                linkable_type=linkable_type,
                linkable_id=linkable_id,
                is_primary=is_primary,
                metadata=dict(metadata or {}),
            )
            self._links[link.id] = link
            self._next_id += 1
            return link

    def links_for(self, entity_type: str, entity_id: Any) -> List[EntityLink]:
        with self._lock:
            return [
                link for link in self._links.values()
                if link.entity_type == entity_type and _same(link.entity_id, entity_id)
            ]

    def _find(self, entity_type: str, entity_id: Any, linkable_type: str, linkable_id: Any) -> Optional[EntityLink]:
        for link in self._links.values():
            if (
                link.entity_type == entity_type
                and _same(link.entity_id, entity_id)
                and link.linkable_type == linkable_type
                and _same(link.linkable_id, linkable_id)
            ):
                return link
        return None

    async def migrate(
        self,
        entity_type: str,
        merged_id: Any,
        surviving_id: Any,
        strategy: Union[MigrationStrategy, str] = MigrationStrategy.BOTH,
    ) -> MigrationResult:
        """
        Re-point every link of ``merged_id`` to ``surviving_id``.

        A conflict is a linkable already linked to the surviving entity:
        - BOTH keeps both links; the migrated one is marked non-primary
        - MIGRATE re-points the merged link and drops the existing one
        - SKIP drops the merged link and keeps the existing one

        Returns:
            Counts of migrated, skipped and conflicting links
        """
        strategy = MigrationStrategy.parse(strategy)
        result = MigrationResult()

        with self._lock:
            merged_links = [
                link for link in self._links.values()
                if link.entity_type == entity_type and _same(link.entity_id, merged_id)
            ]
            for link in merged_links:
                existing = self._find(entity_type, surviving_id, link.linkable_type, link.linkable_id)

                if existing is None:
                    self._repoint(link, merged_id, surviving_id)
                    result.migrated += 1
                    continue

                result.conflicts += 1
                if strategy is MigrationStrategy.BOTH:
                    self._repoint(link, merged_id, surviving_id)
                    link.is_primary = False
                    result.migrated += 1
                elif strategy is MigrationStrategy.MIGRATE:
                    self._repoint(link, merged_id, surviving_id)
                    del self._links[existing.id]
                    result.migrated += 1
                else:
                    del self._links[link.id]
                    result.skipped += 1

        self.logger.log(
            "entity_links_migrated",
            entity_type=entity_type,
            merged_id=merged_id,
            surviving_id=surviving_id,
            strategy=strategy.value,
            migrated=result.migrated,
            skipped=result.skipped,
            conflicts=result.conflicts,
        )
        return result

    @staticmethod
    def _repoint(link: EntityLink, merged_id: Any, surviving_id: Any) -> None:
        link.entity_id = surviving_id
        link.metadata["migrated_from_id"] = merged_id
