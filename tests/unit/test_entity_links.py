"""Unit tests for entity link migration."""

import pytest

from crmsync.models.data_models import MigrationStrategy
from crmsync.webhooks.entity_links import InMemoryEntityLinkStore


@pytest.fixture
def links():
    return InMemoryEntityLinkStore()


class TestEntityLinks:

    def test_links_for_matches_string_and_int_ids(self, links):
        links.link("persons", 7, "contact", 1)
        assert len(links.links_for("persons", "7")) == 1

    def test_links_for_other_entity_type(self, links):
        links.link("persons", 7, "contact", 1)
        assert links.links_for("organizations", 7) == []


class TestMigrate:

    @pytest.mark.asyncio
    async def test_links_without_conflict_are_repointed(self, links):
        links.link("persons", 7, "contact", 1)
        links.link("persons", 7, "invoice", 2)
        links.link("persons", 9, "contact", 3)

        result = await links.migrate("persons", 7, 5)

        assert (result.migrated, result.skipped, result.conflicts) == (2, 0, 0)
        moved = links.links_for("persons", 5)
        assert [l.linkable_id for l in moved] == [1, 2]
        assert all(l.metadata["migrated_from_id"] == 7 for l in moved)
        assert len(links.links_for("persons", 9)) == 1

    @pytest.mark.asyncio
    async def test_conflict_keep_both(self, links):
        links.link("persons", 5, "contact", 1)
        links.link("persons", 7, "contact", 1)

        result = await links.migrate("persons", 7, 5, MigrationStrategy.BOTH)

        assert (result.migrated, result.conflicts) == (1, 1)
        surviving = links.links_for("persons", 5)
        assert len(surviving) == 2
        assert sorted(l.is_primary for l in surviving) == [False, True]

    @pytest.mark.asyncio
    async def test_conflict_migrate_replaces_existing(self, links):
        existing = links.link("persons", 5, "contact", 1)
        merged = links.link("persons", 7, "contact", 1, metadata={"role": "buyer"})

        result = await links.migrate("persons", 7, 5, "migrate")

        assert (result.migrated, result.conflicts) == (1, 1)
        [survivor] = links.links_for("persons", 5)
        assert survivor.id == merged.id
        assert survivor.id != existing.id
        assert survivor.metadata["role"] == "buyer"

    @pytest.mark.asyncio
    async def test_conflict_skip_keeps_existing(self, links):
        existing = links.link("persons", 5, "contact", 1)
        links.link("persons", 7, "contact", 1)

        result = await links.migrate("persons", 7, 5, "keep_surviving")

        assert (result.migrated, result.skipped, result.conflicts) == (0, 1, 1)
        assert [l.id for l in links.links_for("persons", 5)] == [existing.id]
        assert links.links_for("persons", 7) == []

    @pytest.mark.asyncio
    async def test_nothing_to_migrate(self, links):
        result = await links.migrate("persons", 7, 5)
        assert (result.migrated, result.skipped, result.conflicts, result.errors) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_unknown_strategy_rejected(self, links):
        with pytest.raises(ValueError):
            await links.migrate("persons", 7, 5, "keep_everything")
