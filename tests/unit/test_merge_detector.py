"""Unit tests for heuristic merge detection."""

import pytest

from crmsync.models.data_models import MigrationStrategy, WebhookAction, WebhookEvent
from crmsync.store.events import ENTITY_MERGED
from crmsync.webhooks.entity_links import InMemoryEntityLinkStore
from crmsync.webhooks.merge_detector import MergeDetector


UPDATE = WebhookAction.UPDATE
DELETE = WebhookAction.DELETE
ADD = WebhookAction.ADD


@pytest.fixture
def links():
    return InMemoryEntityLinkStore()


@pytest.fixture
def detector(counter_store, clock, links, event_sink):
    return MergeDetector(counter_store, links=links, events=event_sink, now=clock.now)


def event(action, entity_id, clock, correlation_id="corr-1", entity_type="persons"):
    return WebhookEvent(correlation_id, action, entity_type, entity_id, clock.now())


async def observe_all(detector, events):
    found = []
    for e in events:
        found.extend(await detector.observe(e))
    return found


class TestAnalyze:

    def test_delete_plus_update_is_merge(self, clock):
        events = [event(UPDATE, 5, clock), event(UPDATE, 5, clock), event(DELETE, 7, clock)]

        [inference] = MergeDetector.analyze(events, "corr-1")

        assert inference.merged_id == 7
        assert inference.surviving_id == 5
        assert inference.entity_type == "persons"

    def test_two_deletes_is_not_merge(self, clock):
        events = [event(UPDATE, 5, clock), event(DELETE, 7, clock), event(DELETE, 8, clock)]
        assert MergeDetector.analyze(events, "corr-1") == []

    def test_delete_without_update_is_not_merge(self, clock):
        events = [event(ADD, 5, clock), event(DELETE, 7, clock)]
        assert MergeDetector.analyze(events, "corr-1") == []

    def test_update_of_deleted_entity_does_not_count(self, clock):
        events = [event(UPDATE, 7, clock), event(DELETE, 7, clock)]
        assert MergeDetector.analyze(events, "corr-1") == []

    def test_entity_types_analyzed_separately(self, clock):
        events = [
            event(UPDATE, 5, clock, entity_type="persons"),
            event(DELETE, 7, clock, entity_type="organizations"),
        ]
        assert MergeDetector.analyze(events, "corr-1") == []


class TestObserve:

    @pytest.mark.asyncio
    async def test_merge_inferred_once(self, detector, clock, event_sink):
        found = await observe_all(detector, [
            event(UPDATE, 5, clock),
            event(UPDATE, 5, clock),
            event(DELETE, 7, clock),
        ])

        assert len(found) == 1
        assert (found[0].merged_id, found[0].surviving_id) == (7, 5)
        [payload] = event_sink.named(ENTITY_MERGED)
        assert payload["detection_method"] == "heuristic"
        assert payload["correlation_id"] == "corr-1"

    @pytest.mark.asyncio
    async def test_group_cleared_after_inference(self, detector, clock):
        await observe_all(detector, [event(UPDATE, 5, clock), event(DELETE, 7, clock)])

        assert await detector.pending("corr-1") == []
        assert await detector.observe(event(UPDATE, 5, clock)) == []

    @pytest.mark.asyncio
    async def test_split_across_correlation_ids_is_not_merge(self, detector, clock, event_sink):
        found = await observe_all(detector, [
            event(UPDATE, 5, clock, correlation_id="a"),
            event(UPDATE, 5, clock, correlation_id="a"),
            event(DELETE, 7, clock, correlation_id="b"),
        ])

        assert found == []
        assert event_sink.named(ENTITY_MERGED) == []

    @pytest.mark.asyncio
    async def test_events_outside_window_ignored(self, detector, clock):
        await detector.observe(event(UPDATE, 5, clock))
        clock.advance(31)

        assert await detector.observe(event(DELETE, 7, clock)) == []

    @pytest.mark.asyncio
    async def test_stale_events_filtered_by_timestamp(self, detector, clock):
        stale = WebhookEvent("corr-1", UPDATE, "persons", 5, clock.now() - 60)
        await detector.observe(stale)

        assert await detector.observe(event(DELETE, 7, clock)) == []

    @pytest.mark.asyncio
    async def test_disabled_detector_tracks_nothing(self, counter_store, clock):
        detector = MergeDetector(counter_store, enabled=False, now=clock.now)

        assert await observe_all(detector, [event(UPDATE, 5, clock), event(DELETE, 7, clock)]) == []
        assert await counter_store.get_list("crmsync:merge:corr-1") == []

    @pytest.mark.asyncio
    async def test_events_without_correlation_id_ignored(self, detector, clock):
        assert await detector.observe(event(UPDATE, 5, clock, correlation_id="")) == []

    @pytest.mark.asyncio
    async def test_pending_and_clear(self, detector, clock):
        await detector.observe(event(UPDATE, 5, clock))

        assert [e.entity_id for e in await detector.pending("corr-1")] == [5]
        assert await detector.clear("corr-1") is True
        assert await detector.pending("corr-1") == []

    @pytest.mark.asyncio
    async def test_shared_store_reports_merge_to_one_observer(self, counter_store, clock):
        worker_a = MergeDetector(counter_store, now=clock.now)
        worker_b = MergeDetector(counter_store, now=clock.now)

        first = await worker_a.observe(event(UPDATE, 5, clock))
        second = await worker_b.observe(event(DELETE, 7, clock))

        assert first == []
        assert len(second) == 1


class TestRelationMigration:

    @pytest.mark.asyncio
    async def test_relations_migrated_on_merge(self, detector, links, clock):
        links.link("persons", 7, "contact", 100)
        links.link("persons", 7, "contact", 101)

        [inference] = await observe_all(detector, [event(UPDATE, 5, clock), event(DELETE, 7, clock)])

        assert inference.migration.migrated == 2
        assert [l.linkable_id for l in links.links_for("persons", 5)] == [100, 101]
        assert links.links_for("persons", 7) == []

    @pytest.mark.asyncio
    async def test_no_migration_when_auto_migrate_off(self, counter_store, clock, links):
        links.link("persons", 7, "contact", 100)
        detector = MergeDetector(counter_store, auto_migrate=False, links=links, now=clock.now)

        [inference] = await observe_all(detector, [event(UPDATE, 5, clock), event(DELETE, 7, clock)])

        assert inference.migration is None
        assert len(links.links_for("persons", 7)) == 1

    @pytest.mark.asyncio
    async def test_strategy_passed_to_link_store(self, counter_store, clock, links):
        links.link("persons", 7, "contact", 100)
        links.link("persons", 5, "contact", 100)
        detector = MergeDetector(counter_store, strategy="keep_surviving", links=links, now=clock.now)

        [inference] = await observe_all(detector, [event(UPDATE, 5, clock), event(DELETE, 7, clock)])

        assert detector.strategy is MigrationStrategy.SKIP
        assert inference.migration.skipped == 1
        assert len(links.links_for("persons", 5)) == 1

    @pytest.mark.asyncio
    async def test_migration_failure_still_reports_merge(self, counter_store, clock, event_sink):
        class BrokenLinks:
            async def migrate(self, *args, **kwargs):
                raise RuntimeError("database unavailable")

        detector = MergeDetector(counter_store, links=BrokenLinks(), events=event_sink, now=clock.now)

        [inference] = await observe_all(detector, [event(UPDATE, 5, clock), event(DELETE, 7, clock)])

        assert inference.migration.errors == 1
        assert event_sink.named(ENTITY_MERGED)[0]["migration"]["errors"] == 1
