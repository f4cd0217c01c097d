"""Unit tests for SyncRunAggregator."""

import threading

from crmsync.models.data_models import SyncResult
from crmsync.processor.aggregator import SyncRunAggregator


class TestSyncRunAggregator:

    def test_empty_summary(self):
        summary = SyncRunAggregator().get_summary()

        assert summary.entities == 0
        assert summary.success_rate == 1.0
        assert summary.processing_time_seconds == 0.0

    def test_totals_across_entity_types(self):
        aggregator = SyncRunAggregator()
        aggregator.add_result(SyncResult("deals", created=5, updated=2, records_fetched=7))
        aggregator.add_result(SyncResult("persons", skipped=2, errors=1, records_fetched=3, error_message="down"))

        summary = aggregator.get_summary()

        assert summary.entities == 2
        assert summary.records_fetched == 10
        assert summary.created == 5
        assert summary.updated == 2
        assert summary.skipped == 2
        assert summary.errors == 1
        assert summary.failed_entities == 1
        assert summary.success_rate == 0.9

    def test_results_for_same_type_are_merged(self):
        aggregator = SyncRunAggregator()
        aggregator.add_result(SyncResult("deals", created=1))
        aggregator.add_result(SyncResult("deals", created=2))

        results = aggregator.get_results()

        assert len(results) == 1
        assert results[0].created == 3

    def test_results_sorted_by_entity_type(self):
        aggregator = SyncRunAggregator()
        for entity_type in ("persons", "deals", "notes"):
            aggregator.add_result(SyncResult(entity_type))

        assert [r.entity_type for r in aggregator.get_results()] == ["deals", "notes", "persons"]

    def test_timer_and_report(self):
        aggregator = SyncRunAggregator()
        aggregator.start_timer()
        aggregator.add_result(SyncResult("deals", created=1))
        aggregator.stop_timer()

        report = aggregator.build_report()

        assert report.summary.processing_time_seconds >= 0.0
        assert report.started_at <= report.finished_at
        assert report.started_at.endswith("+00:00")
        assert [r.entity_type for r in report.results] == ["deals"]

    def test_concurrent_adds(self):
        aggregator = SyncRunAggregator()

        def worker():
            for _ in range(100):
                aggregator.add_result(SyncResult("deals", created=1))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert aggregator.get_summary().created == 800
