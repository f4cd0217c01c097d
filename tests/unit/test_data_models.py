"""Unit tests for data models and the error hierarchy."""

import pytest

from crmsync.models.data_models import (
    ErrorKind,
    MigrationStrategy,
    SyncOptions,
    SyncResult,
    WebhookAction,
    WebhookEvent,
    canonical_entity_type,
)
from crmsync.models.errors import (
    ApiError,
    AuthError,
    ConnectionFailure,
    RateLimitError,
    ServerError,
    SyncError,
)


class TestCanonicalEntityType:

    @pytest.mark.parametrize("raw,expected", [
        ("deals", "deals"),
        ("Deals", "deals"),
        ("person", "persons"),
        ("/v1/deals/5?limit=1", "deals"),
        ("v2/activities", "activities"),
        ("organization", "organizations"),
        ("goals/find", "goals"),
        ("custom_thing", "custom_thing"),
    ])
    def test_canonical_forms(self, raw, expected):
        assert canonical_entity_type(raw) == expected


class TestSyncOptions:

    def test_defaults(self):
        options = SyncOptions("deals")

        assert options.page_size == 500
        assert options.full_scan is False
        assert options.overwrite_existing is False
        assert options.emit_events is True

    def test_entity_type_canonicalized(self):
        assert SyncOptions("person").entity_type == "persons"

    @pytest.mark.parametrize("page_size", [0, -1, 501])
    def test_invalid_page_size_rejected(self, page_size):
        with pytest.raises(ValueError):
            SyncOptions("deals", page_size=page_size)

    def test_empty_entity_type_rejected(self):
        with pytest.raises(ValueError):
            SyncOptions("  ")

    def test_unknown_context_rejected(self):
        with pytest.raises(ValueError):
            SyncOptions("deals", context="cron")

    def test_immutable(self):
        options = SyncOptions("deals")
        with pytest.raises(AttributeError):
            options.page_size = 10

    def test_with_changes_validates(self):
        options = SyncOptions("deals")

        assert options.with_changes(page_size=50).page_size == 50
        with pytest.raises(ValueError):
            options.with_changes(page_size=1000)

    def test_for_command(self):
        options = SyncOptions.for_command("deals", full_data=True, force=True, page_size=100)

        assert options.full_scan is True
        assert options.overwrite_existing is True
        assert options.page_size == 100
        assert options.context == "command"

    def test_scheduler_never_full_scans(self):
        options = SyncOptions.for_scheduler("deals", force=True)

        assert options.full_scan is False
        assert options.overwrite_existing is True
        assert options.context == "scheduler"

    def test_for_testing_overrides(self):
        options = SyncOptions.for_testing("deals", page_size=3, emit_events=True)

        assert options.page_size == 3
        assert options.emit_events is True
        assert options.context == "test"


class TestSyncResult:

    def test_empty_result_rates(self):
        result = SyncResult("deals")

        assert result.total_processed == 0
        assert result.success_rate == 1.0
        assert result.success is True

    def test_merge_sums_counts(self):
        a = SyncResult("deals", created=2, updated=1, records_fetched=3, error_items=[{"remote_id": 1}])
        b = SyncResult("deals", skipped=4, errors=1, records_fetched=5, error_message="boom")

        merged = a.merge(b)

        assert merged.created == 2
        assert merged.skipped == 4
        assert merged.errors == 1
        assert merged.records_fetched == 8
        assert merged.error_message == "boom"
        assert merged.error_items == [{"remote_id": 1}]

    def test_merge_rejects_other_entity_type(self):
        with pytest.raises(ValueError):
            SyncResult("deals").merge(SyncResult("persons"))

    def test_failure_factory(self):
        result = SyncResult.failure("deals", "down")

        assert result.errors == 1
        assert result.success is False
        assert "failed: down" in result.summary()

    def test_to_dict_includes_derived_fields(self):
        data = SyncResult("deals", created=3, errors=1).to_dict()

        assert data["total_processed"] == 4
        assert data["success_rate"] == 0.75
        assert data["success"] is True


class TestEnums:

    @pytest.mark.parametrize("raw,expected", [
        ("both", MigrationStrategy.BOTH),
        ("keep_both", MigrationStrategy.BOTH),
        ("keep_merged", MigrationStrategy.MIGRATE),
        ("KEEP_SURVIVING", MigrationStrategy.SKIP),
        (MigrationStrategy.SKIP, MigrationStrategy.SKIP),
    ])
    def test_migration_strategy_parse(self, raw, expected):
        assert MigrationStrategy.parse(raw) is expected

    def test_migration_strategy_parse_unknown(self):
        with pytest.raises(ValueError):
            MigrationStrategy.parse("merge_everything")

    def test_webhook_event_dict_roundtrip(self):
        event = WebhookEvent("c-1", WebhookAction.DELETE, "deals", 7, 10.5)
        assert WebhookEvent.from_dict(event.to_dict()) == event


class TestErrors:

    def test_class_defaults(self):
        assert ServerError().retryable is True
        assert ServerError().retry_after == 30.0
        assert ConnectionFailure().retry_after == 10.0
        assert RateLimitError().retry_after == 60.0
        assert ApiError().retryable is False

    def test_instance_overrides(self):
        error = AuthError("no", max_retries=2, retryable=True)

        assert error.max_retries == 2
        assert error.retryable is True
        assert AuthError.default_max_retries == 1

    def test_for_kind(self):
        error = SyncError.for_kind(ErrorKind.CONNECTION, "down", retryable=False)

        assert isinstance(error, ConnectionFailure)
        assert error.retryable is False

    def test_add_context_keeps_existing_keys(self):
        error = ApiError("x", context={"page": 1})
        error.add_context(page=2, entity_type="deals")

        assert error.context == {"page": 1, "entity_type": "deals"}

    def test_to_dict(self):
        error = RateLimitError("slow", status_code=429, remaining=0, used=100, limit=100)
        data = error.to_dict()

        assert data["type"] == "RateLimitError"
        assert data["kind"] == "rate_limit"
        assert data["used"] == 100
        assert data["retryable"] is True

    def test_partial_records_default_empty(self):
        assert ServerError().partial_records == []
