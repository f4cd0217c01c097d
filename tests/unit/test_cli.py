"""Unit tests for CLI interface."""

import json
from unittest.mock import AsyncMock, patch

import pytest
import yaml
from click.testing import CliRunner

from crmsync.models.data_models import RunReport, RunSummary, SyncResult
from crmsync.pipeline.main import cli


def make_report(failed_entities=0):
    results = [
        SyncResult("deals", created=10, updated=2, records_fetched=12),
        SyncResult("persons", created=5, records_fetched=5),
    ]
    if failed_entities:
        results[1].error_message = "Server error: down"
        results[1].errors = 1
    return RunReport(
        summary=RunSummary(
            entities=2,
            records_fetched=17,
            created=15,
            updated=2,
            skipped=0,
            errors=failed_entities,
            failed_entities=failed_entities,
            processing_time_seconds=1.5,
            success_rate=1.0 if not failed_entities else 0.94,
        ),
        results=results,
        started_at="2024-06-01T12:00:00+00:00",
        finished_at="2024-06-01T12:00:01+00:00",
    )


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "api_base_url": "http://testserver/v1",
        "enabled_entities": ["deals", "persons"],
        "output_directory": str(tmp_path / "out"),
    }))
    return path


def test_cli_help():
    """Test that CLI help message works."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--help"])

    assert result.exit_code == 0
    assert "CRM Sync" in result.output
    assert "sync" in result.output
    assert "status" in result.output
    assert "mock-server" in result.output
    assert "scheduled-sync" in result.output


def test_sync_help():
    result = CliRunner().invoke(cli, ["sync", "--help"])

    assert result.exit_code == 0
    assert "--full-data" in result.output
    assert "--force" in result.output
    assert "--limit" in result.output


def test_cli_version():
    """Test that version flag works."""
    runner = CliRunner()
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "1.0.0" in result.output


def test_sync_writes_report(config_file, tmp_path):
    """Test sync saves the run report and exits 0 when nothing failed."""
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=make_report())) as run:
        result = CliRunner().invoke(cli, ["sync", "--config", str(config_file), "--no-progress"])

    assert result.exit_code == 0, result.output
    assert "Sync complete: 15 created" in result.output

    options_list = run.call_args.args[1]
    assert [o.entity_type for o in options_list] == ["deals", "persons"]
    assert all(not o.full_scan for o in options_list)

    data = json.loads((tmp_path / "out" / "summary.json").read_text())
    assert data["summary"]["created"] == 15


def test_sync_options_from_flags(config_file, tmp_path):
    output = tmp_path / "custom.json"
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=make_report())) as run:
        result = CliRunner().invoke(cli, [
            "sync", "deal", "--config", str(config_file), "--full-data", "--force",
            "--limit", "50", "--output", str(output), "--no-progress",
        ])

    assert result.exit_code == 0, result.output
    [options] = run.call_args.args[1]
    assert options.entity_type == "deals"
    assert options.full_scan is True
    assert options.overwrite_existing is True
    assert options.page_size == 50
    assert output.exists()


def test_sync_concurrency_override(config_file):
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=make_report())) as run:
        CliRunner().invoke(cli, ["sync", "--config", str(config_file), "--concurrency", "7", "--no-progress"])

    assert run.call_args.args[0].max_concurrent_syncs == 7


def test_sync_exits_2_on_failed_entity(config_file):
    report = make_report(failed_entities=1)
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=report)):
        result = CliRunner().invoke(cli, ["sync", "--config", str(config_file)])

    assert result.exit_code == 2
    assert "Per-Entity Results" in result.output


def test_sync_exits_1_on_error(config_file):
    failing = AsyncMock(side_effect=RuntimeError("connection refused"))
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=failing):
        result = CliRunner().invoke(cli, ["sync", "--config", str(config_file), "--no-progress"])

    assert result.exit_code == 1
    assert "connection refused" in result.output


def test_sync_rejects_limit_out_of_range(config_file):
    result = CliRunner().invoke(cli, ["sync", "--config", str(config_file), "--limit", "501"])
    assert result.exit_code == 2
    assert "501" in result.output


def test_sync_invalid_config_exits_1(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text(yaml.safe_dump({"max_batch_size": 9000}))

    result = CliRunner().invoke(cli, ["sync", "--config", str(path), "--no-progress"])

    assert result.exit_code == 1


def test_scheduled_sync_pulls_latest_for_enabled_entities(config_file, tmp_path):
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=make_report())) as run:
        result = CliRunner().invoke(cli, ["scheduled-sync", "--config", str(config_file), "--no-progress"])

    assert result.exit_code == 0, result.output
    options_list = run.call_args.args[1]
    assert [o.entity_type for o in options_list] == ["deals", "persons"]
    assert all(o.context == "scheduler" for o in options_list)
    assert all(o.full_scan is False for o in options_list)
    assert all(o.overwrite_existing is True for o in options_list)
    assert all(o.page_size == 500 for o in options_list)
    assert (tmp_path / "out" / "summary.json").exists()


def test_scheduled_sync_uses_scheduler_settings(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "enabled_entities": ["deals"],
        "scheduler_force": False,
        "scheduler_page_size": 50,
        "output_directory": str(tmp_path / "out"),
    }))
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=make_report())) as run:
        result = CliRunner().invoke(cli, ["scheduled-sync", "--config", str(path), "--no-progress"])

    assert result.exit_code == 0, result.output
    [options] = run.call_args.args[1]
    assert options.overwrite_existing is False
    assert options.page_size == 50


def test_scheduled_sync_dry_run_makes_no_requests(config_file, tmp_path):
    run = AsyncMock(return_value=make_report())
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=run):
        result = CliRunner().invoke(cli, ["scheduled-sync", "--config", str(config_file), "--dry-run"])

    assert result.exit_code == 0, result.output
    run.assert_not_called()
    assert "deals" in result.output
    assert "latest" in result.output
    assert "2 entity types would be synced" in result.output
    assert not (tmp_path / "out" / "summary.json").exists()


def test_scheduled_sync_exits_2_on_failed_entity(config_file):
    report = make_report(failed_entities=1)
    with patch("crmsync.pipeline.main._run_sync_with_progress", new=AsyncMock(return_value=report)):
        result = CliRunner().invoke(cli, ["scheduled-sync", "--config", str(config_file), "--no-progress"])

    assert result.exit_code == 2

def test_status_displays_tables(config_file):
    data = {
        "rate_limit": {"used": 40, "daily_budget": 100, "usage_percentage": 40.0, "reset_in_seconds": 3600},
        "circuits": {"server": {"state": "open", "failures": 5}},
        "health": {"endpoint": "currencies", "healthy": True, "degraded": False, "consecutive_failures": 0},
        "memory": {},
    }
    with patch("crmsync.pipeline.main._collect_status", new=AsyncMock(return_value=data)) as collect:
        result = CliRunner().invoke(cli, ["status", "--config", str(config_file), "--no-check"])

    assert result.exit_code == 0, result.output
    assert collect.call_args.args[1] is False
    assert "40 / 100" in result.output
    assert "open" in result.output
    assert "currencies" in result.output


@patch("crmsync.pipeline.main.uvicorn.run")
@patch("crmsync.pipeline.main.create_mock_app")
def test_mock_server_command(mock_create_app, mock_run):
    result = CliRunner().invoke(cli, ["mock-server", "--port", "9001", "--error-rate", "0.2"])

    assert result.exit_code == 0, result.output
    assert mock_create_app.call_args.kwargs["error_rate"] == 0.2
    assert mock_create_app.call_args.kwargs["random_seed"] == 42
    assert mock_run.call_args.args[0] is mock_create_app.return_value
    assert mock_run.call_args.kwargs["port"] == 9001
