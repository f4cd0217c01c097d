"""CLI entry point for the CRM sync engine.

This module provides the command-line interface for running syncs and
inspecting the shared resilience state, with progress indicators and
rich tables.
"""

import asyncio
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import click
import uvicorn
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from crmsync import __version__
from crmsync.fetcher.transport import HttpTransport
from crmsync.mock_servers.app import create_mock_app
from crmsync.models.config import ConfigManager, SyncEngineConfig
from crmsync.models.data_models import MAX_PAGE_SIZE, RunReport, SyncOptions, canonical_entity_type
from crmsync.pipeline.orchestrator import SyncOrchestrator, build_counter_store
from crmsync.pipeline.output import JSONOutputFormatter
from crmsync.processor.aggregator import SyncRunAggregator
from crmsync.store.counter_store import RedisCounterStore


console = Console()

LOG_LEVELS = click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False)


@click.group()
@click.version_option(version=__version__, prog_name="crmsync")
def cli() -> None:
    """CRM Sync - resilient synchronization of CRM entities into a local store."""


@cli.command()
@click.argument("entities", nargs=-1)
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option("--full-data", is_flag=True, help="Paginate through every record instead of the latest changes")
@click.option("--force", is_flag=True, help="Overwrite records that already exist locally")
@click.option(
    "--limit",
    type=click.IntRange(1, MAX_PAGE_SIZE),
    help=f"Records per page (1-{MAX_PAGE_SIZE}, overrides config)",
)
@click.option("--concurrency", type=click.IntRange(1, 16), help="Entity types synced concurrently")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output JSON file path (overrides config)",
)
@click.option("--log-level", "-l", type=LOG_LEVELS, help="Logging level (overrides config)")
@click.option("--no-progress", is_flag=True, help="Disable progress bars (useful for CI/CD)")
def sync(
    entities: Tuple[str, ...],
    config: Path,
    full_data: bool,
    force: bool,
    limit: Optional[int],
    concurrency: Optional[int],
    output: Optional[Path],
    log_level: Optional[str],
    no_progress: bool,
) -> None:
    """
    Sync CRM entities into the local store.

    Syncs the given ENTITIES (or every enabled entity type) and writes a JSON
    run report.

    Examples:

        # Latest changes for every enabled entity type
        $ crmsync sync

        # Full scan of deals and persons, overwriting local copies
        $ crmsync sync deals persons --full-data --force

        # Disable progress bars for CI/CD
        $ crmsync sync --no-progress
    """
    try:
        cli_overrides = {
            "max_concurrent_syncs": concurrency,
            "log_level": log_level.upper() if log_level else None,
        }
        sync_config = ConfigManager(config).load_config(cli_overrides)

        entity_types = [canonical_entity_type(e) for e in entities] or sync_config.enabled_entities
        options_list = [
            SyncOptions.for_command(
                entity_type,
                full_data=full_data,
                force=force,
                page_size=limit or sync_config.default_page_size,
            )
            for entity_type in entity_types
        ]

        output_path = output if output else sync_config.output_path

        _display_config_summary(sync_config, options_list, no_progress)

        report = asyncio.run(_run_sync_with_progress(sync_config, options_list, no_progress))

        JSONOutputFormatter().save(report, str(output_path))

        _display_results(report, output_path, no_progress)

        sys.exit(0 if report.summary.failed_entities == 0 else 2)

    except KeyboardInterrupt:
        console.print("\n[yellow]Sync interrupted by user[/yellow]")
        sys.exit(130)  # Standard exit code for SIGINT
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}", style="bold red")
        if "--debug" in sys.argv:
            console.print_exception()
        sys.exit(1)


@cli.command("scheduled-sync")
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option("--dry-run", is_flag=True, help="Show what would be synced without calling the API")
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output JSON file path (overrides config)",
)
@click.option("--no-progress", is_flag=True, help="Disable progress bars (useful for CI/CD)")
def scheduled_sync(config: Path, dry_run: bool, output: Optional[Path], no_progress: bool) -> None:
    """
    Pull the latest modifications for every enabled entity type.

    Meant to run from cron or a scheduler: never paginates, and overwrites
    local copies unless scheduler_force is disabled in the configuration.
    """
    try:
        sync_config = ConfigManager(config).load_config()
        options_list = [
            SyncOptions.for_scheduler(
                entity_type,
                force=sync_config.scheduler_force,
                page_size=sync_config.scheduler_page_size,
            )
            for entity_type in sync_config.enabled_entities
        ]

        if dry_run:
            _display_planned(options_list)
            return

        output_path = output if output else sync_config.output_path

        _display_config_summary(sync_config, options_list, no_progress)

        report = asyncio.run(_run_sync_with_progress(sync_config, options_list, no_progress))

        JSONOutputFormatter().save(report, str(output_path))

        _display_results(report, output_path, no_progress)

        sys.exit(0 if report.summary.failed_entities == 0 else 2)

    except KeyboardInterrupt:
        console.print("\n[yellow]Sync interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}", style="bold red")
        sys.exit(1)


async def _run_sync_with_progress(
    config: SyncEngineConfig,
    options_list: List[SyncOptions],
    no_progress: bool,
) -> RunReport:
    """
    Run the sync with progress tracking.

    Args:
        config: Engine configuration
        options_list: One SyncOptions per entity type
        no_progress: Whether to disable progress bars

    Returns:
        Run report
    """
    aggregator = SyncRunAggregator()
    aggregator.start_timer()
    counter_store = build_counter_store(config)

    try:
        async with HttpTransport(
            config.api_base_url,
            api_token=config.api_token,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        ) as transport:
            orchestrator = SyncOrchestrator.from_config(config, transport, counter_store=counter_store)
            await orchestrator.initialize()

            if no_progress:
                console.print("[cyan]Running sync...[/cyan]")
                results = await orchestrator.sync_many(options_list)
            else:
                with Progress(
                    SpinnerColumn(),
                    TextColumn("[progress.description]{task.description}"),
                    BarColumn(),
                    TaskProgressColumn(),
                    TimeElapsedColumn(),
                    console=console,
                ) as progress:
                    overall_task = progress.add_task(
                        "[green]Syncing entities...",
                        total=len(options_list),
                    )
                    results = await orchestrator.sync_many(
                        options_list,
                        on_complete=lambda _: progress.advance(overall_task),
                    )
    finally:
        if isinstance(counter_store, RedisCounterStore):
            await counter_store.close()

    for result in results:
        aggregator.add_result(result)
    aggregator.stop_timer()
    return aggregator.build_report()


@cli.command()
@click.option(
    "--config",
    "-c",
    type=click.Path(path_type=Path),
    default="config/config.yaml",
    help="Path to configuration YAML file",
)
@click.option("--check/--no-check", default=True, help="Run a health probe before reporting")
def status(config: Path, check: bool) -> None:
    """Show the token budget, circuit states and API health."""
    try:
        status_config = ConfigManager(config).load_config()
        data = asyncio.run(_collect_status(status_config, check))
        _display_status(data)
    except Exception as e:
        console.print(f"\n[red]Error:[/red] {e}", style="bold red")
        sys.exit(1)


async def _collect_status(config: SyncEngineConfig, check: bool) -> dict:
    counter_store = build_counter_store(config)
    try:
        async with HttpTransport(
            config.api_base_url,
            api_token=config.api_token,
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
        ) as transport:
            orchestrator = SyncOrchestrator.from_config(config, transport, counter_store=counter_store)
            if check and orchestrator.health is not None and orchestrator.health.enabled:
                await orchestrator.health.check()
            return await orchestrator.status()
    finally:
        if isinstance(counter_store, RedisCounterStore):
            await counter_store.close()


@cli.command("mock-server")
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind")
@click.option("--port", default=8010, show_default=True, type=int, help="Port to listen on")
@click.option("--error-rate", default=0.0, type=click.FloatRange(0.0, 1.0), help="Probability of a 5xx answer")
@click.option("--rate-limit-after", type=int, help="Answer 429 after this many entity requests")
@click.option("--seed", default=42, show_default=True, type=int, help="Seed for data and error injection")
def mock_server(
    host: str,
    port: int,
    error_rate: float,
    rate_limit_after: Optional[int],
    seed: int,
) -> None:
    """Serve the mock CRM API locally with uvicorn."""
    app = create_mock_app(
        name="mock-crm",
        random_seed=seed,
        error_rate=error_rate,
        rate_limit_after=rate_limit_after,
    )
    console.print(f"[cyan]Mock CRM API listening on http://{host}:{port}/v1[/cyan]")
    uvicorn.run(app, host=host, port=port, log_level="warning")


def _display_config_summary(
    config: SyncEngineConfig,
    options_list: List[SyncOptions],
    no_progress: bool,
) -> None:
    """Display configuration summary before running."""
    if no_progress:
        return

    mode = "full scan" if options_list and options_list[0].full_scan else "latest changes"
    console.print("\n[bold cyan]Sync Configuration[/bold cyan]")
    console.print(f"  Entities: {', '.join(o.entity_type for o in options_list)}")
    console.print(f"  Mode: {mode}")
    console.print(f"  Daily Token Budget: {config.daily_token_budget}")
    console.print(f"  Concurrency: {config.max_concurrent_syncs}")
    console.print(f"  Counter Store: {'redis' if config.redis_url else 'in-memory'}")
    console.print()


def _display_planned(options_list: List[SyncOptions]) -> None:
    table = Table(title="Scheduled Sync (dry run)")
    table.add_column("Entity", style="cyan")
    table.add_column("Mode", style="magenta")
    table.add_column("Limit", justify="right", style="green")
    table.add_column("Force", style="yellow")
    for options in options_list:
        table.add_row(
            options.entity_type,
            "full scan" if options.full_scan else "latest",
            str(options.page_size),
            "yes" if options.overwrite_existing else "no",
        )
    console.print(table)
    console.print(f"[yellow]Dry run: {len(options_list)} entity types would be synced[/yellow]")


def _display_results(
    report: RunReport,
    output_path: Path,
    no_progress: bool,
) -> None:
    """Display final results summary."""
    summary = report.summary
    if no_progress:
        # Simple output for CI/CD
        console.print(
            f"✓ Sync complete: {summary.created} created, {summary.updated} updated, "
            f"{summary.skipped} skipped, {summary.errors} errors"
        )
        console.print(f"✓ Output saved to: {output_path}")
        return

    console.print("\n[bold green]Sync Complete![/bold green]\n")

    summary_table = Table(title="Execution Summary", show_header=False)
    summary_table.add_column("Metric", style="cyan")
    summary_table.add_column("Value", style="green")
    summary_table.add_row("Entity Types", str(summary.entities))
    summary_table.add_row("Records Fetched", str(summary.records_fetched))
    summary_table.add_row("Processing Time", f"{summary.processing_time_seconds:.2f}s")
    summary_table.add_row("Success Rate", f"{summary.success_rate * 100:.1f}%")
    summary_table.add_row("Failed Entity Types", str(summary.failed_entities))
    console.print(summary_table)
    console.print()

    if report.results:
        entity_table = Table(title="Per-Entity Results")
        entity_table.add_column("Entity", style="cyan")
        entity_table.add_column("Created", justify="right", style="green")
        entity_table.add_column("Updated", justify="right", style="green")
        entity_table.add_column("Skipped", justify="right", style="yellow")
        entity_table.add_column("Errors", justify="right", style="red")
        entity_table.add_column("Status", style="magenta")

        for result in report.results:
            entity_table.add_row(
                result.entity_type,
                str(result.created),
                str(result.updated),
                str(result.skipped),
                str(result.errors),
                "ok" if result.success else (result.error_message or "failed"),
            )

        console.print(entity_table)
        console.print()

    console.print(f"[bold]Output saved to:[/bold] {output_path}")
    console.print()


def _display_status(data: dict) -> None:
    rate_limit = data["rate_limit"]
    budget_table = Table(title="Daily Token Budget", show_header=False)
    budget_table.add_column("Metric", style="cyan")
    budget_table.add_column("Value", style="green")
    budget_table.add_row("Used", f"{rate_limit['used']} / {rate_limit['daily_budget']}")
    budget_table.add_row("Usage", f"{rate_limit['usage_percentage']:.1f}%")
    budget_table.add_row("Resets In", f"{rate_limit['reset_in_seconds']}s")
    console.print(budget_table)

    circuit_table = Table(title="Circuits")
    circuit_table.add_column("Kind", style="cyan")
    circuit_table.add_column("State", style="magenta")
    circuit_table.add_column("Failures", justify="right", style="yellow")
    for kind, circuit in data["circuits"].items():
        circuit_table.add_row(kind, circuit["state"], str(circuit["failures"]))
    console.print(circuit_table)

    health = data.get("health")
    if health:
        health_table = Table(title="API Health", show_header=False)
        health_table.add_column("Metric", style="cyan")
        health_table.add_column("Value", style="green")
        health_table.add_row("Endpoint", str(health["endpoint"]))
        health_table.add_row("Healthy", str(health["healthy"]))
        health_table.add_row("Degraded", str(health["degraded"]))
        health_table.add_row("Consecutive Failures", str(health["consecutive_failures"]))
        console.print(health_table)


if __name__ == "__main__":
    cli()
