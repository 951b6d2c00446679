"""Command-line interface for the LaunchDarkly project migrator."""

import asyncio
import sys
from pathlib import Path
from typing import Annotated, Any

import structlog
import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from ld_migrate.client import create_client
from ld_migrate.config import Config, MigrationOptions, parse_environment_mapping
from ld_migrate.estimate import count_resources, estimate_migration_time, format_duration
from ld_migrate.exceptions import ConfigurationError
from ld_migrate.orchestration import MigrationOrchestrator
from ld_migrate.rate_limits import RateGovernor
from ld_migrate.report import MigrationReport
from ld_migrate.source import SourceProject

# Constants
MAX_ERRORS_TO_DISPLAY = 10

# Create Typer app
app = typer.Typer(
    name="ld-migrate",
    help="Migrate LaunchDarkly projects between instances, accounts and regions",
    add_completion=False,
)

console = Console()


def setup_logging(log_level: str = "INFO", log_format: str = "text") -> None:
    """Setup structured logging.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json or text).
    """
    import logging

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=log_level.upper())

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format.lower() == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def load_config(config_file: Path | None) -> Config:
    """Load configuration from a file, or from the environment when none is given."""
    if config_file is not None:
        return Config.from_file(config_file)
    return Config.from_env()


def apply_overrides(config: Config, **overrides: Any) -> Config:
    """Apply command-line values on top of a loaded configuration.

    ``None`` means "not given on the command line" and keeps the configured
    value.

    Raises:
        ConfigurationError: If an override is invalid.
    """
    given = {k: v for k, v in overrides.items() if v is not None}

    if "source" in given:
        config.source.project_key = given.pop("source")
    if "dest" in given:
        config.destination.project_key = given.pop("dest")
    if "domain" in given:
        config.destination = config.destination.model_validate(
            {**config.destination.model_dump(), "domain": given.pop("domain")}
        )
    if "data_dir" in given:
        config.data_dir = given.pop("data_dir")
    if "report_dir" in given:
        config.report_dir = given.pop("report_dir")
    if "max_concurrent" in given:
        config.migration = config.migration.model_validate(
            {**config.migration.model_dump(), "max_concurrent": given.pop("max_concurrent")}
        )

    if "env_map" in given:
        try:
            given["environment_mapping"] = parse_environment_mapping(given.pop("env_map"))
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    try:
        config.options = MigrationOptions.model_validate(
            {**config.options.model_dump(), **given}
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid migration options: {e}") from e
    return config


@app.command()
def migrate(
    source: Annotated[
        str | None,
        typer.Option("--source", "-p", help="Source project key"),
    ] = None,
    dest: Annotated[
        str | None,
        typer.Option("--dest", "-d", help="Destination project key"),
    ] = None,
    assign_maintainer_ids: Annotated[
        bool | None,
        typer.Option(
            "--assign-maintainer-ids/--no-assign-maintainer-ids",
            "-m",
            help="Map flag maintainers using mappings/maintainer_mapping.json",
        ),
    ] = None,
    migrate_segments: Annotated[
        bool | None,
        typer.Option(
            "--migrate-segments/--no-migrate-segments",
            "-s",
            help="Migrate segments (default: on)",
        ),
    ] = None,
    conflict_prefix: Annotated[
        str | None,
        typer.Option(
            "--conflict-prefix",
            "-c",
            help="Prefix to use when resolving key conflicts (e.g., 'imported-')",
        ),
    ] = None,
    target_view: Annotated[
        str | None,
        typer.Option("--target-view", "-v", help="View key to link all migrated flags to"),
    ] = None,
    environments: Annotated[
        str | None,
        typer.Option(
            "--environments",
            "-e",
            help="Comma-separated list of environment keys to migrate (e.g., 'production,staging')",
        ),
    ] = None,
    env_map: Annotated[
        str | None,
        typer.Option(
            "--env-map",
            help="Environment mapping in format 'source1:dest1,source2:dest2'",
        ),
    ] = None,
    domain: Annotated[
        str | None,
        typer.Option("--domain", help="Destination domain (default: app.launchdarkly.com)"),
    ] = None,
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-f",
            help="Path to a YAML/JSON config file. CLI arguments override its values.",
        ),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Root of the extracted source data"),
    ] = None,
    report_dir: Annotated[
        Path | None,
        typer.Option("--report-dir", help="Directory for the migration report"),
    ] = None,
    max_concurrent: Annotated[
        int | None,
        typer.Option("--max-concurrent", help="Number of flags migrated in parallel"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Look up resources without writing anything"),
    ] = False,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            "-l",
            help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        ),
    ] = "INFO",
    log_format: Annotated[
        str,
        typer.Option("--log-format", help="Log format (json or text)"),
    ] = "text",
) -> None:
    """Migrate a project from extracted source data into the destination instance.

    Examples:
        ld-migrate migrate -p source-project -d dest-project
        ld-migrate migrate -f migration.yaml --dry-run
        ld-migrate migrate -p src -d dst --env-map prod:production -c imported-
    """
    setup_logging(log_level, log_format)
    logger = structlog.get_logger(__name__)

    try:
        config = apply_overrides(
            load_config(config_file),
            source=source,
            dest=dest,
            domain=domain,
            data_dir=data_dir,
            report_dir=report_dir,
            max_concurrent=max_concurrent,
            assign_maintainer_ids=assign_maintainer_ids,
            migrate_segments=migrate_segments,
            conflict_prefix=conflict_prefix,
            target_view=target_view,
            environments=environments,
            env_map=env_map,
            dry_run=dry_run or None,
        )
        if not config.destination.api_key:
            raise ConfigurationError(
                "No destination API key configured (set LD_DEST_API_KEY)"
            )

        if config.options.dry_run:
            console.print("[yellow]DRY RUN MODE - No changes will be made[/yellow]")

        report = asyncio.run(_run_migration(config))
    except KeyboardInterrupt:
        console.print("\n[red]Migration interrupted by user[/red]")
        logger.info("Migration interrupted by user")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Migration failed: {e}[/red]")
        logger.error("Migration failed", error=str(e), exc_info=True)
        sys.exit(1)

    report_path, summary_path = report.write(config.report_dir)
    _display_results(report)
    console.print(f"\nReport saved to: {report_path}")
    console.print(f"Summary saved to: {summary_path}")

    if report.status == "complete":
        console.print("\n[green]Migration completed successfully![/green]")
    elif report.status == "pending_approval":
        console.print(
            "\n[yellow]Migration completed; some changes are waiting for approval.[/yellow]"
        )
    else:
        console.print("\n[red]Migration completed with errors.[/red]")
        sys.exit(1)


async def _run_migration(config: Config) -> MigrationReport:
    """Run the orchestrator behind a spinner."""
    orchestrator = MigrationOrchestrator(config)
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(
            f"Migrating {config.source.project_key} → {config.destination.project_key}...",
            total=None,
        )
        return await orchestrator.migrate_all()


def _display_results(report: MigrationReport) -> None:
    """Display migration results in formatted tables.

    Args:
        report: The finished migration report.
    """
    table = Table(title="Migration Summary")
    table.add_column("Resource", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Existing", justify="right", style="blue")
    table.add_column("Skipped", justify="right", style="yellow")
    table.add_column("Failed", justify="right", style="red")
    if report.dry_run:
        table.add_column("Planned", justify="right", style="magenta")

    for resource_type, counts in report.counts.items():
        if counts.total == 0:
            continue
        row = [
            resource_type,
            str(counts.total),
            str(counts.created),
            str(counts.existing),
            str(counts.skipped),
            str(counts.failed),
        ]
        if report.dry_run:
            row.append(str(counts.planned))
        table.add_row(*row)

    console.print("\n")
    console.print(table)
    console.print(f"\n{report.conflict_report}")

    if report.approvals:
        console.print("\n[yellow]Pending approval:[/yellow]")
        for flag, envs in report.approvals.items():
            console.print(f"  {flag}: {', '.join(envs)}")

    if report.skipped_fields:
        console.print("\n[yellow]Set manually after approval:[/yellow]")
        for flag, fields in report.skipped_fields.items():
            console.print(f"  {flag}: {', '.join(fields)}")

    if report.errors:
        console.print("\n[red]Errors encountered:[/red]")
        for i, error in enumerate(report.errors[:MAX_ERRORS_TO_DISPLAY], 1):
            where = error["key"] + (f"/{error['env']}" if error.get("env") else "")
            console.print(f"  {i}. {error['resource_type']} {where}: {error['error']}")

        if len(report.errors) > MAX_ERRORS_TO_DISPLAY:
            console.print(
                f"  ... and {len(report.errors) - MAX_ERRORS_TO_DISPLAY} more errors"
            )


@app.command()
def validate(
    config_file: Annotated[
        Path | None,
        typer.Option("--config", "-f", help="Path to a YAML/JSON config file"),
    ] = None,
    source: Annotated[
        str | None, typer.Option("--source", "-p", help="Source project key")
    ] = None,
    dest: Annotated[
        str | None, typer.Option("--dest", "-d", help="Destination project key")
    ] = None,
    log_level: Annotated[
        str,
        typer.Option(
            "--log-level",
            "-l",
            help="Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
        ),
    ] = "INFO",
) -> None:
    """Validate configuration and test connectivity to both instances.

    Nothing is written; only project lookups are performed.
    """
    setup_logging(log_level, "text")  # Use text format for validation
    logger = structlog.get_logger(__name__)

    try:
        console.print("[blue]Validating configuration...[/blue]")
        config = apply_overrides(load_config(config_file), source=source, dest=dest)
        console.print("[green]✓[/green] Configuration loaded successfully")

        console.print("[blue]Testing connectivity...[/blue]")
        asyncio.run(_test_connectivity(config))

        console.print("[green]✓[/green] All validation checks passed!")

    except Exception as e:
        console.print(f"[red]✗ Validation failed: {e}[/red]")
        logger.error("Validation failed", error=str(e))
        sys.exit(1)


async def _test_connectivity(config: Config) -> None:
    """Look up the configured projects on both instances.

    Args:
        config: Migration configuration.
    """
    if not config.destination.api_key:
        raise ConfigurationError("No destination API key configured (set LD_DEST_API_KEY)")

    governor = RateGovernor()
    async with create_client(
        config.destination, config.migration, governor, "destination"
    ) as dest_client:
        health = await dest_client.health_check(config.destination.project_key)
        state = (
            "exists"
            if health["project_exists"]
            else "will be created"
            if config.destination.project_key
            else "no project key given"
        )
        console.print(
            f"[green]✓[/green] Destination {health['domain']}: project {state}"
        )

    if config.source.api_key:
        async with create_client(
            config.source, config.migration, governor, "source"
        ) as source_client:
            health = await source_client.health_check(config.source.project_key)
            console.print(f"[green]✓[/green] Source {health['domain']} reachable")
            if config.source.project_key and not health["project_exists"]:
                console.print(
                    f"[yellow]![/yellow] Source project {config.source.project_key} not found"
                )
    else:
        console.print("[yellow]![/yellow] No source API key; skipping source check")


@app.command()
def estimate(
    source: Annotated[str, typer.Option("--source", "-p", help="Source project key")],
    rate_limit: Annotated[
        int | None,
        typer.Option(
            "--rate-limit", "-r", help="Flag requests allowed per 10 seconds (default 5)"
        ),
    ] = None,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Root of the extracted source data"),
    ] = None,
) -> None:
    """Estimate how long migrating an extracted project will take."""
    setup_logging("WARNING", "text")

    try:
        root = data_dir or Config.from_env().data_dir
        counts = count_resources(SourceProject(root, source))
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    result = estimate_migration_time(counts, rate_limit)

    console.print("\n[bold]Migration Time Estimate[/bold]")
    console.print(
        f"Total estimated time: [green]{format_duration(result.total_seconds)}[/green]"
    )

    table = Table(title="Resource Breakdown")
    table.add_column("Resource", style="cyan")
    table.add_column("Count", justify="right")
    table.add_row("Flags", str(counts.flags))
    table.add_row("Segments", str(counts.segments))
    table.add_row("Environments", str(counts.environments))
    table.add_row("Flag-Environment combinations", str(counts.flag_environments))
    console.print(table)

    console.print(
        f"Flag requests: {result.flag_requests} "
        f"({counts.flags} creates + {counts.flag_environments} patches)"
    )
    console.print(f"Segment requests: {result.segment_requests}")
    console.print(f"Flags: {format_duration(result.flag_seconds)}")
    console.print(
        f"\nUsing rate limit: {result.rate_limit} requests per 10 seconds"
    )
    console.print(
        "[dim]This is an estimate; actual time varies with network conditions "
        "and API response times.[/dim]"
    )


@app.command()
def version() -> None:
    """Show version information."""
    from ld_migrate import __version__

    console.print(f"ld-migrate version {__version__}")


if __name__ == "__main__":
    app()
