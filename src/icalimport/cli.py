"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .database import DatabaseManager, to_import_source
from .maintenance import fix_double_offsets, mark_past_events_read
from .models import RunSummary
from .services.sql import SqlReadStatusSink
from .sync_engine import SyncEngine
from .timezones import to_local

console = Console()
logger = structlog.get_logger()

RUN_LOCK_NAME = 'ical_import'


def setup_logging(level: str, debug: bool = False, fmt: str = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=fmt)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


@asynccontextmanager
async def run_lock(engine: SyncEngine, ttl_seconds: int, enabled: bool = True):
    """Hold the import run lock; yields False when another run holds it."""
    if not enabled:
        yield True
        return
    db_manager = engine.db_manager
    with db_manager.get_session() as session:
        token = db_manager.acquire_run_lock(session, RUN_LOCK_NAME, ttl_seconds)
    if token is None:
        yield False
        return
    try:
        yield True
    finally:
        with db_manager.get_session() as session:
            db_manager.release_run_lock(session, RUN_LOCK_NAME, token)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """icalimport - periodic iCalendar feed importer.

    Fetches ICS feeds, matches events by UID (falling back to time plus
    location or title) and creates or updates them without duplicates.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(Panel(f"[red]{e}[/red]", title="Error loading configuration", border_style="red"))
        sys.exit(1)


@cli.command()
@click.option('--import-id', '-i', type=int, help='Run a single configured import')
@click.option('--url', '-u', help='Run an ad-hoc feed URL (registered as an import)')
@click.option('--no-lock', is_flag=True, help='Do not take the run lock')
@async_command
async def run(ctx, import_id, url, no_lock):
    """Import configured feeds once."""
    settings = ctx.obj['settings']

    if import_id and url:
        console.print("[red]Use either --import-id or --url, not both[/red]")
        sys.exit(2)

    try:
        async with SyncEngine(settings) as engine:
            async with run_lock(engine, settings.run_lock_ttl_seconds, not no_lock) as acquired:
                if not acquired:
                    console.print("[yellow]Another import run is in progress, not starting[/yellow]")
                    sys.exit(1)
                summaries = await _run_imports(engine, settings, import_id, url)
    except KeyboardInterrupt:
        console.print("[yellow]Import cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Import failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)

    for summary in summaries:
        logger.info("import_run_finished", import_id=summary.import_source_id,
                    imported=summary.imported, updated=summary.updated,
                    skipped=summary.skipped, errors=len(summary.errors))

    _display_run_results(summaries)
    if any(summary.errors for summary in summaries):
        sys.exit(1)


async def _run_imports(engine: SyncEngine, settings, import_id=None, url=None) -> List[RunSummary]:
    if import_id:
        with engine.db_manager.get_session() as session:
            row = engine.db_manager.get_import_source(session, import_id)
            source = to_import_source(row) if row else None
        if source is None:
            console.print(f"[red]Import {import_id} not found[/red]")
            sys.exit(1)
        return [await engine.run(source)]

    if url:
        return [await engine.run_feed(url)]

    summaries = await engine.run_all()
    if not summaries and settings.import_config.feed_url:
        summaries = [await engine.run_feed(settings.import_config.feed_url)]
    if not summaries:
        console.print(Panel(
            "No active imports and no IMPORT_CONFIG__FEED_URL configured.\n"
            "Use [bold]icalimport imports add URL[/bold] to register a feed.",
            title="Nothing to import"
        ))
    return summaries


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Import interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run imports continuously."""
    settings = ctx.obj['settings']

    run_interval = interval or settings.import_config.daemon_interval_minutes
    console.print(f"[green]Starting icalimport daemon[/green] - interval: {run_interval} minutes")

    runs = 0
    try:
        while True:
            if max_runs and runs >= max_runs:
                console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                break

            console.print(f"\n[blue]--- Import Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

            try:
                async with SyncEngine(settings) as engine:
                    async with run_lock(engine, settings.run_lock_ttl_seconds) as acquired:
                        if acquired:
                            summaries = await _run_imports(engine, settings)
                            _display_run_results(summaries, compact=True)
                        else:
                            console.print("[yellow]Another import run is in progress, skipping[/yellow]")
            except Exception as e:
                console.print(f"[red]Import run failed: {e}[/red]")
                if settings.debug:
                    console.print_exception()

            runs += 1
            if max_runs and runs >= max_runs:
                break

            console.print(f"[dim]Next run in {run_interval} minutes...[/dim]")
            await asyncio.sleep(run_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.group()
def imports():
    """Manage configured feed imports."""
    pass


@imports.command('list')
@click.option('--all', 'show_all', is_flag=True, help='Include disabled imports')
@click.pass_context
def list_imports(ctx, show_all):
    """List configured imports."""
    settings = ctx.obj['settings']
    db_manager = _db(ctx)
    with db_manager.get_session() as session:
        sources = [to_import_source(row) for row in db_manager.get_import_sources(session, active_only=not show_all)]

    if not sources:
        console.print("[yellow]No imports configured[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Imports")
    table.add_column("ID", justify="right")
    table.add_column("Title", style="cyan")
    table.add_column("Feed URL", style="dim")
    table.add_column("Calendar", justify="center")
    table.add_column("Board", justify="center")
    table.add_column("Active", justify="center")
    table.add_column("Last Run")
    table.add_column("Status")

    tz_name = settings.import_config.target_timezone
    for source in sources:
        last_run = to_local(source.last_run, tz_name).strftime('%Y-%m-%d %H:%M') if source.last_run else "never"
        table.add_row(
            str(source.id),
            source.title,
            source.feed_url[:60] + "..." if len(source.feed_url) > 60 else source.feed_url,
            str(source.calendar_id),
            str(source.board_id) if source.board_id else "",
            "✓" if source.is_active else "",
            last_run,
            source.last_status or "",
        )
    console.print(table)


@imports.command('add')
@click.argument('feed_url')
@click.option('--title', '-t', default='', help='Display title')
@click.option('--calendar-id', type=int, help='Target calendar/category id')
@click.option('--board-id', type=int, help='Board for event threads')
@click.pass_context
def add_import(ctx, feed_url, title, calendar_id, board_id):
    """Register a feed to import."""
    settings = ctx.obj['settings']
    db_manager = _db(ctx)
    with db_manager.get_session() as session:
        source = db_manager.create_import_source(
            session,
            feed_url=feed_url.strip(),
            title=title,
            calendar_id=calendar_id if calendar_id is not None else settings.import_config.calendar_id,
            board_id=board_id if board_id is not None else settings.import_config.board_id,
        )
        console.print(f"[green]✓ Added import {source.id}[/green] for {source.feed_url}")


@imports.command('disable')
@click.argument('import_id', type=int)
@click.pass_context
def disable_import(ctx, import_id):
    """Stop running an import (its events are kept)."""
    db_manager = _db(ctx)
    with db_manager.get_session() as session:
        if not db_manager.set_import_source_active(session, import_id, False):
            console.print(f"[red]Import {import_id} not found[/red]")
            sys.exit(1)
    console.print(f"[green]✓ Import {import_id} disabled[/green]")


@cli.command('fix-timezones')
@click.option('--include-past', is_flag=True, help='Also repair events that already started')
@click.option('--dry-run', '-n', is_flag=True, help='Only report affected events')
@click.pass_context
def fix_timezones(ctx, include_past, dry_run):
    """Repair events whose timezone offset was applied twice."""
    result = fix_double_offsets(_db(ctx), only_future=not include_past, dry_run=dry_run)
    verb = "would be corrected" if dry_run else "corrected"
    console.print(f"[green]✓ {result.changed} of {result.checked} events {verb}[/green]")
    if result.event_ids:
        console.print(f"[dim]Event ids: {', '.join(str(i) for i in result.event_ids)}[/dim]")


@cli.command('mark-past-read')
@click.pass_context
def mark_past_read(ctx):
    """Mark recently started events read for all users."""
    settings = ctx.obj['settings']
    db_manager = _db(ctx)
    result = mark_past_events_read(db_manager, SqlReadStatusSink(db_manager), settings.import_config)
    console.print(f"[green]✓ {result.changed} past events marked read[/green]")
    if result.failed:
        console.print(f"[red]{result.failed} events could not be marked[/red]")
        sys.exit(1)


@cli.command()
@click.option('--limit', '-l', default=20, type=int, help='Number of log entries to show')
@click.pass_context
def status(ctx, limit):
    """Show recent import activity and database health."""
    settings = ctx.obj['settings']
    db_manager = _db(ctx)
    with db_manager.get_session() as session:
        health = db_manager.validate_database_integrity(session)
        entries = db_manager.get_recent_import_logs(session, limit)

        table = Table(show_header=True, header_style="bold magenta", title="Recent Import Log")
        table.add_column("Time", style="dim")
        table.add_column("Level")
        table.add_column("Action")
        table.add_column("UID", style="cyan")
        table.add_column("Message")
        level_styles = {'error': 'red', 'warning': 'yellow', 'info': 'green', 'debug': 'dim'}
        for entry in entries:
            style = level_styles.get(entry.log_level, '')
            table.add_row(
                to_local(entry.import_time, settings.import_config.target_timezone).strftime('%Y-%m-%d %H:%M:%S'),
                f"[{style}]{entry.log_level}[/{style}]" if style else entry.log_level,
                entry.action,
                entry.event_uid[:40],
                entry.message or "",
            )

    if entries:
        console.print(table)
    else:
        console.print("[dim]No import activity recorded yet[/dim]")

    lines = [
        f"Events: {health['total_events']}",
        f"UID mappings: {health['total_uid_mappings']}",
        f"Active imports: {health['active_imports']}",
    ]
    if health['healthy']:
        lines.append("[green]✓ No mapping defects found[/green]")
        border = "green"
    else:
        lines.extend(f"[red]• {issue}[/red]" for issue in health['issues'])
        border = "red"
    console.print(Panel("\n".join(lines), title="Database Health", border_style=border))


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your feed settings.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")
        sys.exit(1)


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    problems = settings.validate_required_settings()

    if problems:
        console.print(Panel(
            "[red]Configuration problems:[/red]\n" +
            "\n".join(f"• {problem}" for problem in problems),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ Configuration is valid[/green]\n"
            f"Target timezone: {settings.import_config.target_timezone}\n"
            f"Max events per run: {settings.import_config.max_events_per_run}",
            title="Configuration Validation",
            border_style="green"
        ))


def _db(ctx) -> DatabaseManager:
    db_manager = DatabaseManager(ctx.obj['settings'])
    db_manager.init_db()
    return db_manager


def _display_run_results(summaries: List[RunSummary], compact: bool = False) -> None:
    """Display import results."""
    if compact:
        for summary in summaries:
            mark = "[red]✗[/red]" if summary.errors else "[green]✓[/green]"
            console.print(
                f"{mark} import {summary.import_source_id}: {summary.imported} imported, "
                f"{summary.updated} updated, {summary.skipped} skipped"
            )
            for error in summary.errors:
                console.print(f"   {error}")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Import Results")
    table.add_column("Import", justify="right")
    table.add_column("Feed", style="cyan")
    table.add_column("In Feed", justify="center")
    table.add_column("Imported", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Skipped", justify="center", style="dim")
    table.add_column("Errors", justify="center")

    for summary in summaries:
        table.add_row(
            str(summary.import_source_id or ""),
            summary.feed_url or "",
            str(summary.events_in_feed),
            str(summary.imported),
            str(summary.updated),
            str(summary.skipped),
            f"[red]{len(summary.errors)}[/red]" if summary.errors else "0",
        )
    console.print(table)

    errors = [error for summary in summaries for error in summary.errors]
    if errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))

    for summary in summaries:
        if summary.completed_at:
            duration = summary.completed_at - summary.started_at
            console.print(f"[dim]Import {summary.import_source_id} completed in "
                          f"{duration.total_seconds():.1f} seconds[/dim]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
