#!/usr/bin/env python3
"""tag-timer CLI.

Drive inline timers in Markdown files and query the analytics ledger.

Usage:
    tag-timer toggle notes.md 12           # start / pause / continue the timer on line 12
    tag-timer watch notes.md               # keep the file's running timers ticking
    tag-timer list notes.md                # show every marker in a file
    tag-timer report --week                # per-tag totals for this week
    tag-timer set-total work 3600          # correct today's #work total to 1h
    tag-timer prune                        # drop entries past the retention window

Line numbers are 1-based, as shown by editors.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import date, datetime
from pathlib import Path
from typing import Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from tag_timer.accrual import TimerAction
from tag_timer.config import AutoStopPolicy, load_settings, save_settings
from tag_timer.document import FileDocument
from tag_timer.errors import InvalidAdjustmentError, StorageError
from tag_timer.ledger import day_period, week_period
from tag_timer.log import setup_logging
from tag_timer.markers import extract_tags, format_clock, format_duration
from tag_timer.service import ActionResult, TagTimer

console = Console()


def _run(coro):
    return asyncio.run(coro)


def _engine(ctx: click.Context) -> TagTimer:
    return TagTimer.from_settings(ctx.obj["settings"])


def _document(path: Path) -> FileDocument:
    return FileDocument(path.resolve())


def _period(week: bool, day: Optional[datetime]):
    reference = day.date() if day else date.today()
    return week_period(reference) if week else day_period(reference)


def _print_result(result: ActionResult) -> None:
    if result.state is None:
        raise click.ClickException(result.error or "Nothing to do")
    state = result.state
    style = "green" if state.running else "yellow"
    console.print(
        f"[{style}]{result.action.value}[/{style}] timer [bold]{state.id}[/bold] "
        f"{format_clock(state.accumulated_seconds)}"
    )
    if result.flushed is not None:
        entry = result.flushed
        console.print(f"[dim]logged {format_duration(entry.duration_seconds)} {' '.join(entry.tags)}[/dim]")
    if not result.persisted:
        console.print(f"[red]Warning:[/red] not fully saved: {result.error}")


async def _one_shot(ctx: click.Context, action: str, path: Path, line: int) -> ActionResult:
    engine = _engine(ctx)
    document = _document(path)
    try:
        handler = {
            "toggle": engine.toggle,
            "start": engine.start,
            "continue": engine.continue_,
            "pause": engine.pause,
            "delete": engine.delete,
        }[action]
        return await handler(document, line - 1)
    finally:
        await engine.shutdown()


def _line_action(action: str):
    """Build a ``FILE LINE`` command for one timer action."""

    @click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
    @click.argument("line", type=click.IntRange(min=1))
    @click.pass_context
    def command(ctx, path, line):
        try:
            result = _run(_one_shot(ctx, action, path, line))
        except StorageError as e:
            raise click.ClickException(str(e))
        _print_result(result)

    command.__doc__ = f"{action.capitalize()} the timer on LINE of PATH."
    return command


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), help="Settings JSON file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, config_path, verbose):
    """tag-timer - inline timers for Markdown notes, with tag analytics."""
    try:
        settings = load_settings(config_path)
    except (ValidationError, ValueError, OSError) as e:
        raise click.ClickException(f"Invalid settings: {e}")

    setup_logging(logging.DEBUG if verbose else logging.WARNING, log_dir=settings.log_dir)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings
    ctx.obj["config_path"] = config_path


for _name in ("toggle", "start", "continue", "pause", "delete"):
    cli.command(name=_name)(_line_action(_name))


@cli.command(name="list")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def list_markers(ctx, path):
    """List every timer marker in PATH."""
    engine = _engine(ctx)
    document = _document(path)
    try:
        found = engine.sync.scan(document)
    except StorageError as e:
        raise click.ClickException(str(e))

    if not found:
        console.print("[yellow]No timers found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold cyan", box=None)
    table.add_column("Line", justify="right", style="dim")
    table.add_column("Id")
    table.add_column("Status")
    table.add_column("Elapsed", justify="right")
    table.add_column("Tags")
    for line_index, marker in found:
        state = marker.state
        status = "[green]running[/green]" if state.running else "[yellow]paused[/yellow]"
        tags = " ".join(extract_tags(document.get_line(line_index)))
        table.add_row(str(line_index + 1), state.id, status, format_clock(state.accumulated_seconds), tags)
    console.print(table)


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def upgrade(ctx, path):
    """Rewrite legacy timer-btn markers in PATH to the current format."""
    engine = _engine(ctx)
    try:
        changed = engine.sync.upgrade_legacy(_document(path))
    except StorageError as e:
        raise click.ClickException(str(e))
    console.print(f"✓ Upgraded {changed} line(s)")


async def _watch(engine: TagTimer, path: Path, seconds: Optional[int]) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            pass

    results = await engine.open_document(_document(path))
    restored = [r for r in results if r.action == TimerAction.RESTORE]
    console.print(f"Watching {path} ({len(restored)} running timer(s)), Ctrl-C to stop")
    try:
        if seconds is None:
            await stop.wait()
        else:
            try:
                await asyncio.wait_for(stop.wait(), timeout=seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        entries = await engine.shutdown()
        for entry in entries:
            console.print(f"[dim]logged {format_duration(entry.duration_seconds)} {' '.join(entry.tags)}[/dim]")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--auto-stop",
    type=click.Choice([p.value for p in AutoStopPolicy]),
    default=AutoStopPolicy.NEVER.value,
    show_default=True,
    help="Policy for running markers found when the file is opened",
)
@click.option("--for", "seconds", type=click.IntRange(min=1), help="Stop after this many seconds")
@click.pass_context
def watch(ctx, path, auto_stop, seconds):
    """Keep the running timers in PATH ticking until interrupted."""
    settings = ctx.obj["settings"].model_copy(update={"auto_stop": AutoStopPolicy(auto_stop)})
    engine = TagTimer.from_settings(settings)
    try:
        _run(_watch(engine, path, seconds))
    except KeyboardInterrupt:
        pass


@cli.command()
@click.option("--week", is_flag=True, help="Report the current week instead of today")
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Reference day")
@click.pass_context
def report(ctx, week, day):
    """Show per-tag totals for a day or week."""
    engine = _engine(ctx)
    period = _period(week, day)
    try:
        totals = _run(engine.ledger.totals_by_tag(period.start, period.end))
    except StorageError as e:
        raise click.ClickException(str(e))

    label = f"Week of {period.start.date()}" if week else str(period.reference)
    if not totals:
        console.print(f"[yellow]No data for {label}.[/yellow]")
        return

    table = Table(title=label, show_header=True, header_style="bold cyan", box=None)
    table.add_column("Tag")
    table.add_column("Time", justify="right")
    for tag, seconds in sorted(totals.items(), key=lambda item: item[1], reverse=True):
        table.add_row(tag.lstrip("#"), format_duration(seconds))
    console.print(table)


@cli.command(name="set-total")
@click.argument("tag")
@click.argument("seconds")
@click.option("--week", is_flag=True, help="Adjust the current week instead of today")
@click.option("--date", "day", type=click.DateTime(formats=["%Y-%m-%d"]), help="Reference day")
@click.pass_context
def set_total(ctx, tag, seconds, week, day):
    """Set TAG's total for the period to SECONDS without rewriting history."""
    engine = _engine(ctx)
    period = _period(week, day)
    try:
        entry = _run(engine.ledger.set_total_for_period(tag, seconds, period))
    except InvalidAdjustmentError as e:
        raise click.ClickException(str(e))
    except StorageError as e:
        raise click.ClickException(str(e))
    if entry is None:
        console.print("Total already matches, nothing recorded")
    else:
        console.print(f"✓ Recorded adjustment of {entry.duration_seconds:+d}s for {entry.tags[0]}")


@cli.command()
@click.pass_context
def prune(ctx):
    """Remove ledger entries older than the retention window."""
    engine = _engine(ctx)
    try:
        removed = _run(engine.ledger.prune())
    except StorageError as e:
        raise click.ClickException(str(e))
    console.print(f"✓ Pruned {removed} entr{'y' if removed == 1 else 'ies'}")


@cli.command()
@click.option("--save", is_flag=True, help="Write the effective settings to the settings file")
@click.pass_context
def config(ctx, save):
    """Show the effective settings."""
    settings = ctx.obj["settings"]
    console.print_json(data=settings.model_dump(mode="json"))
    if save:
        path = save_settings(settings, ctx.obj["config_path"])
        console.print(f"✓ Saved to {path}")


if __name__ == "__main__":
    cli()
