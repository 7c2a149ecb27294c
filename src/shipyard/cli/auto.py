"""``shipyard auto`` commands: run and steer the autonomous loop."""

from __future__ import annotations

import asyncio
import contextlib
import json
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from shipyard.adapters.backends import (
    CommandHygieneChecker,
    GitCliVcsHost,
    JsonFileIssueSource,
    StaticIssueSource,
)
from shipyard.adapters.sandbox import SandboxProvider
from shipyard.config import ShipyardConfig
from shipyard.debug_log import export_logs_to_file, setup_logging
from shipyard.errors import InvalidRunRequestError, RunConflictError, RunNotFoundError
from shipyard.models.entities import ItemFilters
from shipyard.models.enums import RunStatus
from shipyard.paths import get_debug_log_path
from shipyard.services.runs import AutomationService

if TYPE_CHECKING:
    from collections.abc import Callable

    from shipyard.adapters.backends import IssueSource
    from shipyard.services.loop import RunSummary
    from shipyard.services.runs import RunStatusReport

F = TypeVar("F", bound="Callable[..., Any]")

_STATUS_COLORS = {
    "running": "cyan",
    "paused": "yellow",
    "completed": "green",
    "failed": "red",
    "cancelled": "magenta",
    "stale": "red",
    "skipped": "bright_black",
    "pending": "white",
    "in_progress": "cyan",
}


def _workspace_option(func: F) -> F:
    return click.option(
        "--workspace",
        type=click.Path(file_okay=False, path_type=Path),
        default=Path.cwd,
        show_default="current directory",
        help="Workspace holding the .shipyard state directory",
    )(func)


def _config_option(func: F) -> F:
    return click.option(
        "--config",
        "config_path",
        type=click.Path(exists=True, dir_okay=False, path_type=Path),
        default=None,
        help="Config file (defaults to the workspace, then user config)",
    )(func)


def _build_service(
    workspace: Path,
    config_path: Path | None,
    issue_source: IssueSource | None = None,
) -> AutomationService:
    config = ShipyardConfig.load(config_path, workspace=workspace)
    provider = SandboxProvider(workspace, default_timeout=config.sandbox.default_timeout_seconds)
    hygiene = (
        CommandHygieneChecker(
            config.hygiene.command, provider, timeout=config.hygiene.timeout_seconds
        )
        if config.hygiene.command
        else None
    )
    vcs = (
        GitCliVcsHost(remote=config.vcs.remote, default_base_branch=config.vcs.default_base_branch)
        if config.vcs.enabled
        else None
    )
    return AutomationService(
        workspace,
        config=config,
        issue_source=issue_source or StaticIssueSource([]),
        hygiene=hygiene,
        vcs=vcs,
    )


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _styled_status(status: str) -> str:
    return click.style(status, fg=_STATUS_COLORS.get(status, "white"), bold=True)


@click.group()
def auto() -> None:
    """Autonomous issue-to-pull-request runs."""


@auto.command()
@click.option(
    "--items",
    "items_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="JSON file of work items (a list, or an object with an 'items' list)",
)
@click.option("--goal", default=None, help="Goal passed to every stage")
@click.option("--source", "sources", multiple=True, help="Only items from this source")
@click.option("--id", "item_ids", multiple=True, help="Only items with this id")
@click.option("--title-contains", default=None, help="Only items whose title contains this text")
@click.option("--max-items", type=int, default=None, help="Process at most this many items")
@click.option("--resume", is_flag=True, help="Continue a stale run instead of refusing")
@click.option("--json", "as_json", is_flag=True, help="Print the summary as JSON")
@click.option("--verbose", is_flag=True, help="Debug logging on stderr")
@click.option(
    "--export-log",
    is_flag=True,
    help="Write the in-memory debug log to the data directory after the run",
)
@_workspace_option
@_config_option
def start(
    items_path: Path,
    goal: str | None,
    sources: tuple[str, ...],
    item_ids: tuple[str, ...],
    title_contains: str | None,
    max_items: int | None,
    resume: bool,
    as_json: bool,
    verbose: bool,
    export_log: bool,
    workspace: Path,
    config_path: Path | None,
) -> None:
    """Run the loop in the foreground until the queue is done.

    Ctrl-C requests cancellation; the current stage finishes first.
    """
    setup_logging(verbose=verbose)
    service = _build_service(workspace, config_path, JsonFileIssueSource(items_path))
    filters = ItemFilters(
        sources=list(sources), item_ids=list(item_ids), title_contains=title_contains
    )
    try:
        summary = asyncio.run(_run_foreground(service, goal, filters, max_items, resume))
    except (InvalidRunRequestError, RunConflictError) as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        if export_log:
            path = get_debug_log_path()
            count = export_logs_to_file(path)
            click.echo(f"Exported {count} log entries to {path}", err=True)

    if as_json:
        _echo_json(summary.to_dict())
    else:
        counts = summary.counts
        click.echo(f"Run {summary.run_id}: {_styled_status(str(summary.status))}")
        click.echo(
            f"  {counts.completed} completed, {counts.failed} failed, "
            f"{counts.skipped} skipped, {counts.pending} pending of {counts.total}"
        )
        if summary.error:
            click.secho(f"  {summary.error}", fg="red")
    if summary.status is RunStatus.FAILED:
        raise click.exceptions.Exit(1)


async def _run_foreground(
    service: AutomationService,
    goal: str | None,
    filters: ItemFilters,
    max_items: int | None,
    resume: bool,
) -> RunSummary:
    run_id = await service.start(goal, filters, max_items, resume=resume)
    click.echo(f"Started run {run_id}", err=True)

    def _interrupt() -> None:
        click.echo("Cancelling after the current stage...", err=True)
        with contextlib.suppress(RunNotFoundError):
            service.cancel(run_id)

    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, _interrupt)
    try:
        return await service.wait(run_id)
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await service.shutdown()


def _render_status(report: RunStatusReport) -> None:
    console = Console()
    if report.run_id is None:
        console.print("No run recorded in this workspace.")
        return

    color = _STATUS_COLORS.get(report.run_status, "white")
    console.print(f"Run [bold]{report.run_id}[/bold]: [{color}]{report.run_status}[/{color}]")
    if report.is_stale:
        console.print(f"  stale: {report.stale_reason} (recorded {report.raw_run_status})")
    console.print(f"  goal: {report.goal}")
    if report.current_stage:
        console.print(f"  stage: {report.current_stage} ({report.active_agent or '-'})")
    if report.heartbeat_age_ms is not None:
        console.print(f"  heartbeat: {report.heartbeat_age_ms / 1000:.1f}s ago")
    if report.error:
        console.print(f"  error: [red]{report.error}[/red]")

    if report.issue_queue:
        table = Table(show_header=True, header_style="bold")
        table.add_column("Item")
        table.add_column("Status")
        table.add_column("Title")
        table.add_column("Result")
        for entry in report.issue_queue:
            item_color = _STATUS_COLORS.get(entry["status"], "white")
            table.add_row(
                entry["ref"],
                f"[{item_color}]{entry['status']}[/{item_color}]",
                entry["title"] or "",
                entry["pr_url"] or entry["error"] or "",
            )
        console.print(table)

    for name, activity in report.agent_activity.items():
        console.print(f"  agent {name}: {activity['status']} {activity['current_command'] or ''}")


@auto.command()
@click.option("--run-id", default=None, help="Require the recorded run to have this id")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@_workspace_option
@_config_option
def status(run_id: str | None, as_json: bool, workspace: Path, config_path: Path | None) -> None:
    """Show the recorded run, including stale detection."""
    service = _build_service(workspace, config_path)
    try:
        report = service.status(run_id)
    except RunNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    if as_json:
        _echo_json(report.to_dict())
    else:
        _render_status(report)


@auto.command()
@click.argument("run_id")
@_workspace_option
@_config_option
def cancel(run_id: str, workspace: Path, config_path: Path | None) -> None:
    """Cancel a run; one whose runner is gone is marked cancelled on disk."""
    service = _build_service(workspace, config_path)
    try:
        outcome = service.cancel(run_id)
    except RunNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{run_id}: {outcome}")


@auto.command()
@click.argument("run_id")
@_workspace_option
@_config_option
def pause(run_id: str, workspace: Path, config_path: Path | None) -> None:
    """Pause a live run at its next stage boundary, from any process."""
    service = _build_service(workspace, config_path)
    try:
        outcome = service.pause(run_id)
    except RunNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{run_id}: {outcome}")


@auto.command()
@click.argument("run_id")
@_workspace_option
@_config_option
def resume(run_id: str, workspace: Path, config_path: Path | None) -> None:
    """Resume a paused run, from any process."""
    service = _build_service(workspace, config_path)
    try:
        outcome = service.resume(run_id)
    except RunNotFoundError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{run_id}: {outcome}")


@auto.command()
@click.option("--after-seq", type=int, default=0, show_default=True, help="Skip this many events")
@click.option("--limit", type=int, default=None, help="Page size (1-500, default 50)")
@click.option("--category", default="auto", show_default=True, help="Event log category")
@_workspace_option
@_config_option
def events(
    after_seq: int,
    limit: int | None,
    category: str,
    workspace: Path,
    config_path: Path | None,
) -> None:
    """Print one page of the run event log as JSON."""
    service = _build_service(workspace, config_path)
    try:
        page = service.events(after_seq, limit, category)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    _echo_json(page.to_dict())
