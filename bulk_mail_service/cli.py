"""Command-line interface for the bulk mail service.

Usage:
    bulk-mail serve                 # HTTP API (plus workers/scheduler unless disabled)
    bulk-mail worker [--once]       # worker pool only
    bulk-mail scheduler [--once]    # scheduler only
    bulk-mail jobs list --status QUEUED
    bulk-mail jobs show <job-id>
    bulk-mail jobs cancel <job-id>
    bulk-mail queue stats
    bulk-mail test-connection

Every command reads ``config.ini`` (or ``--config``) with ``BMS_*``
environment fallbacks.
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import load_settings
from .core import ROLE_SCHEDULER, ROLE_WORKERS, BulkMailCore
from .dispatcher import CancelError, JobNotFoundError, ValidationError
from .logger import configure_logging
from .transport import TransportConfigurationError

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _format_ts(value: Optional[float]) -> str:
    if not value:
        return "-"
    return datetime.fromtimestamp(float(value)).strftime("%Y-%m-%d %H:%M:%S")


async def _with_core(
    settings: Dict[str, Any],
    roles: Iterable[str],
    action: Callable[[BulkMailCore], Awaitable[Any]],
) -> Any:
    """Build a core for ``roles``, run ``action`` against it and shut it down."""
    core = BulkMailCore.from_settings(settings, roles=roles)
    await core.init()
    try:
        return await action(core)
    finally:
        await core.stop()


async def _run_until_signal(core: BulkMailCore) -> None:
    """Start the core and keep it running until SIGINT or SIGTERM."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - windows
            pass
    await core.start()
    await stop.wait()


def _run(settings: Dict[str, Any], roles: Iterable[str], action: Callable[[BulkMailCore], Awaitable[Any]]) -> Any:
    try:
        return run_async(_with_core(settings, roles, action))
    except (JobNotFoundError, CancelError, ValidationError, TransportConfigurationError) as exc:
        print_error(str(exc))
        sys.exit(1)


@click.group()
@click.option("--config", "config_path", envvar="BMS_CONFIG", default=None, help="Path to config.ini.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.version_option(package_name="bulk-mail-service")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], log_level: Optional[str]) -> None:
    """Bulk mail service: job queue, workers and scheduler."""
    settings = load_settings(config_path)
    if log_level:
        settings["log_level"] = log_level.upper()
    configure_logging(settings["log_level"])
    ctx.obj = settings


@main.command()
@click.option("--host", "-h", default=None, help="Host to bind to.")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.option("--no-workers", is_flag=True, help="Do not run workers in the API process.")
@click.option("--no-scheduler", is_flag=True, help="Do not run the scheduler in the API process.")
@click.pass_obj
def serve(settings: Dict[str, Any], host: Optional[str], port: Optional[int], no_workers: bool, no_scheduler: bool) -> None:
    """Run the HTTP API."""
    import uvicorn

    from .api import create_app_from_settings

    if no_workers:
        settings["run_workers"] = False
    if no_scheduler:
        settings["run_scheduler"] = False
    host = host or str(settings["http_host"])
    port = port or int(settings["http_port"])
    console.print("\n[bold cyan]Starting bulk mail service[/bold cyan]")
    console.print(f"  DB:      {settings['db_path']}")
    console.print(f"  Listen:  {host}:{port}")
    console.print()
    try:
        app = create_app_from_settings(settings)
    except TransportConfigurationError as exc:
        print_error(str(exc))
        sys.exit(1)
    uvicorn.run(app, host=host, port=port)


@main.command()
@click.option("--once", is_flag=True, help="Process at most one queue entry and exit.")
@click.option("--concurrency", "-c", type=int, default=None, help="Number of worker tasks.")
@click.pass_obj
def worker(settings: Dict[str, Any], once: bool, concurrency: Optional[int]) -> None:
    """Run a worker pool."""
    if concurrency:
        settings["worker_concurrency"] = concurrency

    async def _action(core: BulkMailCore):
        if once:
            outcome = await core.workers.run_once()
            console.print(f"Outcome: [bold]{outcome or 'queue empty'}[/bold]")
            return
        await _run_until_signal(core)

    _run(settings, [ROLE_WORKERS], _action)


@main.command()
@click.option("--once", is_flag=True, help="Run a single cycle and exit.")
@click.pass_obj
def scheduler(settings: Dict[str, Any], once: bool) -> None:
    """Run the scheduler (due jobs, orphan recovery, retention)."""

    async def _action(core: BulkMailCore):
        if once:
            print_json(await core.scheduler.run_once())
            return
        await _run_until_signal(core)

    _run(settings, [ROLE_SCHEDULER], _action)


@main.group()
def jobs() -> None:
    """Inspect and cancel email jobs."""


@jobs.command("list")
@click.option("--status", "-s", default=None, help="Filter by status.")
@click.option("--created-by", default=None, help="Filter by creator id.")
@click.option("--limit", "-n", type=int, default=50, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def jobs_list(settings: Dict[str, Any], status: Optional[str], created_by: Optional[str], limit: int, as_json: bool) -> None:
    """List jobs, newest first."""

    async def _action(core: BulkMailCore):
        return await core.dispatcher.list_jobs(status=status, created_by=created_by, limit=limit)

    rows = _run(settings, [], _action)
    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print("[dim]No jobs found.[/dim]")
        return
    table = Table(title="Email jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Subject")
    table.add_column("Sent", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Priority", justify="right")
    table.add_column("Created")
    for row in rows:
        table.add_row(
            row["id"],
            row["status"],
            row["subject"],
            str(row["sent_count"]),
            str(row["failed_count"]),
            str(row["total_count"]),
            str(row["priority"]),
            _format_ts(row["created_ts"]),
        )
    console.print(table)


@jobs.command("show")
@click.argument("job_id")
@click.option("--logs/--no-logs", default=True, help="Include recipient logs.")
@click.pass_obj
def jobs_show(settings: Dict[str, Any], job_id: str, logs: bool) -> None:
    """Show a job as JSON."""

    async def _action(core: BulkMailCore):
        return await core.dispatcher.get_job(job_id, include_logs=logs)

    print_json(_run(settings, [], _action))


@jobs.command("cancel")
@click.argument("job_id")
@click.option("--actor", default="cli", show_default=True, help="Actor recorded in the audit event.")
@click.pass_obj
def jobs_cancel(settings: Dict[str, Any], job_id: str, actor: str) -> None:
    """Cancel a queued or scheduled job."""

    async def _action(core: BulkMailCore):
        return await core.dispatcher.cancel_job(job_id, actor)

    result = _run(settings, [], _action)
    if result["cancel_requested"]:
        console.print(f"[yellow]Job {job_id} is processing; cancellation requested[/yellow]")
    else:
        print_success(f"Job {job_id} cancelled")


@main.group()
def queue() -> None:
    """Inspect the job queue."""


@queue.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def queue_stats(settings: Dict[str, Any], as_json: bool) -> None:
    """Show queue entry counts and active jobs."""

    async def _action(core: BulkMailCore):
        return await core.queue_overview()

    overview = _run(settings, [], _action)
    if as_json:
        print_json(overview)
        return
    table = Table(title="Queue")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in overview["queue"].items():
        table.add_row(f"entries {key}", str(value))
    for key, value in overview["jobs"].items():
        table.add_row(f"jobs {key}", str(value))
    for key, value in overview["sent"].items():
        table.add_row(f"sent {key.replace('_', ' ')}", str(value))
    console.print(table)


@main.command("test-connection")
@click.pass_obj
def test_connection(settings: Dict[str, Any]) -> None:
    """Check that the configured mail provider is reachable."""

    async def _action(core: BulkMailCore):
        return await core.dispatcher.test_connection()

    result = _run(settings, [], _action)
    if result.get("success"):
        print_success("Mail provider reachable")
        return
    print_error(result.get("error") or "Connection failed")
    sys.exit(1)


if __name__ == "__main__":
    main()
