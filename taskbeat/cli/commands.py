"""taskbeat CLI — Typer-based command-line interface."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from taskbeat import __version__

app = typer.Typer(
    name="taskbeat",
    help="taskbeat - recurring job scheduler",
    no_args_is_help=True,
)

console = Console()


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"taskbeat v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", "-v", callback=_version_callback, is_eager=True
    ),
) -> None:
    """taskbeat - recurring job scheduler."""


def _bootstrap():
    """Load config and build store + handler registry."""
    from taskbeat.core.config.loader import load_config
    from taskbeat.core.scheduler.registry import build_handler_registry
    from taskbeat.db.store import JobStore

    config = load_config()
    store = JobStore(config.database.path, busy_timeout_s=config.database.busy_timeout_s)
    registry = build_handler_registry(config, store)
    return config, store, registry


def _job_service():
    from taskbeat.core.scheduler.service import JobService

    config, store, registry = _bootstrap()
    return JobService(
        store,
        registry,
        lease_duration_s=config.scheduler.lease_duration_s,
        timezone=config.scheduler.timezone,
    )


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


# ════════════════════════════════════════════════════════════
# tick / serve — run the scheduler
# ════════════════════════════════════════════════════════════


@app.command()
def tick() -> None:
    """Run one scheduler tick and print its stats."""
    from taskbeat.core.scheduler.loop import SchedulerLoop

    config, store, registry = _bootstrap()
    loop = SchedulerLoop.from_config(config, store, registry)
    stats = asyncio.run(loop.tick())

    table = Table(title="Tick")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")
    for key, value in stats.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command()
def serve(
    interval: int | None = typer.Option(
        None, "--interval", "-i", help="Tick interval in seconds (default: config)"
    ),
) -> None:
    """Tick forever on a fixed interval (Ctrl+C to stop)."""
    from taskbeat.core.background.beat import TickService
    from taskbeat.core.scheduler.loop import SchedulerLoop

    config, store, registry = _bootstrap()
    loop = SchedulerLoop.from_config(config, store, registry)
    service = TickService(loop, interval_s=interval or config.scheduler.tick_interval_s)

    async def _serve() -> None:
        await service.start()
        try:
            await asyncio.Event().wait()
        finally:
            await service.stop()

    console.print(
        f"[green]taskbeat serving[/green] (interval={service.interval_s}s, "
        f"handlers={', '.join(registry.ids()) or '-'})"
    )
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        console.print("Bye!")


# ════════════════════════════════════════════════════════════
# status / handlers — info
# ════════════════════════════════════════════════════════════


@app.command()
def status() -> None:
    """Show configuration and database status."""
    config, store, registry = _bootstrap()
    jobs = store.count_jobs()

    table = Table(title="taskbeat status")
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Version", __version__)
    table.add_row("DB Path", config.database.path)
    table.add_row("Timezone", config.scheduler.timezone)
    table.add_row("Lease", f"{config.scheduler.lease_duration_s}s")
    table.add_row("Tick Interval", f"{config.scheduler.tick_interval_s}s")
    table.add_row("Jobs", f"{jobs['total']} ({jobs['enabled']} enabled)")
    table.add_row("Runs", str(store.count_runs()))
    table.add_row("Handlers", ", ".join(registry.ids()) or "-")

    console.print(table)


@app.command()
def handlers() -> None:
    """List registered handlers."""
    _, _, registry = _bootstrap()
    types = registry.handler_types()
    if not types:
        console.print("[dim]No handlers registered.[/dim]")
        return

    table = Table(title="Handlers")
    table.add_column("ID", style="cyan")
    table.add_column("Category", style="yellow")
    table.add_column("Name", style="white")
    table.add_column("Config", style="dim")
    for h in types:
        fields = ", ".join(f["name"] for f in h["config_schema"]) or "-"
        table.add_row(h["id"], h["category"], h["name"], fields)
    console.print(table)


# ════════════════════════════════════════════════════════════
# jobs — job management (sub-command group)
# ════════════════════════════════════════════════════════════

jobs_app = typer.Typer(help="Manage scheduled jobs")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    enabled_only: bool = typer.Option(False, "--enabled", help="Only enabled jobs"),
) -> None:
    """List scheduled jobs."""
    service = _job_service()
    jobs = service.list_jobs(enabled=True if enabled_only else None)
    if not jobs:
        console.print("[dim]No scheduled jobs found.[/dim]")
        return

    table = Table(title="Scheduled Jobs")
    table.add_column("ID", style="cyan")
    table.add_column("Handler", style="blue")
    table.add_column("Schedule", style="yellow")
    table.add_column("State", style="green")
    table.add_column("Runs", justify="right")
    table.add_column("Fails", justify="right", style="red")
    table.add_column("Last", style="white")
    table.add_column("Next Run", style="dim")

    for job in jobs:
        if job["schedule_type"] == "cron":
            schedule = f"cron {job['cron_expression']}"
        else:
            schedule = f"every {job['interval_sec']}s"
        handler = job["handler_id"] or "-"
        if not job["handler_exists"]:
            handler += " [red](missing)[/red]"
        table.add_row(
            job["task_id"],
            handler,
            schedule,
            job["runtime_state"],
            str(job["run_count"]),
            str(job["failure_count"]),
            job["last_run_status"] or "-",
            _fmt_time(job["next_run_after"]),
        )

    console.print(table)


@jobs_app.command("add")
def jobs_add(
    handler_id: str = typer.Argument(help="Handler ID (see `taskbeat handlers`)"),
    task_id: str | None = typer.Option(None, "--id", help="Job ID (generated if omitted)"),
    every: int | None = typer.Option(None, "--every", "-e", help="Interval in seconds"),
    cron: str | None = typer.Option(None, "--cron", "-c", help="Cron expression"),
    name: str | None = typer.Option(None, "--name", "-n", help="Display name"),
    config_json: str | None = typer.Option(None, "--config", help="Handler config as JSON"),
    disabled: bool = typer.Option(False, "--disabled", help="Create disabled"),
) -> None:
    """Add a scheduled job (--every or --cron)."""
    from taskbeat.core.scheduler.errors import SchedulerError

    if (every is None) == (cron is None):
        console.print("[red]Give exactly one of --every or --cron[/red]")
        raise typer.Exit(code=1)
    try:
        config = json.loads(config_json) if config_json else None
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --config JSON:[/red] {e}")
        raise typer.Exit(code=1) from None

    service = _job_service()
    try:
        job = service.create_job(
            handler_id,
            task_id=task_id,
            name=name,
            schedule_type="cron" if cron else "interval",
            interval_sec=every,
            cron_expression=cron,
            enabled=not disabled,
            config=config,
        )
    except SchedulerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    console.print(f"[green]Job created:[/green] {job['task_id']}")
    console.print(f"  [dim]next run: {_fmt_time(job['next_run_after'])}[/dim]")


@jobs_app.command("remove")
def jobs_remove(
    task_id: str = typer.Argument(help="Job ID to remove"),
) -> None:
    """Remove a job and its run history."""
    from taskbeat.core.scheduler.errors import JobNotFoundError

    service = _job_service()
    try:
        service.delete_job(task_id)
    except JobNotFoundError:
        console.print(f"[red]Job not found:[/red] {task_id}")
        raise typer.Exit(code=1) from None
    console.print(f"[green]Removed job:[/green] {task_id}")


def _set_enabled(task_id: str, enabled: bool) -> None:
    from taskbeat.core.scheduler.errors import SchedulerError

    service = _job_service()
    try:
        job = service.update_job(task_id, enabled=enabled)
    except SchedulerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    state = "enabled" if enabled else "disabled"
    console.print(f"[green]Job {state}:[/green] {task_id} ({job['runtime_state']})")


@jobs_app.command("enable")
def jobs_enable(task_id: str = typer.Argument(help="Job ID")) -> None:
    """Enable a job and reschedule it from now."""
    _set_enabled(task_id, True)


@jobs_app.command("disable")
def jobs_disable(task_id: str = typer.Argument(help="Job ID")) -> None:
    """Disable a job."""
    _set_enabled(task_id, False)


@jobs_app.command("run")
def jobs_run(task_id: str = typer.Argument(help="Job ID")) -> None:
    """Run a job once now, outside its schedule."""
    from taskbeat.core.scheduler.errors import SchedulerError

    service = _job_service()
    try:
        result = asyncio.run(service.run_now(task_id))
    except SchedulerError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None

    if result["status"] == "success":
        console.print(
            f"[green]{task_id}: success[/green] ({result['duration_ms']}ms) "
            f"{result['summary'] or ''}"
        )
    else:
        console.print(f"[red]{task_id}: {result['status']}[/red] {result['error_message'] or ''}")
        raise typer.Exit(code=1)


@jobs_app.command("runs")
def jobs_runs(
    task_id: str = typer.Argument(help="Job ID"),
    limit: int = typer.Option(20, "--limit", "-l", help="Max entries (1-200)"),
) -> None:
    """Show recent run history of a job."""
    service = _job_service()
    runs = service.list_runs(task_id, limit=limit)
    if not runs:
        console.print(f"[dim]No runs for {task_id}.[/dim]")
        return

    table = Table(title=f"Runs: {task_id}")
    table.add_column("Started", style="dim")
    table.add_column("Trigger", style="blue")
    table.add_column("Status", style="cyan")
    table.add_column("ms", justify="right")
    table.add_column("Summary / Error", style="white")
    for run in runs:
        table.add_row(
            run["started_at"],
            run["trigger_type"],
            run["status"],
            str(run["duration_ms"] if run["duration_ms"] is not None else "-"),
            run["error_message"] or run["summary"] or "",
        )
    console.print(table)
