"""
Agendum CLI entry point.

Commands:
    agendum schedule  — Enqueue a job of any kind
    agendum email     — Enqueue a "send email" job
    agendum status    — Show one job
    agendum list      — List jobs, e.g. dead ones awaiting inspection
    agendum run       — Run the poller until Ctrl-C
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from agendum.core.config import AgendumConfig
from agendum.core.errors import AgendumError
from agendum.executors.email import SEND_EMAIL
from agendum.scheduler.api import Scheduler
from agendum.scheduler.job import Job, JobState

app = typer.Typer(
    name="agendum",
    help="Agendum — durable job scheduling with at-least-once execution.",
    add_completion=False,
)

console = Console()
logger = logging.getLogger(__name__)

_STATE_STYLES = {
    JobState.PENDING: "yellow",
    JobState.LOCKED: "cyan",
    JobState.RUNNING: "cyan",
    JobState.SUCCEEDED: "green",
    JobState.FAILED: "red",
    JobState.DEAD: "bold red",
}


def _load_config(config_path: Path | None, db: str | None) -> AgendumConfig:
    overrides = {"store": {"db_path": db}} if db else None
    try:
        return AgendumConfig.load(overrides=overrides, project_path=config_path)
    except AgendumError as e:
        console.print(f"[red]{escape(e.message)}[/red]")
        raise typer.Exit(1)


def _fmt_ts(ts: float) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def _state(job: Job) -> str:
    style = _STATE_STYLES.get(job.state, "")
    return f"[{style}]{job.state.value}[/{style}]"


async def _with_scheduler(config: AgendumConfig, fn):
    scheduler = Scheduler.from_config(config)
    await scheduler.initialize()
    try:
        return await fn(scheduler)
    finally:
        await scheduler.close()


def _run(config: AgendumConfig, fn):
    try:
        return asyncio.run(_with_scheduler(config, fn))
    except AgendumError as e:
        console.print(f"[red]Error:[/red] {escape(e.message)}")
        raise typer.Exit(1)


ConfigOpt = typer.Option(None, "--config", "-c", help="Path to agendum.toml")
DbOpt = typer.Option(None, "--db", help="Override the job database path")


@app.command()
def schedule(
    kind: str = typer.Argument(..., help="Job kind, e.g. 'send email'"),
    payload: str = typer.Option("{}", "--payload", "-p", help="JSON object passed to the executor"),
    at: str = typer.Option(None, "--at", help="ISO-8601 run time (default: now)"),
    config_path: Path = ConfigOpt,
    db: str = DbOpt,
) -> None:
    """Enqueue a job of any kind."""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --payload JSON:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    run_at = at or datetime.now(timezone.utc)
    config = _load_config(config_path, db)
    job_id = _run(config, lambda s: s.schedule(kind, data, run_at))
    console.print(f"Scheduled job [bold]{job_id}[/bold]")


@app.command()
def email(
    to: str = typer.Argument(..., help="Recipient address"),
    subject: str = typer.Option(..., "--subject", "-s"),
    body: str = typer.Option(..., "--body", "-b"),
    at: str = typer.Option(None, "--at", help="ISO-8601 send time (default: now)"),
    config_path: Path = ConfigOpt,
    db: str = DbOpt,
) -> None:
    """Enqueue a 'send email' job."""
    run_at = at or datetime.now(timezone.utc)
    config = _load_config(config_path, db)
    payload = {"to": to, "subject": subject, "body": body}
    job_id = _run(config, lambda s: s.schedule(SEND_EMAIL, payload, run_at))
    console.print(f"Scheduled email [bold]{job_id}[/bold] to {escape(to)}")


@app.command()
def status(
    job_id: str = typer.Argument(..., help="Job id"),
    config_path: Path = ConfigOpt,
    db: str = DbOpt,
) -> None:
    """Show one job."""
    config = _load_config(config_path, db)
    job = _run(config, lambda s: s.status(job_id))
    if job is None:
        console.print(f"[yellow]Job {escape(job_id)} not found[/yellow]")
        raise typer.Exit(1)

    table = Table(show_header=False, box=None)
    table.add_column(style="dim")
    table.add_column()
    table.add_row("id", job.id)
    table.add_row("kind", escape(job.kind))
    table.add_row("state", _state(job))
    table.add_row("attempts", str(job.attempts))
    table.add_row("run at", _fmt_ts(job.run_at))
    table.add_row("locked until", _fmt_ts(job.locked_until))
    table.add_row("last error", escape(job.last_error or "-"))
    table.add_row("payload", escape(json.dumps(job.payload)))
    table.add_row("created", _fmt_ts(job.created_at))
    table.add_row("updated", _fmt_ts(job.updated_at))
    console.print(table)


@app.command("list")
def list_jobs(
    state: JobState = typer.Option(None, "--state", help="Only jobs in this state"),
    limit: int = typer.Option(50, "--limit", "-n"),
    config_path: Path = ConfigOpt,
    db: str = DbOpt,
) -> None:
    """List jobs ordered by run time."""
    config = _load_config(config_path, db)
    jobs = _run(config, lambda s: s.store.list_jobs(state=state, limit=limit))
    if not jobs:
        console.print("[dim]No jobs.[/dim]")
        return

    table = Table()
    table.add_column("id", no_wrap=True)
    table.add_column("kind")
    table.add_column("state")
    table.add_column("attempts", justify="right")
    table.add_column("run at")
    table.add_column("last error")
    for job in jobs:
        table.add_row(
            job.id,
            escape(job.kind),
            _state(job),
            str(job.attempts),
            _fmt_ts(job.run_at),
            escape(job.last_error or ""),
        )
    console.print(table)


@app.command()
def run(
    once: bool = typer.Option(False, "--once", help="Run a single poll cycle and exit"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show info logs on the console"),
    config_path: Path = ConfigOpt,
    db: str = DbOpt,
) -> None:
    """Run the poller until interrupted."""
    from agendum.core.logging import setup_logging

    config = _load_config(config_path, db)
    setup_logging(
        log_dir=config.get_log_dir(),
        console_level=logging.INFO if verbose else config.logging.console_level,
    )

    async def _cycle(s: Scheduler) -> int:
        return len(await s.poller.run_once())

    async def _forever(s: Scheduler) -> None:
        await s.start()
        try:
            await asyncio.Event().wait()
        finally:
            await s.stop()

    if once:
        count = _run(config, _cycle)
        console.print(f"Processed {count} job(s)")
        return

    console.print(
        f"[bold]Agendum[/bold] polling every {config.scheduler.poll_interval:g}s "
        f"[dim](Ctrl-C to stop)[/dim]"
    )
    try:
        _run(config, _forever)
    except KeyboardInterrupt:
        pass
    console.print("[dim]Stopped.[/dim]")


@app.command()
def version() -> None:
    """Show Agendum version."""
    from agendum import __version__
    console.print(f"Agendum v{__version__}")
