"""
Operator CLI for the capture pipeline.
"""

import asyncio
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from capture_pipeline.config import configure_logging, get_settings
from capture_pipeline.errors import ConflictError
from capture_pipeline.models import JobStatus

console = Console()


def _services():
    from capture_pipeline.app import build_services

    return build_services(get_settings())


@click.group()
@click.option('--log-level', default=None, help='Override LOG_LEVEL.')
def cli(log_level: Optional[str]):
    """Capture pipeline operator commands."""
    configure_logging(log_level)


@cli.command()
@click.option('--host', default='127.0.0.1', show_default=True)
@click.option('--port', default=8082, show_default=True, type=int)
def serve(host: str, port: int):
    """Run the sync API with its worker pool."""
    import uvicorn

    from capture_pipeline.app import create_app

    console.print(f"[bold blue]Serving capture pipeline on[/bold blue] http://{host}:{port}")
    uvicorn.run(create_app(_services()), host=host, port=port)


@cli.command()
def status():
    """Show job and record counts and external service health."""
    services = _services()
    snapshot = services.orchestrator.snapshot()

    jobs = ", ".join(f"{name}={count}" for name, count in snapshot["jobs"].items())
    records = ", ".join(f"{name}={count}" for name, count in sorted(snapshot["records"].items())) or "none"
    console.print(Panel(f"[bold]Jobs:[/bold] {jobs}\n[bold]Records:[/bold] {records}", title="Pipeline"))

    table = Table(title="External services")
    table.add_column("Service")
    table.add_column("Circuit")
    table.add_column("Tokens", justify="right")
    for name, caller in services.callers.snapshot().items():
        table.add_row(name, caller["circuit"]["state"], f"{caller['tokens_available']:.1f}")
    console.print(table)


@cli.command()
@click.option('--status', 'status_filter', type=click.Choice([s.value for s in JobStatus]), default=None)
@click.option('--record', 'record_id', default=None, help='Only jobs of this record.')
@click.option('--limit', default=20, show_default=True, type=int)
def jobs(status_filter: Optional[str], record_id: Optional[str], limit: int):
    """List recent pipeline jobs."""
    services = _services()
    rows = services.job_queue.list_jobs(
        record_id=record_id,
        status=JobStatus(status_filter) if status_filter else None,
        limit=limit,
    )
    table = Table(title=f"Jobs ({len(rows)})")
    for column in ("Job", "Record", "Stage", "Status", "Attempt", "Last error"):
        table.add_column(column)
    for job in rows:
        table.add_row(
            job.job_id[:8],
            job.record_id[:8],
            job.stage.value,
            job.status.value,
            f"{job.attempt}/{job.max_attempts}",
            (job.last_error or "")[:60],
        )
    console.print(table)


@cli.command()
@click.option('--timeout', default=300.0, show_default=True, type=float)
def drain(timeout: float):
    """Process outstanding jobs until the queue is empty, then exit."""
    services = _services()

    async def run_drain():
        await services.orchestrator.run_until_idle(timeout=timeout)

    try:
        asyncio.run(run_drain())
    except TimeoutError as e:
        console.print(f"[bold red]Drain timed out:[/bold red] {e}")
        raise SystemExit(1)
    console.print(f"[bold green]Queue drained.[/bold green] {services.job_queue.counts()}")


@cli.command()
@click.argument('record_id')
def retry(record_id: str):
    """Re-run a failed or completed record."""
    services = _services()

    try:
        record = asyncio.run(services.orchestrator.retry_record(record_id))
    except ConflictError as e:
        console.print(f"[bold red]Cannot retry:[/bold red] {e.message}")
        raise SystemExit(1)
    if record is None:
        console.print(f"[bold red]Record not found:[/bold red] {record_id}")
        raise SystemExit(1)
    console.print(f"[bold blue]Queued[/bold blue] {record.id} at v{record.version}")


if __name__ == "__main__":
    cli()
