"""Job queue commands for vodctl."""

import json

import click
from rich.console import Console
from rich.table import Table

from backend.archiver.dependencies import get_jobs_repository, get_registry
from backend.archiver.models.job_contracts import JOB_STATES
from backend.archiver.services.job_registry import UnknownJobKindError

console = Console()


@click.command()
@click.argument("kind")
@click.option("--args", "raw_args", default="{}", help="Job arguments as a JSON object.")
def enqueue(kind: str, raw_args: str):
    """Enqueue a job by kind."""
    try:
        args = json.loads(raw_args)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}", param_hint="--args") from exc
    if not isinstance(args, dict):
        raise click.BadParameter("arguments must be a JSON object", param_hint="--args")

    registry = get_registry()
    try:
        job_id = registry.enqueue(get_jobs_repository(), kind, args)
    except UnknownJobKindError as exc:
        console.print(f"[red]{exc}[/red]")
        raise SystemExit(1) from exc

    descriptor = registry.get(kind)
    console.print(f"[green]Enqueued[/green] {kind} on [cyan]{descriptor.queue}[/cyan]: {job_id}")


@click.command()
@click.option("--state", type=click.Choice(JOB_STATES), default=None, help="Only show jobs in this state.")
@click.option("--limit", default=20, show_default=True, help="Maximum jobs to list.")
def list_jobs(state, limit):
    """Show job counts and the most recently updated jobs."""
    repository = get_jobs_repository()
    counts = repository.counts_by_state()

    console.print("\n[bold cyan]Job states[/bold cyan]")
    for name in JOB_STATES:
        console.print(f"  {name}: {counts.get(name, 0)}")

    table = Table(title="Recent jobs")
    table.add_column("Job")
    table.add_column("Kind")
    table.add_column("Queue")
    table.add_column("State")
    table.add_column("Attempt", justify="right")
    table.add_column("Last error")
    for job in repository.list_jobs(state=state, limit=limit):
        table.add_row(
            job.job_id,
            job.kind,
            job.queue,
            job.state,
            f"{job.attempt}/{job.max_attempts}",
            (job.last_error or "")[:80],
        )
    console.print()
    console.print(table)


@click.command()
def kinds():
    """List registered job kinds with their queue and retry policy."""
    registry = get_registry()
    table = Table(title="Job kinds")
    table.add_column("Kind")
    table.add_column("Queue")
    table.add_column("Max attempts", justify="right")
    table.add_column("Timeout")
    for kind in registry.kinds():
        descriptor = registry.get(kind)
        table.add_row(kind, descriptor.queue, str(descriptor.max_attempts), str(descriptor.timeout))
    console.print(table)
