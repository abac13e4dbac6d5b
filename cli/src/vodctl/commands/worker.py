"""Worker process command for vodctl."""

import threading

import click
from rich.console import Console

from backend.archiver.dependencies import build_periodic_scheduler, build_worker_pool, get_settings
from backend.archiver.logging_config import configure_application_logging

console = Console()


@click.command()
@click.option("--scheduler/--no-scheduler", default=True, help="Also run periodic jobs.")
@click.option("--drain", "drain_queue", default=None, help="Process available jobs on one queue, then exit.")
def worker(scheduler: bool, drain_queue: str | None):
    """Run the worker pool until interrupted."""
    configure_application_logging(get_settings())
    pool = build_worker_pool()

    if drain_queue is not None:
        processed = pool.drain(drain_queue)
        console.print(f"[green]Processed {processed} job(s)[/green] from {drain_queue}")
        return

    periodic = build_periodic_scheduler() if scheduler else None
    pool.start()
    if periodic is not None:
        periodic.start()
    console.print(f"[bold cyan]Workers running[/bold cyan] queues: {', '.join(pool.queue_names())}")

    stopped = threading.Event()
    try:
        stopped.wait()
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopping workers...[/yellow]")
    finally:
        if periodic is not None:
            periodic.stop()
        pool.stop()
