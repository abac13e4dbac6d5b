"""Main CLI entry point for the VOD archiver."""

import click
from .commands import channels, jobs, worker


@click.group()
@click.version_option(version="0.1.0")
def main():
    """vodctl - operate the VOD archiver job queue."""
    pass


# Job commands
main.add_command(jobs.enqueue)
main.add_command(jobs.list_jobs, name="jobs")
main.add_command(jobs.kinds)

# Channel commands
main.add_command(channels.watch)
main.add_command(channels.list_channels, name="channels")

# Worker commands
main.add_command(worker.worker)


if __name__ == "__main__":
    main()
